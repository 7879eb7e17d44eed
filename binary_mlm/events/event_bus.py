# binary_mlm/events/event_bus.py
"""
In-process event bus of the commission engine.

Host applications emit USER_CREATED / PACKAGE_UPDATED where a document
database would fire change triggers; registerTriggers() wires the engine's
handlers to them. Everything the engine writes (commissions, credits, tree
updates, pauses, ranks, withdrawals) is announced here as well, so a message
queue consumer can replace the bus without touching the services.
"""
from typing import Dict, List, Callable, Any
import logging
import asyncio

logger = logging.getLogger(__name__)


class EventBus:
    """
    Process-wide singleton. Handlers may be plain functions or coroutines and
    run in subscription order; a failing handler is logged and the remaining
    handlers still run, so a broken listener never fails the emitting service.
    """

    _instance = None
    _handlers: Dict[str, List[Callable]] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._handlers = {}
        return cls._instance

    def subscribe(self, eventName: str, handler: Callable):
        self._handlers.setdefault(eventName, []).append(handler)
        logger.debug(f"Handler {handler.__name__} subscribed to {eventName}")

    def unsubscribe(self, eventName: str, handler: Callable):
        """Remove a handler; unknown handlers are ignored."""
        handlers = self._handlers.get(eventName, [])
        if handler in handlers:
            handlers.remove(handler)
            logger.debug(f"Handler {handler.__name__} unsubscribed from {eventName}")

    async def emit(self, eventName: str, data: Dict[str, Any]):
        """Deliver data to every handler of eventName, awaiting coroutine handlers."""
        handlers = list(self._handlers.get(eventName, []))
        if not handlers:
            return

        logger.debug(f"Emitting {eventName} to {len(handlers)} handlers: {data}")

        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception as e:
                logger.error(f"Error in handler {handler.__name__} for event {eventName}: {e}")

    def clear(self):
        """Drop every subscription (tests, re-registration)."""
        self._handlers.clear()


# Global event bus instance
eventBus = EventBus()


class MLMEvents:
    """Event names with the payload keys each one carries."""

    # Emitted by the host: {tenantId, userId}
    USER_CREATED = "user.created"
    # Emitted by the host: {tenantId, userId, beforeBV, afterBV}
    PACKAGE_UPDATED = "user.package_updated"

    # {tenantId, userId, nodesUpdated}
    TREE_UPDATED = "tree.updated"

    # {tenantId, recordId, userId, incomeType, amount, status}
    COMMISSION_CREATED = "commission.created"
    # {tenantId, recordId, userId, amount}
    COMMISSION_CREDITED = "commission.credited"

    # {jobId, tenantsProcessed, totalCommissionsCreated}
    PAIRING_COMPLETED = "pairing.completed"

    # {tenantId, reason} / {tenantId}
    DISTRIBUTION_PAUSED = "distribution.paused"
    DISTRIBUTION_RESUMED = "distribution.resumed"

    # {tenantId, userId, rankId, previousRankId}
    RANK_ACHIEVED = "rank.achieved"

    # {tenantId, withdrawalId, userId, amount}
    WITHDRAWAL_APPROVED = "withdrawal.approved"
