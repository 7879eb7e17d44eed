# binary_mlm/services/distribution_service.py
"""
Per-tenant pause/resume switch for income distribution.
"""
from enum import Enum
import logging

import config
from binary_mlm.errors import StoreError
from binary_mlm.events.event_bus import eventBus, MLMEvents
from binary_mlm.store import paths
from binary_mlm.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class DistributionState(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    UNKNOWN = "unknown"  # no settings document, or it could not be read


class IncomeDistributionService:
    """Service consulted by every distributor before it emits commissions."""

    def __init__(self, store, failOpen: bool = None):
        self.store = store
        self.failOpen = config.DISTRIBUTION_FAIL_OPEN if failOpen is None else failOpen

    async def getState(self, tenantId: str) -> DistributionState:
        try:
            settings = self.store.get(paths.distributionSettingsDoc(tenantId))
        except StoreError as e:
            logger.error(f"Error checking income distribution status for tenant {tenantId}: {e}")
            return DistributionState.UNKNOWN

        if settings is None or "isPaused" not in settings:
            return DistributionState.UNKNOWN

        return DistributionState.PAUSED if settings["isPaused"] is True else DistributionState.ACTIVE

    async def isPaused(self, tenantId: str) -> bool:
        """UNKNOWN counts as active when failing open, as paused when failing closed."""
        state = await self.getState(tenantId)
        if state == DistributionState.UNKNOWN:
            return not self.failOpen
        return state == DistributionState.PAUSED

    async def pause(self, tenantId: str, reason: str, pausedBy: str = "system"):
        self.store.set(paths.distributionSettingsDoc(tenantId), {
            "isPaused": True,
            "pausedAt": timeMachine.now,
            "pausedReason": reason,
            "pausedBy": pausedBy,
        }, merge=True)

        logger.info(f"Income distribution paused for tenant {tenantId}: {reason}")
        await eventBus.emit(MLMEvents.DISTRIBUTION_PAUSED, {"tenantId": tenantId, "reason": reason})

    async def resume(self, tenantId: str, resumedBy: str = "system"):
        self.store.set(paths.distributionSettingsDoc(tenantId), {
            "isPaused": False,
            "resumedAt": timeMachine.now,
            "resumedBy": resumedBy,
        }, merge=True)

        logger.info(f"Income distribution resumed for tenant {tenantId}")
        await eventBus.emit(MLMEvents.DISTRIBUTION_RESUMED, {"tenantId": tenantId})
