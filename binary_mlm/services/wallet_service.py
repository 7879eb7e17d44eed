# binary_mlm/services/wallet_service.py
"""
Wallet balances: crediting commission records and paying out withdrawals.
"""
from datetime import timedelta
from typing import Any, Dict
import logging

import config
from binary_mlm.config.plan import CommissionStatus
from binary_mlm.events.event_bus import eventBus, MLMEvents
from binary_mlm.store import paths
from binary_mlm.utils.numbers import toDecimal, toNumber
from binary_mlm.utils.time_machine import timeMachine, parseTimestamp

logger = logging.getLogger(__name__)

# Days a withdrawal waits before auto-approval; None = never auto-approved
PAYOUT_CYCLES = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
    "manual": None,
}


def newWallet(tenantId: str, userId: str) -> Dict[str, Any]:
    return {
        "userId": userId,
        "companyId": tenantId,
        "totalEarnings": 0,
        "availableBalance": 0,
        "lockedBalance": 0,
        "withdrawnBalance": 0,
        "currency": config.DEFAULT_CURRENCY,
        "isFrozen": False,
        "lastUpdated": timeMachine.now,
    }


class WalletService:
    """Service for wallet balance operations."""

    def __init__(self, store):
        self.store = store

    async def initializeWallet(self, tenantId: str, userId: str) -> bool:
        """Create an empty wallet; an existing one is kept as is."""
        walletPath = paths.walletDoc(tenantId, userId)

        def attempt(transaction):
            if transaction.get(walletPath) is not None:
                return False
            transaction.set(walletPath, newWallet(tenantId, userId))
            return True

        return self.store.runTransaction(attempt)

    async def creditCommission(self, tenantId: str, recordId: str) -> bool:
        """
        Add a credited commission to the recipient's wallet.
        The record is marked walletCredited in the same transaction, so a
        record is never counted twice.
        """
        recordPath = paths.incomeDoc(tenantId, recordId)

        def attempt(transaction):
            recordSnapshot = transaction.get(recordPath)
            if recordSnapshot is None:
                return None

            record = recordSnapshot.data
            if record.get("status") != CommissionStatus.CREDITED.value or record.get("walletCredited"):
                return None

            walletPath = paths.walletDoc(tenantId, record["userId"])
            walletSnapshot = transaction.get(walletPath)
            wallet = walletSnapshot.data if walletSnapshot else newWallet(tenantId, record["userId"])

            amount = toDecimal(record.get("amount"))
            now = timeMachine.now

            transaction.set(walletPath, {
                **wallet,
                "totalEarnings": toNumber(toDecimal(wallet.get("totalEarnings")) + amount),
                "availableBalance": toNumber(toDecimal(wallet.get("availableBalance")) + amount),
                "lastUpdated": now,
            })
            transaction.update(recordPath, {
                "walletCredited": True,
                "creditedAt": record.get("creditedAt") or now,
            })
            return record

        record = self.store.runTransaction(attempt)
        if record is None:
            return False

        logger.info(f"Credited {record['amount']} to wallet of user {record['userId']} in tenant {tenantId}")
        await eventBus.emit(MLMEvents.COMMISSION_CREDITED, {
            "tenantId": tenantId,
            "recordId": recordId,
            "userId": record["userId"],
            "amount": record["amount"],
        })
        return True

    async def creditDueCommissions(self, tenantId: str) -> Dict[str, int]:
        """Release pending (delayed) commissions whose creditAfter has passed."""
        results = {
            "released": 0,
            "errors": 0
        }

        now = timeMachine.now
        pending = self.store.query(paths.incomeCollection(tenantId), [
            ("status", "==", CommissionStatus.PENDING.value),
            ("creditAfter", "<=", now),
        ])

        for snapshot in pending:
            try:
                released = self.store.runTransaction(
                    lambda transaction, path=snapshot.path: self._release(transaction, path, now)
                )
                if released:
                    await self.creditCommission(tenantId, snapshot.id)
                    results["released"] += 1
            except Exception as e:
                logger.error(f"Error releasing commission {snapshot.id} in tenant {tenantId}: {e}")
                results["errors"] += 1

        if results["released"]:
            logger.info(f"Released {results['released']} delayed commissions in tenant {tenantId}")

        return results

    @staticmethod
    def _release(transaction, recordPath: str, now) -> bool:
        snapshot = transaction.get(recordPath)
        if snapshot is None or snapshot.get("status") != CommissionStatus.PENDING.value:
            return False
        transaction.update(recordPath, {
            "status": CommissionStatus.CREDITED.value,
            "creditedAt": now,
        })
        return True

    async def creditAllDueCommissions(self) -> Dict[str, int]:
        """Delayed credit sweep over every active tenant."""
        results = {
            "tenants": 0,
            "released": 0,
            "errors": 0
        }

        for tenant in self.store.query(paths.TENANTS, [("status", "==", "active")]):
            try:
                tenantResults = await self.creditDueCommissions(tenant.id)
                results["tenants"] += 1
                results["released"] += tenantResults["released"]
                results["errors"] += tenantResults["errors"]
            except Exception as e:
                logger.error(f"Error in delayed credit sweep for tenant {tenant.id}: {e}")
                results["errors"] += 1

        return results

    async def processWithdrawals(self) -> Dict[str, int]:
        """Auto-approve pending withdrawals whose payout cycle has elapsed."""
        results = {
            "checked": 0,
            "approved": 0,
            "insufficient": 0,
            "errors": 0
        }

        for tenant in self.store.query(paths.TENANTS, [("status", "==", "active")]):
            tenantId = tenant.id
            withdrawalConfig = self.store.get(paths.withdrawalConfigDoc(tenantId))
            if not withdrawalConfig or not withdrawalConfig.get("autoPayout"):
                continue

            cycleDays = PAYOUT_CYCLES.get(withdrawalConfig.get("payoutCycle"))
            if cycleDays is None:
                continue

            pending = self.store.query(
                paths.withdrawalsCollection(tenantId), [("status", "==", "pending")]
            )
            for withdrawal in pending:
                results["checked"] += 1
                try:
                    requestedAt = parseTimestamp(withdrawal.get("requestedAt")) or timeMachine.now
                    if timeMachine.now - requestedAt < timedelta(days=cycleDays):
                        continue

                    if await self.approveWithdrawal(tenantId, withdrawal.id):
                        results["approved"] += 1
                    else:
                        results["insufficient"] += 1
                except Exception as e:
                    logger.error(f"Error processing withdrawal {withdrawal.id} in tenant {tenantId}: {e}")
                    results["errors"] += 1

        logger.info(
            f"Withdrawal processing complete: checked={results['checked']}, "
            f"approved={results['approved']}, errors={results['errors']}"
        )
        return results

    async def approveWithdrawal(self, tenantId: str, withdrawalId: str, processedBy: str = "system") -> bool:
        """Approve a pending withdrawal and debit the wallet, only if the balance covers it."""
        withdrawalPath = f"{paths.withdrawalsCollection(tenantId)}/{withdrawalId}"

        def attempt(transaction):
            withdrawalSnapshot = transaction.get(withdrawalPath)
            if withdrawalSnapshot is None or withdrawalSnapshot.get("status") != "pending":
                return None

            withdrawal = withdrawalSnapshot.data
            walletPath = paths.walletDoc(tenantId, withdrawal["userId"])
            walletSnapshot = transaction.get(walletPath)
            if walletSnapshot is None:
                return None

            wallet = walletSnapshot.data
            amount = toDecimal(withdrawal.get("amount"))
            available = toDecimal(wallet.get("availableBalance"))
            if wallet.get("isFrozen") or amount <= 0 or available < amount:
                return None

            now = timeMachine.now
            transaction.update(walletPath, {
                "availableBalance": toNumber(available - amount),
                "withdrawnBalance": toNumber(toDecimal(wallet.get("withdrawnBalance")) + amount),
                "lastUpdated": now,
            })
            transaction.update(withdrawalPath, {
                "status": "approved",
                "processedAt": now,
                "processedBy": processedBy,
            })
            return withdrawal

        withdrawal = self.store.runTransaction(attempt)
        if withdrawal is None:
            logger.info(f"Withdrawal {withdrawalId} in tenant {tenantId} not approved")
            return False

        logger.info(f"Withdrawal {withdrawalId} of {withdrawal['amount']} approved for user {withdrawal['userId']}")
        await eventBus.emit(MLMEvents.WITHDRAWAL_APPROVED, {
            "tenantId": tenantId,
            "withdrawalId": withdrawalId,
            "userId": withdrawal["userId"],
            "amount": withdrawal["amount"],
        })
        return True
