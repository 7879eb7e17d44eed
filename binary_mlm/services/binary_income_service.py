# binary_mlm/services/binary_income_service.py
"""
Pair matching: converts volume on both legs into binary_matching commissions.

Volume already paired is remembered on the tree node (leftMatchedVolume /
rightMatchedVolume), so only unmatched volume is paired on the next run and
leftovers carry forward. When the cap cuts a payout only the paid pairs are
matched, unless carryForward is switched off.
"""
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Optional, Tuple
import logging

from binary_mlm.config.plan import (
    BinaryMatchingConfig, CappingPeriod, CommissionStatus, IncomeType, loadConfig
)
from binary_mlm.services.commission_service import CommissionService
from binary_mlm.services.distribution_service import IncomeDistributionService
from binary_mlm.store import paths
from binary_mlm.utils.numbers import toDecimal, toNumber
from binary_mlm.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


def parsePairRatio(ratio: str) -> Tuple[int, int]:
    """'2:1' -> (2, 1). Malformed ratios fall back to 1:1."""
    try:
        left, right = (int(part) for part in str(ratio).split(":"))
    except ValueError:
        logger.warning(f"Invalid pair ratio {ratio!r}, using 1:1")
        return 1, 1

    if left <= 0 or right <= 0:
        logger.warning(f"Invalid pair ratio {ratio!r}, using 1:1")
        return 1, 1
    return left, right


def countPairs(leftVolume, rightVolume, ratio: Tuple[int, int] = (1, 1)) -> Decimal:
    """
    Matched pairs for the given leg volumes.
    Equal ratios pair volume one to one, others pair whole ratio units.
    """
    leftVolume = max(toDecimal(leftVolume), Decimal("0"))
    rightVolume = max(toDecimal(rightVolume), Decimal("0"))
    leftRatio, rightRatio = ratio

    if leftRatio == rightRatio:
        return min(leftVolume, rightVolume)

    leftPairs = (leftVolume / leftRatio).to_integral_value(rounding=ROUND_FLOOR)
    rightPairs = (rightVolume / rightRatio).to_integral_value(rounding=ROUND_FLOOR)
    return min(leftPairs, rightPairs)


def applyCap(amount: Decimal, alreadyPaid: Decimal, cap: Optional[Decimal]) -> Decimal:
    """Clamp amount to the headroom left under cap; zero when the cap is reached."""
    if cap is None:
        return amount
    headroom = cap - alreadyPaid
    if headroom <= 0:
        return Decimal("0")
    return min(amount, headroom)


def periodStart(period: CappingPeriod) -> datetime:
    if period == CappingPeriod.WEEKLY:
        return timeMachine.startOfWeek
    if period == CappingPeriod.MONTHLY:
        return timeMachine.startOfMonth
    return timeMachine.startOfDay


class BinaryIncomeService:
    """Service for daily binary pair matching of one user."""

    def __init__(self, store, distributionService: IncomeDistributionService = None):
        self.store = store
        self.distribution = distributionService or IncomeDistributionService(store)
        self.commissionService = CommissionService(store, self.distribution)

    async def calculateBinaryIncome(
            self,
            tenantId: str,
            userId: str,
            period: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Pair the user's unmatched leg volume and record the commission.
        period is the pairing day (YYYY-MM-DD) the record belongs to, today by
        default; a retried run passes the day of the failed job.
        Returns the created record or None when nothing was paid.
        """
        period = period or timeMachine.today

        if await self.distribution.isPaused(tenantId):
            logger.info(f"Income distribution paused for tenant {tenantId}, skipping user {userId}")
            return None

        mlmConfig = loadConfig(self.store, tenantId)
        if mlmConfig is None or not mlmConfig.binaryMatching.enabled:
            return None
        binaryConfig = mlmConfig.binaryMatching

        if binaryConfig.flushOut:
            logger.warning(
                f"flushOut is set for tenant {tenantId} but has no defined reset policy; "
                f"unmatched volume is carried forward"
            )

        ratio = parsePairRatio(binaryConfig.pairRatio)
        alreadyPaid = Decimal("0")
        if binaryConfig.cappingAmount is not None:
            alreadyPaid = self.commissionService.sumIncome(
                tenantId, userId, IncomeType.BINARY_MATCHING, periodStart(binaryConfig.cappingPeriod)
            )

        treePath = paths.treeDoc(tenantId, userId)

        def attempt(transaction):
            snapshot = transaction.get(treePath)
            if snapshot is None:
                return None

            return self._pairInTransaction(
                transaction, tenantId, userId, snapshot.data, binaryConfig, ratio, alreadyPaid, period
            )

        recordId = self.store.runTransaction(attempt)
        if recordId is None:
            return None

        return await self.commissionService.announce(tenantId, recordId)

    def _pairInTransaction(
            self,
            transaction,
            tenantId: str,
            userId: str,
            node: Dict[str, Any],
            binaryConfig: BinaryMatchingConfig,
            ratio: Tuple[int, int],
            alreadyPaid: Decimal,
            period: str
    ) -> Optional[str]:
        leftMatched = toDecimal(node.get("leftMatchedVolume"))
        rightMatched = toDecimal(node.get("rightMatchedVolume"))
        availableLeft = toDecimal(node.get("leftVolume")) - leftMatched
        availableRight = toDecimal(node.get("rightVolume")) - rightMatched

        pairs = countPairs(availableLeft, availableRight, ratio)
        if pairs <= 0:
            return None

        rawAmount = pairs * binaryConfig.pairIncome
        amount = applyCap(rawAmount, alreadyPaid, binaryConfig.cappingAmount)
        if amount <= 0:
            logger.info(f"User {userId} reached the {binaryConfig.cappingPeriod.value} binary cap")
            return None

        if amount < rawAmount:
            if binaryConfig.carryForward:
                # Only the paid pairs are matched, the capped rest stays on the legs
                logger.info(f"Binary cap hit for {userId}: {toNumber(rawAmount - amount)} carried forward")
                pairs = amount / binaryConfig.pairIncome
            else:
                logger.info(f"Binary cap hit for {userId}: {toNumber(rawAmount - amount)} lapsed")

        recordId, record = self.commissionService.buildRecord(
            tenantId,
            userId,
            IncomeType.BINARY_MATCHING,
            amount,
            None,
            f"Binary matching income: {toNumber(pairs)} pairs",
            CommissionStatus.CREDITED,
            period,
            extra={"pairCount": toNumber(pairs)}
        )

        recordPath = paths.incomeDoc(tenantId, recordId)
        if transaction.get(recordPath) is not None:
            logger.info(f"Binary income for {userId} already recorded for {period}")
            return None

        leftRatio, rightRatio = ratio
        if leftRatio == rightRatio:
            leftUsed = rightUsed = pairs
        else:
            leftUsed, rightUsed = pairs * leftRatio, pairs * rightRatio

        transaction.create(recordPath, record)
        transaction.set(paths.treeDoc(tenantId, userId), {
            "leftMatchedVolume": toNumber(leftMatched + leftUsed),
            "rightMatchedVolume": toNumber(rightMatched + rightUsed),
            "lastMatchedAt": timeMachine.now,
        }, merge=True)

        return recordId
