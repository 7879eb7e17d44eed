# binary_mlm/services/commission_service.py
"""
Commission ledger and the upline-walk distributors
(direct income, sponsor matching, repurchase income).
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import logging

import config
from binary_mlm.config.plan import (
    CommissionStatus, CreditTiming, IncomeType, Qualification, loadConfig
)
from binary_mlm.errors import DocumentExists, StoreError
from binary_mlm.events.event_bus import eventBus, MLMEvents
from binary_mlm.services.distribution_service import IncomeDistributionService
from binary_mlm.services.tree_service import BinaryTreeService
from binary_mlm.store import paths
from binary_mlm.utils.ancestors import SPONSOR, walkAncestors
from binary_mlm.utils.numbers import toDecimal, toNumber
from binary_mlm.utils.time_machine import timeMachine, parseTimestamp

logger = logging.getLogger(__name__)


def buildNaturalKey(
        tenantId: str,
        recipientId: str,
        sourceId: Optional[str],
        incomeType: IncomeType,
        period: str
) -> str:
    """Identity of a commission: the same key is never paid twice."""
    return "|".join([tenantId, recipientId, sourceId or "-", incomeType.value, period])


def recordIdFor(naturalKey: str) -> str:
    return hashlib.sha256(naturalKey.encode("utf-8")).hexdigest()[:32]


def displayName(userData: Dict[str, Any], fallback: str) -> str:
    name = f"{userData.get('firstName') or ''} {userData.get('lastName') or ''}".strip()
    return name or fallback


def purchaseEventId(userData: Dict[str, Any]) -> str:
    """Default event id: the user's package BV after the purchase (BV only grows)."""
    return f"bv-{toNumber(toDecimal(userData.get('packageBV')))}"


class CommissionService:
    """Service for writing commission records and walking the sponsor chain."""

    def __init__(self, store, distributionService: IncomeDistributionService = None):
        self.store = store
        self.distribution = distributionService or IncomeDistributionService(store)
        self.treeService = BinaryTreeService(store)

    # region Ledger

    def buildRecord(
            self,
            tenantId: str,
            userId: str,
            incomeType: IncomeType,
            amount: Decimal,
            sourceUserId: Optional[str],
            description: str,
            status: CommissionStatus,
            period: str,
            keySource: Optional[str] = None,
            extra: Optional[Dict[str, Any]] = None
    ) -> Tuple[str, Dict[str, Any]]:
        """Record id and document for a commission, without writing it."""
        if amount < 0:
            raise ValueError(f"Commission amount must be non-negative, got {amount}")

        naturalKey = buildNaturalKey(
            tenantId, userId, keySource if keySource is not None else sourceUserId, incomeType, period
        )
        now = timeMachine.now

        record = {
            "companyId": tenantId,
            "userId": userId,
            "incomeType": incomeType.value,
            "amount": toNumber(amount),
            "currency": config.DEFAULT_CURRENCY,
            "sourceUserId": sourceUserId,
            "description": description,
            "status": status.value,
            "naturalKey": naturalKey,
            "walletCredited": False,
            "createdAt": now,
        }
        if status == CommissionStatus.CREDITED:
            record["creditedAt"] = now
        if extra:
            record.update(extra)

        return recordIdFor(naturalKey), record

    async def recordCommission(self, tenantId: str, *args, **kwargs) -> Optional[Dict[str, Any]]:
        """
        Create a commission record once per natural key.
        Returns the stored record, or None when it had already been emitted.
        """
        recordId, record = self.buildRecord(tenantId, *args, **kwargs)

        try:
            self.store.create(paths.incomeDoc(tenantId, recordId), record)
        except DocumentExists:
            logger.info(f"Commission {record['naturalKey']} already recorded, skipped")
            return None

        return await self.announce(tenantId, recordId)

    async def announce(self, tenantId: str, recordId: str) -> Optional[Dict[str, Any]]:
        """Publish a freshly written record to the listeners (wallet crediting)."""
        stored = self.store.get(paths.incomeDoc(tenantId, recordId))
        if stored is None:
            return None
        stored["id"] = recordId

        logger.info(
            f"{stored['incomeType']} commission {stored['amount']} for user {stored['userId']} "
            f"in tenant {tenantId} ({stored['status']})"
        )

        await eventBus.emit(MLMEvents.COMMISSION_CREATED, {
            "tenantId": tenantId,
            "recordId": recordId,
            "userId": stored["userId"],
            "incomeType": stored["incomeType"],
            "amount": stored["amount"],
            "status": stored["status"],
        })
        return stored

    def sumIncome(self, tenantId: str, userId: str, incomeType: IncomeType, since: datetime) -> Decimal:
        """Total of non-rejected commissions of one type received since a moment."""
        records = self.store.query(paths.incomeCollection(tenantId), [
            ("userId", "==", userId),
            ("incomeType", "==", incomeType.value),
            ("createdAt", ">=", since),
        ])
        return sum(
            (toDecimal(record.get("amount")) for record in records
             if record.get("status") != CommissionStatus.REJECTED.value),
            Decimal("0")
        )

    def hasIncomeSince(self, tenantId: str, userId: str, incomeType: IncomeType, since: datetime) -> bool:
        records = self.store.query(paths.incomeCollection(tenantId), [
            ("userId", "==", userId),
            ("incomeType", "==", incomeType.value),
            ("createdAt", ">=", since),
        ], limit=1)
        return bool(records)

    # endregion

    # region Direct income

    async def calculateDirectIncome(
            self,
            tenantId: str,
            userId: str,
            eventId: Optional[str] = None,
            purchaseBV=None
    ) -> Optional[Dict[str, Any]]:
        """
        Pay the immediate sponsor for a purchase by userId.
        Percentage income is taken from purchaseBV, or from the whole
        packageBV when the caller has no purchase amount.
        """
        if await self.distribution.isPaused(tenantId):
            logger.info(f"Income distribution paused for tenant {tenantId}, skipping user {userId}")
            return None

        mlmConfig = loadConfig(self.store, tenantId)
        if mlmConfig is None or not mlmConfig.directIncome.enabled:
            return None
        directConfig = mlmConfig.directIncome

        userData = self.store.get(paths.userDoc(tenantId, userId))
        if userData is None:
            return None

        sponsor = next(walkAncestors(self.store, tenantId, userId, SPONSOR, maxDepth=1, startData=userData), None)
        if sponsor is None:
            return None
        _, sponsorId, _ = sponsor

        if purchaseBV is None:
            purchaseBV = userData.get("packageBV")
        purchaseBV = toDecimal(purchaseBV)
        if directConfig.type == "percentage":
            amount = purchaseBV * directConfig.value / Decimal("100")
        else:
            amount = directConfig.value

        if amount <= 0:
            return None

        extra = {"level": 1}
        status = CommissionStatus.CREDITED
        if directConfig.creditTiming == CreditTiming.DELAYED:
            status = CommissionStatus.PENDING
            extra["creditAfter"] = timeMachine.now + timedelta(hours=directConfig.delayHours)

        return await self.recordCommission(
            tenantId,
            sponsorId,
            IncomeType.DIRECT,
            amount,
            userId,
            f"Direct income from {displayName(userData, userId)}",
            status,
            eventId or purchaseEventId(userData),
            extra=extra
        )

    # endregion

    # region Sponsor matching

    async def calculateSponsorMatching(
            self,
            tenantId: str,
            userId: str,
            eventId: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Pay qualifying sponsors on each configured level above userId."""
        if await self.distribution.isPaused(tenantId):
            logger.info(f"Income distribution paused for tenant {tenantId}, skipping user {userId}")
            return []

        mlmConfig = loadConfig(self.store, tenantId)
        if mlmConfig is None or not mlmConfig.sponsorMatching.enabled:
            return []
        matchingConfig = mlmConfig.sponsorMatching

        userData = self.store.get(paths.userDoc(tenantId, userId))
        if userData is None or not userData.get(SPONSOR):
            return []

        packageBV = toDecimal(userData.get("packageBV"))
        if packageBV <= 0:
            return []

        levels = {level.level: level for level in matchingConfig.levels}
        maxDepth = min(matchingConfig.maxLevel, config.UPLINE_MAX_DEPTH)
        period = eventId or purchaseEventId(userData)
        records = []

        try:
            for depth, ancestorId, ancestorData in walkAncestors(
                    self.store, tenantId, userId, SPONSOR, maxDepth=maxDepth, startData=userData
            ):
                levelConfig = levels.get(depth)
                if levelConfig is None:
                    continue

                try:
                    if matchingConfig.autoDisableIfInactive and self._isInactive(
                            ancestorData, matchingConfig.inactiveDays
                    ):
                        logger.info(f"Sponsor {ancestorId} inactive, level {depth} skipped")
                        continue

                    if not await self._isQualified(tenantId, ancestorId, levelConfig.qualification):
                        logger.info(f"Sponsor {ancestorId} not qualified for level {depth}")
                        continue

                    amount = packageBV * levelConfig.percentage / Decimal("100")
                    if amount <= 0:
                        continue

                    record = await self.recordCommission(
                        tenantId,
                        ancestorId,
                        IncomeType.SPONSOR_MATCHING,
                        amount,
                        userId,
                        f"Sponsor matching income - Level {depth} from {displayName(userData, userId)}",
                        CommissionStatus.CREDITED,
                        f"{period}:L{depth}",
                        extra={"level": depth}
                    )
                    if record:
                        records.append(record)
                except StoreError as e:
                    logger.error(f"Sponsor matching for {ancestorId} at level {depth} failed: {e}")
        except StoreError as e:
            logger.error(f"Sponsor chain of {userId} unreadable, walk ended: {e}")

        return records

    def _isInactive(self, userData: Dict[str, Any], inactiveDays: Optional[int]) -> bool:
        if userData.get("isActive") is False:
            return True

        if inactiveDays:
            lastActivity = parseTimestamp(userData.get("lastActivity"))
            if lastActivity and timeMachine.now - lastActivity > timedelta(days=inactiveDays):
                return True

        return False

    async def _isQualified(self, tenantId: str, userId: str, qualification: Qualification) -> bool:
        if qualification.isEmpty:
            return True

        stats = await self.treeService.getStats(tenantId, userId, countDirects=qualification.directs is not None)
        if stats is None:
            if qualification.needsTree:
                return False
            stats = {"directs": len(self.store.query(
                paths.usersCollection(tenantId), [("sponsorId", "==", userId)]
            ))}

        return qualification.isMetBy(**stats)

    # endregion

    # region Repurchase income

    async def calculateRepurchaseIncome(
            self,
            tenantId: str,
            userId: str,
            repurchaseBV,
            eventId: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Pay the configured upline levels a share of a repurchase."""
        if await self.distribution.isPaused(tenantId):
            logger.info(f"Income distribution paused for tenant {tenantId}, skipping user {userId}")
            return []

        mlmConfig = loadConfig(self.store, tenantId)
        if mlmConfig is None or not mlmConfig.repurchaseIncome.enabled:
            return []
        repurchaseConfig = mlmConfig.repurchaseIncome

        repurchaseBV = toDecimal(repurchaseBV)
        if repurchaseBV < repurchaseConfig.repurchaseBV:
            logger.info(
                f"Repurchase of {repurchaseBV} by {userId} below threshold {repurchaseConfig.repurchaseBV}"
            )
            return []

        if not repurchaseConfig.eligibleLevels:
            return []

        userData = self.store.get(paths.userDoc(tenantId, userId))
        if userData is None or not userData.get(SPONSOR):
            return []

        eligible = set(repurchaseConfig.eligibleLevels)
        maxDepth = min(max(eligible), config.UPLINE_MAX_DEPTH)
        period = eventId or purchaseEventId(userData)
        records = []

        try:
            for depth, ancestorId, _ in walkAncestors(
                    self.store, tenantId, userId, SPONSOR, maxDepth=maxDepth, startData=userData
            ):
                if depth not in eligible:
                    continue

                try:
                    keySource = None
                    recordPeriod = f"{period}:L{depth}"
                    if repurchaseConfig.monthlyQualification:
                        if self.hasIncomeSince(tenantId, ancestorId, IncomeType.REPURCHASE, timeMachine.startOfMonth):
                            logger.info(f"Upline {ancestorId} already paid repurchase income this month")
                            continue
                        # One repurchase commission per upline per month, whoever the source
                        keySource = "monthly"
                        recordPeriod = timeMachine.currentMonth

                    amount = repurchaseBV * repurchaseConfig.incomePercentage / Decimal("100")
                    if amount <= 0:
                        continue

                    record = await self.recordCommission(
                        tenantId,
                        ancestorId,
                        IncomeType.REPURCHASE,
                        amount,
                        userId,
                        f"Repurchase income - Level {depth} from {displayName(userData, userId)}",
                        CommissionStatus.CREDITED,
                        recordPeriod,
                        keySource=keySource,
                        extra={"level": depth, "repurchaseBV": toNumber(repurchaseBV)}
                    )
                    if record:
                        records.append(record)
                except StoreError as e:
                    logger.error(f"Repurchase income for {ancestorId} at level {depth} failed: {e}")
        except StoreError as e:
            logger.error(f"Sponsor chain of {userId} unreadable, walk ended: {e}")

        return records

    # endregion
