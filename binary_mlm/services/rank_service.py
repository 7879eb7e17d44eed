# binary_mlm/services/rank_service.py
"""
Rank management service for the binary plan.
"""
from typing import Dict, List, Optional
import logging

from binary_mlm.config.plan import CommissionStatus, IncomeType, RankConfig, loadConfig
from binary_mlm.events.event_bus import eventBus, MLMEvents
from binary_mlm.services.commission_service import CommissionService
from binary_mlm.services.distribution_service import IncomeDistributionService
from binary_mlm.services.tree_service import BinaryTreeService
from binary_mlm.store import paths
from binary_mlm.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class RankService:
    """Service for evaluating user ranks and paying rank rewards."""

    def __init__(self, store, distributionService: IncomeDistributionService = None):
        self.store = store
        self.distribution = distributionService or IncomeDistributionService(store)
        self.commissionService = CommissionService(store, self.distribution)
        self.treeService = BinaryTreeService(store)

    async def checkRankQualification(
            self,
            tenantId: str,
            userId: str,
            ranks: List[RankConfig]
    ) -> Optional[RankConfig]:
        """
        Highest rank the user qualifies for.
        Returns None if the user has no tree node or meets no rank.
        """
        needDirects = any(rank.qualification.directs is not None for rank in ranks)
        stats = await self.treeService.getStats(tenantId, userId, countDirects=needDirects)
        if stats is None:
            return None

        for rank in sorted(ranks, key=lambda r: r.level, reverse=True):
            if rank.qualification.isMetBy(**stats):
                return rank

        return None

    async def updateUserRank(self, tenantId: str, userId: str, rank: RankConfig, previousRankId: Optional[str]):
        """Assign the rank and pay its cash reward once per (user, rank)."""
        self.store.update(paths.userDoc(tenantId, userId), {
            "rankId": rank.id,
            "updatedAt": timeMachine.now,
        })
        logger.info(f"User {userId} rank updated: {previousRankId} -> {rank.id}")

        await eventBus.emit(MLMEvents.RANK_ACHIEVED, {
            "tenantId": tenantId,
            "userId": userId,
            "rankId": rank.id,
            "previousRankId": previousRankId,
        })

        if not rank.autoAssign or not rank.cashReward:
            return None

        if await self.distribution.isPaused(tenantId):
            logger.info(f"Income distribution paused for tenant {tenantId}, rank reward for {userId} skipped")
            return None

        return await self.commissionService.recordCommission(
            tenantId,
            userId,
            IncomeType.RANK_REWARD,
            rank.cashReward,
            None,
            f"Rank reward: {rank.name}",
            CommissionStatus.CREDITED,
            rank.id,
            extra={"rankId": rank.id}
        )

    async def evaluateTenantRanks(self, tenantId: str) -> Dict[str, int]:
        results = {
            "checked": 0,
            "updated": 0,
            "rewards": 0,
            "errors": 0
        }

        mlmConfig = loadConfig(self.store, tenantId)
        if mlmConfig is None or not mlmConfig.ranks:
            return results

        users = self.store.query(paths.usersCollection(tenantId), [
            ("role", "==", "user"),
            ("isActive", "==", True),
        ])

        for user in users:
            try:
                results["checked"] += 1

                rank = await self.checkRankQualification(tenantId, user.id, mlmConfig.ranks)
                if rank is None or rank.id == user.get("rankId"):
                    continue

                reward = await self.updateUserRank(tenantId, user.id, rank, user.get("rankId"))
                results["updated"] += 1
                if reward:
                    results["rewards"] += 1
            except Exception as e:
                logger.error(f"Error checking rank for user {user.id} in tenant {tenantId}: {e}")
                results["errors"] += 1

        return results

    async def evaluateRanks(self) -> Dict[str, int]:
        """Check and update ranks for all users of every active tenant."""
        results = {
            "checked": 0,
            "updated": 0,
            "rewards": 0,
            "errors": 0
        }

        for tenant in self.store.query(paths.TENANTS, [("status", "==", "active")]):
            try:
                tenantResults = await self.evaluateTenantRanks(tenant.id)
            except Exception as e:
                logger.error(f"Error evaluating ranks for tenant {tenant.id}: {e}")
                results["errors"] += 1
                continue

            for key in results:
                results[key] += tenantResults[key]

        logger.info(
            f"Rank check complete: checked={results['checked']}, "
            f"updated={results['updated']}, errors={results['errors']}"
        )

        return results
