# binary_mlm/services/pairing_service.py
"""
Daily pair matching across all active tenants.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
import logging
import time
import uuid

import config
from binary_mlm.config.plan import DAILY_PAIRING_JOB, loadConfig
from binary_mlm.errors import ConfigurationMissing
from binary_mlm.events.event_bus import eventBus, MLMEvents
from binary_mlm.services.binary_income_service import BinaryIncomeService
from binary_mlm.services.distribution_service import IncomeDistributionService
from binary_mlm.services.lock_service import IdempotencyManager
from binary_mlm.services.tree_service import BinaryTreeService
from binary_mlm.store import paths
from binary_mlm.utils.numbers import toDecimal
from binary_mlm.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


@dataclass
class PairingResult:
    tenantId: str
    usersProcessed: int = 0
    commissionsCreated: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration: float = 0.0


def pairingJobId(day: Optional[str] = None) -> str:
    return f"{DAILY_PAIRING_JOB}-{day or timeMachine.today}"


def pairingDay(jobId: str) -> str:
    """Day a pairing job id belongs to; today for ids without one."""
    prefix = f"{DAILY_PAIRING_JOB}-"
    if jobId and jobId.startswith(prefix):
        return jobId[len(prefix):]
    return timeMachine.today


class DailyPairingService:
    """Runs the pair calculator once per tenant per UTC day."""

    def __init__(self, store, lockManager: IdempotencyManager = None, distributionService: IncomeDistributionService = None):
        self.store = store
        self.lockManager = lockManager or IdempotencyManager(store)
        distribution = distributionService or IncomeDistributionService(store)
        self.binaryIncome = BinaryIncomeService(store, distribution)
        self.treeService = BinaryTreeService(store)

    async def runDailyPairMatching(self) -> Dict[str, Any]:
        startTime = time.monotonic()
        jobId = pairingJobId()

        tenants = self.store.query(paths.TENANTS, [("status", "==", "active")])
        logger.info(f"Starting pair matching for {len(tenants)} tenants ({jobId})")

        results: List[PairingResult] = []
        skipped = 0
        for tenant in tenants:
            result = await self.runTenant(tenant.id, jobId)
            if result is None:
                skipped += 1
                continue
            results.append(result)

        summary = {
            "jobType": DAILY_PAIRING_JOB,
            "jobId": jobId,
            "executedAt": timeMachine.now,
            "tenantsProcessed": len(results),
            "tenantsSkipped": skipped,
            "totalUsersProcessed": sum(r.usersProcessed for r in results),
            "totalCommissionsCreated": sum(r.commissionsCreated for r in results),
            "totalErrors": sum(len(r.errors) for r in results),
            "duration": time.monotonic() - startTime,
            "results": [asdict(r) for r in results],
        }

        logger.info(
            f"Pair matching completed: {summary['totalUsersProcessed']} users, "
            f"{summary['totalCommissionsCreated']} commissions, {summary['totalErrors']} errors"
        )

        self.store.set(f"{paths.CRON_LOGS}/{uuid.uuid4().hex}", summary)
        await eventBus.emit(MLMEvents.PAIRING_COMPLETED, {
            "jobId": jobId,
            "tenantsProcessed": summary["tenantsProcessed"],
            "totalCommissionsCreated": summary["totalCommissionsCreated"],
        })

        return summary

    async def runTenant(self, tenantId: str, jobId: Optional[str] = None) -> Optional[PairingResult]:
        """
        Lock-guarded pairing for one tenant.
        Returns None when the lock was refused.
        """
        jobId = jobId or pairingJobId()
        if not await self.lockManager.acquireLock(jobId, DAILY_PAIRING_JOB, tenantId):
            logger.info(f"Skipping tenant {tenantId} - pairing {jobId} already handled")
            return None

        startTime = time.monotonic()
        try:
            result = await self.processTenant(tenantId, pairingDay(jobId))
        except Exception as e:
            await self.lockManager.failLock(jobId, DAILY_PAIRING_JOB, tenantId, str(e))
            logger.error(f"Pair matching failed for tenant {tenantId}: {e}")
            return PairingResult(
                tenantId=tenantId,
                errors=[{"userId": "tenant", "error": str(e)}],
                duration=time.monotonic() - startTime,
            )

        await self.lockManager.completeLock(jobId, DAILY_PAIRING_JOB, tenantId)
        return result

    async def processTenant(self, tenantId: str, day: Optional[str] = None) -> PairingResult:
        result = PairingResult(tenantId=tenantId)
        startTime = time.monotonic()

        mlmConfig = loadConfig(self.store, tenantId)
        if mlmConfig is None:
            raise ConfigurationMissing(tenantId)

        if not mlmConfig.binaryPlanEnabled:
            logger.info(f"Binary plan not enabled for tenant {tenantId}")
            return result

        if config.REBUILD_TREES_BEFORE_PAIRING:
            await self.treeService.rebuildTenantTree(tenantId)

        users = self.store.query(paths.usersCollection(tenantId), [("status", "==", "active")])
        logger.info(f"Processing {len(users)} active users for tenant {tenantId}")

        for user in users:
            try:
                node = await self.treeService.getNode(tenantId, user.id)
                if node is None:
                    continue

                if toDecimal(node.get("leftVolume")) > 0 and toDecimal(node.get("rightVolume")) > 0:
                    record = await self.binaryIncome.calculateBinaryIncome(tenantId, user.id, day)
                    if record:
                        result.commissionsCreated += 1

                result.usersProcessed += 1
            except Exception as e:
                result.errors.append({"userId": user.id, "error": str(e)})
                logger.error(f"Error processing user {user.id} in tenant {tenantId}: {e}")

        result.duration = time.monotonic() - startTime
        return result
