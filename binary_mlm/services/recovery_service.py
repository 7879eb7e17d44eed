# binary_mlm/services/recovery_service.py
"""
Periodic retry of failed batch jobs and lock housekeeping.
"""
from typing import Dict
import logging

from binary_mlm.config.plan import DAILY_PAIRING_JOB
from binary_mlm.services.lock_service import IdempotencyManager
from binary_mlm.services.pairing_service import DailyPairingService

logger = logging.getLogger(__name__)


class FailureRecoveryService:

    def __init__(self, store, lockManager: IdempotencyManager = None, pairingService: DailyPairingService = None):
        self.store = store
        self.lockManager = lockManager or IdempotencyManager(store)
        self.pairingService = pairingService or DailyPairingService(store, self.lockManager)

    async def runFailureRecovery(self) -> Dict[str, int]:
        """Retry recently failed pairing runs, then drop expired locks."""
        results = {
            "found": 0,
            "retried": 0,
            "recovered": 0,
            "errors": 0,
            "locksCleaned": 0
        }

        retryable = await self.lockManager.findRetryableLocks(DAILY_PAIRING_JOB)
        results["found"] = len(retryable)
        logger.info(f"Found {len(retryable)} failed jobs to retry")

        for lock in retryable:
            tenantId = lock.get("companyId")
            jobId = lock.get("jobId")
            logger.info(f"Retrying failed job: {lock.get('jobType')} for tenant {tenantId} ({jobId})")

            try:
                result = await self.pairingService.runTenant(tenantId, jobId)
                if result is None:
                    continue
                results["retried"] += 1

                refreshed = await self.lockManager.getLock(jobId, DAILY_PAIRING_JOB, tenantId)
                if refreshed and refreshed.get("status") == "completed":
                    results["recovered"] += 1
            except Exception as e:
                logger.error(f"Retry failed for job {jobId}: {e}")
                results["errors"] += 1

        results["locksCleaned"] = await self.lockManager.cleanupStaleLocks()

        logger.info(
            f"Failure recovery complete: retried={results['retried']}, "
            f"recovered={results['recovered']}, cleaned={results['locksCleaned']}"
        )
        return results
