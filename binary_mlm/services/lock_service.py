# binary_mlm/services/lock_service.py
"""
Idempotency locks for batch jobs.

A lock key names one job run (job type, tenant, optional user, job id).
Lifecycle: absent -> processing -> completed | failed. A processing lock
older than the timeout belongs to a dead worker and may be reclaimed.
Completed locks refuse every later acquisition, so reruns need a fresh,
period-stamped job id.
"""
from datetime import timedelta
from typing import Dict, List, Optional
import logging

import config
from binary_mlm.store import paths
from binary_mlm.utils.time_machine import timeMachine, parseTimestamp

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


class IdempotencyManager:
    """Acquire/release locks; attempt counting is left to the recovery sweep."""

    def __init__(
            self,
            store,
            lockTimeout: Optional[timedelta] = None,
            maxRetries: Optional[int] = None,
            retention: Optional[timedelta] = None
    ):
        self.store = store
        self.lockTimeout = lockTimeout or timedelta(minutes=config.LOCK_TIMEOUT_MINUTES)
        self.maxRetries = maxRetries or config.LOCK_MAX_RETRIES
        self.retention = retention or timedelta(hours=config.LOCK_RETENTION_HOURS)

    @staticmethod
    def generateLockKey(jobId: str, jobType: str, tenantId: str, userId: Optional[str] = None) -> str:
        return f"{jobType}:{tenantId}:{userId or 'global'}:{jobId}"

    async def acquireLock(
            self,
            jobId: str,
            jobType: str,
            tenantId: str,
            userId: Optional[str] = None
    ) -> bool:
        """
        Try to take the lock for one job run.
        Returns False when the run already completed or is still in progress.
        """
        lockKey = self.generateLockKey(jobId, jobType, tenantId, userId)
        lockPath = paths.lockDoc(lockKey)
        now = timeMachine.now

        def attempt(transaction):
            existing = transaction.get(lockPath)
            previous = existing.data if existing else None
            lastFailure = None

            if previous:
                status = previous.get("status")

                if status == COMPLETED:
                    return False, "already completed"

                if status == PROCESSING:
                    startedAt = parseTimestamp(previous.get("startedAt"))
                    if startedAt is not None and now - startedAt <= self.lockTimeout:
                        return False, "already in progress"

                    # Abandoned by a crashed worker
                    lastFailure = {
                        "status": FAILED,
                        "errorMessage": "Timeout - new attempt initiated",
                        "startedAt": previous.get("startedAt"),
                        "failedAt": now,
                        "executionCount": previous.get("executionCount", 0),
                    }
                elif status == FAILED:
                    lastFailure = {
                        "status": FAILED,
                        "errorMessage": previous.get("errorMessage"),
                        "startedAt": previous.get("startedAt"),
                        "failedAt": previous.get("completedAt"),
                        "executionCount": previous.get("executionCount", 0),
                    }

            lock = {
                "lockKey": lockKey,
                "jobId": jobId,
                "jobType": jobType,
                "companyId": tenantId,
                "userId": userId,
                "status": PROCESSING,
                "startedAt": now,
                "completedAt": None,
                "errorMessage": None,
                "executionCount": (previous.get("executionCount") or 0) + 1 if previous else 1,
                "maxRetries": self.maxRetries,
            }
            if lastFailure:
                lock["lastFailure"] = lastFailure

            transaction.set(lockPath, lock)
            return True, "reclaimed stale lock" if previous and previous.get("status") == PROCESSING else "acquired"

        acquired, reason = self.store.runTransaction(attempt)

        if acquired:
            logger.info(f"Lock {lockKey} {reason}")
        else:
            logger.info(f"Lock {lockKey} refused: {reason}")

        return acquired

    async def completeLock(self, jobId: str, jobType: str, tenantId: str, userId: Optional[str] = None):
        """Mark a job as completed."""
        lockKey = self.generateLockKey(jobId, jobType, tenantId, userId)
        self.store.set(paths.lockDoc(lockKey), {
            "status": COMPLETED,
            "completedAt": timeMachine.now,
        }, merge=True)

    async def failLock(
            self,
            jobId: str,
            jobType: str,
            tenantId: str,
            error: str,
            userId: Optional[str] = None
    ):
        """Mark a job as failed."""
        lockKey = self.generateLockKey(jobId, jobType, tenantId, userId)
        self.store.set(paths.lockDoc(lockKey), {
            "status": FAILED,
            "errorMessage": error,
            "completedAt": timeMachine.now,
        }, merge=True)
        logger.warning(f"Lock {lockKey} failed: {error}")

    async def getLock(self, jobId: str, jobType: str, tenantId: str, userId: Optional[str] = None) -> Optional[Dict]:
        lockKey = self.generateLockKey(jobId, jobType, tenantId, userId)
        return self.store.get(paths.lockDoc(lockKey))

    async def cleanupStaleLocks(self) -> int:
        """Delete completed or failed locks that finished before the retention window."""
        cutoff = timeMachine.now - self.retention
        oldLocks = self.store.query(paths.LOCKS, [
            ("completedAt", "<", cutoff),
            ("status", "in", [COMPLETED, FAILED]),
        ])

        deleted = self.store.deleteMany(snapshot.path for snapshot in oldLocks)
        logger.info(f"Cleaned up {deleted} stale locks")
        return deleted

    async def findRetryableLocks(self, jobType: Optional[str] = None) -> List[Dict]:
        """Failed locks with attempts left whose failure is inside the retention window."""
        cutoff = timeMachine.now - self.retention
        filters = [
            ("status", "==", FAILED),
            ("completedAt", ">=", cutoff),
        ]
        if jobType:
            filters.append(("jobType", "==", jobType))

        retryable = []
        for snapshot in self.store.query(paths.LOCKS, filters):
            lock = snapshot.data
            if (lock.get("executionCount") or 0) < (lock.get("maxRetries") or self.maxRetries):
                retryable.append(lock)

        return retryable
