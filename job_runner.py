import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

import config
from binary_mlm.services.lock_service import IdempotencyManager
from binary_mlm.services.pairing_service import DailyPairingService
from binary_mlm.services.rank_service import RankService
from binary_mlm.services.recovery_service import FailureRecoveryService
from binary_mlm.services.wallet_service import WalletService
from binary_mlm.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


def slotFor(schedule: Dict[str, int], now: datetime) -> Optional[str]:
    """
    Slot key of the current run window, None while the job is not yet due.
    {"hour": h} runs once per UTC day from hour h; {"everyHours": n} once per
    n-hour window; {"everyHours": 0} on every check.
    """
    day = now.strftime('%Y-%m-%d')

    if "hour" in schedule:
        if now.hour < schedule["hour"]:
            return None
        return day

    everyHours = schedule.get("everyHours", 0)
    if everyHours <= 0:
        return now.isoformat()
    return f"{day}T{now.hour // everyHours}"


class JobRunner:
    def __init__(self, store, check_interval: int = None, schedule: Dict[str, Dict[str, int]] = None):
        self.store = store
        self.check_interval = check_interval or config.JOB_CHECK_INTERVAL
        self.schedule = schedule or config.JOB_SCHEDULE
        self._lastSlots: Dict[str, str] = {}
        self._running = False

        lockManager = IdempotencyManager(store)
        pairingService = DailyPairingService(store, lockManager)
        recoveryService = FailureRecoveryService(store, lockManager, pairingService)
        rankService = RankService(store)
        walletService = WalletService(store)

        self.jobs: Dict[str, Callable[[], Awaitable]] = {
            "daily-pairing": pairingService.runDailyPairMatching,
            "rank-evaluation": rankService.evaluateRanks,
            "lock-cleanup": lockManager.cleanupStaleLocks,
            "process-withdrawals": walletService.processWithdrawals,
            "failure-recovery": recoveryService.runFailureRecovery,
            "delayed-credits": walletService.creditAllDueCommissions,
        }

    def dueJobs(self, now: datetime) -> List[str]:
        due = []
        for name, schedule in self.schedule.items():
            if name not in self.jobs:
                logger.warning(f"No job registered for schedule entry {name}")
                continue
            slot = slotFor(schedule, now)
            if slot is not None and self._lastSlots.get(name) != slot:
                due.append(name)
        return due

    async def run_job(self, name: str, now: datetime):
        slot = slotFor(self.schedule[name], now)
        self._lastSlots[name] = slot
        try:
            result = await self.jobs[name]()
            logger.info(f"Job {name} finished: {result}")
        except Exception as e:
            logger.error(f"Error in job {name}: {e}")

    async def tick(self):
        """
        Запускает все задачи, время которых наступило
        """
        now = timeMachine.now
        for name in self.dueJobs(now):
            await self.run_job(name, now)

    async def run(self):
        """
        Запускает цикл планировщика
        """
        logger.info("Job runner started")
        self._running = True

        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.check_interval)
            except Exception as e:
                logger.error(f"Error in job runner main loop: {e}")
                await asyncio.sleep(self.check_interval)

    async def stop(self):
        """
        Останавливает цикл планировщика
        """
        self._running = False
        logger.info("Job runner stopped")
