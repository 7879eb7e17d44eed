# binary_mlm/services/trigger_service.py
"""
Reactions to document changes: new users, package purchases and new
commission records. Handlers log failures and never raise, so the write
that fired them always stands.
"""
from typing import Any, Dict, Optional
import logging

from binary_mlm.config.plan import loadConfig
from binary_mlm.events.event_bus import eventBus, MLMEvents
from binary_mlm.services.commission_service import CommissionService
from binary_mlm.services.distribution_service import IncomeDistributionService
from binary_mlm.services.tree_service import BinaryTreeService
from binary_mlm.services.wallet_service import WalletService
from binary_mlm.store import paths
from binary_mlm.utils.numbers import toDecimal, toNumber

logger = logging.getLogger(__name__)


class TriggerService:

    def __init__(self, store, distributionService: IncomeDistributionService = None):
        self.store = store
        distribution = distributionService or IncomeDistributionService(store)
        self.commissionService = CommissionService(store, distribution)
        self.treeService = BinaryTreeService(store)
        self.walletService = WalletService(store)

    async def onUserCreate(self, tenantId: str, userId: str):
        """Set up wallet and tree node, then roll the new leg up the tree."""
        try:
            userData = self.store.get(paths.userDoc(tenantId, userId))
            if userData is None:
                logger.warning(f"Created user {userId} not found in tenant {tenantId}")
                return

            await self.walletService.initializeWallet(tenantId, userId)
            await self.treeService.initializeNode(tenantId, userId)

            if userData.get("placementId"):
                await self.treeService.recomputeAndPropagate(tenantId, userData["placementId"])
        except Exception as e:
            logger.error(f"Error handling creation of user {userId} in tenant {tenantId}: {e}")

    async def onUserPackageUpdate(self, tenantId: str, userId: str, beforeBV, afterBV):
        """Distribute income for a purchase, i.e. an increase of packageBV."""
        beforeBV = toDecimal(beforeBV)
        afterBV = toDecimal(afterBV)
        if afterBV <= beforeBV:
            return

        purchaseAmount = afterBV - beforeBV
        eventId = f"bv-{toNumber(afterBV)}"

        try:
            mlmConfig = loadConfig(self.store, tenantId)
            if mlmConfig is None:
                logger.info(f"No MLM config found for tenant {tenantId}")
            else:
                if mlmConfig.directIncome.enabled:
                    await self.commissionService.calculateDirectIncome(
                        tenantId, userId, eventId, purchaseBV=purchaseAmount
                    )

                if mlmConfig.repurchaseIncome.enabled and purchaseAmount >= mlmConfig.repurchaseIncome.repurchaseBV:
                    await self.commissionService.calculateRepurchaseIncome(
                        tenantId, userId, purchaseAmount, eventId
                    )

                if mlmConfig.sponsorMatching.enabled:
                    await self.commissionService.calculateSponsorMatching(tenantId, userId, eventId)

            await self.treeService.recomputeAndPropagate(tenantId, userId)
            logger.info(f"Income calculated for purchase of {purchaseAmount} by user {userId}")
        except Exception as e:
            logger.error(f"Error processing purchase for user {userId}: {e}")

    async def onIncomeTransactionCreate(self, tenantId: str, recordId: str):
        try:
            await self.walletService.creditCommission(tenantId, recordId)
        except Exception as e:
            logger.error(f"Error crediting commission {recordId} in tenant {tenantId}: {e}")


def registerTriggers(store, triggerService: Optional[TriggerService] = None) -> TriggerService:
    """Subscribe the trigger handlers to the event bus."""
    triggers = triggerService or TriggerService(store)

    async def handleUserCreated(data: Dict[str, Any]):
        await triggers.onUserCreate(data["tenantId"], data["userId"])

    async def handlePackageUpdated(data: Dict[str, Any]):
        await triggers.onUserPackageUpdate(data["tenantId"], data["userId"], data.get("beforeBV"), data.get("afterBV"))

    async def handleCommissionCreated(data: Dict[str, Any]):
        await triggers.onIncomeTransactionCreate(data["tenantId"], data["recordId"])

    eventBus.subscribe(MLMEvents.USER_CREATED, handleUserCreated)
    eventBus.subscribe(MLMEvents.PACKAGE_UPDATED, handlePackageUpdated)
    eventBus.subscribe(MLMEvents.COMMISSION_CREATED, handleCommissionCreated)

    logger.info("Triggers registered")
    return triggers
