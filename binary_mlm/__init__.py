# binary_mlm/__init__.py
"""
Binary MLM commission engine.
"""

# Store
from binary_mlm.store.document_store import DocumentStore

# Services
from binary_mlm.services.tree_service import BinaryTreeService
from binary_mlm.services.binary_income_service import BinaryIncomeService
from binary_mlm.services.commission_service import CommissionService
from binary_mlm.services.distribution_service import IncomeDistributionService, DistributionState
from binary_mlm.services.lock_service import IdempotencyManager
from binary_mlm.services.pairing_service import DailyPairingService
from binary_mlm.services.wallet_service import WalletService
from binary_mlm.services.rank_service import RankService
from binary_mlm.services.recovery_service import FailureRecoveryService
from binary_mlm.services.trigger_service import TriggerService, registerTriggers

# Configuration
from binary_mlm.config.plan import MLMConfig, IncomeType, CommissionStatus, loadConfig

# Utilities
from binary_mlm.utils.time_machine import timeMachine

# Events
from binary_mlm.events.event_bus import eventBus, MLMEvents

__all__ = [
    # Store
    'DocumentStore',

    # Services
    'BinaryTreeService',
    'BinaryIncomeService',
    'CommissionService',
    'IncomeDistributionService',
    'DistributionState',
    'IdempotencyManager',
    'DailyPairingService',
    'WalletService',
    'RankService',
    'FailureRecoveryService',
    'TriggerService',
    'registerTriggers',

    # Config
    'MLMConfig',
    'IncomeType',
    'CommissionStatus',
    'loadConfig',

    # Utils
    'timeMachine',

    # Events
    'eventBus',
    'MLMEvents',
]
