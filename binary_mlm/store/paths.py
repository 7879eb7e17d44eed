# binary_mlm/store/paths.py
"""
Logical collection layout of the document store.
"""

TENANTS = "tenants"
LOCKS = "idempotencyLocks"
CRON_LOGS = "cronExecutionLogs"

TREE_DOC = "main"
LEGACY_TREE_DOC = "position"


def tenantDoc(tenantId: str) -> str:
    return f"{TENANTS}/{tenantId}"


def usersCollection(tenantId: str) -> str:
    return f"{TENANTS}/{tenantId}/users"


def userDoc(tenantId: str, userId: str) -> str:
    return f"{usersCollection(tenantId)}/{userId}"


def treeDoc(tenantId: str, userId: str, docId: str = TREE_DOC) -> str:
    return f"{userDoc(tenantId, userId)}/binaryTree/{docId}"


def walletDoc(tenantId: str, userId: str) -> str:
    return f"{userDoc(tenantId, userId)}/wallet/main"


def mlmConfigDoc(tenantId: str) -> str:
    return f"{TENANTS}/{tenantId}/mlmConfig/main"


def incomeCollection(tenantId: str) -> str:
    return f"{TENANTS}/{tenantId}/incomeTransactions"


def incomeDoc(tenantId: str, recordId: str) -> str:
    return f"{incomeCollection(tenantId)}/{recordId}"


def distributionSettingsDoc(tenantId: str) -> str:
    return f"{TENANTS}/{tenantId}/settings/incomeDistribution"


def withdrawalsCollection(tenantId: str) -> str:
    return f"{TENANTS}/{tenantId}/withdrawals"


def withdrawalConfigDoc(tenantId: str) -> str:
    return f"{TENANTS}/{tenantId}/withdrawalConfig/main"


def lockDoc(lockKey: str) -> str:
    return f"{LOCKS}/{lockKey}"
