import os
from dotenv import load_dotenv

# Загрузка .env
load_dotenv()


def _getBool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# База данных
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///mlm.db")

# Валюта комиссий
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

# Idempotency locks
LOCK_TIMEOUT_MINUTES = int(os.getenv("LOCK_TIMEOUT_MINUTES", "5"))
LOCK_MAX_RETRIES = int(os.getenv("LOCK_MAX_RETRIES", "3"))
LOCK_RETENTION_HOURS = int(os.getenv("LOCK_RETENTION_HOURS", "24"))

# Ограничения обхода дерева
UPLINE_MAX_DEPTH = int(os.getenv("UPLINE_MAX_DEPTH", "20"))  # sponsor chain
PLACEMENT_MAX_DEPTH = int(os.getenv("PLACEMENT_MAX_DEPTH", "10000"))  # placement chain

# Optimistic transactions in the document store
TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))

# Distribution gate: behaviour when the pause flag cannot be determined
DISTRIBUTION_FAIL_OPEN = _getBool("DISTRIBUTION_FAIL_OPEN", True)

# Daily pairing
REBUILD_TREES_BEFORE_PAIRING = _getBool("REBUILD_TREES_BEFORE_PAIRING", True)

# Job runner (UTC hours)
JOB_CHECK_INTERVAL = int(os.getenv("JOB_CHECK_INTERVAL", "60"))
JOB_SCHEDULE = {
    "daily-pairing": {"hour": 0},
    "rank-evaluation": {"hour": 1},
    "lock-cleanup": {"hour": 3},
    "process-withdrawals": {"hour": 9},
    "failure-recovery": {"everyHours": 4},
    "delayed-credits": {"everyHours": 0},
}
