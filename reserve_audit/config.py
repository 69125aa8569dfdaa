import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    """Integer setting from the environment; a malformed value is reported and the default kept."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r, not an integer, using %d", name, raw, default)
        return default


# --- Configuration ---
RPC = os.environ.get("RESERVE_AUDIT_RPC", "https://eth.drpc.org")
BLOCK = os.environ.get("RESERVE_AUDIT_BLOCK", "latest")
CONCURRENCY = _env_int("RESERVE_AUDIT_CONCURRENCY", 100)
WORKERS = _env_int("RESERVE_AUDIT_WORKERS", 1)
LOG_LEVEL = os.environ.get("RESERVE_AUDIT_LOG_LEVEL", "INFO")
MODE = os.environ.get("RESERVE_AUDIT_MODE", "delegating")
TOLERANCE = _env_int("RESERVE_AUDIT_TOLERANCE", 0)

# Exit codes
EXIT_OK = 0
EXIT_SHORTFALL = 1
EXIT_STRUCTURAL = 2


def parse_block(value):
    """Block identifiers are either a tag like 'latest' or a block number."""
    if value is None:
        return "latest"
    if isinstance(value, int):
        return value
    value = str(value).strip()
    return int(value) if value.lstrip("-").isdigit() else value


@dataclass
class AuditConfig:
    rpc: Optional[str] = None
    custody: Optional[str] = None
    block: object = BLOCK
    mode: str = MODE
    tolerance: int = TOLERANCE
    workers: int = WORKERS
    concurrency: int = CONCURRENCY
    report: Optional[str] = None
    log_level: str = LOG_LEVEL
