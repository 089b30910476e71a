"""Configuration constants, .env parsing, and timeout settings."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def read_env_file(keys: list[str]) -> dict[str, str]:
    """Parse .env file and return values for requested keys.

    Does NOT load into os.environ; callers decide what to do with values.
    This keeps secrets out of the process environment so they don't leak
    to the agent subprocesses.
    """
    env_file = Path.cwd() / ".env"
    try:
        content = env_file.read_text()
    except OSError:
        return {}

    result: dict[str, str] = {}
    wanted = set(keys)

    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        eq_idx = trimmed.find("=")
        if eq_idx == -1:
            continue
        key = trimmed[:eq_idx].strip()
        if key not in wanted:
            continue
        value = trimmed[eq_idx + 1 :].strip()
        if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
        if value:
            result[key] = value

    return result


_CONFIG_KEYS = [
    "SCHEDULER_POLL_INTERVAL",
    "EXECUTION_TIMEOUT",
    "CLAIM_GRACE",
    "MAX_CONCURRENT_EXECUTIONS",
    "MAX_CONSECUTIVE_FAILURES",
    "DEFAULT_TIMEZONE",
    "ADMIN_PRINCIPAL",
    "AGENT_COMMAND",
]

# Read config values from .env (os.environ wins).
_env_config = read_env_file(_CONFIG_KEYS)


def _setting(key: str, default: str) -> str:
    return os.environ.get(key) or _env_config.get(key, default)


SCHEDULER_POLL_INTERVAL: float = float(_setting("SCHEDULER_POLL_INTERVAL", "30"))  # seconds
IPC_POLL_INTERVAL: float = 1.0

# Absolute paths
PROJECT_ROOT: Path = Path.cwd()
STORE_DIR: Path = (PROJECT_ROOT / "store").resolve()
DATA_DIR: Path = (PROJECT_ROOT / "data").resolve()

ADMIN_PRINCIPAL: str = _setting("ADMIN_PRINCIPAL", "admin")
AGENT_COMMAND: str = _setting("AGENT_COMMAND", "")

EXECUTION_TIMEOUT: int = int(_setting("EXECUTION_TIMEOUT", "600000"))  # 10min
CLAIM_GRACE: int = int(_setting("CLAIM_GRACE", "60000"))
MAX_CONCURRENT_EXECUTIONS: int = max(1, int(_setting("MAX_CONCURRENT_EXECUTIONS", "5")))
# 0 disables the consecutive-failure threshold.
MAX_CONSECUTIVE_FAILURES: int = max(0, int(_setting("MAX_CONSECUTIVE_FAILURES", "0")))


def resolve_timezone(name: str | None) -> str:
    """Return name if it is a known IANA zone, else UTC."""
    if not name:
        return "UTC"
    try:
        ZoneInfo(name)
        return name
    except (ZoneInfoNotFoundError, ValueError):
        return "UTC"


DEFAULT_TIMEZONE: str = resolve_timezone(_setting("DEFAULT_TIMEZONE", os.environ.get("TZ", "UTC")))


class TimeoutConfig:
    """Timeout configuration for agent invocations."""

    def __init__(self, execution_timeout: int = EXECUTION_TIMEOUT, claim_grace: int = CLAIM_GRACE) -> None:
        self.execution_timeout = execution_timeout
        self.claim_grace = claim_grace

    @property
    def execution_timeout_s(self) -> float:
        return self.execution_timeout / 1000

    def get_lease_duration(self) -> int:
        """Claim lease in ms. Outlives the hard timeout so a live run never loses its claim."""
        return self.execution_timeout + self.claim_grace
