import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional


ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigurationError(Exception):
    def __init__(self, problems: list[str]) -> None:
        super().__init__("invalid configuration: " + "; ".join(problems))
        self.problems = problems


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    contract_address: str
    webhook_secret: str
    database_url: Optional[str] = None
    webhook_endpoints: tuple[str, ...] = field(default_factory=tuple)
    webhook_route_by_type: bool = False
    webhook_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 15.0
    reconcile_interval_seconds: float = 300.0
    max_attempts: int = 8
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0
    lease_seconds: float = 60.0
    dispatch_batch_size: int = 20
    dispatch_workers: int = 4
    log_batch_blocks: int = 500
    confirmations: int = 3
    start_block: int = 0
    token_decimals: int = 6
    channel_capacity: int = 1000
    network: str = "bsc-testnet"
    log_level: str = "INFO"


def _read_text(env: Mapping[str, str], name: str) -> str:
    return str(env.get(name, "")).strip()


def _read_number(
    env: Mapping[str, str],
    name: str,
    default: float,
    problems: list[str],
    minimum: float = 0.0,
) -> float:
    raw = _read_text(env, name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        problems.append(f"{name} must be a number")
        return default
    if value < minimum:
        problems.append(f"{name} must be >= {minimum:g}")
        return default
    return value


def _read_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    problems: list[str],
    minimum: int = 0,
) -> int:
    raw = _read_text(env, name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        problems.append(f"{name} must be an integer")
        return default
    if value < minimum:
        problems.append(f"{name} must be >= {minimum}")
        return default
    return value


def _read_bool(env: Mapping[str, str], name: str, default: bool, problems: list[str]) -> bool:
    raw = _read_text(env, name).lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    problems.append(f"{name} must be a boolean")
    return default


def _parse_endpoints(raw: str, problems: list[str]) -> tuple[str, ...]:
    endpoints: list[str] = []
    for part in raw.split(","):
        candidate = part.strip().rstrip("/")
        if not candidate:
            continue
        if not candidate.startswith(("http://", "https://")):
            problems.append(f"WEBHOOK_ENDPOINTS entry is not an http(s) url: {candidate}")
            continue
        if candidate not in endpoints:
            endpoints.append(candidate)
    return tuple(endpoints)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    source = os.environ if env is None else env
    problems: list[str] = []

    rpc_url = _read_text(source, "RPC_URL")
    if not rpc_url:
        problems.append("RPC_URL is required")

    contract_address = _read_text(source, "CONTRACT_ADDRESS")
    if not contract_address:
        problems.append("CONTRACT_ADDRESS is required")
    elif not ADDRESS_PATTERN.match(contract_address):
        problems.append("CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")

    webhook_secret = _read_text(source, "WEBHOOK_SECRET")
    if not webhook_secret:
        problems.append("WEBHOOK_SECRET is required")

    database_url = _read_text(source, "SUPABASE_DB_URL") or _read_text(source, "DATABASE_URL")

    log_level = (_read_text(source, "LOG_LEVEL") or "INFO").upper()
    if log_level not in VALID_LOG_LEVELS:
        problems.append(f"LOG_LEVEL must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}")
        log_level = "INFO"

    settings = Settings(
        rpc_url=rpc_url,
        contract_address=contract_address.lower(),
        webhook_secret=webhook_secret,
        database_url=database_url or None,
        webhook_endpoints=_parse_endpoints(_read_text(source, "WEBHOOK_ENDPOINTS"), problems),
        webhook_route_by_type=_read_bool(source, "WEBHOOK_ROUTE_BY_TYPE", False, problems),
        webhook_timeout_seconds=_read_number(
            source, "WEBHOOK_TIMEOUT_SECONDS", 10.0, problems, minimum=0.1
        ),
        poll_interval_seconds=_read_number(source, "POLL_INTERVAL_SECONDS", 15.0, problems),
        reconcile_interval_seconds=_read_number(
            source, "RECONCILE_INTERVAL_SECONDS", 300.0, problems
        ),
        max_attempts=_read_int(source, "MAX_ATTEMPTS", 8, problems, minimum=1),
        backoff_base_seconds=_read_number(source, "BACKOFF_BASE_SECONDS", 1.0, problems),
        backoff_cap_seconds=_read_number(source, "BACKOFF_CAP_SECONDS", 60.0, problems),
        lease_seconds=_read_number(source, "LEASE_SECONDS", 60.0, problems, minimum=1.0),
        dispatch_batch_size=_read_int(source, "DISPATCH_BATCH_SIZE", 20, problems, minimum=1),
        dispatch_workers=_read_int(source, "DISPATCH_WORKERS", 4, problems, minimum=1),
        log_batch_blocks=_read_int(source, "LOG_BATCH_BLOCKS", 500, problems, minimum=1),
        confirmations=_read_int(source, "CONFIRMATIONS", 3, problems),
        start_block=_read_int(source, "START_BLOCK", 0, problems),
        token_decimals=_read_int(source, "TOKEN_DECIMALS", 6, problems),
        channel_capacity=_read_int(source, "CHANNEL_CAPACITY", 1000, problems, minimum=1),
        network=_read_text(source, "NETWORK") or "bsc-testnet",
        log_level=log_level,
    )

    if settings.backoff_cap_seconds < settings.backoff_base_seconds:
        problems.append("BACKOFF_CAP_SECONDS must be >= BACKOFF_BASE_SECONDS")

    if settings.lease_seconds <= settings.webhook_timeout_seconds:
        problems.append("LEASE_SECONDS must be greater than WEBHOOK_TIMEOUT_SECONDS")

    if problems:
        raise ConfigurationError(problems)
    return settings
