from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from kora_reclaim.errors import ConfigurationError
from kora_reclaim.validation import is_valid_solana_pubkey, parse_pubkey, parse_pubkey_list


def _getenv(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None:
        raise ConfigurationError(f"Missing required env var: {name}")
    return val


def _getenv_bool(name: str, default: str = "false") -> bool:
    return _getenv(name, default).strip().lower() in {"1", "true", "yes", "y"}


def _getenv_float(name: str, default: str) -> float:
    raw = _getenv(name, default)
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _getenv_int(name: str, default: str) -> int:
    raw = _getenv(name, default)
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


# Solana RPC URL (mainnet)
SOLANA_RPC_URL = "https://api.mainnet-beta.solana.com"

# Provider page limit for getSignaturesForAddress
MAX_SIGNATURE_PAGE = 1000

SECONDS_PER_DAY = 86_400


@dataclass(frozen=True)
class Policy:
    """Per-cycle snapshot of the reclaim policy. Never mutated during a cycle."""

    whitelist: frozenset
    blacklist: frozenset
    min_inactive_seconds: int
    batch_size: int
    batch_delay_s: float
    dry_run: bool


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    rpc_timeout_s: float
    rate_limit_ms: int
    max_retries: int

    operator_keypair_path: str
    operator_pubkey: str
    treasury_pubkey: str

    db_path: str

    min_inactive_days: float
    batch_size: int
    batch_delay_s: float
    max_scan_transactions: int

    whitelist: frozenset
    blacklist: frozenset

    dry_run: bool

    telegram_bot_token: str
    telegram_chat_id: str
    alert_threshold_sol: float

    log_level: str

    def policy(self, dry_run: Optional[bool] = None) -> Policy:
        return Policy(
            whitelist=self.whitelist,
            blacklist=self.blacklist,
            min_inactive_seconds=int(self.min_inactive_days * SECONDS_PER_DAY),
            batch_size=self.batch_size,
            batch_delay_s=self.batch_delay_s,
            dry_run=self.dry_run if dry_run is None else dry_run,
        )


def load_settings(require_keypair: bool = True) -> Settings:
    """
    Read KORA_* settings from the environment (and .env).

    The operator keypair path is checked lazily by the signer; here we only
    require that either the keypair path or KORA_OPERATOR_PUBKEY is set so
    read-only commands (stats, list, checkpoints) work without the secret key.
    """
    load_dotenv()

    rpc_url = _getenv("KORA_RPC_URL", SOLANA_RPC_URL).strip()
    if not rpc_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"KORA_RPC_URL must be an http(s) URL, got {rpc_url!r}")
    rpc_timeout_s = _getenv_float("KORA_RPC_TIMEOUT_S", "30")
    rate_limit_ms = _getenv_int("KORA_RATE_LIMIT_MS", "200")
    max_retries = _getenv_int("KORA_MAX_RETRIES", "5")

    operator_keypair_path = _getenv("KORA_OPERATOR_KEYPAIR", "").strip()
    operator_pubkey = _getenv("KORA_OPERATOR_PUBKEY", "").strip()
    if require_keypair and not operator_keypair_path:
        raise ConfigurationError("Missing required env var: KORA_OPERATOR_KEYPAIR")
    if operator_pubkey:
        parse_pubkey(operator_pubkey, "KORA_OPERATOR_PUBKEY")
    elif not operator_keypair_path:
        raise ConfigurationError("Set KORA_OPERATOR_KEYPAIR or KORA_OPERATOR_PUBKEY")

    treasury_pubkey = _getenv("KORA_TREASURY_PUBKEY").strip()
    parse_pubkey(treasury_pubkey, "KORA_TREASURY_PUBKEY")

    db_path = _getenv("KORA_DB_PATH", "kora_reclaim.sqlite3")

    min_inactive_days = _getenv_float("KORA_MIN_INACTIVE_DAYS", "30")
    batch_size = _getenv_int("KORA_BATCH_SIZE", "10")
    batch_delay_s = _getenv_float("KORA_BATCH_DELAY_S", "2")
    max_scan_transactions = _getenv_int("KORA_MAX_SCAN_TRANSACTIONS", "5000")

    whitelist = parse_pubkey_list(_getenv("KORA_WHITELIST", ""), "KORA_WHITELIST")
    blacklist = parse_pubkey_list(_getenv("KORA_BLACKLIST", ""), "KORA_BLACKLIST")

    # Dry run is the default; real reclaims must be switched on explicitly
    dry_run = _getenv_bool("KORA_DRY_RUN", "true")

    telegram_bot_token = _getenv("KORA_TELEGRAM_BOT_TOKEN", "").strip()
    telegram_chat_id = _getenv("KORA_TELEGRAM_CHAT_ID", "").strip()
    alert_threshold_sol = _getenv_float("KORA_ALERT_THRESHOLD_SOL", "0.1")

    log_level = _getenv("KORA_LOG_LEVEL", "INFO").strip()

    if min_inactive_days < 0:
        raise ConfigurationError("KORA_MIN_INACTIVE_DAYS must be >= 0")
    if batch_size < 1:
        raise ConfigurationError("KORA_BATCH_SIZE must be >= 1")
    if batch_delay_s < 0:
        raise ConfigurationError("KORA_BATCH_DELAY_S must be >= 0")
    if max_scan_transactions < 1:
        raise ConfigurationError("KORA_MAX_SCAN_TRANSACTIONS must be >= 1")
    if rpc_timeout_s <= 0:
        raise ConfigurationError("KORA_RPC_TIMEOUT_S must be > 0")
    if max_retries < 1:
        raise ConfigurationError("KORA_MAX_RETRIES must be >= 1")
    if whitelist & blacklist:
        raise ConfigurationError("KORA_WHITELIST and KORA_BLACKLIST overlap")

    return Settings(
        rpc_url=rpc_url,
        rpc_timeout_s=rpc_timeout_s,
        rate_limit_ms=rate_limit_ms,
        max_retries=max_retries,
        operator_keypair_path=operator_keypair_path,
        operator_pubkey=operator_pubkey,
        treasury_pubkey=treasury_pubkey,
        db_path=db_path,
        min_inactive_days=min_inactive_days,
        batch_size=batch_size,
        batch_delay_s=batch_delay_s,
        max_scan_transactions=max_scan_transactions,
        whitelist=whitelist,
        blacklist=blacklist,
        dry_run=dry_run,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
        alert_threshold_sol=alert_threshold_sol,
        log_level=log_level,
    )


def resolve_operator_pubkey(settings: Settings, keypair_pubkey: Optional[str] = None) -> str:
    """
    Work out which address is the operator.

    When both the keypair and KORA_OPERATOR_PUBKEY are present they must agree.
    """
    if keypair_pubkey and settings.operator_pubkey and keypair_pubkey != settings.operator_pubkey:
        raise ConfigurationError(
            f"KORA_OPERATOR_PUBKEY ({settings.operator_pubkey}) does not match keypair pubkey ({keypair_pubkey})"
        )
    resolved = keypair_pubkey or settings.operator_pubkey
    if not resolved or not is_valid_solana_pubkey(resolved):
        raise ConfigurationError("Operator pubkey could not be determined")
    return resolved
