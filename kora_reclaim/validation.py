from __future__ import annotations

import json
import re
from pathlib import Path

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from kora_reclaim.errors import ConfigurationError

# Solana pubkey is Base58 encoded, 32-44 characters
# Base58 alphabet: 123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz
_SOLANA_PUBKEY_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_valid_solana_pubkey(address: str) -> bool:
    """
    Validate Solana pubkey format.
    Checks the Base58 shape first, then that it decodes to exactly 32 bytes.
    """
    if not address or not isinstance(address, str):
        return False
    address = address.strip()
    if not _SOLANA_PUBKEY_PATTERN.match(address):
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def parse_pubkey(address: str, setting: str) -> Pubkey:
    """Parse a configured address, raising ConfigurationError naming the setting."""
    if not is_valid_solana_pubkey(address):
        raise ConfigurationError(f"{setting} is not a valid Solana address: {address!r}")
    return Pubkey.from_string(address.strip())


def parse_pubkey_list(raw: str, setting: str) -> frozenset:
    items = [x.strip() for x in raw.split(",") if x.strip()]
    for item in items:
        parse_pubkey(item, setting)
    return frozenset(items)


def load_keypair(path: str) -> Keypair:
    """
    Load a solana-keygen JSON keypair (array of 64 ints).
    Raises ConfigurationError if the file is missing or malformed.
    """
    keypair_path = Path(path)
    if not keypair_path.is_file():
        raise ConfigurationError(f"Operator keypair not found at {keypair_path}")
    try:
        raw = json.loads(keypair_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Operator keypair at {keypair_path} is unreadable: {e}") from e
    if not isinstance(raw, list) or len(raw) != 64:
        raise ConfigurationError(f"Operator keypair at {keypair_path} must be a JSON array of 64 bytes")
    try:
        return Keypair.from_bytes(bytes(raw))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Operator keypair at {keypair_path} is invalid: {e}") from e
