from __future__ import annotations

from typing import Any, Dict, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from kora_reclaim.errors import ParseError
from kora_reclaim.models import LiveAccountState

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

TOKEN_PROGRAMS = frozenset({TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID})

# SPL Token CloseAccount instruction index
CLOSE_ACCOUNT_IX = bytes([9])


def live_state_from_account_info(
    value: Optional[Dict[str, Any]],
    last_activity_at: Optional[int] = None,
) -> LiveAccountState:
    """
    Map a jsonParsed getAccountInfo value onto LiveAccountState.

    The token account layout itself is decoded by the RPC node's parser; we only
    read its stable JSON fields. Raises ParseError if a token-program account
    comes back without parsed token fields.
    """
    if value is None:
        return LiveAccountState(exists=False, last_activity_at=last_activity_at)

    lamports = int(value.get("lamports") or 0)
    owner_program = value.get("owner")
    if owner_program not in TOKEN_PROGRAMS:
        return LiveAccountState(
            exists=True,
            lamports=lamports,
            owner_program=owner_program,
            last_activity_at=last_activity_at,
        )

    data = value.get("data")
    parsed = data.get("parsed") if isinstance(data, dict) else None
    if not isinstance(parsed, dict) or parsed.get("type") != "account":
        raise ParseError(f"token account data not parsed (owner {owner_program})")
    info = parsed.get("info") or {}
    try:
        amount = int((info.get("tokenAmount") or {}).get("amount", "0"))
    except (TypeError, ValueError) as e:
        raise ParseError(f"invalid token amount in {info.get('tokenAmount')!r}") from e

    return LiveAccountState(
        exists=True,
        lamports=lamports,
        owner_program=owner_program,
        token_owner=info.get("owner"),
        close_authority=info.get("closeAuthority"),
        token_amount=amount,
        mint=info.get("mint"),
        frozen=info.get("state") == "frozen",
        last_activity_at=last_activity_at,
    )


def close_account_instruction(
    account: str,
    destination: str,
    authority: Pubkey,
    token_program: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    """SPL Token CloseAccount: moves all lamports of `account` to `destination`."""
    if token_program not in TOKEN_PROGRAMS:
        raise ValueError(f"not a token program: {token_program}")
    metas = [
        AccountMeta(Pubkey.from_string(account), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(destination), is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
    ]
    return Instruction(Pubkey.from_string(token_program), CLOSE_ACCOUNT_IX, metas)
