from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Optional

from kora_reclaim.config import MAX_SIGNATURE_PAGE
from kora_reclaim.db import DB, commit_scan_page, connect, get_checkpoint, transaction
from kora_reclaim.errors import ParseError, RpcError
from kora_reclaim.models import (
    OTHER,
    SYSTEM_OWNED,
    TOKEN_ACCOUNT,
    AccountType,
    DiscoveredAccount,
    ScanCheckpoint,
)
from kora_reclaim.solana_rpc import SolanaRPC
from kora_reclaim.token_program import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAMS,
)

logger = logging.getLogger(__name__)

SYSTEM_CREATE_TYPES = {"createAccount", "createAccountWithSeed"}
TOKEN_INIT_TYPES = {"initializeAccount", "initializeAccount2", "initializeAccount3"}
ATA_CREATE_TYPES = {"create", "createIdempotent"}

# Keys other programs' parsers use for the funding account and the created account
FUNDER_KEYS = ("source", "payer", "funder")
CREATED_KEYS = ("account", "newAccount", "address")

# When one transaction yields several kinds for the same address, keep the most specific
_TYPE_PRECEDENCE = {SYSTEM_OWNED: 0, OTHER: 1, TOKEN_ACCOUNT: 2}


@dataclass(frozen=True)
class ScanResult:
    new_accounts: int
    transactions: int
    pages: int
    checkpoint: Optional[ScanCheckpoint]
    complete: bool


def _fee_payer(tx: Dict[str, Any]) -> Optional[str]:
    keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
    if not keys:
        return None
    first = keys[0]
    # jsonParsed gives {"pubkey": ..., "signer": ...}; raw encodings give plain strings
    return first.get("pubkey") if isinstance(first, dict) else str(first)


def iter_instructions(tx: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """Top-level instructions, each followed by the inner instructions it invoked."""
    message = (tx.get("transaction") or {}).get("message") or {}
    outer = message.get("instructions") or []
    inner_by_index: Dict[int, List[Dict[str, Any]]] = {}
    for group in (tx.get("meta") or {}).get("innerInstructions") or []:
        inner_by_index[int(group.get("index", -1))] = group.get("instructions") or []
    for i, ix in enumerate(outer):
        yield ix
        yield from inner_by_index.get(i, [])


def classify_instruction(ix: Dict[str, Any], operator: str, fee_payer: Optional[str]) -> Optional[tuple]:
    """
    Return (pubkey, AccountType, lamports) if `ix` creates an operator-funded
    account, else None.

    Raises ParseError when the instruction claims to be parsed but its payload
    is malformed.
    """
    program_id = ix.get("programId")
    parsed = ix.get("parsed")
    if parsed is None:
        # Unparsed (compiled) instruction; nothing we can read
        return None
    if not isinstance(parsed, dict):
        if program_id in TOKEN_PROGRAMS or program_id == SYSTEM_PROGRAM_ID:
            raise ParseError(f"unexpected parsed payload for {program_id}: {parsed!r}")
        return None

    ix_type = parsed.get("type")
    info = parsed.get("info")
    if not isinstance(info, dict):
        raise ParseError(f"instruction {ix_type!r} of {program_id} has no info")

    if program_id == SYSTEM_PROGRAM_ID:
        if ix_type not in SYSTEM_CREATE_TYPES:
            return None
        try:
            lamports = int(info.get("lamports", 0))
        except (TypeError, ValueError) as e:
            raise ParseError(f"{ix_type}: invalid lamports {info.get('lamports')!r}") from e
        new_account = info.get("newAccount")
        if not new_account:
            raise ParseError(f"{ix_type}: missing newAccount")
        if info.get("source") == operator and lamports > 0:
            return new_account, AccountType.system_owned(), lamports
        return None

    if program_id in TOKEN_PROGRAMS:
        if ix_type not in TOKEN_INIT_TYPES:
            return None
        account = info.get("account")
        if not account:
            raise ParseError(f"{ix_type}: missing account")
        if fee_payer == operator:
            return account, AccountType.token_account(), 0
        return None

    if program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
        if ix_type not in ATA_CREATE_TYPES:
            return None
        account = info.get("account")
        if not account:
            raise ParseError(f"{ix_type}: missing account")
        if fee_payer == operator:
            return account, AccountType.token_account(), 0
        return None

    if not program_id:
        raise ParseError("parsed instruction without programId")
    if not any(info.get(k) == operator for k in FUNDER_KEYS):
        return None
    created = next((info[k] for k in CREATED_KEYS if info.get(k)), None)
    if created is None:
        return None
    try:
        lamports = int(info.get("lamports", 0))
    except (TypeError, ValueError):
        lamports = 0
    return created, AccountType.other(program_id), lamports


def extract_accounts(tx: Dict[str, Any], signature: str, operator: str) -> List[DiscoveredAccount]:
    """Every operator-funded account created by one transaction, in instruction order."""
    if (tx.get("meta") or {}).get("err") is not None:
        return []

    slot = int(tx.get("slot") or 0)
    block_time = tx.get("blockTime")
    fee_payer = _fee_payer(tx)

    found: Dict[str, DiscoveredAccount] = {}
    for ix in iter_instructions(tx):
        try:
            hit = classify_instruction(ix, operator, fee_payer)
        except ParseError as e:
            logger.warning("skipping undecodable instruction in %s: %s", signature, e)
            continue
        if hit is None:
            continue
        pubkey, account_type, lamports = hit
        prev = found.get(pubkey)
        if prev is not None:
            if _TYPE_PRECEDENCE[account_type.kind] <= _TYPE_PRECEDENCE[prev.account_type.kind]:
                if lamports > prev.initial_lamports:
                    found[pubkey] = replace(prev, initial_lamports=lamports)
                continue
            lamports = max(lamports, prev.initial_lamports)
        found[pubkey] = DiscoveredAccount(
            pubkey=pubkey,
            account_type=account_type,
            discovery_signature=signature,
            discovery_slot=slot,
            discovered_at=int(block_time) if block_time is not None else None,
            initial_lamports=lamports,
        )
    return list(found.values())


class LedgerScanner:
    """
    Walks the operator's signature history and records every account it funded.

    Pending signatures (newer than the checkpoint) are listed newest-first,
    then processed oldest-first in chunks. Each chunk's new accounts and the
    advanced checkpoint are committed together, so an interrupted scan resumes
    from the last committed chunk and never records an account twice.

    An RpcError (including a transaction the provider cannot return yet)
    propagates after the chunks before it have been committed.
    """

    def __init__(
        self,
        rpc: SolanaRPC,
        db: DB,
        operator: str,
        max_transactions: int = 5000,
        chunk_size: int = MAX_SIGNATURE_PAGE,
    ):
        self.rpc = rpc
        self.db = db
        self.operator = operator
        self.max_transactions = max_transactions
        self.chunk_size = max(1, min(chunk_size, MAX_SIGNATURE_PAGE))

    def _pending_signatures(self, until: Optional[str]) -> tuple:
        """Signatures newer than `until`, newest first, plus the number of pages fetched."""
        pending: List[Dict[str, Any]] = []
        before: Optional[str] = None
        pages = 0
        while True:
            page = self.rpc.get_signatures_for_address(
                self.operator, before=before, until=until, limit=MAX_SIGNATURE_PAGE
            )
            pages += 1
            if not page:
                break
            pending.extend(page)
            logger.debug("signature page %d: %d entries", pages, len(page))
            if len(page) < MAX_SIGNATURE_PAGE:
                break
            before = page[-1]["signature"]
        return pending, pages

    def scan(self, limit: Optional[int] = None) -> ScanResult:
        cap = limit if limit is not None else self.max_transactions
        if cap < 1:
            raise ValueError("scan limit must be >= 1")

        with connect(self.db) as conn:
            checkpoint = get_checkpoint(conn)

        until = checkpoint.last_signature if checkpoint else None
        pending, pages = self._pending_signatures(until)
        if not pending:
            logger.info("no new transactions since %s", until or "the beginning of history")
            return ScanResult(0, 0, pages, checkpoint, True)

        pending.reverse()
        todo = pending[:cap]
        complete = len(todo) == len(pending)
        if not complete:
            logger.info(
                "scan capped at %d of %d pending transactions; the rest resumes next run",
                len(todo),
                len(pending),
            )

        new_total = 0
        processed = 0
        for start in range(0, len(todo), self.chunk_size):
            chunk = todo[start:start + self.chunk_size]
            found: List[DiscoveredAccount] = []
            for sig_info in chunk:
                processed += 1
                signature = sig_info["signature"]
                if sig_info.get("err") is not None:
                    continue
                tx = self.rpc.get_transaction(signature)
                if tx is None:
                    # Leave the chunk uncommitted; the checkpoint must not pass an unread transaction
                    raise RpcError(f"transaction {signature} not available from provider yet", retryable=True)
                found.extend(extract_accounts(tx, signature, self.operator))

            last = chunk[-1]
            with transaction(self.db) as conn:
                inserted = commit_scan_page(conn, found, last["signature"], int(last.get("slot") or 0))
                checkpoint = get_checkpoint(conn)
            new_total += inserted
            logger.info(
                "committed %d transactions (%d new accounts), checkpoint %s",
                len(chunk),
                inserted,
                last["signature"],
            )

        return ScanResult(
            new_accounts=new_total,
            transactions=processed,
            pages=pages,
            checkpoint=checkpoint,
            complete=complete,
        )
