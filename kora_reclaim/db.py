from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from kora_reclaim.errors import PersistenceError, TerminalStatusError
from kora_reclaim.models import (
    ACTIVE,
    CLOSED_EXTERNALLY,
    ELIGIBLE,
    INELIGIBLE,
    OTHER,
    RECLAIMED,
    SUCCESS,
    TERMINAL_STATUSES,
    AccountType,
    DiscoveredAccount,
    PassiveReclaim,
    ReclaimOperation,
    ReclaimOutcome,
    ScanCheckpoint,
    SponsoredAccount,
)


SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS sponsored_accounts (
  pubkey TEXT PRIMARY KEY,
  account_type TEXT NOT NULL,
  program_id TEXT,
  discovery_signature TEXT NOT NULL,
  discovery_slot INTEGER NOT NULL,
  discovered_at INTEGER,
  initial_lamports INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'Active',
  status_reason TEXT,
  last_activity_at INTEGER,
  balance_lamports INTEGER NOT NULL DEFAULT 0,
  token_amount INTEGER,
  close_authority_matches_operator INTEGER NOT NULL DEFAULT 0,
  first_seen_at_utc TEXT NOT NULL,
  updated_at_utc TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_accounts_status ON sponsored_accounts(status);
CREATE INDEX IF NOT EXISTS idx_accounts_discovery ON sponsored_accounts(discovery_slot, pubkey);

CREATE TABLE IF NOT EXISTS scan_checkpoint (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  last_signature TEXT NOT NULL,
  last_slot INTEGER NOT NULL,
  updated_at_utc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reclaim_operations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  account_pubkey TEXT NOT NULL REFERENCES sponsored_accounts(pubkey),
  attempted_at_utc TEXT NOT NULL,
  outcome TEXT NOT NULL CHECK (outcome IN ('Success', 'Failed', 'Simulated')),
  signature TEXT,
  lamports INTEGER NOT NULL DEFAULT 0,
  reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_operations_account ON reclaim_operations(account_pubkey);
CREATE UNIQUE INDEX IF NOT EXISTS idx_operations_one_success
  ON reclaim_operations(account_pubkey) WHERE outcome = 'Success';

CREATE TABLE IF NOT EXISTS treasury_snapshots (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  taken_at_utc TEXT NOT NULL,
  lamports INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS passive_reclaims (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  detected_at_utc TEXT NOT NULL,
  lamports INTEGER NOT NULL,
  confidence TEXT NOT NULL CHECK (confidence IN ('High', 'Medium', 'Low', 'Unknown')),
  accounts_json TEXT NOT NULL DEFAULT '[]'
);

-- An externally closed account is attributed to at most one treasury increase
CREATE TABLE IF NOT EXISTS passive_reclaim_accounts (
  account_pubkey TEXT PRIMARY KEY REFERENCES sponsored_accounts(pubkey),
  passive_reclaim_id INTEGER NOT NULL REFERENCES passive_reclaims(id)
);

CREATE TRIGGER IF NOT EXISTS trg_accounts_no_delete
BEFORE DELETE ON sponsored_accounts
BEGIN
  SELECT RAISE(ABORT, 'sponsored_accounts rows are never deleted');
END;

CREATE TRIGGER IF NOT EXISTS trg_accounts_terminal
BEFORE UPDATE ON sponsored_accounts
WHEN OLD.status IN ('Reclaimed', 'ClosedExternally')
BEGIN
  SELECT RAISE(ABORT, 'account status is terminal');
END;

CREATE TRIGGER IF NOT EXISTS trg_operations_no_update
BEFORE UPDATE ON reclaim_operations
BEGIN
  SELECT RAISE(ABORT, 'reclaim_operations is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_operations_no_delete
BEFORE DELETE ON reclaim_operations
BEGIN
  SELECT RAISE(ABORT, 'reclaim_operations is append-only');
END;
"""

_ACCOUNT_COLUMNS = (
    "pubkey, account_type, program_id, discovery_signature, discovery_slot, discovered_at, "
    "initial_lamports, status, status_reason, last_activity_at, balance_lamports, token_amount, "
    "close_authority_matches_operator, updated_at_utc"
)

EVALUATION_STATUSES = frozenset({ACTIVE, ELIGIBLE, INELIGIBLE, CLOSED_EXTERNALLY})


def utc_now_iso() -> str:
    # Fixed width, so stored timestamps compare correctly as text
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class DB:
    path: str
    busy_timeout_s: float = 30.0


def _open(db: DB) -> sqlite3.Connection:
    # isolation_level=None: we issue BEGIN/COMMIT ourselves
    conn = sqlite3.connect(db.path, timeout=db.busy_timeout_s, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def connect(db: DB) -> Iterator[sqlite3.Connection]:
    """Autocommit connection for reads. WAL readers never block the writer."""
    try:
        conn = _open(db)
    except sqlite3.Error as e:
        raise PersistenceError(f"cannot open store at {db.path}: {e}") from e
    try:
        yield conn
    except sqlite3.Error as e:
        raise PersistenceError(f"store read failed: {e}") from e
    finally:
        conn.close()


@contextmanager
def transaction(db: DB) -> Iterator[sqlite3.Connection]:
    """
    One atomic unit of work.

    BEGIN IMMEDIATE takes the write lock up front, so concurrent writers are
    serialized and everything inside commits together or not at all.
    """
    try:
        conn = _open(db)
    except sqlite3.Error as e:
        raise PersistenceError(f"cannot open store at {db.path}: {e}") from e
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    except sqlite3.IntegrityError as e:
        if "terminal" in str(e):
            raise TerminalStatusError(str(e)) from e
        raise PersistenceError(f"store integrity violation: {e}") from e
    except sqlite3.Error as e:
        raise PersistenceError(f"store write failed: {e}") from e
    finally:
        conn.close()


def init_db(db: DB) -> None:
    try:
        conn = _open(db)
    except sqlite3.Error as e:
        raise PersistenceError(f"cannot open store at {db.path}: {e}") from e
    try:
        conn.executescript(SCHEMA)
    except sqlite3.Error as e:
        raise PersistenceError(f"schema init failed: {e}") from e
    finally:
        conn.close()


def _row_to_account(row: sqlite3.Row) -> SponsoredAccount:
    if row["account_type"] == OTHER:
        account_type = AccountType.other(row["program_id"])
    else:
        account_type = AccountType(row["account_type"])
    return SponsoredAccount(
        pubkey=row["pubkey"],
        account_type=account_type,
        discovery_signature=row["discovery_signature"],
        discovery_slot=int(row["discovery_slot"]),
        discovered_at=row["discovered_at"],
        initial_lamports=int(row["initial_lamports"]),
        status=row["status"],
        status_reason=row["status_reason"],
        last_activity_at=row["last_activity_at"],
        balance_lamports=int(row["balance_lamports"]),
        token_amount=row["token_amount"],
        close_authority_matches_operator=bool(row["close_authority_matches_operator"]),
        updated_at=row["updated_at_utc"],
    )


def _row_to_operation(row: sqlite3.Row) -> ReclaimOperation:
    return ReclaimOperation(
        id=int(row["id"]),
        account_pubkey=row["account_pubkey"],
        attempted_at=row["attempted_at_utc"],
        outcome=row["outcome"],
        signature=row["signature"],
        lamports=int(row["lamports"]),
        reason=row["reason"],
    )


# --- checkpoint ---------------------------------------------------------------


def get_checkpoint(conn: sqlite3.Connection) -> Optional[ScanCheckpoint]:
    row = conn.execute("SELECT last_signature, last_slot, updated_at_utc FROM scan_checkpoint WHERE id = 1").fetchone()
    if row is None:
        return None
    return ScanCheckpoint(
        last_signature=row["last_signature"],
        last_slot=int(row["last_slot"]),
        updated_at=row["updated_at_utc"],
    )


def clear_checkpoint(conn: sqlite3.Connection) -> bool:
    """Explicit full-rescan reset. The only way the checkpoint moves backward."""
    cur = conn.execute("DELETE FROM scan_checkpoint WHERE id = 1")
    return cur.rowcount > 0


def commit_scan_page(
    conn: sqlite3.Connection,
    accounts: Sequence[DiscoveredAccount],
    last_signature: str,
    last_slot: int,
) -> int:
    """
    Record one scanned page: new accounts plus the advanced checkpoint.

    Must run inside transaction(). Accounts already known are left untouched,
    so replaying a page after a crash never duplicates a row. Returns the
    number of newly inserted accounts.
    """
    current = get_checkpoint(conn)
    if current is not None and last_slot < current.last_slot:
        raise PersistenceError(
            f"checkpoint would move backward (slot {current.last_slot} -> {last_slot})"
        )

    now = utc_now_iso()
    inserted = 0
    for acc in accounts:
        cur = conn.execute(
            """INSERT OR IGNORE INTO sponsored_accounts
            (pubkey, account_type, program_id, discovery_signature, discovery_slot, discovered_at,
             initial_lamports, status, first_seen_at_utc, updated_at_utc)
            VALUES (?,?,?,?,?,?,?,?,?,?)""",
            (
                acc.pubkey,
                acc.account_type.kind,
                acc.account_type.program_id,
                acc.discovery_signature,
                int(acc.discovery_slot),
                acc.discovered_at,
                int(acc.initial_lamports),
                ACTIVE,
                now,
                now,
            ),
        )
        inserted += cur.rowcount

    conn.execute(
        """INSERT INTO scan_checkpoint (id, last_signature, last_slot, updated_at_utc)
        VALUES (1, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
          last_signature = excluded.last_signature,
          last_slot = excluded.last_slot,
          updated_at_utc = excluded.updated_at_utc""",
        (last_signature, int(last_slot), now),
    )
    return inserted


# --- accounts -----------------------------------------------------------------


def get_account(conn: sqlite3.Connection, pubkey: str) -> Optional[SponsoredAccount]:
    row = conn.execute(
        f"SELECT {_ACCOUNT_COLUMNS} FROM sponsored_accounts WHERE pubkey = ?",
        (pubkey,),
    ).fetchone()
    return _row_to_account(row) if row else None


def list_accounts(
    conn: sqlite3.Connection,
    statuses: Optional[Iterable[str]] = None,
    limit: Optional[int] = None,
) -> List[SponsoredAccount]:
    """Accounts oldest-discovered first."""
    sql = f"SELECT {_ACCOUNT_COLUMNS} FROM sponsored_accounts"
    params: list = []
    if statuses is not None:
        statuses = list(statuses)
        if not statuses:
            return []
        sql += f" WHERE status IN ({','.join('?' for _ in statuses)})"
        params.extend(statuses)
    sql += " ORDER BY discovery_slot ASC, pubkey ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [_row_to_account(r) for r in conn.execute(sql, params).fetchall()]


def update_evaluation(
    conn: sqlite3.Connection,
    pubkey: str,
    status: str,
    reason: Optional[str],
    last_activity_at: Optional[int],
    balance_lamports: int,
    token_amount: Optional[int],
    close_authority_matches_operator: bool,
) -> None:
    """Write the outcome of one evaluation. Must run inside transaction()."""
    if status not in EVALUATION_STATUSES:
        raise PersistenceError(f"evaluation cannot set status {status!r}")
    existing = get_account(conn, pubkey)
    if existing is None:
        raise PersistenceError(f"unknown account {pubkey}")
    if existing.is_terminal:
        raise TerminalStatusError(f"account {pubkey} is {existing.status}")
    conn.execute(
        """UPDATE sponsored_accounts SET
          status = ?, status_reason = ?, last_activity_at = COALESCE(?, last_activity_at),
          balance_lamports = ?, token_amount = ?, close_authority_matches_operator = ?,
          updated_at_utc = ?
        WHERE pubkey = ?""",
        (
            status,
            reason,
            last_activity_at,
            int(balance_lamports),
            token_amount,
            1 if close_authority_matches_operator else 0,
            utc_now_iso(),
            pubkey,
        ),
    )


def set_status(conn: sqlite3.Connection, pubkey: str, status: str, reason: Optional[str] = None) -> None:
    existing = get_account(conn, pubkey)
    if existing is None:
        raise PersistenceError(f"unknown account {pubkey}")
    if existing.is_terminal:
        raise TerminalStatusError(f"account {pubkey} is {existing.status}")
    conn.execute(
        "UPDATE sponsored_accounts SET status = ?, status_reason = ?, updated_at_utc = ? WHERE pubkey = ?",
        (status, reason, utc_now_iso(), pubkey),
    )


def count_by_status(conn: sqlite3.Connection) -> Dict[str, int]:
    counts = {s: 0 for s in (ACTIVE, ELIGIBLE, INELIGIBLE, RECLAIMED, CLOSED_EXTERNALLY)}
    for row in conn.execute("SELECT status, COUNT(*) AS n FROM sponsored_accounts GROUP BY status"):
        counts[row["status"]] = int(row["n"])
    return counts


def count_by_type(conn: sqlite3.Connection) -> Dict[str, int]:
    return {
        row["account_type"]: int(row["n"])
        for row in conn.execute("SELECT account_type, COUNT(*) AS n FROM sponsored_accounts GROUP BY account_type")
    }


# --- reclaim log ----------------------------------------------------------------


def record_reclaim(
    conn: sqlite3.Connection,
    pubkey: str,
    outcome: ReclaimOutcome,
    attempted_at: Optional[str] = None,
) -> int:
    """
    Append one ReclaimOperation. A Success also moves the account to Reclaimed
    (balance 0) in the same transaction. Must run inside transaction().
    """
    account = get_account(conn, pubkey)
    if account is None:
        raise PersistenceError(f"unknown account {pubkey}")
    if outcome.kind == SUCCESS and account.status in TERMINAL_STATUSES:
        raise TerminalStatusError(f"account {pubkey} is already {account.status}")

    cur = conn.execute(
        """INSERT INTO reclaim_operations
        (account_pubkey, attempted_at_utc, outcome, signature, lamports, reason)
        VALUES (?,?,?,?,?,?)""",
        (
            pubkey,
            attempted_at or utc_now_iso(),
            outcome.kind,
            outcome.signature,
            int(outcome.lamports),
            outcome.reason,
        ),
    )
    if outcome.kind == SUCCESS:
        conn.execute(
            """UPDATE sponsored_accounts SET status = ?, status_reason = ?, balance_lamports = 0,
              token_amount = 0, updated_at_utc = ? WHERE pubkey = ?""",
            (RECLAIMED, f"closed by {outcome.signature}", utc_now_iso(), pubkey),
        )
    return int(cur.lastrowid)


def list_operations(
    conn: sqlite3.Connection,
    pubkey: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[ReclaimOperation]:
    sql = "SELECT id, account_pubkey, attempted_at_utc, outcome, signature, lamports, reason FROM reclaim_operations"
    params: list = []
    if pubkey:
        sql += " WHERE account_pubkey = ?"
        params.append(pubkey)
    sql += " ORDER BY id DESC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [_row_to_operation(r) for r in conn.execute(sql, params).fetchall()]


def operation_totals(conn: sqlite3.Connection) -> Dict[str, Dict[str, int]]:
    """Count and lamports per outcome."""
    totals: Dict[str, Dict[str, int]] = {}
    for row in conn.execute(
        "SELECT outcome, COUNT(*) AS n, COALESCE(SUM(lamports), 0) AS lamports FROM reclaim_operations GROUP BY outcome"
    ):
        totals[row["outcome"]] = {"count": int(row["n"]), "lamports": int(row["lamports"])}
    return totals


def get_total_reclaimed_lamports(conn: sqlite3.Connection) -> int:
    row = conn.execute(
        "SELECT COALESCE(SUM(lamports), 0) AS total FROM reclaim_operations WHERE outcome = ?",
        (SUCCESS,),
    ).fetchone()
    return int(row["total"]) if row else 0


# --- treasury -------------------------------------------------------------------


def record_treasury_snapshot(conn: sqlite3.Connection, lamports: int) -> None:
    conn.execute(
        "INSERT INTO treasury_snapshots (taken_at_utc, lamports) VALUES (?, ?)",
        (utc_now_iso(), int(lamports)),
    )


def get_last_snapshot_lamports(conn: sqlite3.Connection) -> Optional[int]:
    row = conn.execute(
        "SELECT lamports FROM treasury_snapshots ORDER BY id DESC LIMIT 1"
    ).fetchone()
    return int(row["lamports"]) if row else None


def get_last_snapshot(conn: sqlite3.Connection) -> Optional[Tuple[int, str]]:
    """(lamports, taken_at_utc) of the newest treasury snapshot."""
    row = conn.execute(
        "SELECT lamports, taken_at_utc FROM treasury_snapshots ORDER BY id DESC LIMIT 1"
    ).fetchone()
    return (int(row["lamports"]), row["taken_at_utc"]) if row else None


def get_reclaimed_lamports_since(conn: sqlite3.Connection, since_utc: str) -> int:
    """Lamports this system reclaimed itself after `since_utc`."""
    row = conn.execute(
        "SELECT COALESCE(SUM(lamports), 0) AS total FROM reclaim_operations WHERE outcome = ? AND attempted_at_utc > ?",
        (SUCCESS, since_utc),
    ).fetchone()
    return int(row["total"]) if row else 0


# --- passive reclaims -------------------------------------------------------------


def list_attribution_candidates(conn: sqlite3.Connection) -> List[SponsoredAccount]:
    """ClosedExternally accounts not yet attributed to a treasury increase, most recently closed first."""
    rows = conn.execute(
        f"""SELECT {_ACCOUNT_COLUMNS} FROM sponsored_accounts
        WHERE status = ?
          AND pubkey NOT IN (SELECT account_pubkey FROM passive_reclaim_accounts)
        ORDER BY updated_at_utc DESC, pubkey ASC""",
        (CLOSED_EXTERNALLY,),
    ).fetchall()
    return [_row_to_account(r) for r in rows]


def record_passive_reclaim(
    conn: sqlite3.Connection,
    reclaim: PassiveReclaim,
    attribute: bool,
) -> int:
    """
    Append one detected passive reclaim. With `attribute`, its accounts are
    claimed so later increases cannot be matched to them again. Must run
    inside transaction().
    """
    cur = conn.execute(
        "INSERT INTO passive_reclaims (detected_at_utc, lamports, confidence, accounts_json) VALUES (?,?,?,?)",
        (utc_now_iso(), int(reclaim.lamports), reclaim.confidence, json.dumps(list(reclaim.accounts))),
    )
    reclaim_id = int(cur.lastrowid)
    if attribute:
        conn.executemany(
            "INSERT INTO passive_reclaim_accounts (account_pubkey, passive_reclaim_id) VALUES (?, ?)",
            [(pubkey, reclaim_id) for pubkey in reclaim.accounts],
        )
    return reclaim_id


def list_passive_reclaims(conn: sqlite3.Connection, limit: Optional[int] = None) -> List[PassiveReclaim]:
    sql = "SELECT id, detected_at_utc, lamports, confidence, accounts_json FROM passive_reclaims ORDER BY id DESC"
    params: list = []
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [
        PassiveReclaim(
            lamports=int(r["lamports"]),
            confidence=r["confidence"],
            accounts=tuple(json.loads(r["accounts_json"])),
            id=int(r["id"]),
            detected_at=r["detected_at_utc"],
        )
        for r in conn.execute(sql, params).fetchall()
    ]


def passive_reclaim_totals(conn: sqlite3.Connection) -> Dict[str, Dict[str, int]]:
    """Count and lamports per confidence level."""
    return {
        row["confidence"]: {"count": int(row["n"]), "lamports": int(row["lamports"])}
        for row in conn.execute(
            "SELECT confidence, COUNT(*) AS n, COALESCE(SUM(lamports), 0) AS lamports FROM passive_reclaims GROUP BY confidence"
        )
    }
