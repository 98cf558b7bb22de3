from __future__ import annotations

import argparse
import json
import signal
import threading
from typing import Callable, List, Optional

from kora_reclaim.config import Policy, Settings, load_settings, resolve_operator_pubkey
from kora_reclaim.db import DB, clear_checkpoint, connect, get_account, get_checkpoint, init_db, list_accounts, transaction
from kora_reclaim.eligibility import EligibilityEvaluator
from kora_reclaim.errors import ReclaimBotError
from kora_reclaim.log import setup_logging
from kora_reclaim.models import ACTIVE, CLOSED_EXTERNALLY, ELIGIBLE, INELIGIBLE, RECLAIMED, SIMULATED, SUCCESS
from kora_reclaim.notifications import TelegramNotifier
from kora_reclaim.orchestrator import Orchestrator
from kora_reclaim.rate_limit import RateLimiter
from kora_reclaim.reclaim import ReclaimExecutor
from kora_reclaim.reporting import (
    LAMPORTS_PER_SOL,
    build_stats,
    format_cycle_summary,
    format_pubkey,
    format_sol,
)
from kora_reclaim.scanner import LedgerScanner
from kora_reclaim.solana_payer import OperatorSigner
from kora_reclaim.solana_rpc import SolanaRPC
from kora_reclaim.treasury import TreasuryReconciler
from kora_reclaim.validation import is_valid_solana_pubkey

STATUS_CHOICES = [ACTIVE, ELIGIBLE, INELIGIBLE, RECLAIMED, CLOSED_EXTERNALLY]


def _rpc(s: Settings) -> SolanaRPC:
    return SolanaRPC(
        url=s.rpc_url,
        timeout_s=s.rpc_timeout_s,
        max_retries=s.max_retries,
        limiter=RateLimiter.from_ms(s.rate_limit_ms),
    )


def _db(s: Settings) -> DB:
    db = DB(s.db_path)
    init_db(db)
    return db


def _operator_pubkey(s: Settings) -> str:
    # Read-only commands can run with just KORA_OPERATOR_PUBKEY
    if s.operator_keypair_path:
        return resolve_operator_pubkey(s, OperatorSigner.from_file(s.operator_keypair_path).pubkey)
    return resolve_operator_pubkey(s)


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _policy_loader(dry_run: bool) -> Callable[[], Policy]:
    """Re-reads settings each cycle, so edits to lists and thresholds apply to the next cycle."""

    def load() -> Policy:
        s = load_settings()
        return s.policy(dry_run=dry_run or s.dry_run)

    return load


def _orchestrator(s: Settings, db: DB, dry_run: bool) -> Orchestrator:
    rpc = _rpc(s)
    signer = OperatorSigner.from_file(s.operator_keypair_path)
    operator = resolve_operator_pubkey(s, signer.pubkey)
    return Orchestrator(
        db=db,
        rpc=rpc,
        scanner=LedgerScanner(rpc, db, operator, max_transactions=s.max_scan_transactions),
        evaluator=EligibilityEvaluator(rpc, db, operator),
        executor=ReclaimExecutor(rpc, db, signer, s.treasury_pubkey),
        policy_loader=_policy_loader(dry_run),
        treasury=s.treasury_pubkey,
        reconciler=TreasuryReconciler(rpc, db, s.treasury_pubkey),
        notifier=TelegramNotifier(s.telegram_bot_token, s.telegram_chat_id),
        alert_threshold_lamports=int(s.alert_threshold_sol * LAMPORTS_PER_SOL),
    )


def cmd_init() -> None:
    s = load_settings(require_keypair=False)
    init_db(DB(s.db_path))
    print(f"OK: initialized DB at {s.db_path}")


def cmd_scan(limit: Optional[int] = None) -> None:
    s = load_settings(require_keypair=False)
    db = _db(s)
    operator = _operator_pubkey(s)
    scanner = LedgerScanner(_rpc(s), db, operator, max_transactions=s.max_scan_transactions)

    print(f"Scanning transactions of operator {operator}...")
    result = scanner.scan(limit=limit)
    print(f"OK: scanned {result.transactions} transactions over {result.pages} signature pages")
    print(f"  - New sponsored accounts: {result.new_accounts}")
    if result.checkpoint:
        print(f"  - Checkpoint: {result.checkpoint.last_signature} (slot {result.checkpoint.last_slot})")
    if not result.complete:
        print("  - Transaction cap reached; run scan again to continue")


def cmd_reclaim(pubkey: str, yes: bool = False, dry_run: bool = False) -> int:
    """
    Reclaim a single tracked account.
    Re-evaluates it against live state first; real reclaims need confirmation.
    """
    s = load_settings()
    if not is_valid_solana_pubkey(pubkey):
        print(f"ERROR: not a valid Solana address: {pubkey}")
        return 2
    db = _db(s)

    with connect(db) as conn:
        account = get_account(conn, pubkey)
    if account is None:
        print(f"ERROR: {pubkey} is not a tracked sponsored account (run 'scan' first)")
        return 1
    if account.is_terminal:
        print(f"Nothing to do: {pubkey} is already {account.status}")
        return 0

    dry = dry_run or s.dry_run
    rpc = _rpc(s)
    signer = OperatorSigner.from_file(s.operator_keypair_path)
    operator = resolve_operator_pubkey(s, signer.pubkey)
    policy = s.policy(dry_run=dry)

    verdict = EligibilityEvaluator(rpc, db, operator).evaluate_account(account, policy)
    if not verdict.eligible:
        print(f"Not eligible: {pubkey} is {verdict.status} ({verdict.reason})")
        return 1

    with connect(db) as conn:
        account = get_account(conn, pubkey)

    if not dry and not yes:
        if not _confirm(f"Close {pubkey} and send its rent to {s.treasury_pubkey}?"):
            print("Aborted.")
            return 1

    outcome = ReclaimExecutor(rpc, db, signer, s.treasury_pubkey).reclaim(account, policy)
    if outcome.kind == SUCCESS:
        print(f"OK: reclaimed {format_sol(outcome.lamports)} - sig: {outcome.signature}")
        return 0
    if outcome.kind == SIMULATED:
        print(f"DRY RUN: would reclaim {format_sol(outcome.lamports)} from {pubkey}")
        return 0
    print(f"FAILED: {outcome.reason}")
    return 1


def cmd_auto(interval_s: float, dry_run: bool = False, once: bool = False) -> None:
    s = load_settings()
    db = _db(s)
    dry = dry_run or s.dry_run
    # The CLI flag is fixed for the run; KORA_DRY_RUN is re-read every cycle
    orchestrator = _orchestrator(s, db, dry_run)

    if not dry:
        print("WARNING: live mode, eligible accounts will be closed on-chain")

    if once:
        summary = orchestrator.run_cycle()
        print(format_cycle_summary(summary))
        return

    stop_event = threading.Event()

    def _stop(signum, _frame):
        print(f"Received signal {signum}; stopping after the current batch...")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    print(f"Running every {interval_s:.0f}s ({'dry run' if dry else 'live'}); Ctrl-C to stop")
    cycles = orchestrator.run_forever(interval_s, stop_event)
    print(f"OK: stopped after {cycles} cycles")


def cmd_stats(fmt: str = "text") -> None:
    s = load_settings(require_keypair=False)
    stats = build_stats(_db(s))

    if fmt == "json":
        print(json.dumps(stats, indent=2, sort_keys=True))
        return

    print(f"Sponsored accounts: {stats['accounts_total']}")
    for status, n in stats["accounts_by_status"].items():
        print(f"  - {status}: {n}")
    if stats["accounts_by_type"]:
        print("By type:")
        for kind, n in sorted(stats["accounts_by_type"].items()):
            print(f"  - {kind}: {n}")
    ops = stats["operations"]
    print(f"Operations: {ops['success']} success, {ops['simulated']} simulated, {ops['failed']} failed")
    print(f"Reclaimed: {stats['reclaimed_sol']:.9f} SOL")
    print(f"Simulated: {stats['simulated_sol']:.9f} SOL")
    if "treasury_balance_sol" in stats:
        print(f"Treasury (last snapshot): {stats['treasury_balance_sol']:.9f} SOL")
    if stats["passive_reclaims"]:
        print(f"Closed elsewhere (attributed): {format_sol(stats['passive_attributed_lamports'])}")
    cp = stats["checkpoint"]
    print(f"Checkpoint: {cp['last_signature']} (slot {cp['last_slot']})" if cp else "Checkpoint: none")


def cmd_list(status: Optional[str] = None, fmt: str = "text") -> None:
    s = load_settings(require_keypair=False)
    with connect(_db(s)) as conn:
        accounts = list_accounts(conn, statuses=[status] if status else None)

    if fmt == "json":
        rows = [
            {
                "pubkey": a.pubkey,
                "account_type": str(a.account_type),
                "status": a.status,
                "reason": a.status_reason,
                "discovery_signature": a.discovery_signature,
                "discovery_slot": a.discovery_slot,
                "discovered_at": a.discovered_at,
                "last_activity_at": a.last_activity_at,
                "balance_lamports": a.balance_lamports,
                "token_amount": a.token_amount,
            }
            for a in accounts
        ]
        print(json.dumps(rows, indent=2))
        return

    if not accounts:
        print("No accounts")
        return
    for a in accounts:
        reason = f" ({a.status_reason})" if a.status_reason else ""
        print(f"{format_pubkey(a.pubkey, 16):<22} {str(a.account_type):<14} {a.status}{reason}  {format_sol(a.balance_lamports)}")
    print(f"\n{len(accounts)} accounts")


def cmd_checkpoints() -> None:
    s = load_settings(require_keypair=False)
    with connect(_db(s)) as conn:
        cp = get_checkpoint(conn)
    if cp is None:
        print("No checkpoint yet; the next scan reads the full history")
        return
    print(f"Last signature: {cp.last_signature}")
    print(f"Last slot:      {cp.last_slot}")
    print(f"Updated at:     {cp.updated_at}")


def cmd_check_passive() -> None:
    s = load_settings(require_keypair=False)
    db = _db(s)
    check = TreasuryReconciler(_rpc(s), db, s.treasury_pubkey).check()

    print(f"Treasury balance: {format_sol(check.balance_lamports)}")
    if check.previous_lamports is None:
        print("First snapshot recorded; run again later to detect passive reclaims")
        return
    if check.passive is None:
        print("No unexplained treasury increase since the last snapshot")
        return
    passive = check.passive
    print(f"Unexplained increase: {format_sol(check.unexplained_lamports)} ({passive.confidence} confidence)")
    for pubkey in passive.accounts:
        print(f"  - {pubkey}")
    if not passive.accounts:
        print("  - no externally closed accounts to attribute it to")


def cmd_reset(yes: bool = False) -> int:
    s = load_settings(require_keypair=False)
    db = _db(s)
    if not yes and not _confirm("Clear the scan checkpoint and rescan the full history next time?"):
        print("Aborted.")
        return 1
    with transaction(db) as conn:
        cleared = clear_checkpoint(conn)
    print("OK: checkpoint cleared" if cleared else "OK: no checkpoint was set")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="kora-reclaim")
    parser.add_argument("--log-level", type=str, default=None, help="Override KORA_LOG_LEVEL")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init", help="Create the account store")

    p_scan = sub.add_parser("scan", help="Discover operator-sponsored accounts")
    p_scan.add_argument("--verbose", action="store_true")
    p_scan.add_argument("--limit", type=int, help="Max transactions to process this run")

    p_reclaim = sub.add_parser("reclaim", help="Reclaim rent from one account")
    p_reclaim.add_argument("pubkey")
    p_reclaim.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    p_reclaim.add_argument("--dry-run", action="store_true")

    p_auto = sub.add_parser("auto", help="Run scan/evaluate/reclaim cycles")
    p_auto.add_argument("--interval", type=float, default=3600, help="Seconds between cycles (default: 3600)")
    p_auto.add_argument("--dry-run", action="store_true")
    p_auto.add_argument("--once", action="store_true", help="Run a single cycle and exit")

    p_stats = sub.add_parser("stats")
    p_stats.add_argument("--format", choices=["text", "json"], default="text")

    p_list = sub.add_parser("list", help="List tracked accounts")
    p_list.add_argument("--status", choices=STATUS_CHOICES)
    p_list.add_argument("--format", choices=["text", "json"], default="text")

    sub.add_parser("checkpoints", help="Show the scan checkpoint")

    sub.add_parser("check-passive", help="Attribute treasury increases to accounts closed elsewhere")

    p_reset = sub.add_parser("reset", help="Clear the scan checkpoint (full rescan)")
    p_reset.add_argument("--yes", action="store_true")

    args = parser.parse_args(argv)

    try:
        settings_level = load_settings(require_keypair=False).log_level
    except ReclaimBotError:
        settings_level = "INFO"
    setup_logging(args.log_level or settings_level, verbose=bool(getattr(args, "verbose", False)))

    try:
        if args.cmd == "init":
            cmd_init()
            return
        if args.cmd == "scan":
            if args.limit is not None and args.limit < 1:
                parser.error("--limit must be >= 1")
            cmd_scan(limit=args.limit)
            return
        if args.cmd == "reclaim":
            code = cmd_reclaim(args.pubkey, yes=bool(args.yes), dry_run=bool(args.dry_run))
            if code:
                raise SystemExit(code)
            return
        if args.cmd == "auto":
            if args.interval <= 0:
                parser.error("--interval must be > 0")
            cmd_auto(args.interval, dry_run=bool(args.dry_run), once=bool(args.once))
            return
        if args.cmd == "stats":
            cmd_stats(fmt=args.format)
            return
        if args.cmd == "list":
            cmd_list(status=args.status, fmt=args.format)
            return
        if args.cmd == "checkpoints":
            cmd_checkpoints()
            return
        if args.cmd == "check-passive":
            cmd_check_passive()
            return
        if args.cmd == "reset":
            code = cmd_reset(yes=bool(args.yes))
            if code:
                raise SystemExit(code)
            return
    except ReclaimBotError as e:
        raise SystemExit(f"ERROR: {e}") from e

    raise SystemExit("Unknown command")


if __name__ == "__main__":
    main()
