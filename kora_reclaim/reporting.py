from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from kora_reclaim.db import (
    DB,
    connect,
    count_by_status,
    count_by_type,
    get_checkpoint,
    get_last_snapshot_lamports,
    list_operations,
    operation_totals,
    passive_reclaim_totals,
    utc_now_iso,
)
from kora_reclaim.models import FAILED, HIGH, MEDIUM, SIMULATED, SUCCESS, CycleSummary

LAMPORTS_PER_SOL = 1_000_000_000


def lamports_to_sol(lamports: int) -> float:
    return float(lamports) / LAMPORTS_PER_SOL


def format_sol(lamports: int) -> str:
    return f"{lamports_to_sol(lamports):.9f} SOL"


def format_pubkey(pubkey: str, width: int = 8) -> str:
    """Shorten an address for tables: first and last `width // 2` chars."""
    if len(pubkey) <= width + 3:
        return pubkey
    half = max(1, width // 2)
    return f"{pubkey[:half]}...{pubkey[-half:]}"


def build_stats(db: DB, recent_operations: int = 10) -> Dict[str, Any]:
    with connect(db) as conn:
        by_status = count_by_status(conn)
        by_type = count_by_type(conn)
        totals = operation_totals(conn)
        checkpoint = get_checkpoint(conn)
        treasury_lamports = get_last_snapshot_lamports(conn)
        recent = list_operations(conn, limit=recent_operations)
        passive = passive_reclaim_totals(conn)

    def _total(kind: str) -> Dict[str, int]:
        return totals.get(kind, {"count": 0, "lamports": 0})

    stats: Dict[str, Any] = {
        "generated_at_utc": utc_now_iso(),
        "accounts_total": sum(by_status.values()),
        "accounts_by_status": by_status,
        "accounts_by_type": by_type,
        "operations": {
            "success": _total(SUCCESS)["count"],
            "simulated": _total(SIMULATED)["count"],
            "failed": _total(FAILED)["count"],
        },
        "reclaimed_lamports": _total(SUCCESS)["lamports"],
        "reclaimed_sol": lamports_to_sol(_total(SUCCESS)["lamports"]),
        "simulated_lamports": _total(SIMULATED)["lamports"],
        "simulated_sol": lamports_to_sol(_total(SIMULATED)["lamports"]),
        "passive_reclaims": passive,
        "passive_attributed_lamports": sum(
            v["lamports"] for k, v in passive.items() if k in (HIGH, MEDIUM)
        ),
        "checkpoint": asdict(checkpoint) if checkpoint else None,
        "recent_operations": [asdict(op) for op in recent],
    }

    if treasury_lamports is not None:
        stats["treasury_balance_lamports"] = int(treasury_lamports)
        stats["treasury_balance_sol"] = lamports_to_sol(treasury_lamports)

    return stats


def format_cycle_summary(summary: CycleSummary) -> str:
    mode = "DRY RUN" if summary.dry_run else "LIVE"
    lines = [
        f"Cycle ({mode}) finished {summary.finished_at or '-'}",
        f"  scanned transactions: {summary.scanned_transactions}"
        + ("" if summary.scan_complete else " (capped, resumes next cycle)"),
        f"  new accounts: {summary.new_accounts}",
        f"  evaluated: {summary.evaluated}",
        f"  reclaim attempts: {summary.attempted}"
        f" (success {summary.succeeded}, simulated {summary.simulated}, failed {summary.failed})",
    ]
    if summary.dry_run:
        lines.append(f"  would reclaim: {format_sol(summary.lamports_simulated)}")
    else:
        lines.append(f"  reclaimed: {format_sol(summary.lamports_reclaimed)}")
    if summary.treasury_delta_lamports is not None:
        lines.append(f"  treasury delta: {format_sol(summary.treasury_delta_lamports)}")
    if summary.passive_reclaimed_lamports:
        lines.append(f"  closed elsewhere: {format_sol(summary.passive_reclaimed_lamports)}")
    if summary.status_counts:
        counts = ", ".join(f"{k}={v}" for k, v in sorted(summary.status_counts.items()))
        lines.append(f"  accounts: {counts}")
    for err in summary.errors:
        lines.append(f"  error: {err}")
    return "\n".join(lines)


def summary_alert_text(summary: CycleSummary, threshold_lamports: int) -> Optional[str]:
    """Message worth sending for this cycle, or None."""
    if summary.errors:
        return "kora-reclaim cycle had errors:\n" + "\n".join(summary.errors)
    amount = summary.lamports_simulated if summary.dry_run else summary.lamports_reclaimed
    if amount > 0 and amount >= threshold_lamports:
        verb = "would reclaim" if summary.dry_run else "reclaimed"
        return f"kora-reclaim {verb} {format_sol(amount)} from {summary.succeeded or summary.simulated} accounts"
    return None
