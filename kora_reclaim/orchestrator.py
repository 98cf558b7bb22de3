from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from kora_reclaim.config import Policy
from kora_reclaim.db import (
    DB,
    connect,
    count_by_status,
    list_accounts,
    record_treasury_snapshot,
    transaction,
    utc_now_iso,
)
from kora_reclaim.eligibility import EligibilityEvaluator
from kora_reclaim.errors import ConfigurationError, PersistenceError, RpcError
from kora_reclaim.models import ELIGIBLE, FAILED, SIMULATED, SUCCESS, CycleSummary
from kora_reclaim.notifications import TelegramNotifier
from kora_reclaim.reclaim import ReclaimExecutor
from kora_reclaim.reporting import summary_alert_text
from kora_reclaim.scanner import LedgerScanner
from kora_reclaim.solana_rpc import SolanaRPC
from kora_reclaim.treasury import ATTRIBUTED_CONFIDENCE, TreasuryReconciler

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs scan -> evaluate -> reclaim cycles, once or on a schedule."""

    def __init__(
        self,
        db: DB,
        rpc: SolanaRPC,
        scanner: LedgerScanner,
        evaluator: EligibilityEvaluator,
        executor: ReclaimExecutor,
        policy_loader: Callable[[], Policy],
        treasury: str,
        reconciler: Optional[TreasuryReconciler] = None,
        notifier: Optional[TelegramNotifier] = None,
        alert_threshold_lamports: int = 0,
    ):
        self.db = db
        self.rpc = rpc
        self.scanner = scanner
        self.evaluator = evaluator
        self.executor = executor
        self.policy_loader = policy_loader
        self.treasury = treasury
        self.reconciler = reconciler
        self.notifier = notifier
        self.alert_threshold_lamports = alert_threshold_lamports

    def _snapshot_treasury(self) -> int:
        lamports = self.rpc.get_balance_lamports(self.treasury)
        with transaction(self.db) as conn:
            record_treasury_snapshot(conn, lamports)
        return lamports

    def _reconcile_treasury(self, summary: CycleSummary) -> Optional[int]:
        """Record passive reclaims; returns the treasury balance it saw, if any."""
        if self.reconciler is None:
            return None
        try:
            check = self.reconciler.check()
        except RpcError as e:
            logger.warning("treasury reconciliation skipped: %s", e)
            summary.errors.append(f"treasury reconciliation skipped: {e}")
            return None
        if check.passive is not None and check.passive.confidence in ATTRIBUTED_CONFIDENCE:
            summary.passive_reclaimed_lamports = check.passive.lamports
        return check.balance_lamports

    def run_cycle(self, stop_event: Optional[threading.Event] = None) -> CycleSummary:
        """
        One full pass under a freshly loaded policy. RpcError and
        PersistenceError propagate; work committed before the failure (scan
        chunks, recorded operations) stays committed.
        """
        policy = self.policy_loader()
        summary = CycleSummary(started_at=utc_now_iso(), dry_run=policy.dry_run)

        scan = self.scanner.scan()
        summary.new_accounts = scan.new_accounts
        summary.scanned_transactions = scan.transactions
        summary.scan_complete = scan.complete

        evaluation = self.evaluator.evaluate_all(policy)
        summary.evaluated = evaluation.evaluated
        if evaluation.skipped:
            summary.errors.append(f"{evaluation.skipped} accounts skipped during evaluation")

        # After evaluation, so accounts closed since the last cycle are candidates
        balance = self._reconcile_treasury(summary)

        with connect(self.db) as conn:
            eligible = list_accounts(conn, statuses=[ELIGIBLE])

        start_balance: Optional[int] = None
        if eligible and not policy.dry_run:
            start_balance = balance if balance is not None else self._snapshot_treasury()

        results = self.executor.run_batches(eligible, policy, stop_event)
        for _, outcome in results:
            summary.attempted += 1
            if outcome.kind == SUCCESS:
                summary.succeeded += 1
                summary.lamports_reclaimed += outcome.lamports
            elif outcome.kind == SIMULATED:
                summary.simulated += 1
                summary.lamports_simulated += outcome.lamports
            elif outcome.kind == FAILED:
                summary.failed += 1

        if start_balance is not None:
            # Reclaims are already committed; a failed snapshot only loses the delta
            try:
                summary.treasury_delta_lamports = self._snapshot_treasury() - start_balance
            except RpcError as e:
                logger.warning("closing treasury snapshot failed: %s", e)
                summary.errors.append(f"treasury snapshot failed: {e}")

        with connect(self.db) as conn:
            summary.status_counts = count_by_status(conn)
        summary.finished_at = utc_now_iso()

        logger.info(
            "cycle done: %d new, %d evaluated, %d attempted (%d ok, %d simulated, %d failed)",
            summary.new_accounts,
            summary.evaluated,
            summary.attempted,
            summary.succeeded,
            summary.simulated,
            summary.failed,
        )
        self._notify_summary(summary)
        return summary

    def _notify_summary(self, summary: CycleSummary) -> None:
        if self.notifier is None:
            return
        text = summary_alert_text(summary, self.alert_threshold_lamports)
        if text:
            self.notifier.send(text)

    def run_forever(
        self,
        interval_s: float,
        stop_event: threading.Event,
        max_cycles: Optional[int] = None,
    ) -> int:
        """
        Repeat run_cycle() every `interval_s` seconds until `stop_event` is set.

        The event is checked between cycles and between reclaim batches, never
        in the middle of one. A cycle that fails on RPC, storage or a bad
        configuration reload is logged and the next cycle starts over. Returns
        the number of cycles run.
        """
        cycles = 0
        while not stop_event.is_set():
            try:
                self.run_cycle(stop_event)
            except (RpcError, PersistenceError, ConfigurationError) as e:
                logger.error("cycle failed: %s; retrying in %.0fs", e, interval_s)
                if self.notifier is not None:
                    self.notifier.send(f"kora-reclaim cycle failed: {e}")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if stop_event.wait(interval_s):
                break
        logger.info("scheduler stopped after %d cycles", cycles)
        return cycles
