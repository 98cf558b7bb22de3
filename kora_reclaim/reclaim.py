from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from kora_reclaim.config import Policy
from kora_reclaim.db import DB, record_reclaim, transaction
from kora_reclaim.eligibility import evaluate, fetch_live_state
from kora_reclaim.errors import NotEligible, ParseError, RpcError
from kora_reclaim.models import FAILED, ReclaimOutcome, SponsoredAccount
from kora_reclaim.rate_limit import backoff_delay
from kora_reclaim.solana_payer import OperatorSigner
from kora_reclaim.solana_rpc import SolanaRPC

logger = logging.getLogger(__name__)

CONFIRMED_STATUSES = {"confirmed", "finalized"}


def _simulation_error(sim: Dict[str, Any]) -> Optional[str]:
    err = sim.get("err")
    if err is None:
        return None
    logs = sim.get("logs") or []
    tail = "; ".join(str(line) for line in logs[-3:])
    return f"simulation rejected: {err}" + (f" ({tail})" if tail else "")


class ReclaimExecutor:
    """
    Closes eligible token accounts into the treasury.

    Every call to reclaim() re-runs the full eligibility decision against fresh
    on-chain state (balance, authority and latest activity), simulates the
    close and appends exactly one ReclaimOperation. Only a confirmed,
    non-dry-run close produces Success (and the Reclaimed status, in the same
    transaction).
    """

    def __init__(
        self,
        rpc: SolanaRPC,
        db: DB,
        signer: OperatorSigner,
        treasury: str,
        send_attempts: int = 3,
        confirm_polls: int = 30,
        confirm_interval_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.rpc = rpc
        self.db = db
        self.signer = signer
        self.treasury = treasury
        self.send_attempts = max(1, send_attempts)
        self.confirm_polls = max(1, confirm_polls)
        self.confirm_interval_s = confirm_interval_s
        self.sleep = sleep
        self.clock = clock

    @property
    def operator(self) -> str:
        return self.signer.pubkey

    def reclaim(self, account: SponsoredAccount, policy: Policy) -> ReclaimOutcome:
        """Attempt one close under `policy`; a dry-run policy only simulates."""
        try:
            outcome = self._attempt(account, policy)
        except NotEligible as e:
            outcome = ReclaimOutcome.failed(f"no longer eligible: {e.reason}")
        except (RpcError, ParseError) as e:
            outcome = ReclaimOutcome.failed(str(e))

        with transaction(self.db) as conn:
            record_reclaim(conn, account.pubkey, outcome)

        if outcome.kind == FAILED:
            logger.warning("reclaim %s failed: %s", account.pubkey, outcome.reason)
        else:
            logger.info(
                "reclaim %s %s: %d lamports%s",
                account.pubkey,
                outcome.kind.lower(),
                outcome.lamports,
                f" ({outcome.signature})" if outcome.signature else "",
            )
        return outcome

    def _attempt(self, account: SponsoredAccount, policy: Policy) -> ReclaimOutcome:
        if account.is_terminal:
            raise NotEligible(f"account is {account.status}")

        # Same rules as the evaluation pass, so new tokens or recent activity abort the close
        live = fetch_live_state(self.rpc, account.pubkey)
        verdict = evaluate(account, policy, live, self.operator, int(self.clock()))
        if not verdict.eligible:
            raise NotEligible(verdict.reason or verdict.status)

        blockhash = self.rpc.get_latest_blockhash()
        wire, signature = self.signer.close_account_tx(
            account.pubkey,
            self.treasury,
            live.owner_program,
            blockhash,
        )

        # Preflight in both modes. A rejected simulation is not retried.
        sim_error = _simulation_error(self.rpc.simulate_transaction(wire))
        if sim_error:
            return ReclaimOutcome.failed(sim_error)

        if policy.dry_run:
            return ReclaimOutcome.simulated(live.lamports)
        return self._submit(wire, signature, live.lamports)

    def _wait_for_confirmation(self, signature: str) -> Optional[Dict[str, Any]]:
        for _ in range(self.confirm_polls):
            try:
                status = self.rpc.get_signature_status(signature)
            except RpcError as e:
                if not e.retryable:
                    raise
                status = None
            if status and (status.get("err") is not None or status.get("confirmationStatus") in CONFIRMED_STATUSES):
                return status
            self.sleep(self.confirm_interval_s)
        return None

    def _landed_status(self, signature: str) -> Optional[Dict[str, Any]]:
        """Settled status of an earlier send, or None if it has not landed."""
        try:
            status = self.rpc.get_signature_status(signature)
        except RpcError as e:
            logger.warning("could not look up %s after a rejected resend: %s", signature, e)
            return None
        if status and (status.get("err") is not None or status.get("confirmationStatus") in CONFIRMED_STATUSES):
            return status
        return None

    def _outcome_from_status(self, status: Dict[str, Any], signature: str, lamports: int) -> ReclaimOutcome:
        if status.get("err") is not None:
            return ReclaimOutcome.failed(f"transaction failed on-chain: {status['err']}")
        return ReclaimOutcome.success(signature, lamports)

    def _submit(self, wire: str, signature: str, lamports: int) -> ReclaimOutcome:
        # The same signed transaction is resent, so a duplicate landing is impossible
        last_problem = "not confirmed"
        for attempt in range(1, self.send_attempts + 1):
            try:
                self.rpc.send_transaction(wire)
            except RpcError as e:
                if not e.retryable:
                    # A resend is rejected once an earlier send has landed ("already processed")
                    status = self._landed_status(signature) if attempt > 1 else None
                    if status is not None:
                        return self._outcome_from_status(status, signature, lamports)
                    return ReclaimOutcome.failed(f"send rejected: {e}")
                last_problem = str(e)
                logger.warning("send %s failed (attempt %d/%d): %s", signature, attempt, self.send_attempts, e)

            status = self._wait_for_confirmation(signature)
            if status is not None:
                return self._outcome_from_status(status, signature, lamports)

            if attempt < self.send_attempts:
                self.sleep(backoff_delay(attempt))
        return ReclaimOutcome.failed(f"{last_problem} after {self.send_attempts} attempts ({signature})")

    def run_batches(
        self,
        accounts: Sequence[SponsoredAccount],
        policy: Policy,
        stop_event: Optional[threading.Event] = None,
    ) -> List[Tuple[SponsoredAccount, ReclaimOutcome]]:
        """
        Reclaim `accounts` in order, `policy.batch_size` at a time.

        Accounts within a batch run sequentially. The stop event is honoured
        only between batches, so a batch is never abandoned half way.
        """
        size = max(1, policy.batch_size)
        results: List[Tuple[SponsoredAccount, ReclaimOutcome]] = []
        for start in range(0, len(accounts), size):
            if start > 0:
                if stop_event is not None:
                    if stop_event.wait(policy.batch_delay_s):
                        logger.info("stop requested; %d accounts left for the next cycle", len(accounts) - start)
                        break
                else:
                    self.sleep(policy.batch_delay_s)

            batch = accounts[start:start + size]
            logger.info("batch %d: %d accounts", start // size + 1, len(batch))
            for account in batch:
                results.append((account, self.reclaim(account, policy)))
        return results
