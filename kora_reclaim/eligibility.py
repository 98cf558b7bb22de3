from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from kora_reclaim.config import Policy
from kora_reclaim.db import DB, connect, list_accounts, transaction, update_evaluation
from kora_reclaim.errors import ParseError, RpcError, TerminalStatusError
from kora_reclaim.models import (
    CLOSED_EXTERNALLY,
    ELIGIBLE,
    EVALUABLE_STATUSES,
    INELIGIBLE,
    OTHER,
    SYSTEM_OWNED,
    LiveAccountState,
    SponsoredAccount,
    Verdict,
)
from kora_reclaim.solana_rpc import SolanaRPC
from kora_reclaim.token_program import live_state_from_account_info

logger = logging.getLogger(__name__)

REASON_BLACKLISTED = "blacklisted"
REASON_PROTECTED = "protected"
REASON_SYSTEM_OWNED = "operator holds no closing authority over a user-controlled address"
REASON_UNKNOWN_PROGRAM = "unknown program semantics"
REASON_NON_ZERO_BALANCE = "non-zero balance"
REASON_AUTHORITY_MISMATCH = "authority mismatch"
REASON_FROZEN = "frozen"
REASON_NOT_INACTIVE = "inactive period not elapsed"


def check_live_state(live: LiveAccountState, operator: str) -> Optional[Verdict]:
    """
    The on-chain part of the decision (existence, balance, authority, frozen).

    Returns None when the live state permits a close.
    """
    if not live.exists:
        return Verdict(CLOSED_EXTERNALLY, "account no longer exists")
    if live.token_amount is None:
        return Verdict(INELIGIBLE, REASON_UNKNOWN_PROGRAM)
    if live.token_amount != 0:
        return Verdict(INELIGIBLE, REASON_NON_ZERO_BALANCE)
    if live.effective_close_authority != operator:
        return Verdict(INELIGIBLE, REASON_AUTHORITY_MISMATCH)
    if live.frozen:
        return Verdict(INELIGIBLE, REASON_FROZEN)
    return None


def evaluate(
    account: SponsoredAccount,
    policy: Policy,
    live: LiveAccountState,
    operator: str,
    now: int,
) -> Verdict:
    """
    Decide whether `account` may be reclaimed. Pure; the first matching rule wins.

    Policy lists come first so a protected or blocked address is reported as
    such even after it has been closed by someone else.
    """
    if account.pubkey in policy.blacklist:
        return Verdict(INELIGIBLE, REASON_BLACKLISTED)
    if account.pubkey in policy.whitelist:
        return Verdict(INELIGIBLE, REASON_PROTECTED)
    if not live.exists:
        return Verdict(CLOSED_EXTERNALLY, "account no longer exists")
    if account.account_type.kind == SYSTEM_OWNED:
        return Verdict(INELIGIBLE, REASON_SYSTEM_OWNED)
    if account.account_type.kind == OTHER:
        return Verdict(INELIGIBLE, REASON_UNKNOWN_PROGRAM)

    rejected = check_live_state(live, operator)
    if rejected is not None:
        return rejected

    last_activity = live.last_activity_at
    if last_activity is None:
        last_activity = account.last_activity_at or account.discovered_at
    # No known activity time at all: cannot prove inactivity
    if last_activity is None or now - last_activity < policy.min_inactive_seconds:
        return Verdict(INELIGIBLE, REASON_NOT_INACTIVE)
    return Verdict(ELIGIBLE)


def fetch_live_state(rpc: SolanaRPC, pubkey: str) -> LiveAccountState:
    value = rpc.get_account_info(pubkey)
    if value is None:
        return LiveAccountState(exists=False)
    return live_state_from_account_info(value, last_activity_at=rpc.get_latest_activity(pubkey))


@dataclass
class EvaluationResult:
    evaluated: int = 0
    skipped: int = 0
    eligible: List[str] = field(default_factory=list)
    closed_externally: List[str] = field(default_factory=list)


class EligibilityEvaluator:
    """Refreshes every non-terminal account against live state and stores the verdict."""

    def __init__(
        self,
        rpc: SolanaRPC,
        db: DB,
        operator: str,
        clock: Callable[[], float] = time.time,
    ):
        self.rpc = rpc
        self.db = db
        self.operator = operator
        self.clock = clock

    def evaluate_account(self, account: SponsoredAccount, policy: Policy) -> Verdict:
        live = fetch_live_state(self.rpc, account.pubkey)
        verdict = evaluate(account, policy, live, self.operator, int(self.clock()))
        with transaction(self.db) as conn:
            update_evaluation(
                conn,
                account.pubkey,
                status=verdict.status,
                reason=verdict.reason,
                last_activity_at=live.last_activity_at,
                # A closed account keeps its last known balance for treasury reconciliation
                balance_lamports=live.lamports if live.exists else account.balance_lamports,
                token_amount=live.token_amount,
                close_authority_matches_operator=(
                    live.exists and live.effective_close_authority == self.operator
                ),
            )
        return verdict

    def evaluate_all(self, policy: Policy) -> EvaluationResult:
        with connect(self.db) as conn:
            accounts = list_accounts(conn, statuses=EVALUABLE_STATUSES)

        result = EvaluationResult()
        for account in accounts:
            try:
                verdict = self.evaluate_account(account, policy)
            except (RpcError, ParseError) as e:
                logger.warning("skipped %s this cycle: %s", account.pubkey, e)
                result.skipped += 1
                continue
            except TerminalStatusError:
                # Became terminal between listing and writing
                result.skipped += 1
                continue
            result.evaluated += 1
            if verdict.status == ELIGIBLE:
                result.eligible.append(account.pubkey)
            elif verdict.status == CLOSED_EXTERNALLY:
                result.closed_externally.append(account.pubkey)
            logger.debug("%s -> %s %s", account.pubkey, verdict.status, verdict.reason or "")

        logger.info(
            "evaluated %d accounts (%d eligible, %d closed externally, %d skipped)",
            result.evaluated,
            len(result.eligible),
            len(result.closed_externally),
            result.skipped,
        )
        return result
