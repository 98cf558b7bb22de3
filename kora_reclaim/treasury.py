from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from itertools import combinations
from typing import Optional, Sequence

from kora_reclaim.db import (
    DB,
    get_last_snapshot,
    get_reclaimed_lamports_since,
    list_attribution_candidates,
    record_passive_reclaim,
    record_treasury_snapshot,
    transaction,
)
from kora_reclaim.models import HIGH, LOW, MEDIUM, UNKNOWN, PassiveReclaim, SponsoredAccount
from kora_reclaim.solana_rpc import SolanaRPC

logger = logging.getLogger(__name__)

# Slack for transaction fees when matching amounts
MATCH_TOLERANCE_LAMPORTS = 5_000

# Pair and triple search only looks at the most recently closed accounts
COMBINATION_POOL = 50
LOW_CONFIDENCE_ACCOUNTS = 5

ATTRIBUTED_CONFIDENCE = frozenset({HIGH, MEDIUM})


def rent_estimate(account: SponsoredAccount) -> int:
    """Lamports the account held when last seen, else what it was funded with."""
    return account.balance_lamports or account.initial_lamports


def match_amount_to_accounts(
    increase: int,
    candidates: Sequence[SponsoredAccount],
    tolerance: int = MATCH_TOLERANCE_LAMPORTS,
) -> PassiveReclaim:
    """
    Attribute a treasury increase to externally closed accounts.

    A single account within `tolerance` is High confidence, a pair or triple
    summing to the increase is Medium. Otherwise the most recent candidates
    are listed with Low confidence, or Unknown when there are none.
    """
    pool = [a for a in candidates if rent_estimate(a) > 0]

    for account in pool:
        if abs(rent_estimate(account) - increase) <= tolerance:
            return PassiveReclaim(increase, HIGH, (account.pubkey,))

    for size in (2, 3):
        for group in combinations(pool[:COMBINATION_POOL], size):
            if abs(sum(rent_estimate(a) for a in group) - increase) <= tolerance:
                return PassiveReclaim(increase, MEDIUM, tuple(a.pubkey for a in group))

    if not pool:
        return PassiveReclaim(increase, UNKNOWN)
    return PassiveReclaim(increase, LOW, tuple(a.pubkey for a in pool[:LOW_CONFIDENCE_ACCOUNTS]))


@dataclass(frozen=True)
class TreasuryCheck:
    balance_lamports: int
    previous_lamports: Optional[int]
    # Increase not explained by this system's own recorded reclaims
    unexplained_lamports: int
    passive: Optional[PassiveReclaim]


class TreasuryReconciler:
    """
    Detects passive reclaims: rent that reached the treasury because a
    sponsored account was closed by someone else (usually the token owner).
    """

    def __init__(self, rpc: SolanaRPC, db: DB, treasury: str):
        self.rpc = rpc
        self.db = db
        self.treasury = treasury

    def check(self) -> TreasuryCheck:
        balance = self.rpc.get_balance_lamports(self.treasury)

        with transaction(self.db) as conn:
            last = get_last_snapshot(conn)
            record_treasury_snapshot(conn, balance)
            if last is None:
                logger.info("first treasury snapshot: %d lamports", balance)
                return TreasuryCheck(balance, None, 0, None)

            previous, taken_at = last
            unexplained = balance - previous - get_reclaimed_lamports_since(conn, taken_at)
            if unexplained <= 0:
                logger.debug("treasury %d -> %d lamports; nothing unexplained", previous, balance)
                return TreasuryCheck(balance, previous, 0, None)

            passive = match_amount_to_accounts(unexplained, list_attribution_candidates(conn))
            reclaim_id = record_passive_reclaim(conn, passive, attribute=passive.confidence in ATTRIBUTED_CONFIDENCE)

        passive = replace(passive, id=reclaim_id)
        logger.info(
            "treasury grew by %d unexplained lamports; %s confidence match to %d accounts",
            unexplained,
            passive.confidence,
            len(passive.accounts),
        )
        return TreasuryCheck(balance, previous, unexplained, passive)
