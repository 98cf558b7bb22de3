from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple


# Account types
SYSTEM_OWNED = "SystemOwned"
TOKEN_ACCOUNT = "TokenAccount"
OTHER = "Other"

# Account statuses
ACTIVE = "Active"
ELIGIBLE = "Eligible"
INELIGIBLE = "Ineligible"
RECLAIMED = "Reclaimed"
CLOSED_EXTERNALLY = "ClosedExternally"

TERMINAL_STATUSES = frozenset({RECLAIMED, CLOSED_EXTERNALLY})
EVALUABLE_STATUSES = (ACTIVE, ELIGIBLE, INELIGIBLE)

# Reclaim outcomes
SUCCESS = "Success"
FAILED = "Failed"
SIMULATED = "Simulated"

# How confidently a treasury increase was matched to externally closed accounts
HIGH = "High"
MEDIUM = "Medium"
LOW = "Low"
UNKNOWN = "Unknown"


@dataclass(frozen=True)
class AccountType:
    kind: str
    program_id: Optional[str] = None

    def __str__(self) -> str:
        if self.kind == OTHER:
            return f"Other({self.program_id})"
        return self.kind

    @staticmethod
    def system_owned() -> "AccountType":
        return AccountType(SYSTEM_OWNED)

    @staticmethod
    def token_account() -> "AccountType":
        return AccountType(TOKEN_ACCOUNT)

    @staticmethod
    def other(program_id: str) -> "AccountType":
        return AccountType(OTHER, program_id)


@dataclass(frozen=True)
class DiscoveredAccount:
    """An account creation event found in the operator's transaction history."""

    pubkey: str
    account_type: AccountType
    discovery_signature: str
    discovery_slot: int
    discovered_at: Optional[int]
    initial_lamports: int = 0


@dataclass(frozen=True)
class SponsoredAccount:
    pubkey: str
    account_type: AccountType
    discovery_signature: str
    discovery_slot: int
    discovered_at: Optional[int]
    initial_lamports: int = 0
    status: str = ACTIVE
    status_reason: Optional[str] = None
    last_activity_at: Optional[int] = None
    balance_lamports: int = 0
    token_amount: Optional[int] = None
    close_authority_matches_operator: bool = False
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ScanCheckpoint:
    last_signature: str
    last_slot: int
    updated_at: str


@dataclass(frozen=True)
class LiveAccountState:
    """Freshly fetched on-chain state for one account.

    `exists` is False when getAccountInfo returned no account. Token fields are
    only populated for accounts owned by a token program.
    """

    exists: bool
    lamports: int = 0
    owner_program: Optional[str] = None
    token_owner: Optional[str] = None
    close_authority: Optional[str] = None
    token_amount: Optional[int] = None
    mint: Optional[str] = None
    frozen: bool = False
    last_activity_at: Optional[int] = None

    @property
    def effective_close_authority(self) -> Optional[str]:
        # Without an explicit close authority the token owner may close the account.
        return self.close_authority or self.token_owner


@dataclass(frozen=True)
class Verdict:
    status: str
    reason: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.status == ELIGIBLE


@dataclass(frozen=True)
class ReclaimOutcome:
    kind: str
    lamports: int = 0
    signature: Optional[str] = None
    reason: Optional[str] = None

    @staticmethod
    def success(signature: str, lamports: int) -> "ReclaimOutcome":
        return ReclaimOutcome(SUCCESS, lamports=lamports, signature=signature)

    @staticmethod
    def simulated(lamports: int) -> "ReclaimOutcome":
        return ReclaimOutcome(SIMULATED, lamports=lamports)

    @staticmethod
    def failed(reason: str) -> "ReclaimOutcome":
        return ReclaimOutcome(FAILED, reason=reason)


@dataclass(frozen=True)
class ReclaimOperation:
    id: int
    account_pubkey: str
    attempted_at: str
    outcome: str
    signature: Optional[str]
    lamports: int
    reason: Optional[str]


@dataclass(frozen=True)
class PassiveReclaim:
    """A treasury increase attributed to accounts closed outside this system."""

    lamports: int
    confidence: str
    accounts: Tuple[str, ...] = ()
    id: Optional[int] = None
    detected_at: Optional[str] = None


@dataclass
class CycleSummary:
    started_at: str
    finished_at: Optional[str] = None
    dry_run: bool = True
    new_accounts: int = 0
    scanned_transactions: int = 0
    scan_complete: bool = True
    evaluated: int = 0
    attempted: int = 0
    succeeded: int = 0
    simulated: int = 0
    failed: int = 0
    lamports_reclaimed: int = 0
    lamports_simulated: int = 0
    treasury_delta_lamports: Optional[int] = None
    passive_reclaimed_lamports: int = 0
    status_counts: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)
