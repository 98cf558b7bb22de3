from __future__ import annotations


class ReclaimBotError(Exception):
    """Base class for all kora-reclaim errors."""


class ConfigurationError(ReclaimBotError):
    """Invalid key encoding or missing required setting."""


class RpcError(ReclaimBotError):
    """Network or provider failure talking to the Solana JSON-RPC endpoint."""

    def __init__(self, message: str, retryable: bool = True, code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class ParseError(ReclaimBotError):
    """An instruction or account layout could not be decoded."""


class NotEligible(ReclaimBotError):
    """Expected outcome: the account may not be reclaimed. Always carries a reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PersistenceError(ReclaimBotError):
    """The account store is unavailable or rejected a write."""


class TerminalStatusError(PersistenceError):
    """Attempted to mutate an account already Reclaimed or ClosedExternally."""
