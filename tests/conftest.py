from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from kora_reclaim.config import Policy
from kora_reclaim.db import DB, init_db
from kora_reclaim.errors import RpcError
from kora_reclaim.solana_payer import OperatorSigner
from kora_reclaim.token_program import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)

T0 = 1_700_000_000
DAY = 86_400
TOKEN_ACCOUNT_RENT = 2_039_280


def new_pubkey() -> str:
    return str(Pubkey.new_unique())


class FakeLedger:
    """
    In-memory stand-in for SolanaRPC.

    Holds accounts in jsonParsed shape, per-address signature history and
    full transactions. CloseAccount transactions built by OperatorSigner are
    decoded, checked the way the token program would check them, and applied.
    """

    def __init__(self, now: int = T0):
        self.now = now
        self.slot = 100
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.balances: Dict[str, int] = {}
        self.history: Dict[str, List[Dict[str, Any]]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.account_info_errors: Dict[str, RpcError] = {}
        self.send_errors: List[RpcError] = []
        self.calls: Dict[str, int] = {}
        self._seq = 0

    # --- bookkeeping -----------------------------------------------------------

    def _count(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1

    def _next_signature(self) -> str:
        self._seq += 1
        return f"sig{self._seq:06d}"

    def _touch(self, address: str, signature: str, err: Any = None) -> None:
        self.history.setdefault(address, []).append(
            {"signature": signature, "slot": self.slot, "err": err, "blockTime": self.now}
        )

    def add_transaction(
        self,
        fee_payer: str,
        instructions: List[Dict[str, Any]],
        inner: Optional[List[Dict[str, Any]]] = None,
        touched: Optional[List[str]] = None,
        err: Any = None,
    ) -> str:
        self.slot += 1
        sig = self._next_signature()
        self.transactions[sig] = {
            "slot": self.slot,
            "blockTime": self.now,
            "meta": {
                "err": err,
                "innerInstructions": [{"index": 0, "instructions": inner}] if inner else [],
            },
            "transaction": {
                "signatures": [sig],
                "message": {
                    "accountKeys": [{"pubkey": fee_payer, "signer": True, "writable": True}],
                    "instructions": instructions,
                },
            },
        }
        for address in [fee_payer] + list(touched or []):
            self._touch(address, sig, err)
        return sig

    # --- ledger setup helpers ----------------------------------------------------

    def set_token_account(
        self,
        pubkey: str,
        owner: str,
        close_authority: Optional[str] = None,
        amount: int = 0,
        lamports: int = TOKEN_ACCOUNT_RENT,
        frozen: bool = False,
        mint: Optional[str] = None,
        token_program: str = TOKEN_PROGRAM_ID,
    ) -> None:
        info: Dict[str, Any] = {
            "owner": owner,
            "mint": mint or new_pubkey(),
            "state": "frozen" if frozen else "initialized",
            "tokenAmount": {"amount": str(amount), "decimals": 6},
        }
        if close_authority:
            info["closeAuthority"] = close_authority
        self.accounts[pubkey] = {
            "lamports": lamports,
            "owner": token_program,
            "executable": False,
            "data": {"program": "spl-token", "parsed": {"type": "account", "info": info}, "space": 165},
        }

    def create_token_account(
        self,
        operator: str,
        owner: Optional[str] = None,
        close_authority: Optional[str] = None,
        lamports: int = TOKEN_ACCOUNT_RENT,
        err: Any = None,
    ) -> str:
        """Operator-paid ATA creation, the way a paymaster sponsors it."""
        pubkey = new_pubkey()
        owner = owner or new_pubkey()
        mint = new_pubkey()
        outer = [
            {
                "program": "spl-associated-token-account",
                "programId": ASSOCIATED_TOKEN_PROGRAM_ID,
                "parsed": {
                    "type": "create",
                    "info": {"source": operator, "account": pubkey, "wallet": owner, "mint": mint},
                },
            }
        ]
        inner = [
            {
                "program": "system",
                "programId": SYSTEM_PROGRAM_ID,
                "parsed": {
                    "type": "createAccount",
                    "info": {
                        "source": operator,
                        "newAccount": pubkey,
                        "lamports": lamports,
                        "space": 165,
                        "owner": TOKEN_PROGRAM_ID,
                    },
                },
            },
            {
                "program": "spl-token",
                "programId": TOKEN_PROGRAM_ID,
                "parsed": {"type": "initializeAccount3", "info": {"account": pubkey, "mint": mint, "owner": owner}},
            },
        ]
        self.add_transaction(operator, outer, inner=inner, touched=[pubkey], err=err)
        if err is None:
            self.set_token_account(pubkey, owner, close_authority, lamports=lamports, mint=mint)
        return pubkey

    def create_system_account(self, operator: str, lamports: int = 890_880) -> str:
        pubkey = new_pubkey()
        ix = {
            "program": "system",
            "programId": SYSTEM_PROGRAM_ID,
            "parsed": {
                "type": "createAccount",
                "info": {
                    "source": operator,
                    "newAccount": pubkey,
                    "lamports": lamports,
                    "space": 0,
                    "owner": SYSTEM_PROGRAM_ID,
                },
            },
        }
        self.add_transaction(operator, [ix], touched=[pubkey])
        self.accounts[pubkey] = {"lamports": lamports, "owner": SYSTEM_PROGRAM_ID, "executable": False, "data": ["", "base64"]}
        return pubkey

    def transfer_tokens(self, pubkey: str, amount: int) -> None:
        info = self.accounts[pubkey]["data"]["parsed"]["info"]
        info["tokenAmount"]["amount"] = str(int(info["tokenAmount"]["amount"]) + amount)
        self.add_transaction(new_pubkey(), [], touched=[pubkey])

    # --- SolanaRPC surface -------------------------------------------------------

    def get_signatures_for_address(self, address, before=None, until=None, limit=1000):
        self._count("getSignaturesForAddress")
        newest_first = list(reversed(self.history.get(address, [])))
        sigs = [s["signature"] for s in newest_first]
        if before is not None:
            newest_first = newest_first[sigs.index(before) + 1:]
            sigs = sigs[sigs.index(before) + 1:]
        if until is not None and until in sigs:
            newest_first = newest_first[:sigs.index(until)]
        return [dict(s) for s in newest_first[:limit]]

    def get_transaction(self, signature):
        self._count("getTransaction")
        return self.transactions.get(signature)

    def get_account_info(self, pubkey):
        self._count("getAccountInfo")
        if pubkey in self.account_info_errors:
            raise self.account_info_errors[pubkey]
        return self.accounts.get(pubkey)

    def get_balance_lamports(self, pubkey):
        self._count("getBalance")
        if pubkey in self.accounts:
            return int(self.accounts[pubkey]["lamports"])
        return self.balances.get(pubkey, 0)

    def get_latest_activity(self, pubkey):
        sigs = self.get_signatures_for_address(pubkey, limit=1)
        return sigs[0]["blockTime"] if sigs else None

    def get_latest_blockhash(self):
        self._count("getLatestBlockhash")
        return str(Hash.default())

    def _decode_close(self, wire: str):
        tx = VersionedTransaction.from_bytes(base64.b64decode(wire))
        keys = [str(k) for k in tx.message.account_keys]
        ix = tx.message.instructions[0]
        idx = list(ix.accounts)
        return tx, keys[idx[0]], keys[idx[1]], keys[idx[2]]

    def _close_error(self, account: str, authority: str) -> Optional[str]:
        acc = self.accounts.get(account)
        if acc is None:
            return "AccountNotFound"
        info = acc["data"]["parsed"]["info"]
        if int(info["tokenAmount"]["amount"]) != 0:
            return "NonNativeHasBalance"
        if (info.get("closeAuthority") or info["owner"]) != authority:
            return "OwnerMismatch"
        if info["state"] == "frozen":
            return "AccountFrozen"
        return None

    def simulate_transaction(self, wire):
        self._count("simulateTransaction")
        tx, account, _, authority = self._decode_close(wire)
        error = self._close_error(account, authority)
        if error:
            return {"err": {"InstructionError": [0, error]}, "logs": [f"Program log: Error: {error}"]}
        return {"err": None, "logs": ["Program log: Instruction: CloseAccount"]}

    def send_transaction(self, wire):
        self._count("sendTransaction")
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx, account, destination, authority = self._decode_close(wire)
        sig = str(tx.signatures[0])
        if sig in self.statuses:
            return sig
        error = self._close_error(account, authority)
        if error:
            raise RpcError(f"Transaction simulation failed: {error}", retryable=False)
        lamports = int(self.accounts.pop(account)["lamports"])
        self.balances[destination] = self.balances.get(destination, 0) + lamports
        self.slot += 1
        self._touch(account, sig)
        self.statuses[sig] = {"slot": self.slot, "err": None, "confirmationStatus": "confirmed"}
        return sig

    def get_signature_status(self, signature):
        self._count("getSignatureStatuses")
        return self.statuses.get(signature)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def db(tmp_path) -> DB:
    store = DB(str(tmp_path / "kora_reclaim.sqlite3"))
    init_db(store)
    return store


@pytest.fixture
def operator_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def signer(operator_keypair) -> OperatorSigner:
    return OperatorSigner(operator_keypair)


@pytest.fixture
def operator(signer) -> str:
    return signer.pubkey


@pytest.fixture
def treasury() -> str:
    return new_pubkey()


@pytest.fixture
def policy() -> Policy:
    return Policy(
        whitelist=frozenset(),
        blacklist=frozenset(),
        min_inactive_seconds=30 * DAY,
        batch_size=10,
        batch_delay_s=0.0,
        dry_run=False,
    )
