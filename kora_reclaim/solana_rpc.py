from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from kora_reclaim.errors import RpcError
from kora_reclaim.rate_limit import RateLimiter, with_backoff

logger = logging.getLogger(__name__)

# JSON-RPC error codes worth retrying: block/slot not yet available, node unhealthy
RETRYABLE_RPC_CODES = {-32004, -32005, -32007, -32014, -32016, 429}
RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}

COMMITMENT = "confirmed"


@dataclass(frozen=True)
class SolanaRPC:
    """
    Minimal Solana JSON-RPC client.

    Every request waits on the shared rate limiter, carries an explicit timeout
    and is retried with exponential backoff on throttling, timeouts and
    transient provider errors. Other failures raise RpcError(retryable=False).
    """

    url: str
    timeout_s: float = 30
    max_retries: int = 5
    limiter: RateLimiter = field(default_factory=lambda: RateLimiter(0.2), compare=False)
    session: requests.Session = field(default_factory=requests.Session, compare=False, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def _post(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        self.limiter.wait()
        try:
            resp = self.session.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
        except requests.exceptions.Timeout as e:
            raise RpcError(f"Solana RPC {method} timed out after {self.timeout_s}s", retryable=True) from e
        except requests.exceptions.ConnectionError as e:
            raise RpcError(f"Solana RPC {method} connection failed: {e}", retryable=True) from e
        except requests.exceptions.RequestException as e:
            raise RpcError(f"Solana RPC {method} request failed: {e}", retryable=False) from e

        if resp.status_code >= 400:
            raise RpcError(
                f"Solana RPC {method} HTTP {resp.status_code}: {resp.text[:200]}",
                retryable=resp.status_code in RETRYABLE_HTTP_STATUS,
                code=resp.status_code,
            )

        try:
            result = resp.json()
        except (ValueError, json.JSONDecodeError) as e:
            raise RpcError(f"Solana RPC {method} invalid JSON response: {resp.text[:200]}", retryable=True) from e

        if "error" in result:
            err = result["error"] or {}
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(
                f"Solana RPC {method} error {code}: {message}",
                retryable=code in RETRYABLE_RPC_CODES,
                code=code,
            )
        if "result" not in result:
            raise RpcError(f"Solana RPC {method} missing result: {result}", retryable=False)
        return result["result"]

    def call(self, method: str, params: List[Any]) -> Any:
        return with_backoff(
            lambda: self._post(method, params),
            attempts=self.max_retries,
            sleep=self.sleep,
            label=method,
        )

    def get_signatures_for_address(
        self,
        address: str,
        before: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Signature history for `address`, newest first."""
        config: Dict[str, Any] = {"limit": int(limit), "commitment": COMMITMENT}
        if before:
            config["before"] = before
        if until:
            config["until"] = until
        return self.call("getSignaturesForAddress", [address, config]) or []

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Full transaction in jsonParsed encoding, or None if the node has no record."""
        return self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": COMMITMENT,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    def get_account_info(self, pubkey: str) -> Optional[Dict[str, Any]]:
        """Account in jsonParsed encoding, or None if the account does not exist."""
        result = self.call("getAccountInfo", [pubkey, {"encoding": "jsonParsed", "commitment": COMMITMENT}])
        return (result or {}).get("value")

    def get_balance_lamports(self, pubkey: str) -> int:
        result = self.call("getBalance", [pubkey, {"commitment": COMMITMENT}])
        value = (result or {}).get("value")
        if value is None:
            raise RpcError(f"Solana RPC getBalance missing value: {result}", retryable=False)
        return int(value)

    def get_latest_activity(self, pubkey: str) -> Optional[int]:
        """Block time of the most recent signature touching `pubkey`."""
        sigs = self.get_signatures_for_address(pubkey, limit=1)
        if not sigs:
            return None
        block_time = sigs[0].get("blockTime")
        return int(block_time) if block_time is not None else None

    def get_latest_blockhash(self) -> str:
        result = self.call("getLatestBlockhash", [{"commitment": COMMITMENT}])
        blockhash = ((result or {}).get("value") or {}).get("blockhash")
        if not blockhash:
            raise RpcError(f"Solana RPC getLatestBlockhash missing blockhash: {result}", retryable=True)
        return str(blockhash)

    def simulate_transaction(self, tx_b64: str) -> Dict[str, Any]:
        result = self.call(
            "simulateTransaction",
            [tx_b64, {"encoding": "base64", "commitment": COMMITMENT, "sigVerify": True}],
        )
        return (result or {}).get("value") or {}

    def send_transaction(self, tx_b64: str) -> str:
        # Not wrapped in backoff: a resend of the same signed transaction is the
        # caller's decision once it has checked the signature status.
        sig = self._post(
            "sendTransaction",
            [
                tx_b64,
                {"encoding": "base64", "skipPreflight": False, "preflightCommitment": COMMITMENT},
            ],
        )
        if not sig:
            raise RpcError("sendTransaction returned no signature", retryable=True)
        return str(sig)

    def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = (result or {}).get("value") or [None]
        return values[0]
