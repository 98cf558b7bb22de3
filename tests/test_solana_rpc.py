from __future__ import annotations

import pytest
import requests

from kora_reclaim.errors import RpcError
from kora_reclaim.rate_limit import RateLimiter
from kora_reclaim.solana_rpc import SolanaRPC


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Replays queued responses (or exceptions) and records request bodies."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _rpc(*responses, max_retries=3):
    session = FakeSession(*responses)
    rpc = SolanaRPC(
        url="http://localhost:8899",
        timeout_s=5,
        max_retries=max_retries,
        limiter=RateLimiter(0),
        session=session,
        sleep=lambda _: None,
    )
    return rpc, session


def _ok(result):
    return FakeResponse(payload={"jsonrpc": "2.0", "id": 1, "result": result})


def test_every_request_has_timeout_and_jsonparsed():
    rpc, session = _rpc(_ok({"context": {"slot": 1}, "value": None}))

    assert rpc.get_account_info("Acc") is None
    req = session.requests[0]
    assert req["timeout"] == 5
    assert req["json"]["method"] == "getAccountInfo"
    assert req["json"]["params"][1]["encoding"] == "jsonParsed"


def test_signature_paging_params():
    rpc, session = _rpc(_ok([{"signature": "s1", "slot": 3}]))

    rpc.get_signatures_for_address("Op", before="b", until="u", limit=1000)

    config = session.requests[0]["json"]["params"][1]
    assert config == {"limit": 1000, "commitment": "confirmed", "before": "b", "until": "u"}


def test_429_then_success_is_retried():
    rpc, session = _rpc(FakeResponse(429, text="Too Many Requests"), _ok({"value": 42}))

    assert rpc.get_balance_lamports("Acc") == 42
    assert len(session.requests) == 2


def test_timeout_is_retryable():
    rpc, _ = _rpc(requests.exceptions.Timeout("slow"), _ok({"value": {"blockhash": "abc"}}))
    assert rpc.get_latest_blockhash() == "abc"


def test_persistent_outage_raises_after_retries():
    rpc, session = _rpc(*[FakeResponse(503, text="down")] * 3)

    with pytest.raises(RpcError) as excinfo:
        rpc.get_balance_lamports("Acc")
    assert excinfo.value.retryable
    assert len(session.requests) == 3


def test_json_rpc_error_not_retryable():
    rpc, session = _rpc(FakeResponse(payload={"error": {"code": -32602, "message": "Invalid param"}}))

    with pytest.raises(RpcError) as excinfo:
        rpc.get_transaction("sig")
    assert not excinfo.value.retryable
    assert excinfo.value.code == -32602
    assert len(session.requests) == 1


def test_send_is_not_retried_internally():
    rpc, session = _rpc(FakeResponse(503, text="down"), _ok("sig"))

    with pytest.raises(RpcError):
        rpc.send_transaction("AAAA")
    assert len(session.requests) == 1


def test_latest_activity_uses_newest_signature():
    rpc, _ = _rpc(_ok([{"signature": "s9", "blockTime": 1_700_000_000}]))
    assert rpc.get_latest_activity("Acc") == 1_700_000_000
