from __future__ import annotations

import threading
from dataclasses import replace

from conftest import DAY, TOKEN_ACCOUNT_RENT
from kora_reclaim.db import connect, get_account, get_last_snapshot_lamports, list_operations, list_passive_reclaims
from kora_reclaim.eligibility import EligibilityEvaluator
from kora_reclaim.errors import ConfigurationError, RpcError
from kora_reclaim.models import CLOSED_EXTERNALLY, ELIGIBLE, HIGH, INELIGIBLE, RECLAIMED, SUCCESS
from kora_reclaim.orchestrator import Orchestrator
from kora_reclaim.reclaim import ReclaimExecutor
from kora_reclaim.scanner import LedgerScanner
from kora_reclaim.treasury import TreasuryReconciler


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def send(self, text):
        self.messages.append(text)
        return True


def _orchestrator(ledger, db, signer, treasury, policy, notifier=None, reconciler=None):
    operator = signer.pubkey
    return Orchestrator(
        db=db,
        rpc=ledger,
        scanner=LedgerScanner(ledger, db, operator),
        evaluator=EligibilityEvaluator(ledger, db, operator, clock=lambda: ledger.now),
        executor=ReclaimExecutor(
            ledger, db, signer, treasury, confirm_polls=2, sleep=lambda _: None, clock=lambda: ledger.now
        ),
        policy_loader=lambda: policy,
        treasury=treasury,
        reconciler=reconciler,
        notifier=notifier,
    )


def test_five_token_accounts_end_to_end(ledger, db, signer, operator, treasury, policy):
    pubkeys = [ledger.create_token_account(operator, close_authority=operator) for _ in range(5)]
    busy = pubkeys[2]
    ledger.transfer_tokens(busy, 1_000)
    ledger.now += 31 * DAY

    orchestrator = _orchestrator(ledger, db, signer, treasury, policy)
    summary = orchestrator.run_cycle()

    reclaimed = [pk for pk in pubkeys if pk != busy]
    assert summary.new_accounts == 5
    assert summary.evaluated == 5
    assert summary.succeeded == 4
    assert summary.failed == 0
    assert summary.lamports_reclaimed == 4 * TOKEN_ACCOUNT_RENT
    assert summary.treasury_delta_lamports == 4 * TOKEN_ACCOUNT_RENT
    assert summary.status_counts[RECLAIMED] == 4
    assert summary.status_counts[INELIGIBLE] == 1
    assert ledger.get_balance_lamports(treasury) == 4 * TOKEN_ACCOUNT_RENT

    for pk in reclaimed:
        assert ledger.get_account_info(pk) is None
    with connect(db) as conn:
        assert get_account(conn, busy).status_reason == "non-zero balance"
        successes = [op for op in list_operations(conn) if op.outcome == SUCCESS]
        assert sorted(op.account_pubkey for op in successes) == sorted(reclaimed)
        assert get_last_snapshot_lamports(conn) == 4 * TOKEN_ACCOUNT_RENT


def test_dry_run_cycle_leaves_chain_untouched(ledger, db, signer, operator, treasury, policy):
    pubkeys = [ledger.create_token_account(operator, close_authority=operator) for _ in range(3)]
    ledger.now += 31 * DAY

    summary = _orchestrator(ledger, db, signer, treasury, replace(policy, dry_run=True)).run_cycle()

    assert summary.dry_run
    assert summary.simulated == 3
    assert summary.lamports_simulated == 3 * TOKEN_ACCOUNT_RENT
    assert summary.treasury_delta_lamports is None
    assert all(pk in ledger.accounts for pk in pubkeys)
    assert summary.status_counts[ELIGIBLE] == 3


def test_second_cycle_is_a_no_op(ledger, db, signer, operator, treasury, policy):
    ledger.create_token_account(operator, close_authority=operator)
    ledger.now += 31 * DAY
    orchestrator = _orchestrator(ledger, db, signer, treasury, policy)
    orchestrator.run_cycle()

    again = orchestrator.run_cycle()

    assert again.new_accounts == 0
    assert again.attempted == 0
    assert again.status_counts[RECLAIMED] == 1


def test_fresh_accounts_wait_for_inactivity_window(ledger, db, signer, operator, treasury, policy):
    ledger.create_token_account(operator, close_authority=operator)

    summary = _orchestrator(ledger, db, signer, treasury, policy).run_cycle()

    assert summary.attempted == 0
    assert summary.status_counts[INELIGIBLE] == 1


def test_run_forever_survives_rpc_failures(ledger, db, signer, operator, treasury, policy, monkeypatch):
    notifier = RecordingNotifier()
    orchestrator = _orchestrator(ledger, db, signer, treasury, policy, notifier)
    attempts = []

    def flaky_scan(limit=None):
        attempts.append(limit)
        raise RpcError("HTTP 503", retryable=True)

    monkeypatch.setattr(orchestrator.scanner, "scan", flaky_scan)

    cycles = orchestrator.run_forever(0, threading.Event(), max_cycles=3)

    assert cycles == 3
    assert len(attempts) == 3
    assert all("cycle failed" in m for m in notifier.messages)


def test_run_forever_stops_between_cycles(ledger, db, signer, operator, treasury, policy):
    orchestrator = _orchestrator(ledger, db, signer, treasury, policy)
    stop = threading.Event()
    seen = []
    original = orchestrator.run_cycle

    def cycle_then_stop(stop_event=None):
        summary = original(stop_event)
        seen.append(summary)
        stop.set()
        return summary

    orchestrator.run_cycle = cycle_then_stop
    cycles = orchestrator.run_forever(3600, stop)

    assert cycles == 1
    assert seen[0].finished_at is not None


def test_stopped_event_runs_no_cycle(ledger, db, signer, treasury, policy):
    stop = threading.Event()
    stop.set()
    assert _orchestrator(ledger, db, signer, treasury, policy).run_forever(1, stop) == 0


def test_notifies_when_threshold_reached(ledger, db, signer, operator, treasury, policy):
    notifier = RecordingNotifier()
    ledger.create_token_account(operator, close_authority=operator)
    ledger.now += 31 * DAY
    orchestrator = _orchestrator(ledger, db, signer, treasury, policy, notifier)
    orchestrator.alert_threshold_lamports = TOKEN_ACCOUNT_RENT

    orchestrator.run_cycle()

    assert len(notifier.messages) == 1
    assert "reclaimed" in notifier.messages[0]


def test_policy_is_reloaded_every_cycle(ledger, db, signer, operator, treasury, policy):
    pubkey = ledger.create_token_account(operator, close_authority=operator)
    ledger.now += 31 * DAY
    policies = [replace(policy, blacklist=frozenset({pubkey})), policy]
    orchestrator = _orchestrator(ledger, db, signer, treasury, policy)
    orchestrator.policy_loader = lambda: policies.pop(0)

    first = orchestrator.run_cycle()
    assert first.attempted == 0
    with connect(db) as conn:
        assert get_account(conn, pubkey).status_reason == "blacklisted"

    # Blacklist entry removed between cycles
    second = orchestrator.run_cycle()
    assert second.succeeded == 1
    assert policies == []


def test_bad_config_reload_does_not_stop_scheduler(ledger, db, signer, treasury, policy):
    notifier = RecordingNotifier()
    orchestrator = _orchestrator(ledger, db, signer, treasury, policy, notifier)

    def broken():
        raise ConfigurationError("KORA_BATCH_SIZE must be >= 1")

    orchestrator.policy_loader = broken

    assert orchestrator.run_forever(0, threading.Event(), max_cycles=2) == 2
    assert len(notifier.messages) == 2


def test_failed_closing_snapshot_keeps_summary(ledger, db, signer, operator, treasury, policy, monkeypatch):
    pubkey = ledger.create_token_account(operator, close_authority=operator)
    ledger.now += 31 * DAY
    real_balance = ledger.get_balance_lamports
    calls = []

    def balance(address):
        calls.append(address)
        if len(calls) > 1:
            raise RpcError("HTTP 503", retryable=True)
        return real_balance(address)

    monkeypatch.setattr(ledger, "get_balance_lamports", balance)

    summary = _orchestrator(ledger, db, signer, treasury, policy).run_cycle()

    assert summary.succeeded == 1
    assert summary.treasury_delta_lamports is None
    assert summary.errors == ["treasury snapshot failed: HTTP 503"]
    assert summary.finished_at is not None
    with connect(db) as conn:
        assert get_account(conn, pubkey).status == RECLAIMED


def test_cycle_attributes_rent_from_accounts_closed_elsewhere(ledger, db, signer, operator, treasury, policy):
    pubkey = ledger.create_token_account(operator, close_authority=operator)
    orchestrator = _orchestrator(
        ledger, db, signer, treasury, policy, reconciler=TreasuryReconciler(ledger, db, treasury)
    )
    first = orchestrator.run_cycle()
    assert first.passive_reclaimed_lamports == 0

    # The owner closes the account and its rent lands in the treasury
    del ledger.accounts[pubkey]
    ledger.balances[treasury] = TOKEN_ACCOUNT_RENT

    second = orchestrator.run_cycle()

    assert second.passive_reclaimed_lamports == TOKEN_ACCOUNT_RENT
    assert second.status_counts[CLOSED_EXTERNALLY] == 1
    with connect(db) as conn:
        (passive,) = list_passive_reclaims(conn)
    assert passive.confidence == HIGH
    assert passive.accounts == (pubkey,)
