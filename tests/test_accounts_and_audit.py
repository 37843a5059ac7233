"""Tests for account persistence and the audit trail."""

import json

from core.accounts import AccountConfig, AccountRepository
from core.audit_log import AuditLogger
from core.circuit_breaker import CircuitBreakerConfig
from core.models import AccountState, ExchangePosition
from infra.state_store import ACCOUNT_SNAPSHOTS, AI_LOGS


def test_from_app_config_merges_breaker_defaults(monkeypatch):
    monkeypatch.setenv("HL_WALLET_ADDRESS", "0xwallet")
    raw = {
        "id": "acct1",
        "wallet_address_env": "HL_WALLET_ADDRESS",
        "symbols": ["BTC"],
        "max_leverage": 5,
        "circuit_breaker": {"max_consecutive_losses": 2},
    }

    account = AccountConfig.from_app_config(raw, {"cooldown_minutes": 45, "max_consecutive_losses": 5})

    assert account.name == "acct1"
    assert account.wallet_address == "0xwallet"
    assert account.max_leverage == 5
    assert account.breaker_config == CircuitBreakerConfig(cooldown_minutes=45, max_consecutive_losses=2)


def test_upsert_keeps_breaker_state_and_counters(store, clock):
    repo = AccountRepository(store, clock=clock)
    account = repo.upsert(AccountConfig(account_id="a1"))
    repo.increment_invocations(account)
    for _ in range(3):
        account = repo.record_ai_failure(account)
    assert account.breaker.state == "tripped"

    repo.upsert(AccountConfig(account_id="a1", symbols=["ETH"]))

    reloaded = repo.get("a1")
    assert reloaded.symbols == ["ETH"]
    assert reloaded.breaker.state == "tripped"
    assert reloaded.breaker.tripped_at == clock()
    assert reloaded.invocation_count == 1
    assert reloaded.started_at == clock()


def test_list_active_skips_inactive(store, clock):
    repo = AccountRepository(store, clock=clock)
    repo.upsert(AccountConfig(account_id="a1"))
    repo.upsert(AccountConfig(account_id="a2", is_active=False))

    assert [a.account_id for a in repo.list_active()] == ["a1"]


def test_trade_outcomes_trip_on_losses(store, clock):
    repo = AccountRepository(store, clock=clock)
    repo.upsert(AccountConfig(account_id="a1", breaker_config=CircuitBreakerConfig(max_consecutive_losses=2)))

    repo.record_trade_outcome("a1", won=False)
    repo.record_trade_outcome("a1", won=False)

    assert repo.get("a1").breaker.state == "tripped"
    assert repo.record_trade_outcome("missing", won=True) is None


def test_account_round_trip():
    account = AccountConfig(account_id="a1", symbols=["SOL"], max_positions=2)

    assert AccountConfig.from_dict(account.to_dict()) == account


def test_system_logs_queried_per_account(store, clock):
    audit = AuditLogger(store, clock=clock)
    audit.system_log("warning", "validator", "SYMBOL_LOCK: locked", account_id="a1", details={"symbol": "BTC"})
    audit.system_log("ERROR", "executor", "boom", account_id="a2")

    (log,) = audit.get_system_logs("a1")

    assert log["level"] == "WARNING"
    assert log["details"] == {"symbol": "BTC"}
    assert log["timestamp"] == clock().isoformat()


def test_ai_log_and_snapshot_persisted(store, clock):
    audit = AuditLogger(store, clock=clock)
    state = AccountState(
        account_value=1_000.0, total_margin_used=100.0, withdrawable=900.0,
        positions=[ExchangePosition(symbol="BTC", szi=0.01, entry_price=60_000.0, leverage=5, unrealized_pnl=12.5)],
    )

    audit.ai_log("a1", "gpt-4o-mini", None, None, error="timeout")
    audit.account_snapshot("a1", state)

    ((_, ai_row),) = store.scan(AI_LOGS)
    assert ai_row["error"] == "timeout"
    ((_, snapshot),) = store.scan(ACCOUNT_SNAPSHOTS)
    assert snapshot["unrealized_pnl"] == 12.5
    assert snapshot["positions"][0]["symbol"] == "BTC"


def test_cycle_audit_file_newest_first(store, clock, tmp_path):
    path = tmp_path / "logs" / "audit.jsonl"
    audit = AuditLogger(store, audit_file=str(path), clock=clock)

    audit.log_cycle(clock(), "a1", {"status": "hold"})
    audit.log_cycle(clock(), "a1", {"status": "executed"})
    with path.open("a") as f:
        f.write("not json\n")

    cycles = audit.get_recent_cycles(3)

    assert [c["status"] for c in cycles] == ["executed", "hold"]
    assert json.loads(path.read_text().splitlines()[0])["account_id"] == "a1"


def test_cycle_audit_disabled_without_file(store, clock):
    audit = AuditLogger(store, clock=clock)

    audit.log_cycle(clock(), "a1", {"status": "hold"})

    assert audit.get_recent_cycles() == []


def test_updates_from_stale_copy_keep_stored_breaker(store, clock):
    repo = AccountRepository(store, clock=clock)
    repo.upsert(AccountConfig(account_id="a1"))
    stale = repo.get("a1")
    for _ in range(3):
        repo.record_ai_failure(repo.get("a1"))

    counted = repo.increment_invocations(stale)
    updated = repo.record_ai_failure(stale)

    assert counted.breaker.state == "tripped"
    assert updated.breaker.consecutive_ai_failures == 4
    stored = repo.get("a1")
    assert stored.breaker.state == "tripped"
    assert stored.invocation_count == 1
