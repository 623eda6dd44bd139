"""
Tests for TradeStore: idempotent inserts, uniqueness, valuation refresh,
watermark monotonicity and the scan lease.
"""

from __future__ import annotations

import pytest

from conftest import MINT_T, MINT_U
from backend_tradesync.core.exceptions import PersistenceError
from backend_tradesync.sync.models import (
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_FAILED,
    SCAN_STATUS_PENDING,
    SCAN_STATUS_SCANNING,
    Trade,
    TradeDirection,
    WalletSyncState,
)


def _trade(sig: str, ts: int, mint: str = MINT_T, *, value: float = 150.0, placeholder: bool = False) -> Trade:
    return Trade(
        signature=sig,
        timestamp=ts,
        direction=TradeDirection.BUY,
        asset_address=mint,
        asset_symbol="TTT" if not placeholder else mint[:8] + "...",
        asset_logo=None,
        amount=10.0,
        native_amount=1.5,
        unit_price_usd=value / 10.0,
        value_usd=value,
        fee=0.000005,
        is_placeholder_valuation=placeholder,
    )


def test_upsert_is_idempotent(store):
    trades = [_trade("a", 100), _trade("b", 200)]
    assert store.upsert_trades("w1", trades) == 2
    assert store.upsert_trades("w1", trades) == 0
    assert store.count_trades("w1") == 2


def test_same_signature_different_assets_are_distinct(store):
    assert store.upsert_trades("w1", [_trade("a", 100, MINT_T), _trade("a", 100, MINT_U)]) == 2
    assert store.upsert_trades("w1", [_trade("a", 100, MINT_U)]) == 0
    assert store.count_trades("w1") == 2


def test_duplicates_inside_one_batch_collapse(store):
    assert store.upsert_trades("w1", [_trade("a", 100), _trade("a", 100)]) == 1


def test_uniqueness_is_scoped_per_wallet(store):
    assert store.upsert_trades("w1", [_trade("a", 100)]) == 1
    assert store.upsert_trades("w2", [_trade("a", 100)]) == 1


def test_placeholder_valuation_is_refreshed_not_appended(store):
    store.upsert_trades("w1", [_trade("a", 100, value=0.0, placeholder=True)])
    assert store.upsert_trades("w1", [_trade("a", 100, value=150.0)]) == 0
    [row] = store.list_trades("w1")
    assert row.value_usd == 150.0
    assert row.asset_symbol == "TTT"
    assert not row.is_placeholder_valuation


def test_real_valuation_is_not_overwritten(store):
    store.upsert_trades("w1", [_trade("a", 100, value=150.0)])
    store.upsert_trades("w1", [_trade("a", 100, value=999.0)])
    assert store.list_trades("w1")[0].value_usd == 150.0


def test_list_trades_newest_first_with_since(store):
    store.upsert_trades("w1", [_trade("a", 100), _trade("b", 300), _trade("c", 200)])
    assert [t.signature for t in store.list_trades("w1")] == ["b", "c", "a"]
    assert [t.signature for t in store.list_trades("w1", since=200)] == ["b", "c"]
    assert [t.signature for t in store.list_trades("w1", limit=1)] == ["b"]


def test_unknown_wallet_state_is_historical(store):
    state = store.get_wallet_sync_state("nobody")
    assert state.initial_scan_complete is False
    assert state.watermark_timestamp is None
    assert state.scan_status == SCAN_STATUS_PENDING


def test_watermark_never_regresses(store):
    store.set_wallet_sync_state(
        "w1", WalletSyncState("w1", initial_scan_complete=True, watermark_timestamp=500)
    )
    saved = store.set_wallet_sync_state(
        "w1", WalletSyncState("w1", initial_scan_complete=False, watermark_timestamp=100)
    )
    assert saved.watermark_timestamp == 500
    assert saved.initial_scan_complete is True
    assert store.get_wallet_sync_state("w1").watermark_timestamp == 500


def test_scan_lease(store):
    assert store.try_begin_scan("w1", "addr", now=1000, lease_ttl_sec=60) is True
    assert store.get_wallet_sync_state("w1").scan_status == SCAN_STATUS_SCANNING
    assert store.try_begin_scan("w1", "addr", now=1010, lease_ttl_sec=60) is False
    # stale lease can be taken over
    assert store.try_begin_scan("w1", "addr", now=1061, lease_ttl_sec=60) is True

    store.mark_scan_failed("w1", "boom", now=1070)
    state = store.get_wallet_sync_state("w1")
    assert state.scan_status == SCAN_STATUS_FAILED
    assert state.scan_error == "boom"
    assert store.try_begin_scan("w1", "addr", now=1080, lease_ttl_sec=60) is True


def test_list_tracked_wallets_completed_only(store):
    store.set_wallet_sync_state(
        "done", WalletSyncState("done", address="a1", initial_scan_complete=True, scan_status=SCAN_STATUS_COMPLETED)
    )
    store.try_begin_scan("new", "a2", now=1, lease_ttl_sec=60)
    assert [s.wallet_id for s in store.list_tracked_wallets()] == ["done", "new"]
    assert [s.wallet_id for s in store.list_tracked_wallets(completed_only=True)] == ["done"]


def test_database_failure_raises_persistence_error(tmp_path):
    from backend_tradesync.database.store import TradeStore

    # tables never created
    bare = TradeStore(f"sqlite:///{tmp_path / 'bare.db'}")
    try:
        with pytest.raises(PersistenceError):
            bare.upsert_trades("w1", [_trade("a", 100)])
        with pytest.raises(PersistenceError):
            bare.set_wallet_sync_state("w1", WalletSyncState("w1"))
    finally:
        bare.dispose()


def test_non_duplicate_constraint_violation_raises(store):
    bad = Trade(
        signature="b",
        timestamp=200,
        direction=TradeDirection.BUY,
        asset_address=MINT_T,
        asset_symbol=None,  # type: ignore[arg-type]
        asset_logo=None,
        amount=1.0,
        native_amount=1.0,
        unit_price_usd=1.0,
        value_usd=1.0,
        fee=0.0,
    )
    with pytest.raises(PersistenceError):
        store.upsert_trades("w1", [_trade("a", 100), bad])
    # the valid row is kept, the rejected one is not reported as stored
    assert [t.signature for t in store.list_trades("w1")] == ["a"]


def test_concurrent_insert_of_same_key_counts_as_duplicate(store, monkeypatch):
    store.upsert_trades("w1", [_trade("a", 100)])
    real_existing = store._existing
    blind_calls = []

    def existing_missed_by_racing_writer(session, wallet_id, signatures):
        # first two pre-checks run before the other writer's commit is visible
        if len(blind_calls) < 2:
            blind_calls.append(signatures)
            return {}
        return real_existing(session, wallet_id, signatures)

    monkeypatch.setattr(store, "_existing", existing_missed_by_racing_writer)
    assert store.upsert_trades("w1", [_trade("a", 100)]) == 0
    assert store.count_trades("w1") == 1
