"""
Tests for the FastAPI routes with the orchestrator dependency overridden.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import ATA_T, MINT_T, WALLET, make_tx
from backend_tradesync.api_server.server import app, get_orchestrator
from backend_tradesync.core.exceptions import PersistenceError, ScanInProgressError
from backend_tradesync.ledger.models import DiscoveredAccount


@pytest.fixture
def client(orchestrator, ledger):
    ledger.owned[WALLET] = [DiscoveredAccount(ATA_T, MINT_T, WALLET)]
    ledger.add(
        make_tx("s1", 1100, native_sol=-2.0, tokens=[(ATA_T, MINT_T, 0.0, 100.0, WALLET)]),
        WALLET,
        ATA_T,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_scan_then_read(client):
    r = client.post("/wallets/w1/scan", json={"address": WALLET})
    assert r.status_code == 200
    data = r.json()
    assert data["mode"] == "historical"
    assert data["inserted"] == 1
    assert data["new_watermark"] == 1100

    state = client.get("/wallets/w1/sync-state").json()
    assert state["initial_scan_complete"] is True
    assert state["watermark_timestamp"] == 1100
    assert state["scan_status"] == "completed"

    trades = client.get("/wallets/w1/trades").json()
    assert trades["count"] == 1
    [trade] = trades["trades"]
    assert trade["signature"] == "s1"
    assert trade["direction"] == "BUY"
    assert trade["value_usd"] == pytest.approx(200.0)


def test_trades_since_filter(client):
    client.post("/wallets/w1/scan", json={"address": WALLET})
    assert client.get("/wallets/w1/trades", params={"since": 1101}).json()["count"] == 0
    assert client.get("/wallets/w1/trades", params={"since": 1100}).json()["count"] == 1


def test_refresh_reports_new_trades(client, ledger):
    client.post("/wallets/w1/scan", json={"address": WALLET})
    ledger.add(
        make_tx("s2", 1300, native_sol=0.5, tokens=[(ATA_T, MINT_T, 100.0, 60.0, WALLET)]),
        WALLET,
        ATA_T,
    )
    r = client.post("/wallets/w1/refresh", json={"address": WALLET})
    assert r.status_code == 200
    assert r.json() == {"wallet_id": "w1", "new_trades_count": 1, "new_watermark": 1300}


def test_unknown_wallet_sync_state(client):
    state = client.get("/wallets/nobody/sync-state").json()
    assert state["initial_scan_complete"] is False
    assert state["scan_status"] == "pending"
    assert state["watermark_timestamp"] is None


def test_invalid_address_is_400(client):
    r = client.post("/wallets/w1/scan", json={"address": "0" * 44})
    assert r.status_code == 400


def test_short_address_fails_validation(client):
    r = client.post("/wallets/w1/scan", json={"address": "abc"})
    assert r.status_code == 422


def test_scan_in_progress_is_409(client, orchestrator, monkeypatch):
    monkeypatch.setattr(orchestrator, "is_scanning", lambda wallet_id: True)
    r = client.post("/wallets/w1/scan", json={"address": WALLET})
    assert r.status_code == 409


def test_scan_lease_conflict_is_409(client, orchestrator, monkeypatch):
    async def busy(wallet_id, address, **kwargs):
        raise ScanInProgressError(wallet_id)

    monkeypatch.setattr(orchestrator, "refresh_wallet", busy)
    r = client.post("/wallets/w1/refresh", json={"address": WALLET})
    assert r.status_code == 409


def test_upstream_failure_is_502(client, ledger):
    ledger.failing_addresses.add(WALLET)
    r = client.post("/wallets/w1/scan", json={"address": WALLET})
    assert r.status_code == 502
    assert client.get("/wallets/w1/sync-state").json()["scan_status"] == "failed"


def test_store_failure_is_503(client, store, monkeypatch):
    def boom(wallet_id, trades):
        raise PersistenceError("disk full")

    monkeypatch.setattr(store, "upsert_trades", boom)
    r = client.post("/wallets/w1/scan", json={"address": WALLET})
    assert r.status_code == 503


def test_background_scan_returns_202(client):
    r = client.post("/wallets/w1/scan", params={"background": "true"}, json={"address": WALLET})
    assert r.status_code == 202
    assert r.json() == {"wallet_id": "w1", "accepted": True}
    # background tasks run before TestClient returns
    assert client.get("/wallets/w1/trades").json()["count"] == 1
