"""
Tests for the scan_wallet command-line tool.
"""

from __future__ import annotations

import json

import pytest

from conftest import ATA_T, MINT_T, WALLET, make_tx
from backend_tradesync.tools import scan_wallet as cli


@pytest.fixture
def wired(orchestrator, ledger, monkeypatch):
    ledger.add(
        make_tx("s1", 1100, native_sol=-2.0, tokens=[(ATA_T, MINT_T, 0.0, 100.0, WALLET)]),
        WALLET,
    )
    monkeypatch.setattr("backend_tradesync.api_server.server.build_orchestrator", lambda: orchestrator)
    return orchestrator


def test_scan_prints_result(wired, capsys):
    assert cli.main(["--wallet-id", "w1", "--address", WALLET, "--quiet"]) == cli.EXIT_OK
    out = json.loads(capsys.readouterr().out)
    assert out == {"trades_found": 1, "new_watermark": 1100, "inserted": 1, "mode": "historical"}


def test_refresh_then_show_trades(wired, capsys):
    cli.main(["--wallet-id", "w1", "--address", WALLET, "--quiet"])
    capsys.readouterr()

    assert cli.main(["--wallet-id", "w1", "--show-trades", "5"]) == cli.EXIT_OK
    [trade] = json.loads(capsys.readouterr().out)
    assert trade["signature"] == "s1"
    assert trade["direction"] == "BUY"

    assert cli.main(["--wallet-id", "w1", "--address", WALLET, "--refresh"]) == cli.EXIT_OK
    captured = capsys.readouterr()
    assert json.loads(captured.out)["new_trades_count"] == 0
    assert "[complete]" in captured.err


def test_invalid_address_exit_code(wired):
    assert cli.main(["--wallet-id", "w1", "--address", "0" * 44]) == cli.EXIT_INVALID


def test_upstream_failure_exit_code(wired, ledger):
    ledger.failing_addresses.add(WALLET)
    assert cli.main(["--wallet-id", "w1", "--address", WALLET, "--quiet"]) == cli.EXIT_FAILED


def test_address_required_without_show_trades():
    with pytest.raises(SystemExit):
        cli.parse_args(["--wallet-id", "w1"])
