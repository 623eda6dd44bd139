"""
Tests for AccountDiscovery: work-queue, visited set, failure semantics.
"""

from __future__ import annotations

import pytest

from conftest import ATA_T, ATA_U, MINT_T, MINT_U, WALLET
from backend_tradesync.core.exceptions import TransientUpstreamError
from backend_tradesync.ledger.models import DiscoveredAccount
from backend_tradesync.sync.discovery import AccountDiscovery


@pytest.mark.asyncio
async def test_drain_returns_root_and_owned_accounts(ledger):
    ledger.owned[WALLET] = [
        DiscoveredAccount(ATA_T, MINT_T, WALLET),
        DiscoveredAccount(ATA_U, MINT_U, WALLET),
    ]
    discovery = AccountDiscovery(ledger, WALLET)
    batch = await discovery.drain()
    assert [a.address for a in batch] == [WALLET, ATA_T, ATA_U]
    assert batch[0].source == "root"
    assert await discovery.drain() == []
    assert discovery.visited == frozenset({WALLET, ATA_T, ATA_U})


@pytest.mark.asyncio
async def test_offer_rejects_visited_and_feeds_next_drain(ledger):
    ledger.owned[WALLET] = [DiscoveredAccount(ATA_T, MINT_T, WALLET)]
    discovery = AccountDiscovery(ledger, WALLET)
    await discovery.drain()

    closed = DiscoveredAccount("ClosedAta111", MINT_U, WALLET, source="historical")
    assert discovery.offer([closed, DiscoveredAccount(ATA_T, MINT_T, WALLET)]) == 1
    assert discovery.offer([closed]) == 0
    batch = await discovery.drain()
    assert [a.address for a in batch] == ["ClosedAta111"]


@pytest.mark.asyncio
async def test_root_failure_is_fatal(ledger):
    ledger.failing_addresses.add(WALLET)
    discovery = AccountDiscovery(ledger, WALLET)
    with pytest.raises(TransientUpstreamError):
        await discovery.drain()


@pytest.mark.asyncio
async def test_sub_account_failure_is_skipped(ledger):
    ledger.owned[WALLET] = [
        DiscoveredAccount(ATA_T, MINT_T, WALLET),
        DiscoveredAccount(ATA_U, MINT_U, WALLET),
    ]
    ledger.failing_addresses.add(ATA_T)
    discovery = AccountDiscovery(ledger, WALLET)
    batch = await discovery.drain()
    assert {a.address for a in batch} == {WALLET, ATA_T, ATA_U}
    assert discovery.skipped == [ATA_T]
