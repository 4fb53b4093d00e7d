from __future__ import annotations

import asyncio

import pytest

from app.core.config import Settings
from app.core.networks import BridgeRegistry
from app.domain import DiscoveryOptions
from ingestion.client import build_event_sources, close_sources
from ingestion.errors import EventSourceError


@pytest.mark.network
def test_rpc_source_live_fetches_recent_events():
    registry = BridgeRegistry.from_settings(Settings())
    bridge = registry.bridge("USDC_EXPORT")
    sources = build_event_sources(registry.network(bridge.network_key))

    async def _fetch():
        try:
            return await sources[0].fetch_events(bridge, DiscoveryOptions(limit=5, range_hours=1))
        finally:
            await close_sources(sources)

    try:
        batch = asyncio.run(_fetch())
    except EventSourceError as exc:
        pytest.skip(f"Ethereum RPC unavailable: {exc}")

    assert len(batch.transfers) <= 5
    assert len(batch.claims) <= 5
    for transfer in batch.transfers:
        assert transfer.bridge_address.lower() == bridge.address.lower()
        assert transfer.transaction_hash.startswith("0x")
