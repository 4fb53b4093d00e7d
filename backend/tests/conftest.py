from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app.core.config import Settings
from app.core.networks import BridgeRegistry
from app.db import build_db_components, init_db
from app.domain import (
    BridgeDescriptor,
    BridgeType,
    Claim,
    NetworkConfig,
    TransferEvent,
    TransferEventType,
)
from app.services.cache_service import LocalCache


EXPORT_BRIDGE = "0x14982dc69e62508b3e4848129a55d6b1960b4db0"
IMPORT_BRIDGE = "0x1a85bd09e186b6edc30d08abb43c673a9636cc4e"
SENDER = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
RECIPIENT = "0xfb6916095ca1df60bb79ce92ce3ea74c37c5d359"
TXID = "0x" + "ab" * 32


class FrozenClock:
    """Settable clock handed to the cache so freshness checks are deterministic."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        cache_database_url=f"sqlite:///{tmp_path/'bridge_cache.db'}",
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        retry_jitter_ratio=0.0,
        discovery_limit=50,
        discovery_range_hours=12.0,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine, factory = build_db_components(test_settings.cache_database_url)
    init_db(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def local_cache(session_factory, clock) -> LocalCache:
    return LocalCache(session_factory, refresh_window_seconds=300, clock=clock)


@pytest.fixture
def make_transfer() -> Callable[..., TransferEvent]:
    """Expatriation from Ethereum into 3DPass that the default claim matches."""

    base = TransferEvent(
        event_type=TransferEventType.EXPATRIATION,
        bridge_address=EXPORT_BRIDGE,
        network_key="ETHEREUM",
        from_network="Ethereum",
        to_network="3DPass",
        sender_address=SENDER,
        recipient_address=RECIPIENT,
        amount="1000000",
        reward="1000",
        data=None,
        transaction_hash=TXID,
        block_number=100,
        timestamp=1_700_000_000,
        log_index=0,
        bridge_type=BridgeType.EXPORT,
    )

    def _build(**overrides) -> TransferEvent:
        return replace(base, **overrides)

    return _build


@pytest.fixture
def make_claim() -> Callable[..., Claim]:
    """Claim on the 3DPass import bridge for the default transfer."""

    def _build(**overrides) -> Claim:
        values = dict(
            bridge_address=IMPORT_BRIDGE,
            network_key="THREEDPASS",
            claim_num=1,
            txid=TXID,
            sender_address=SENDER,
            recipient_address=RECIPIENT,
            amount="1000000",
            reward="1000",
            data=None,
            claimant_address=RECIPIENT,
            txts=1_700_000_000,
            bridge_type=BridgeType.IMPORT_WRAPPER,
            home_network="Ethereum",
            foreign_network="3DPass",
            block_number=500,
        )
        values.update(overrides)
        return Claim(**values)

    return _build


@pytest.fixture
def test_network() -> NetworkConfig:
    return NetworkConfig(
        key="ETHEREUM",
        name="Ethereum",
        chain_id=1,
        rpc_urls=("https://primary.invalid", "https://fallback.invalid"),
        block_time_seconds=12.0,
    )


@pytest.fixture
def make_registry(test_network) -> Callable[[int], BridgeRegistry]:
    """Registry with ``count`` export bridges on a single test network."""

    def _build(count: int = 5) -> BridgeRegistry:
        bridges = [
            BridgeDescriptor(
                key=f"BRIDGE_{index}",
                address=f"0x{index:040x}",
                type=BridgeType.EXPORT,
                network_key=test_network.key,
                home_network="Ethereum",
                foreign_network="3DPass",
            )
            for index in range(1, count + 1)
        ]
        return BridgeRegistry([test_network], bridges)

    return _build


@pytest.fixture
def pipeline_args(tmp_path) -> argparse.Namespace:
    return argparse.Namespace(
        range_hours=6.0,
        limit=25,
        bridge=None,
        no_claim_details=True,
        dry_run=True,
        summary_path=tmp_path / "summary.json",
        fail_on_fraud=False,
    )
