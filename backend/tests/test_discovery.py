from __future__ import annotations

import asyncio
from collections import defaultdict

import pytest

from app.domain import (
    BridgeDescriptor,
    BridgeType,
    ClaimDetails,
    ClaimOutcome,
    DiscoveryOptions,
    RawEventBatch,
)
from ingestion.discovery import ParallelDiscoveryCoordinator, dedupe_bridges
from ingestion.errors import DiscoveryFailedError, EventSourceError, RateLimitError
from ingestion.resilience import CircuitBreakerRegistry, RetryPolicy


async def _no_sleep(_delay: float) -> None:
    return None


class FakeSource:
    """In-memory event source scripted per bridge key."""

    def __init__(self, name: str, make_transfer, make_claim) -> None:
        self.name = name
        self.make_transfer = make_transfer
        self.make_claim = make_claim
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.calls: list[tuple[str, float]] = []
        self.details: dict[int, ClaimDetails] = {}

    async def fetch_events(self, bridge: BridgeDescriptor, options: DiscoveryOptions):
        self.calls.append((bridge.key, options.range_hours))
        await asyncio.sleep(0)
        queued = self.failures.get(bridge.key)
        if queued:
            raise queued.pop(0)
        index = int(bridge.key.rsplit("_", 1)[-1])
        txid = "0x" + f"{index:02x}" * 32
        return RawEventBatch(
            transfers=[
                self.make_transfer(
                    bridge_address=bridge.address, transaction_hash=txid, block_number=index
                )
            ],
            claims=[
                self.make_claim(claim_num=index, txid=txid, block_number=index * 10),
            ],
        )

    async def fetch_claim_details(self, bridge: BridgeDescriptor, claim_num: int):
        if claim_num not in self.details:
            raise EventSourceError(f"no claim {claim_num}")
        return self.details[claim_num]


@pytest.fixture
def source(make_transfer, make_claim) -> FakeSource:
    return FakeSource("primary", make_transfer, make_claim)


def _coordinator(registry, sources, *, on_retry=None, on_progress=None, max_concurrency=8):
    return ParallelDiscoveryCoordinator(
        registry,
        source_factory=lambda network: sources,
        policy=RetryPolicy(max_retries=5, base_delay=0.0, max_delay=0.0),
        breakers=CircuitBreakerRegistry(failure_threshold=10),
        max_concurrency=max_concurrency,
        on_progress=on_progress,
        on_retry=on_retry,
        sleep=_no_sleep,
    )


def test_rate_limited_bridge_recovers_and_reports_retries(make_registry, source):
    """Five bridges succeed even though the third is rate limited three times."""
    registry = make_registry(5)
    source.failures["BRIDGE_3"] = [RateLimitError("429 Too Many Requests")] * 3
    retries: dict[str, int] = defaultdict(int)

    def _on_retry(bridge_key, _status):
        retries[bridge_key] += 1

    result = asyncio.run(_coordinator(registry, [source], on_retry=_on_retry).discover())

    assert result.stats.successful_bridges == 5
    assert result.stats.total_bridges == 5
    assert retries == {"BRIDGE_3": 3}
    assert result.stats.total_transfers == 5
    assert result.stats.total_claims == 5
    assert result.stats.total_events == 10


def test_failed_bridge_is_isolated(make_registry, source):
    registry = make_registry(3)
    source.failures["BRIDGE_2"] = [EventSourceError("execution reverted")]

    result = asyncio.run(_coordinator(registry, [source]).discover())

    assert result.stats.successful_bridges == 2
    failed = [item for item in result.bridge_results if not item.succeeded]
    assert [item.bridge.key for item in failed] == ["BRIDGE_2"]
    assert "All sources failed for BRIDGE_2" in failed[0].error
    assert {claim.claim_num for claim in result.all_claims} == {1, 3}


def test_discovery_fails_when_no_bridge_succeeds(make_registry, source):
    registry = make_registry(2)
    source.failures["BRIDGE_1"] = [EventSourceError("down")]
    source.failures["BRIDGE_2"] = [EventSourceError("down")]

    with pytest.raises(DiscoveryFailedError) as excinfo:
        asyncio.run(_coordinator(registry, [source]).discover())

    assert set(excinfo.value.failures) == {"BRIDGE_1", "BRIDGE_2"}


def test_no_bridges_returns_empty_result(make_registry, source):
    result = asyncio.run(_coordinator(make_registry(0), [source]).discover())

    assert result.bridge_results == []
    assert result.stats.total_bridges == 0


def test_progress_reports_every_bridge(make_registry, source):
    snapshots = []

    asyncio.run(
        _coordinator(make_registry(4), [source], on_progress=snapshots.append).discover()
    )

    assert snapshots[0].bridges_completed == 0
    assert snapshots[0].total_bridges == 4
    assert snapshots[-1].bridges_completed == 4
    assert snapshots[-1].events_found == 8


def test_options_are_forwarded_to_sources(make_registry, source):
    asyncio.run(
        _coordinator(make_registry(2), [source]).discover(
            options=DiscoveryOptions(limit=10, range_hours=3.0)
        )
    )

    assert sorted(source.calls) == [("BRIDGE_1", 3.0), ("BRIDGE_2", 3.0)]


def test_concurrency_ceiling_is_respected(make_registry, make_transfer, make_claim):
    active = 0
    peak = 0

    class SlowSource(FakeSource):
        async def fetch_events(self, bridge, options):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await super().fetch_events(bridge, options)

    slow = SlowSource("primary", make_transfer, make_claim)

    asyncio.run(_coordinator(make_registry(6), [slow], max_concurrency=2).discover())

    assert peak == 2


def test_claim_details_are_loaded(make_registry, source):
    source.details[1] = ClaimDetails(
        current_outcome=ClaimOutcome.NO,
        yes_stake="10",
        no_stake="25",
        expiry_timestamp=1_700_100_000,
        finished=True,
        withdrawn=False,
        period_number=2,
        claimant_address="0x00000000000000000000000000000000000000aa",
    )
    coordinator = _coordinator(make_registry(2), [source])

    result = asyncio.run(coordinator.discover(load_claim_details=True))

    claims = {claim.claim_num: claim for claim in result.all_claims}
    assert claims[1].current_outcome == ClaimOutcome.NO
    assert claims[1].finished is True
    assert claims[1].period_number == 2
    assert claims[2].finished is False
    assert coordinator.progress.claim_data_loaded == 2
    assert coordinator.progress.total_claims == 2


def test_dedupe_bridges_by_network_and_address(make_registry):
    bridges = make_registry(2).bridges
    copy = BridgeDescriptor(
        key="COPY",
        address=bridges[0].address.upper().replace("0X", "0x"),
        type=BridgeType.EXPORT,
        network_key=bridges[0].network_key,
        home_network="Ethereum",
        foreign_network="3DPass",
    )

    assert [bridge.key for bridge in dedupe_bridges([*bridges, copy])] == ["BRIDGE_1", "BRIDGE_2"]
