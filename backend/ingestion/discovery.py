"""Concurrent discovery of transfer and claim events across every configured bridge."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Callable, Iterable, Sequence

from loguru import logger

from app.core.networks import BridgeRegistry
from app.domain import (
    BridgeDescriptor,
    BridgeResult,
    Claim,
    ClaimDetails,
    DiscoveryOptions,
    DiscoveryProgress,
    DiscoveryResult,
    DiscoveryStats,
    NetworkConfig,
)
from ingestion.client import EventSource
from ingestion.errors import DiscoveryFailedError, FetchError
from ingestion.resilience import (
    CircuitBreakerRegistry,
    ResilientFetcher,
    RetryPolicy,
    RetryStatus,
    SleepFn,
)


SourceFactory = Callable[[NetworkConfig], Sequence[EventSource]]
ProgressCallback = Callable[[DiscoveryProgress], None]
BridgeRetryCallback = Callable[[str, RetryStatus], None]


def _chain_order(event) -> tuple[int, int]:
    return (event.block_number or 0, event.log_index)


def dedupe_bridges(bridges: Iterable[BridgeDescriptor]) -> list[BridgeDescriptor]:
    """Drop descriptors that point at a contract already listed on the same network."""
    seen: set[tuple[str, str]] = set()
    unique: list[BridgeDescriptor] = []
    for bridge in bridges:
        identity = (bridge.network_key, bridge.address.lower())
        if identity in seen:
            logger.warning("Skipping duplicate bridge {} ({})", bridge.key, bridge.address)
            continue
        seen.add(identity)
        unique.append(bridge)
    return unique


def apply_claim_details(claim: Claim, details: ClaimDetails) -> None:
    claim.current_outcome = details.current_outcome
    claim.yes_stake = details.yes_stake
    claim.no_stake = details.no_stake
    claim.expiry_timestamp = details.expiry_timestamp
    claim.finished = details.finished
    claim.withdrawn = details.withdrawn
    claim.period_number = details.period_number
    if details.claimant_address:
        claim.claimant_address = details.claimant_address


class ParallelDiscoveryCoordinator:
    """Scans bridges concurrently, each through its own resilient fetcher.

    A failing bridge is recorded on its :class:`BridgeResult` and left out of
    the aggregates. The run only fails when no bridge returned data.
    """

    def __init__(
        self,
        registry: BridgeRegistry,
        *,
        source_factory: SourceFactory,
        policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        max_concurrency: int = 8,
        on_progress: ProgressCallback | None = None,
        on_retry: BridgeRetryCallback | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.registry = registry
        self.source_factory = source_factory
        self.policy = policy or RetryPolicy()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.max_concurrency = max(1, max_concurrency)
        self.on_progress = on_progress
        self.on_retry = on_retry
        self._sleep = sleep
        self.progress = DiscoveryProgress()
        self._sources: dict[str, list[EventSource]] = {}

    def _sources_for(self, network_key: str) -> list[EventSource]:
        sources = self._sources.get(network_key)
        if sources is None:
            sources = list(self.source_factory(self.registry.network(network_key)))
            self._sources[network_key] = sources
        return sources

    def _fetcher(self, bridge: BridgeDescriptor, sources: Sequence[EventSource]) -> ResilientFetcher:
        def _notify(status: RetryStatus) -> None:
            if self.on_retry is not None:
                self.on_retry(bridge.key, status)

        return ResilientFetcher(
            [source.name for source in sources],
            policy=self.policy,
            breakers=self.breakers,
            on_retry=_notify,
            sleep=self._sleep,
        )

    def _report(self) -> None:
        if self.on_progress is not None:
            self.on_progress(replace(self.progress))

    async def _scan_bridge(
        self, bridge: BridgeDescriptor, options: DiscoveryOptions
    ) -> BridgeResult:
        sources = self._sources_for(bridge.network_key)
        by_name = {source.name: source for source in sources}
        fetcher = self._fetcher(bridge, sources)

        async def _fetch(name: str, range_hours: float | None):
            request = DiscoveryOptions(
                limit=options.limit,
                range_hours=range_hours if range_hours is not None else options.range_hours,
            )
            return await by_name[name].fetch_events(bridge, request)

        try:
            outcome = await fetcher.run(_fetch, target=bridge.key, range_hours=options.range_hours)
        except FetchError as exc:
            logger.error("Discovery failed for bridge {}: {}", bridge.key, exc)
            return BridgeResult(bridge=bridge, error=str(exc))

        batch = outcome.value
        return BridgeResult(
            bridge=bridge,
            transfers=sorted(batch.transfers, key=_chain_order),
            claims=sorted(batch.claims, key=_chain_order),
            source=outcome.source,
            range_hours=outcome.range_hours,
        )

    async def _run_bridge(
        self,
        bridge: BridgeDescriptor,
        options: DiscoveryOptions,
        semaphore: asyncio.Semaphore,
    ) -> BridgeResult:
        async with semaphore:
            try:
                result = await self._scan_bridge(bridge, options)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected error while scanning bridge {}", bridge.key)
                result = BridgeResult(bridge=bridge, error=f"{exc.__class__.__name__}: {exc}")
        self.progress.bridges_completed += 1
        if result.succeeded:
            self.progress.events_found += result.event_count
        self._report()
        return result

    async def discover(
        self,
        bridges: Sequence[BridgeDescriptor] | None = None,
        options: DiscoveryOptions | None = None,
        *,
        load_claim_details: bool = False,
    ) -> DiscoveryResult:
        options = options or DiscoveryOptions()
        targets = dedupe_bridges(self.registry.bridges if bridges is None else bridges)
        self.progress = DiscoveryProgress(total_bridges=len(targets))
        self._report()
        if not targets:
            logger.warning("Discovery requested with no bridges configured")
            return DiscoveryResult()

        logger.info(
            "Starting discovery across {} bridges (range={}h limit={} concurrency={})",
            len(targets),
            options.range_hours,
            options.limit,
            self.max_concurrency,
        )
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results = await asyncio.gather(
            *(self._run_bridge(bridge, options, semaphore) for bridge in targets)
        )

        result = DiscoveryResult(bridge_results=list(results))
        stats = DiscoveryStats(total_bridges=len(targets))
        for bridge_result in results:
            if not bridge_result.succeeded:
                continue
            stats.successful_bridges += 1
            result.all_transfers.extend(bridge_result.transfers)
            result.all_claims.extend(bridge_result.claims)
        stats.total_transfers = len(result.all_transfers)
        stats.total_claims = len(result.all_claims)
        stats.total_events = stats.total_transfers + stats.total_claims
        result.stats = stats

        if stats.successful_bridges == 0:
            raise DiscoveryFailedError(
                {item.bridge.key: item.error or "unknown error" for item in results}
            )

        logger.info(
            "Discovery finished: {}/{} bridges, {} transfers, {} claims",
            stats.successful_bridges,
            stats.total_bridges,
            stats.total_transfers,
            stats.total_claims,
        )
        if load_claim_details:
            await self.load_claim_details(result)
        return result

    async def fetch_claim_details(self, bridge: BridgeDescriptor, claim_num: int) -> ClaimDetails:
        sources = self._sources_for(bridge.network_key)
        by_name = {source.name: source for source in sources}
        fetcher = self._fetcher(bridge, sources)

        async def _fetch(name: str, _range_hours: float | None) -> ClaimDetails:
            return await by_name[name].fetch_claim_details(bridge, claim_num)

        outcome = await fetcher.run(_fetch, target=f"{bridge.key}#{claim_num}")
        return outcome.value

    async def load_claim_details(self, result: DiscoveryResult) -> None:
        """Fill lifecycle fields of every discovered claim from its bridge."""
        pending = [
            (item.bridge, claim)
            for item in result.bridge_results
            if item.succeeded
            for claim in item.claims
        ]
        self.progress.total_claims = len(pending)
        self.progress.claim_data_loaded = 0
        self._report()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _load(bridge: BridgeDescriptor, claim: Claim) -> None:
            async with semaphore:
                try:
                    details = await self.fetch_claim_details(bridge, claim.claim_num)
                except FetchError as exc:
                    logger.warning(
                        "Could not load details of claim {} on {}: {}",
                        claim.claim_num,
                        bridge.key,
                        exc,
                    )
                else:
                    apply_claim_details(claim, details)
            self.progress.claim_data_loaded += 1
            self._report()

        await asyncio.gather(*(_load(bridge, claim) for bridge, claim in pending))
