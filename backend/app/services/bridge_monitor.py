"""Display-facing facade tying discovery, reconciliation and the local cache together."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings
from app.core.networks import BridgeRegistry
from app.domain import (
    Claim,
    DiscoveryOptions,
    DiscoveryProgress,
    DiscoveryResult,
    ReconciliationResult,
    TransferEvent,
)
from app.services.cache_service import LocalCache
from app.services.reconciliation import ReconciliationEngine
from ingestion.client import rpc_source_factory
from ingestion.discovery import (
    ParallelDiscoveryCoordinator,
    SourceFactory,
    apply_claim_details,
)
from ingestion.errors import DiscoveryInProgressError
from ingestion.resilience import (
    CircuitBreakerRegistry,
    RetryPolicy,
    RetryStatus,
    SleepFn,
)


class UnknownClaimError(LookupError):
    """Raised when a claim cannot be mapped to a configured bridge."""


@dataclass(slots=True)
class CachedView:
    result: ReconciliationResult
    claims: list[Claim]
    transfers: list[TransferEvent]


class BridgeMonitorService:
    """Owns the discovery guard and the state shown to the display layer."""

    def __init__(
        self,
        settings: Settings,
        *,
        cache: LocalCache,
        registry: BridgeRegistry | None = None,
        source_factory: SourceFactory | None = None,
        engine: ReconciliationEngine | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.registry = registry or BridgeRegistry.from_settings(settings)
        self.engine = engine or ReconciliationEngine()
        self.breakers = breakers or CircuitBreakerRegistry.from_settings(settings)
        self.policy = RetryPolicy.from_settings(settings)
        self.retry_status: dict[str, RetryStatus] = {}
        self.last_discovery: DiscoveryResult | None = None
        self._source_factory = source_factory
        self._sleep = sleep
        self._progress = DiscoveryProgress(total_bridges=len(self.registry.bridges))
        self._aggregated: ReconciliationResult | None = None
        self._claims: list[Claim] = []
        self._transfers: list[TransferEvent] = []
        self._is_refreshing = False
        self._claim_refreshes = 0
        self._is_showing_cached = False

    # ------------------------------------------------------------------
    # Read-only views

    @property
    def progress(self) -> DiscoveryProgress:
        return replace(self._progress)

    @property
    def aggregated(self) -> ReconciliationResult | None:
        return self._aggregated

    @property
    def is_refreshing(self) -> bool:
        return self._is_refreshing

    @property
    def is_busy(self) -> bool:
        """True while a discovery run or a claim refresh may still change the view."""
        return self._is_refreshing or self._claim_refreshes > 0

    @property
    def cache_status(self) -> dict[str, Any]:
        return self.cache.status(
            is_showing_cached=self._is_showing_cached, is_refreshing=self._is_refreshing
        )

    def find_claim(self, bridge_address: str, claim_num: int) -> Claim | None:
        key = f"{bridge_address.lower()}-{claim_num}"
        return next((claim for claim in self._claims if claim.cache_key == key), None)

    def default_options(self) -> DiscoveryOptions:
        return DiscoveryOptions(
            limit=self.settings.discovery_limit,
            range_hours=self.settings.discovery_range_hours,
        )

    # ------------------------------------------------------------------
    # Internals

    @asynccontextmanager
    async def _sources(self) -> AsyncIterator[SourceFactory]:
        if self._source_factory is not None:
            yield self._source_factory
            return
        async with rpc_source_factory(self.settings) as factory:
            yield factory

    def _coordinator(self, source_factory: SourceFactory) -> ParallelDiscoveryCoordinator:
        return ParallelDiscoveryCoordinator(
            self.registry,
            source_factory=source_factory,
            policy=self.policy,
            breakers=self.breakers,
            max_concurrency=self.settings.discovery_max_concurrency,
            on_progress=self._on_progress,
            on_retry=self._on_retry,
            sleep=self._sleep,
        )

    def _on_progress(self, progress: DiscoveryProgress) -> None:
        self._progress = progress

    def _on_retry(self, bridge_key: str, status: RetryStatus) -> None:
        self.retry_status[bridge_key] = status
        logger.info(
            "Bridge {} retry {}/{} on {} in {:.2f}s ({})",
            bridge_key,
            status.attempt,
            status.max_attempts,
            status.source,
            status.delay,
            status.error,
        )

    def _persist(
        self,
        result: ReconciliationResult,
        options: DiscoveryOptions,
        transfers: list[TransferEvent],
        claims: list[Claim],
    ) -> None:
        try:
            self.cache.save_raw(transfers, claims)
            self.cache.save_aggregated(result)
            self.cache.save_settings(
                {
                    "limit": options.limit,
                    "range_hours": options.range_hours,
                    "use_testnet": self.settings.use_testnet,
                    "bridges": [bridge.key for bridge in self.registry.bridges],
                }
            )
        except SQLAlchemyError as exc:
            logger.warning("Discovery results were not cached: {}", exc)

    # ------------------------------------------------------------------
    # Operations

    def _read_cached(self, live_claims: list[Claim]) -> CachedView | None:
        result = self.cache.hydrate(live_claims, engine=self.engine)
        if result is None:
            return None
        live = {claim.cache_key: claim for claim in live_claims}
        recent = self.cache.recently_refreshed()
        claims = [
            live.get(claim.cache_key, claim) if claim.cache_key in recent else claim
            for claim in self.cache.load_claims()
        ]
        return CachedView(result=result, claims=claims, transfers=self.cache.load_transfers())

    def _show_cached(self, view: CachedView | None) -> ReconciliationResult | None:
        if view is None:
            logger.info("No cached discovery data available")
            return None
        self._claims = view.claims
        self._transfers = view.transfers
        self._aggregated = view.result
        self._is_showing_cached = True
        logger.info(
            "Loaded cached data: {} completed, {} suspicious, {} pending",
            view.result.stats.completed_transfers,
            view.result.stats.suspicious_claims,
            view.result.stats.pending_transfers,
        )
        return view.result

    def load_cached(self) -> ReconciliationResult | None:
        """Show whatever the cache holds, recomputing pending and suspicious sets."""
        return self._show_cached(self._read_cached(list(self._claims)))

    async def load_cached_async(self) -> ReconciliationResult | None:
        """Same as :meth:`load_cached` with the cache reads moved off the event loop."""
        view = await asyncio.to_thread(self._read_cached, list(self._claims))
        return self._show_cached(view)

    async def refresh(
        self,
        force: bool = False,
        *,
        options: DiscoveryOptions | None = None,
        load_claim_details: bool = True,
    ) -> ReconciliationResult:
        """Run discovery, reconcile and cache the outcome.

        Without ``force`` the cached view is loaded first so it can be shown
        while discovery runs.
        """
        if self._is_refreshing:
            raise DiscoveryInProgressError("Discovery is already in progress")
        self._is_refreshing = True
        try:
            if not force and self._aggregated is None:
                await self.load_cached_async()
            options = options or self.default_options()
            self.retry_status = {}
            async with self._sources() as source_factory:
                coordinator = self._coordinator(source_factory)
                discovery = await coordinator.discover(
                    options=options, load_claim_details=load_claim_details
                )
            self.last_discovery = discovery
            self._claims = list(discovery.all_claims)
            self._transfers = list(discovery.all_transfers)
            result = self.engine.reconcile(self._claims, self._transfers)
            self._aggregated = result
            self._is_showing_cached = False
            await asyncio.to_thread(
                self._persist, result, options, list(self._transfers), list(self._claims)
            )
            return result
        finally:
            self._is_refreshing = False

    def _store_refreshed_claim(self, claim: Claim) -> None:
        try:
            self.cache.save_claim(claim)
            self.cache.mark_claim_refreshed(claim)
        except SQLAlchemyError as exc:
            logger.warning("Refreshed claim {} was not cached: {}", claim.cache_key, exc)

    async def refresh_claim(self, claim: Claim) -> Claim:
        """Reload lifecycle fields of one claim and protect it from stale cache reads."""
        bridge = self.registry.bridge_by_address(claim.bridge_address)
        if bridge is None:
            raise UnknownClaimError(f"No configured bridge at {claim.bridge_address}")

        self._claim_refreshes += 1
        try:
            async with self._sources() as source_factory:
                details = await self._coordinator(source_factory).fetch_claim_details(
                    bridge, claim.claim_num
                )
            target = next(
                (item for item in self._claims if item.cache_key == claim.cache_key), None
            )
            if target is None:
                target = replace(claim)
                self._claims.append(target)
            apply_claim_details(target, details)
            await asyncio.to_thread(self._store_refreshed_claim, target)
            self._aggregated = self.engine.reconcile(self._claims, self._transfers)
            return target
        finally:
            self._claim_refreshes -= 1

    def clear_cache(self) -> int:
        removed = self.cache.clear()
        self._is_showing_cached = False
        return removed
