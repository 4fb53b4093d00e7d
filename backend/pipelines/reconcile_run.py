from __future__ import annotations

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.core.networks import BridgeRegistry
from app.db import SessionLocal, init_db
from app.domain import (
    BridgeDescriptor,
    DiscoveryOptions,
    DiscoveryResult,
    ReconciliationResult,
)
from app.services.cache_service import LocalCache
from app.services.reconciliation import ReconciliationEngine
from ingestion.client import rpc_source_factory
from ingestion.discovery import ParallelDiscoveryCoordinator, SourceFactory
from ingestion.errors import DiscoveryFailedError
from ingestion.resilience import (
    CircuitBreakerRegistry,
    RetryPolicy,
    RetryStatus,
    SleepFn,
)


EXIT_OK = 0
EXIT_DISCOVERY_FAILED = 1
EXIT_FRAUD_DETECTED = 2


@dataclass(slots=True)
class ReconcileSummary:
    run_id: str
    started_at: datetime
    range_hours: float
    limit: int
    dry_run: bool
    bridges: list[str] = field(default_factory=list)
    finished_at: datetime | None = None
    status: str = "running"
    discovery: dict[str, int] = field(default_factory=dict)
    reconciliation: dict[str, int] = field(default_factory=dict)
    fraud_detected: bool = False
    retries: int = 0
    cached: bool = False
    failures: list[dict[str, str]] = field(default_factory=list)
    suspicious: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "range_hours": self.range_hours,
            "limit": self.limit,
            "dry_run": self.dry_run,
            "bridges": self.bridges,
            "status": self.status,
            "discovery": self.discovery,
            "reconciliation": self.reconciliation,
            "fraud_detected": self.fraud_detected,
            "retries": self.retries,
            "cached": self.cached,
            "failures": self.failures,
            "suspicious": self.suspicious,
        }

    def record_discovery(self, discovery: DiscoveryResult) -> None:
        self.discovery = discovery.stats.to_dict()
        for item in discovery.bridge_results:
            if not item.succeeded:
                self.failures.append({"bridge": item.bridge.key, "error": item.error or ""})

    def record_reconciliation(self, result: ReconciliationResult) -> None:
        self.reconciliation = result.stats.to_dict()
        self.fraud_detected = result.fraud_detected
        for record in result.suspicious_claims:
            claim = record.claim
            if claim is None:
                continue
            self.suspicious.append(
                {
                    "bridge_address": claim.bridge_address,
                    "network_key": claim.network_key,
                    "claim_num": claim.claim_num,
                    "txid": claim.txid,
                    "reason": record.reason,
                    "duplicate_of": record.duplicate_of,
                    "mismatches": [
                        {"field": entry.field, "reason": entry.reason}
                        for entry in record.mismatches()
                    ],
                }
            )


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Discover bridge transfers and claims, then flag suspicious claims"
    )
    parser.add_argument(
        "--range-hours",
        type=float,
        default=settings.discovery_range_hours,
        help="History search depth in hours",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.discovery_limit,
        help="Maximum number of events of each kind fetched per bridge",
    )
    parser.add_argument(
        "--bridge",
        action="append",
        default=None,
        help="Restrict discovery to bridge key (repeatable)",
    )
    parser.add_argument(
        "--no-claim-details",
        action="store_true",
        help="Skip loading claim lifecycle fields after discovery",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Reconcile without writing anything to the local cache",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    parser.add_argument(
        "--fail-on-fraud",
        action="store_true",
        help=f"Exit with status {EXIT_FRAUD_DETECTED} when any claim is suspicious",
    )
    return parser.parse_args(argv)


def _select_bridges(
    registry: BridgeRegistry, keys: Sequence[str] | None
) -> list[BridgeDescriptor]:
    if not keys:
        return registry.bridges
    wanted = set(keys)
    selected = [bridge for bridge in registry.bridges if bridge.key in wanted]
    unknown = sorted(wanted - {bridge.key for bridge in selected})
    if unknown:
        logger.warning("Ignoring unknown bridge keys: {}", ", ".join(unknown))
    return selected


@asynccontextmanager
async def _source_scope(
    settings: Settings, source_factory: SourceFactory | None
) -> AsyncIterator[SourceFactory]:
    if source_factory is not None:
        yield source_factory
        return
    async with rpc_source_factory(settings) as factory:
        yield factory


async def _discover(
    settings: Settings,
    registry: BridgeRegistry,
    bridges: Sequence[BridgeDescriptor],
    options: DiscoveryOptions,
    *,
    load_claim_details: bool,
    source_factory: SourceFactory | None,
    on_retry: Callable[[str, RetryStatus], None],
    sleep: SleepFn | None,
) -> DiscoveryResult:
    async with _source_scope(settings, source_factory) as factory:
        coordinator = ParallelDiscoveryCoordinator(
            registry,
            source_factory=factory,
            policy=RetryPolicy.from_settings(settings),
            breakers=CircuitBreakerRegistry.from_settings(settings),
            max_concurrency=settings.discovery_max_concurrency,
            on_retry=on_retry,
            sleep=sleep,
        )
        return await coordinator.discover(
            bridges, options, load_claim_details=load_claim_details
        )


def _persist(
    cache: LocalCache,
    discovery: DiscoveryResult,
    result: ReconciliationResult,
    options: DiscoveryOptions,
    settings: Settings,
    bridges: Sequence[BridgeDescriptor],
) -> bool:
    try:
        cache.save_raw(discovery.all_transfers, discovery.all_claims)
        cache.save_aggregated(result)
        cache.save_settings(
            {
                "limit": options.limit,
                "range_hours": options.range_hours,
                "use_testnet": settings.use_testnet,
                "bridges": [bridge.key for bridge in bridges],
            }
        )
    except SQLAlchemyError as exc:
        logger.warning("Reconciliation results were not cached: {}", exc)
        return False
    return True


def _write_summary(path: Path, summary: ReconcileSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def run_pipeline(
    args: argparse.Namespace,
    settings: Settings,
    *,
    registry: BridgeRegistry | None = None,
    source_factory: SourceFactory | None = None,
    cache: LocalCache | None = None,
    engine: ReconciliationEngine | None = None,
    init_db_fn: Callable[[], None] = init_db,
    sleep: SleepFn | None = None,
    now: datetime | None = None,
) -> ReconcileSummary:
    registry = registry or BridgeRegistry.from_settings(settings)
    bridges = _select_bridges(registry, args.bridge)
    options = DiscoveryOptions(limit=args.limit, range_hours=args.range_hours)
    summary = ReconcileSummary(
        run_id=uuid4().hex,
        started_at=now or datetime.now(timezone.utc),
        range_hours=options.range_hours,
        limit=options.limit,
        dry_run=args.dry_run,
        bridges=[bridge.key for bridge in bridges],
    )

    def _count_retry(bridge_key: str, status: RetryStatus) -> None:
        summary.retries += 1
        logger.info(
            "Bridge {} retry {}/{} on {} ({})",
            bridge_key,
            status.attempt,
            status.max_attempts,
            status.source,
            status.error,
        )

    logger.info(
        "Starting reconcile run {} over {} bridges (range={}h limit={} dry_run={})",
        summary.run_id,
        len(bridges),
        options.range_hours,
        options.limit,
        args.dry_run,
    )
    try:
        discovery = asyncio.run(
            _discover(
                settings,
                registry,
                bridges,
                options,
                load_claim_details=not args.no_claim_details,
                source_factory=source_factory,
                on_retry=_count_retry,
                sleep=sleep,
            )
        )
    except DiscoveryFailedError as exc:
        logger.error("Reconcile run {} failed: {}", summary.run_id, exc)
        summary.status = "failed"
        summary.failures = [
            {"bridge": key, "error": reason} for key, reason in sorted(exc.failures.items())
        ]
        summary.finished_at = datetime.now(timezone.utc)
        if args.summary_path:
            _write_summary(args.summary_path, summary)
        return summary

    summary.record_discovery(discovery)
    result = (engine or ReconciliationEngine()).reconcile(
        discovery.all_claims, discovery.all_transfers
    )
    summary.record_reconciliation(result)

    if not args.dry_run:
        if cache is None:
            init_db_fn()
            cache = LocalCache(
                SessionLocal, refresh_window_seconds=settings.claim_refresh_window_seconds
            )
        summary.cached = _persist(cache, discovery, result, options, settings, bridges)

    summary.status = "completed"
    summary.finished_at = datetime.now(timezone.utc)
    if result.fraud_detected:
        logger.warning(
            "Reconcile run {} flagged {} suspicious claims",
            summary.run_id,
            len(summary.suspicious),
        )
    logger.info(
        "Reconcile run {} finished: {} completed, {} suspicious, {} pending",
        summary.run_id,
        result.stats.completed_transfers,
        result.stats.suspicious_claims,
        result.stats.pending_transfers,
    )
    if args.summary_path:
        _write_summary(args.summary_path, summary)
    return summary


def exit_code(summary: ReconcileSummary, *, fail_on_fraud: bool) -> int:
    if summary.status == "failed":
        return EXIT_DISCOVERY_FAILED
    if fail_on_fraud and summary.fraud_detected:
        return EXIT_FRAUD_DETECTED
    return EXIT_OK


def main() -> None:
    args = _parse_args()
    settings = get_settings()
    summary = run_pipeline(args, settings)
    sys.exit(exit_code(summary, fail_on_fraud=args.fail_on_fraud))


if __name__ == "__main__":
    main()
