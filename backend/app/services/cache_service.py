"""Best-effort local cache of discovered events and completed reconciliations."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Sequence

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.domain import (
    Claim,
    ReconciledRecord,
    ReconciliationResult,
    ReconciliationStats,
    ReconciliationStatus,
    TransferEvent,
)
from app.models import utcnow
from app.repositories import CacheRepository
from app.services.reconciliation import (
    ReconciliationEngine,
    record_from_dict,
    record_to_dict,
)
from ingestion.normalize import (
    claim_from_dict,
    claim_to_dict,
    transfer_from_dict,
    transfer_to_dict,
)


CLAIMS_KEY = "claims"
TRANSFERS_KEY = "transfers"
AGGREGATED_KEY = "aggregated"
SETTINGS_KEY = "settings"
TIMESTAMP_KEY = "timestamp"
CLAIM_REFRESHES_KEY = "claim_refreshes"

LOGICAL_KEYS = (CLAIMS_KEY, TRANSFERS_KEY, AGGREGATED_KEY, SETTINGS_KEY)
ALL_KEYS = LOGICAL_KEYS + (TIMESTAMP_KEY, CLAIM_REFRESHES_KEY)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class CacheSnapshot:
    """Raw events and completed records as read back from the cache."""

    claims: list[Claim]
    transfers: list[TransferEvent]
    completed: list[ReconciledRecord]
    aggregated_is_fresh: bool


class LocalCache:
    """Stores each logical key as one row and replaces it wholesale on write.

    ``aggregated`` only ever holds completed records: pending and suspicious
    classifications are recomputed from the raw events on every read.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        refresh_window_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.refresh_window = timedelta(seconds=refresh_window_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Generic key access

    def get(self, key: str) -> Any | None:
        with self._session_factory() as session:
            entry = CacheRepository(session).get(key)
            if entry is None:
                return None
            raw_value = entry.value
        try:
            return json.loads(raw_value)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring corrupt cache entry {}: {}", key, exc)
            return None

    def updated_at(self, key: str) -> datetime | None:
        with self._session_factory() as session:
            entry = CacheRepository(session).get(key)
            return _as_utc(entry.updated_at) if entry is not None else None

    def set(self, key: str, value: Any) -> None:
        """Replace ``key`` and bump the shared last-write timestamp in one transaction."""
        now = self._clock()
        payload = json.dumps(value, sort_keys=True)
        with self._session_factory() as session:
            repository = CacheRepository(session)
            try:
                repository.put(key, payload, updated_at=now)
                if key in LOGICAL_KEYS:
                    repository.put(TIMESTAMP_KEY, json.dumps(now.isoformat()), updated_at=now)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Failed to write cache key {}", key)
                raise

    def clear(self, keys: Iterable[str] | None = None) -> int:
        with self._session_factory() as session:
            removed = CacheRepository(session).delete(keys)
            session.commit()
        logger.info("Cleared {} cache entries", removed)
        return removed

    @property
    def last_updated(self) -> datetime | None:
        value = self.get(TIMESTAMP_KEY)
        if not isinstance(value, str):
            return None
        try:
            return _as_utc(datetime.fromisoformat(value))
        except ValueError:
            logger.warning("Ignoring corrupt cache timestamp {!r}", value)
            return None

    def cache_age(self, now: datetime | None = None) -> float | None:
        last = self.last_updated
        if last is None:
            return None
        return max(0.0, ((now or self._clock()) - last).total_seconds())

    def stored_keys(self) -> list[str]:
        with self._session_factory() as session:
            return sorted(CacheRepository(session).keys())

    def has_cached_data(self) -> bool:
        with self._session_factory() as session:
            entries = CacheRepository(session).get_many([CLAIMS_KEY, TRANSFERS_KEY, AGGREGATED_KEY])
        return bool(entries)

    def status(self, *, is_showing_cached: bool, is_refreshing: bool) -> dict[str, Any]:
        last = self.last_updated
        return {
            "has_cached_data": self.has_cached_data(),
            "is_showing_cached": is_showing_cached,
            "is_refreshing": is_refreshing,
            "last_updated": last,
            "cache_age": self.cache_age() if last is not None else None,
        }

    # ------------------------------------------------------------------
    # Typed helpers

    def save_raw(self, transfers: Sequence[TransferEvent], claims: Sequence[Claim]) -> None:
        self.set(TRANSFERS_KEY, [transfer_to_dict(item) for item in transfers])
        self.set(CLAIMS_KEY, [claim_to_dict(item) for item in claims])

    def save_claim(self, claim: Claim) -> None:
        """Replace one claim inside the cached claim list."""
        stored = self.get(CLAIMS_KEY) or []
        replaced = False
        updated: list[Any] = []
        for item in stored:
            try:
                same = claim_from_dict(item).cache_key == claim.cache_key
            except (ValueError, TypeError, AttributeError):
                same = False
            if same:
                updated.append(claim_to_dict(claim))
                replaced = True
            else:
                updated.append(item)
        if not replaced:
            updated.append(claim_to_dict(claim))
        self.set(CLAIMS_KEY, updated)

    def load_transfers(self) -> list[TransferEvent]:
        transfers: list[TransferEvent] = []
        for item in self.get(TRANSFERS_KEY) or []:
            try:
                transfers.append(transfer_from_dict(item))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Skipping corrupt cached transfer: {}", exc)
        return transfers

    def load_claims(self) -> list[Claim]:
        claims: list[Claim] = []
        for item in self.get(CLAIMS_KEY) or []:
            try:
                claims.append(claim_from_dict(item))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Skipping corrupt cached claim: {}", exc)
        return claims

    def save_aggregated(self, result: ReconciliationResult) -> None:
        self.set(
            AGGREGATED_KEY,
            {"completed_transfers": [record_to_dict(item) for item in result.completed_transfers]},
        )

    def load_completed(self) -> list[ReconciledRecord]:
        payload = self.get(AGGREGATED_KEY)
        if not isinstance(payload, dict):
            return []
        records: list[ReconciledRecord] = []
        for item in payload.get("completed_transfers") or []:
            try:
                record = record_from_dict(item)
            except (KeyError, ValueError, TypeError, AttributeError) as exc:
                logger.warning("Skipping corrupt cached aggregate record: {}", exc)
                continue
            if record.status == ReconciliationStatus.COMPLETED and record.claim is not None:
                records.append(record)
        return records

    def save_settings(self, values: dict[str, Any]) -> None:
        self.set(SETTINGS_KEY, values)

    def load_settings(self) -> dict[str, Any]:
        value = self.get(SETTINGS_KEY)
        return value if isinstance(value, dict) else {}

    # ------------------------------------------------------------------
    # Optimistic claim refreshes

    def _refreshes_within_window(self, now: datetime) -> dict[str, str]:
        refreshes = self.get(CLAIM_REFRESHES_KEY)
        if not isinstance(refreshes, dict):
            return {}
        recent: dict[str, str] = {}
        for key, stamp in refreshes.items():
            try:
                refreshed_at = _as_utc(datetime.fromisoformat(stamp))
            except (TypeError, ValueError):
                continue
            if refreshed_at is not None and now - refreshed_at <= self.refresh_window:
                recent[key] = stamp
        return recent

    def mark_claim_refreshed(self, claim: Claim, at: datetime | None = None) -> None:
        """Record a refresh and drop stamps that already left the window."""
        at = at or self._clock()
        refreshes = self._refreshes_within_window(at)
        refreshes[claim.cache_key] = at.isoformat()
        self.set(CLAIM_REFRESHES_KEY, refreshes)

    def recently_refreshed(self, now: datetime | None = None) -> set[str]:
        return set(self._refreshes_within_window(now or self._clock()))

    # ------------------------------------------------------------------
    # Hydration

    def snapshot(self) -> CacheSnapshot:
        claims_at = self.updated_at(CLAIMS_KEY)
        transfers_at = self.updated_at(TRANSFERS_KEY)
        aggregated_at = self.updated_at(AGGREGATED_KEY)
        raw_times = [stamp for stamp in (claims_at, transfers_at) if stamp is not None]
        aggregated_is_fresh = aggregated_at is not None and (
            not raw_times or aggregated_at >= max(raw_times)
        )
        return CacheSnapshot(
            claims=self.load_claims(),
            transfers=self.load_transfers(),
            completed=self.load_completed() if aggregated_is_fresh else [],
            aggregated_is_fresh=aggregated_is_fresh,
        )

    def hydrate(
        self,
        live_claims: Sequence[Claim] = (),
        *,
        engine: ReconciliationEngine | None = None,
    ) -> ReconciliationResult | None:
        """Rebuild the full classification from cached data.

        Claims refreshed within the optimistic window keep their live copy
        instead of the cached one. When a completed-only aggregate newer than
        the raw events exists, its records stay completed and the engine
        output only supplies the suspicious and pending sets.
        """
        snapshot = self.snapshot()
        if not snapshot.claims and not snapshot.transfers and not snapshot.completed:
            return None

        recent = self.recently_refreshed()
        live = {claim.cache_key: claim for claim in live_claims}
        claims = [
            live[claim.cache_key] if claim.cache_key in recent and claim.cache_key in live else claim
            for claim in snapshot.claims
        ]
        if recent:
            logger.debug("Keeping {} recently refreshed claims out of hydration", len(recent))

        fresh = (engine or ReconciliationEngine()).reconcile(claims, snapshot.transfers)
        if not snapshot.completed:
            return fresh
        return merge_completed(snapshot.completed, fresh)


def merge_completed(
    cached: Sequence[ReconciledRecord], fresh: ReconciliationResult
) -> ReconciliationResult:
    """Add cached completed records the fresh result did not reproduce."""
    completed: dict[tuple[str, int], ReconciledRecord] = {}
    for record in fresh.completed_transfers:
        if record.claim is not None:
            completed[record.claim.identity] = record
    for record in cached:
        if record.claim is not None:
            completed.setdefault(record.claim.identity, record)

    claimed_transfers = {
        record.transfer.identity for record in completed.values() if record.transfer is not None
    }
    suspicious = tuple(
        record
        for record in fresh.suspicious_claims
        if record.claim is None or record.claim.identity not in completed
    )
    pending = tuple(
        record
        for record in fresh.pending_transfers
        if record.transfer is None or record.transfer.identity not in claimed_transfers
    )
    completed_records = tuple(
        sorted(completed.values(), key=lambda record: (record.claim.claim_num, record.claim.network_key))
    )
    stats = ReconciliationStats(
        total_claims=len(completed_records) + len(suspicious),
        total_transfers=fresh.stats.total_transfers,
        completed_transfers=len(completed_records),
        suspicious_claims=len(suspicious),
        pending_transfers=len(pending),
    )
    return ReconciliationResult(
        completed_transfers=completed_records,
        suspicious_claims=suspicious,
        pending_transfers=pending,
        fraud_detected=any(record.is_fraudulent for record in suspicious),
        stats=stats,
    )
