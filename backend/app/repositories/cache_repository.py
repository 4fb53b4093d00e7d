"""Key-value persistence for the local discovery cache."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.models import CacheEntry, utcnow


class CacheRepository:
    """Encapsulate reads and whole-value writes of cache entries."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, key: str) -> CacheEntry | None:
        return self._session.get(CacheEntry, key)

    def get_many(self, keys: Iterable[str]) -> dict[str, CacheEntry]:
        wanted = list(keys)
        if not wanted:
            return {}
        query = select(CacheEntry).where(CacheEntry.key.in_(wanted))
        return {entry.key: entry for entry in self._session.execute(query).scalars()}

    def put(self, key: str, value: str, *, updated_at: datetime | None = None) -> CacheEntry:
        timestamp = updated_at or utcnow()
        entry = self._session.get(CacheEntry, key)
        if entry is None:
            entry = CacheEntry(key=key, value=value, updated_at=timestamp)
            self._session.add(entry)
        else:
            entry.value = value
            entry.updated_at = timestamp
        return entry

    def delete(self, keys: Iterable[str] | None = None) -> int:
        statement = delete(CacheEntry)
        if keys is not None:
            statement = statement.where(CacheEntry.key.in_(list(keys)))
        result = self._session.execute(statement)
        return result.rowcount or 0

    def keys(self) -> list[str]:
        return list(self._session.execute(select(CacheEntry.key)).scalars())
