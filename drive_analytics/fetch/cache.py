"""
Persistent request cache and in-flight request deduplication.

``PersistentCache`` keeps every entry in an in-memory dict so reads are
synchronous. Writes and deletes update the dict immediately and are
queued; the queue is written to SQLite in one transaction after a short
batching window. If the database cannot be opened the cache keeps
working from memory only.
"""
import asyncio
import json
import sqlite3
import time
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional, Sequence

from drive_analytics.data.schemas import LogSample, Polygon
from drive_analytics.fetch.paginator import FetchResult, PaginatedFetcher, make_fetch_key
from drive_analytics.utils.config import CacheSettings
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key       TEXT PRIMARY KEY,
    value     TEXT NOT NULL,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cache_entries_timestamp ON cache_entries (timestamp);
"""

# Queued deletion marker
_DELETE = None


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Open the cache database, creating its directory if needed."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.executescript(_SCHEMA)
    conn.commit()
    return conn


@dataclass
class _Entry:
    value: Any
    timestamp: float


class PersistentCache:
    """
    Write-behind key/value cache over SQLite.

    Values must be JSON serialisable. Example:

        >>> cache = PersistentCache(Path(".cache/demo.sqlite3")).open()
        >>> cache.set("logs::101", {"samples": []})
        >>> cache.get("logs::101")
        {'samples': []}
        >>> cache.close()
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        expiry_days: float = 7.0,
        flush_interval_s: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            path: SQLite file; ``None`` gives a memory-only cache
            expiry_days: Entries older than this are purged when opened
            flush_interval_s: Batching window for queued writes
            clock: Wall-clock source (seconds since the epoch)
        """
        self.path = Path(path) if path is not None else None
        self.expiry_days = expiry_days
        self.flush_interval_s = flush_interval_s
        self._clock = clock
        self._mirror: Dict[str, _Entry] = {}
        self._pending: Dict[str, Optional[_Entry]] = {}
        self._conn: Optional[sqlite3.Connection] = None
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._opened = False

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> 'PersistentCache':
        return cls(
            path=settings.path if settings.enabled else None,
            expiry_days=settings.expiry_days,
            flush_interval_s=settings.flush_interval_s,
        )

    @property
    def durable(self) -> bool:
        """True when entries are being written to disk."""
        return self._conn is not None

    def open(self) -> 'PersistentCache':
        """Open the store, purge expired entries and load the rest."""
        if self._opened:
            return self
        self._opened = True
        if self.path is None:
            return self

        try:
            conn = get_connection(self.path)
            cutoff = self._clock() - self.expiry_days * SECONDS_PER_DAY
            with conn:
                purged = conn.execute(
                    "DELETE FROM cache_entries WHERE timestamp < ?", (cutoff,)
                ).rowcount
            rows = conn.execute("SELECT key, value, timestamp FROM cache_entries").fetchall()
        except (sqlite3.Error, OSError) as e:
            logger.warning("cache_store_unavailable", path=str(self.path), error=str(e))
            return self

        loaded = 0
        for row in rows:
            try:
                value = json.loads(row['value'])
            except ValueError:
                continue
            # Writes made before open() win over stored values
            self._mirror.setdefault(row['key'], _Entry(value, row['timestamp']))
            loaded += 1

        self._conn = conn
        logger.info("cache_opened", path=str(self.path), entries=loaded, purged=purged)
        if self._pending:
            self._schedule_flush()
        return self

    def __len__(self):
        return len(self._mirror)

    def __contains__(self, key: str) -> bool:
        return key in self._mirror

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._mirror))

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._mirror.get(key)
        return default if entry is None else entry.value

    def age(self, key: str) -> Optional[float]:
        """Seconds since ``key`` was written, or ``None`` if absent."""
        entry = self._mirror.get(key)
        return None if entry is None else self._clock() - entry.timestamp

    def set(self, key: str, value: Any) -> None:
        entry = _Entry(value, self._clock())
        self._mirror[key] = entry
        self._pending[key] = entry
        self._schedule_flush()

    def delete(self, key: str) -> None:
        self._mirror.pop(key, None)
        self._pending[key] = _DELETE
        self._schedule_flush()

    def clear(self) -> None:
        for key in list(self._mirror):
            self.delete(key)

    def _schedule_flush(self) -> None:
        if self._conn is None or self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (scripts, sync callers): write through
            self.flush()
            return
        self._flush_handle = loop.call_later(self.flush_interval_s, self.flush)

    def flush(self) -> int:
        """
        Write queued changes in one transaction.

        Returns:
            Number of keys written or deleted
        """
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if self._conn is None or not self._pending:
            return 0

        batch, self._pending = self._pending, {}
        upserts = []
        deletes = []
        for key, entry in batch.items():
            if entry is _DELETE:
                deletes.append((key,))
            else:
                upserts.append((key, json.dumps(entry.value, default=str), entry.timestamp))

        try:
            with self._conn:
                if upserts:
                    self._conn.executemany(
                        "INSERT OR REPLACE INTO cache_entries (key, value, timestamp) VALUES (?, ?, ?)",
                        upserts,
                    )
                if deletes:
                    self._conn.executemany("DELETE FROM cache_entries WHERE key = ?", deletes)
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error("cache_flush_failed", keys=len(batch), error=str(e))
            # Requeue for the next flush; entries queued meanwhile are newer
            for key, entry in batch.items():
                self._pending.setdefault(key, entry)
            return 0

        logger.debug("cache_flushed", upserts=len(upserts), deletes=len(deletes))
        return len(batch)

    def close(self) -> None:
        """Flush pending writes and close the database."""
        self.flush()
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class RequestDeduplicator:
    """
    At most one in-flight task per key; concurrent callers share it.

    Example:
        >>> dedup = RequestDeduplicator()
        >>> a, b = await asyncio.gather(dedup.run("k", load), dedup.run("k", load))
        >>> # load() ran once
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug("request_deduplicated", key=key)
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]


def _normalise_filter_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return ",".join(sorted(str(v) for v in value))
    if isinstance(value, Mapping):
        return json.dumps(value, sort_keys=True, default=str)
    return value


def make_cache_key(base: str, filters: Optional[Mapping[str, Any]] = None) -> str:
    """
    Canonical cache key for a request and its filters.

    Keys are sorted, empty values dropped, lists sorted and joined, and
    dates rendered as ISO strings, so equivalent filters give equal keys.

    Example:
        >>> make_cache_key("operatorSamples", {"networks": ["5G", "4G"], "from": None})
        'operatorSamples::{"networks": "4G,5G"}'
    """
    if not filters:
        return base
    normalised = {
        key: _normalise_filter_value(filters[key])
        for key in sorted(filters)
        if filters[key] is not None and filters[key] != ''
    }
    if not normalised:
        return base
    return f"{base}::{json.dumps(normalised, default=str)}"


class CachedFetcher:
    """
    Cache-aware front of a :class:`PaginatedFetcher`.

    A warm cache answers immediately. Otherwise the fetcher runs (it
    coalesces concurrent callers of one key) and the result is stored,
    unless it was partial.
    """

    KEY_PREFIX = "network_log::"

    def __init__(self, fetcher: PaginatedFetcher, cache: PersistentCache):
        self.fetcher = fetcher
        self.cache = cache

    def cache_key(self, session_ids: Any) -> str:
        return f"{self.KEY_PREFIX}{make_fetch_key(session_ids)}"

    async def fetch(
        self,
        session_ids: Any,
        force: bool = False,
        polygons: Optional[Sequence[Polygon]] = None,
    ) -> Optional[FetchResult]:
        """Same contract as :meth:`PaginatedFetcher.fetch`."""
        key = self.cache_key(session_ids)
        if not force:
            stored = self.cache.get(key)
            if stored is not None:
                result = self._from_cache(stored)
                if result is not None:
                    logger.debug("fetch_cache_hit", fetch_key=result.fetch_key, samples=len(result.samples))
                    return self.fetcher._scope(result, polygons) if polygons else result
                self.cache.delete(key)

        result = await self.fetcher.fetch(session_ids, force=force)

        if result is not None and not result.partial and result.fetch_key:
            self.cache.set(key, self._to_cache(result))
        if result is not None and polygons:
            return self.fetcher._scope(result, polygons)
        return result

    def invalidate(self, session_ids: Any) -> None:
        self.cache.delete(self.cache_key(session_ids))

    @staticmethod
    def _to_cache(result: FetchResult) -> Dict[str, Any]:
        return {
            'fetch_key': result.fetch_key,
            'samples': [s.model_dump(mode='json') for s in result.samples],
            'total_count': result.total_count,
            'pages_fetched': result.pages_fetched,
            'app_summary': result.app_summary,
            'io_summary': result.io_summary,
            'tpt_volume': result.tpt_volume,
        }

    @staticmethod
    def _from_cache(stored: Any) -> Optional[FetchResult]:
        if not isinstance(stored, Mapping) or not isinstance(stored.get('samples'), list):
            return None
        try:
            samples = [LogSample.model_validate(s) for s in stored['samples']]
        except ValueError as e:
            logger.warning("cache_entry_invalid", fetch_key=stored.get('fetch_key'), error=str(e))
            return None
        return FetchResult(
            fetch_key=stored.get('fetch_key', ''),
            samples=samples,
            total_count=stored.get('total_count', len(samples)),
            pages_fetched=stored.get('pages_fetched', 0),
            app_summary=stored.get('app_summary') or {},
            io_summary=stored.get('io_summary') or {},
            tpt_volume=stored.get('tpt_volume'),
        )
