"""
Incremental paginated retrieval of network logs.

A fetch walks the log endpoint page by page, strictly in order, parsing
each page as it arrives and publishing progress to observers. Only one
logical fetch is current at a time: starting a fetch for a different set
of sessions cancels the previous one, while a repeated request for the
same sessions joins the fetch already in flight.
"""
import asyncio
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from drive_analytics.core.geometry import filter_samples_by_polygons
from drive_analytics.data.parser import ParseReport, parse_log_samples
from drive_analytics.data.payloads import decode_page
from drive_analytics.data.schemas import LogSample, Polygon
from drive_analytics.data.sources import LogSource
from drive_analytics.fetch.cancellation import CancellationToken
from drive_analytics.utils.config import FetchSettings
from drive_analytics.utils.exceptions import FetchError, OperationCancelled
from drive_analytics.utils.logging_config import bind_operation, get_logger

logger = get_logger(__name__)


def make_fetch_key(session_ids: Any) -> str:
    """
    Canonical key of a fetch: session ids sorted and comma-joined.

    Accepts a single id, a comma-separated string or any iterable.

    Example:
        >>> make_fetch_key([103, "101", 102])
        '101,102,103'
        >>> make_fetch_key("7, 5")
        '5,7'
    """
    if session_ids is None:
        return ""
    if isinstance(session_ids, str):
        ids = session_ids.split(",")
    elif isinstance(session_ids, int):
        ids = [session_ids]
    else:
        ids = list(session_ids)
    cleaned = [str(s).strip() for s in ids if s is not None and str(s).strip()]
    return ",".join(sorted(cleaned))


@dataclass(frozen=True)
class FetchProgress:
    """Progress of the current fetch; ``current`` counts parsed samples."""
    current: int
    total: int
    page: int
    total_pages: int


@dataclass(frozen=True)
class FetchResult:
    """
    Outcome of one logical fetch.

    ``partial`` is set when a page failed after earlier pages succeeded; the
    samples collected up to that point are kept and ``error`` holds the cause.
    """
    fetch_key: str
    samples: List[LogSample]
    total_count: int = 0
    pages_fetched: int = 0
    app_summary: dict = field(default_factory=dict)
    io_summary: dict = field(default_factory=dict)
    tpt_volume: Any = None
    partial: bool = False
    error: Optional[BaseException] = None
    unfiltered_count: Optional[int] = None
    parse_report: ParseReport = field(default_factory=ParseReport)


@dataclass(frozen=True)
class FetchState:
    """Last published state of a :class:`PaginatedFetcher`."""
    fetch_key: str = ""
    samples: List[LogSample] = field(default_factory=list)
    progress: Optional[FetchProgress] = None
    error: Optional[BaseException] = None
    loading: bool = False


Observer = Callable[[FetchState], None]


class PaginatedFetcher:
    """
    Sequential page loop over a :class:`LogSource`.

    Example:
        >>> fetcher = PaginatedFetcher(TelemetryApiClient())
        >>> result = await fetcher.fetch([101, 102])
        >>> len(result.samples), result.partial
        (38211, False)
    """

    def __init__(self, source: LogSource, settings: Optional[FetchSettings] = None):
        """
        Initialize the fetcher.

        Args:
            source: Object exposing ``get_network_log(session_ids, page, limit)``
            settings: Page size, page bound and inter-page delay
        """
        self.source = source
        self.settings = settings or FetchSettings()
        self._token: Optional[CancellationToken] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._observers: List[Observer] = []
        self.state = FetchState()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)
        return unsubscribe

    def _publish(self, token: Optional[CancellationToken], **changes) -> None:
        # A superseded fetch must never overwrite the state of its successor
        if token is not None and token is not self._token:
            return
        self.state = replace(self.state, **changes)
        for observer in list(self._observers):
            observer(self.state)

    @property
    def in_flight(self) -> bool:
        return any(not task.done() for task in self._inflight.values())

    def cancel(self) -> None:
        """Cancel the current fetch, if any. Its callers receive ``None``."""
        if self._token is not None and not self._token.cancelled:
            logger.info("fetch_cancelled", fetch_key=self._token.label, fetch_id=self._token.id)
            self._token.cancel()

    async def fetch(
        self,
        session_ids: Any,
        force: bool = False,
        polygons: Optional[Sequence[Polygon]] = None,
    ) -> Optional[FetchResult]:
        """
        Fetch every page of the logs of ``session_ids``.

        Args:
            session_ids: Session id(s) to fetch
            force: Start a fresh fetch even if one for the same key is in flight
            polygons: Optional polygons; samples outside all of them are dropped

        Returns:
            FetchResult, or ``None`` if this fetch was superseded or cancelled

        Raises:
            FetchError: The first page failed, so nothing was collected
        """
        key = make_fetch_key(session_ids)
        if not key:
            self.cancel()
            self._token = None
            self._publish(None, fetch_key="", samples=[], progress=None, error=None, loading=False)
            return FetchResult(fetch_key="", samples=[])

        task = self._inflight.get(key)
        if task is not None and not task.done() and not force and self._is_current(key):
            logger.debug("fetch_coalesced", fetch_key=key)
        else:
            self.cancel()
            token = CancellationToken(label=key)
            self._token = token
            task = asyncio.ensure_future(self._run(key, token))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        result = await asyncio.shield(task)
        if result is None or not polygons:
            return result
        return self._scope(result, polygons)

    def _is_current(self, key: str) -> bool:
        # A cancelled task for the same key may still be winding down
        token = self._token
        return token is not None and token.label == key and not token.cancelled

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    @staticmethod
    def _scope(result: FetchResult, polygons: Sequence[Polygon]) -> FetchResult:
        kept = filter_samples_by_polygons(result.samples, polygons)
        logger.debug(
            "fetch_scoped_to_polygons",
            fetch_key=result.fetch_key,
            polygons=len(polygons),
            before=len(result.samples),
            after=len(kept),
        )
        return replace(result, samples=kept, unfiltered_count=len(result.samples))

    async def _run(self, key: str, token: CancellationToken) -> Optional[FetchResult]:
        bind_operation(fetch_key=key, fetch_id=token.id)
        self._publish(token, fetch_key=key, samples=[], progress=None, error=None, loading=True)
        try:
            result = await self._paginate(key, token)
        except OperationCancelled:
            logger.debug("fetch_superseded", fetch_key=key)
            return None
        except FetchError as e:
            self._publish(token, error=e, loading=False)
            raise

        self._publish(token, samples=result.samples, error=result.error, loading=False)
        return result

    async def _paginate(self, key: str, token: CancellationToken) -> FetchResult:
        page_size = self.settings.page_size
        session_ids = key.split(",")
        samples: List[LogSample] = []
        report = ParseReport()
        summaries: Dict[str, Any] = {}
        total_count = 0
        total_pages = 1
        page = 1

        logger.info("fetch_started", fetch_key=key, page_size=page_size)

        while True:
            token.raise_if_cancelled()
            try:
                response = await token.run(
                    self.source.get_network_log(session_ids, page=page, limit=page_size)
                )
            except OperationCancelled:
                raise
            except Exception as e:
                if not samples:
                    logger.error("fetch_failed", fetch_key=key, page=page, error=str(e))
                    raise FetchError(str(e), fetch_key=key, page=page) from e
                logger.warning(
                    "fetch_partial", fetch_key=key, page=page, kept=len(samples), error=str(e)
                )
                return FetchResult(
                    fetch_key=key,
                    samples=samples,
                    total_count=total_count,
                    pages_fetched=page - 1,
                    partial=True,
                    error=e,
                    parse_report=report,
                    **summaries,
                )

            body = decode_page(response)
            records = body.records

            if page == 1:
                total_count = body.total_count or len(records)
                total_pages = max(1, math.ceil(total_count / page_size))
                summaries = {
                    'app_summary': body.app_summary,
                    'io_summary': body.io_summary,
                    'tpt_volume': body.tpt_volume,
                }

            parsed, page_report = parse_log_samples(records)
            samples.extend(parsed)
            report.add(page_report)

            progress = FetchProgress(
                current=len(samples),
                total=max(total_count, len(samples)),
                page=page,
                total_pages=total_pages,
            )
            self._publish(token, progress=progress, samples=list(samples))
            logger.debug(
                "page_fetched",
                fetch_key=key,
                page=page,
                total_pages=total_pages,
                records=len(records),
                kept=len(parsed),
            )

            if page >= total_pages or len(records) < page_size or page >= self.settings.max_pages:
                break

            page += 1
            await token.sleep(self.settings.page_delay_s)

        logger.info(
            "fetch_complete",
            fetch_key=key,
            pages=page,
            samples=len(samples),
            dropped=report.dropped,
        )
        return FetchResult(
            fetch_key=key,
            samples=samples,
            total_count=total_count,
            pages_fetched=page,
            parse_report=report,
            **summaries,
        )
