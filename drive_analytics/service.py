"""
Service facade over the drive-analytics pipeline.

Owns the API clients, the persistent cache, the paginated fetcher, the
neighbour resolver and the threshold classifier, with an explicit
lifecycle:

    async with DriveAnalyticsService(config) as service:
        result = await service.fetch_samples([101, 102])
        colors = [service.classify(s.rsrp, 'rsrp') for s in result.samples]
"""
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from drive_analytics.analysis.aggregation import (
    aggregate_metric_by_operator,
    aggregate_metric_by_operator_network,
    apply_top_n,
    band_distribution,
    box_summaries_from_rows,
    BoxSummary,
    build_ranking,
    normalize_metric_key,
    summarize_indoor_outdoor,
)
from drive_analytics.analysis.neighbors import NeighborResolution, NeighborResolver
from drive_analytics.core.geometry import filter_samples_by_polygons, polygon_to_wkt, polygons_from_wkt
from drive_analytics.core.thresholds import ThresholdClassifier
from drive_analytics.data.payloads import decode_count, decode_records
from drive_analytics.data.schemas import LogSample, Polygon
from drive_analytics.data.sources import AnalyticsApiClient, TelemetryApiClient
from drive_analytics.fetch.cache import (
    CachedFetcher,
    PersistentCache,
    RequestDeduplicator,
    make_cache_key,
)
from drive_analytics.fetch.paginator import FetchResult, PaginatedFetcher
from drive_analytics.utils.config import PipelineConfig, get_default_config
from drive_analytics.utils.exceptions import DataValidationError, DriveAnalyticsError, RemoteApiError
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)


class DriveAnalyticsService:
    """
    Entry point for programmatic use.

    Clients can be injected (tests pass in-memory fakes); anything not
    injected is built from ``config`` in :meth:`start`.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        telemetry: Optional[TelemetryApiClient] = None,
        analytics: Optional[AnalyticsApiClient] = None,
        cache: Optional[PersistentCache] = None,
    ):
        self.config = config or get_default_config()
        self.telemetry = telemetry
        self.analytics = analytics
        self.cache = cache
        self.classifier = ThresholdClassifier()
        self.fetcher: Optional[CachedFetcher] = None
        self.resolver: Optional[NeighborResolver] = None
        self._dedup = RequestDeduplicator()
        self._owned_clients: List[Any] = []
        self._started = False

    async def __aenter__(self) -> 'DriveAnalyticsService':
        return self.start()

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def start(self) -> 'DriveAnalyticsService':
        """Open the cache and build clients and workers. Idempotent."""
        if self._started:
            return self

        if self.telemetry is None:
            self.telemetry = TelemetryApiClient(self.config.api)
            self._owned_clients.append(self.telemetry)
        if self.analytics is None:
            self.analytics = AnalyticsApiClient(self.config.api)
            self._owned_clients.append(self.analytics)
        if self.cache is None:
            self.cache = PersistentCache.from_settings(self.config.cache)
        self.cache.open()

        self.fetcher = CachedFetcher(PaginatedFetcher(self.telemetry, self.config.fetch), self.cache)
        self.resolver = NeighborResolver(self.telemetry, self.config.fetch)
        self._started = True
        logger.info(
            "service_started",
            telemetry=getattr(self.telemetry, 'base_url', type(self.telemetry).__name__),
            cache_durable=self.cache.durable,
        )
        return self

    def close(self) -> None:
        """Cancel in-flight work, flush the cache and close HTTP sessions."""
        if not self._started:
            return
        self.fetcher.fetcher.cancel()
        self.resolver.cancel()
        self.cache.close()
        for client in self._owned_clients:
            client.close()
        self._owned_clients = []
        self._started = False
        logger.info("service_closed")

    def _require_started(self) -> None:
        if not self._started:
            raise DriveAnalyticsError("Service not started; call start() or use 'async with'")

    # Samples

    async def fetch_samples(
        self,
        session_ids: Any,
        polygons: Optional[Sequence[Polygon]] = None,
        force: bool = False,
    ) -> Optional[FetchResult]:
        """
        Fetch the samples of one or more sessions, served from cache when warm.

        Returns:
            FetchResult, or ``None`` if superseded by another fetch

        Raises:
            FetchError: Nothing could be fetched
        """
        self._require_started()
        return await self.fetcher.fetch(session_ids, force=force, polygons=polygons)

    def filter_samples(self, samples: Sequence[LogSample], polygons: Sequence[Polygon]) -> List[LogSample]:
        return filter_samples_by_polygons(samples, polygons)

    # Thresholds

    async def load_thresholds(self) -> ThresholdClassifier:
        """
        Replace the classifier with the saved threshold settings.

        On failure the current sets are kept and the error is logged.
        """
        self._require_started()
        try:
            response = await self.telemetry.get_threshold_settings()
        except DriveAnalyticsError as e:
            logger.warning("thresholds_unavailable", error=str(e))
            return self.classifier
        self.classifier = ThresholdClassifier.from_settings(response)
        return self.classifier

    async def save_thresholds(self) -> Any:
        self._require_started()
        return await self.telemetry.save_threshold(self.classifier.to_payload())

    def classify(self, value: Any, metric: str) -> str:
        return self.classifier.classify(value, metric)

    def legend(self, metric: str, values: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        return self.classifier.legend(metric, values)

    # Neighbours

    async def resolve_neighbors(self, session_ids: Sequence[Any]) -> Optional[NeighborResolution]:
        self._require_started()
        return await self.resolver.resolve(session_ids)

    # Polygons

    async def load_project_polygons(self, project_id: Any, source: str = "map") -> List[Polygon]:
        """
        Polygons saved for a project.

        Items without WKT, or with WKT that does not parse, are skipped.
        """
        self._require_started()
        response = await self.telemetry.get_project_polygons(project_id, source)
        polygons: List[Polygon] = []
        skipped = 0
        for item in decode_records(response):
            if not isinstance(item, dict):
                continue
            wkt = item.get('Wkt') or item.get('WKT') or item.get('wkt') or item.get('geometry')
            item_id = item.get('Id') or item.get('id')
            try:
                polygons.extend(polygons_from_wkt(
                    wkt,
                    id=None if item_id is None else str(item_id),
                    name=item.get('Name') or item.get('name'),
                ))
            except DataValidationError as e:
                skipped += 1
                logger.debug("project_polygon_invalid", polygon_id=item_id, error=str(e))
        logger.info("project_polygons_loaded", project_id=project_id, polygons=len(polygons), skipped=skipped)
        return polygons

    async def save_polygon(self, polygon: Polygon, name: Optional[str] = None) -> Any:
        """
        Save a drawn polygon with the sessions it was drawn over.

        Args:
            polygon: Selection to save
            name: Display name; defaults to ``polygon.name``

        Raises:
            DataValidationError: No name was given
            RemoteApiError: The server rejected the polygon
        """
        self._require_started()
        name = (name or polygon.name or '').strip()
        if not name:
            raise DataValidationError("Please provide a name for the polygon.")
        payload = {
            'Name': name,
            'WKT': polygon_to_wkt(polygon),
            'SessionIds': list(polygon.session_ids),
        }
        response = await self.telemetry.save_polygon(payload)
        if isinstance(response, dict) and response.get('Status') not in (None, 1):
            raise RemoteApiError(response.get('Message') or "Failed to save polygon.")
        logger.info("polygon_saved", name=name, sessions=len(polygon.session_ids))
        return response

    # Dashboard aggregates

    async def _query(self, base: str, filters: Optional[Dict[str, Any]],
                     factory: Callable[[], Awaitable[Any]], force: bool = False) -> Any:
        key = make_cache_key(base, filters)
        if not force and key in self.cache:
            logger.debug("query_cache_hit", key=key)
            return self.cache.get(key)
        response = await self._dedup.run(key, factory)
        if response is not None:
            self.cache.set(key, response)
        return response

    async def operator_metric(
        self,
        metric: str,
        filters: Optional[Dict[str, Any]] = None,
        by_network: bool = False,
        top_n: Optional[int] = None,
        force: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Per-operator average of ``metric`` (or sample count for ``samples``).

        Args:
            metric: ``samples``, ``rsrp``, ``dl_tpt``, ...
            filters: Passed to the analytics API and part of the cache key
            by_network: Break each operator down by network generation
            top_n: Keep only the first ``top_n`` rows
            force: Bypass the query cache
        """
        self._require_started()
        key = normalize_metric_key(metric)
        if key == 'samples':
            response = await self._query(
                "operatorSamples", filters,
                lambda: self.analytics.get_operator_samples(filters), force,
            )
        else:
            response = await self._query(
                f"metric:{key}", filters,
                lambda: self.analytics.get_metric_averages(key, filters), force,
            )
        rows = decode_records(response)
        if by_network:
            result = aggregate_metric_by_operator_network(rows, key)
        else:
            result = aggregate_metric_by_operator(rows, key)
        return apply_top_n(result, top_n)

    async def box_summary(self, metric: str, force: bool = False) -> List[BoxSummary]:
        """Merged per-operator box-plot summaries of ``metric``."""
        self._require_started()
        key = normalize_metric_key(metric)
        response = await self._query(
            "boxData", {'metric': key}, lambda: self.analytics.get_box_data(key), force,
        )
        return box_summaries_from_rows(decode_records(response))

    async def coverage_ranking(self, rsrp_min: float = -95, rsrp_max: float = 0,
                               force: bool = False) -> List[Dict[str, Any]]:
        self._require_started()
        response = await self._query(
            "coverageRanking", {'min': rsrp_min, 'max': rsrp_max},
            lambda: self.analytics.get_coverage_ranking(rsrp_min, rsrp_max), force,
        )
        return build_ranking(decode_records(response))

    async def quality_ranking(self, rsrq_min: float = -10, rsrq_max: float = 0,
                              force: bool = False) -> List[Dict[str, Any]]:
        self._require_started()
        response = await self._query(
            "qualityRanking", {'min': rsrq_min, 'max': rsrq_max},
            lambda: self.analytics.get_quality_ranking(rsrq_min, rsrq_max), force,
        )
        return build_ranking(decode_records(response))

    async def band_distribution(self, filters: Optional[Dict[str, Any]] = None,
                                force: bool = False) -> List[Dict[str, Any]]:
        self._require_started()
        response = await self._query(
            "bandDistribution", filters,
            lambda: self.analytics.get_band_distribution(filters), force,
        )
        return band_distribution(decode_records(response))

    async def indoor_outdoor(self, force: bool = False) -> List[Dict[str, Any]]:
        """Indoor vs outdoor averages per operator."""
        self._require_started()
        response = await self._query(
            "indoorOutdoor", None, self.analytics.get_indoor_outdoor, force,
        )
        return summarize_indoor_outdoor(decode_records(response))

    async def indoor_count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        self._require_started()
        return decode_count(await self.analytics.get_indoor_count(filters))
