"""
Remote data source abstraction layer.

Provides a unified async interface over the two remote services:
- the primary telemetry API (network logs, neighbours, polygons, thresholds)
- the analytics API (per-metric aggregates for the dashboards)

Calls are made with ``requests`` and run off the event loop with
``asyncio.to_thread``; errors are translated into the package's
exception hierarchy so callers never see transport-specific types.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import requests

from drive_analytics.utils.config import ApiSettings
from drive_analytics.utils.exceptions import (
    AuthenticationError,
    NetworkError,
    RemoteApiError,
    RemoteTimeoutError,
)
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)


def _error_message(body: Any) -> str:
    """Pull a readable message out of an error body."""
    if not body:
        return 'Unknown error'
    if isinstance(body, str):
        return body
    if isinstance(body, dict):
        for key in ('message', 'Message', 'error', 'detail', 'title'):
            if body.get(key):
                return str(body[key])
    return 'Request failed'


def join_session_ids(session_ids: Iterable) -> str:
    """Comma-join session ids the way the log endpoints expect them."""
    if isinstance(session_ids, (str, int)):
        return str(session_ids)
    return ",".join(str(s) for s in session_ids)


class ApiClient:
    """
    Thin JSON client around a ``requests.Session``.

    Every call is made with an explicit timeout; the blocking request runs
    in a worker thread so the awaiting coroutine can be abandoned by a
    cancellation token without stalling the event loop.
    """

    def __init__(
        self,
        base_url: str,
        settings: Optional[ApiSettings] = None,
        default_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Service root, without trailing slash
            settings: API settings (timeouts, TLS); defaults if None
            default_timeout: Timeout applied when a call does not pass one
            session: Pre-built session (tests inject a stub here)
        """
        self.base_url = base_url.rstrip('/')
        self.settings = settings or ApiSettings()
        self.default_timeout = default_timeout or self.settings.short_timeout_s
        self._session = session or requests.Session()
        self._session.headers.update({
            'Content-Type': 'application/json',
            'Cache-Control': 'no-store',
            'Pragma': 'no-cache',
        })

    def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Perform a blocking request and return the decoded JSON body.

        Returns ``None`` for 204 / empty bodies and the raw text when the
        body is not JSON.

        Raises:
            RemoteTimeoutError: The call exceeded its timeout
            NetworkError: No response was received
            AuthenticationError: HTTP 401 / 403
            RemoteApiError: Any other non-2xx status
        """
        url = f"{self.base_url}{endpoint}"
        timeout = timeout or self.default_timeout
        started = time.monotonic()

        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json,
                timeout=timeout,
                verify=self.settings.verify_tls,
            )
        except requests.Timeout as e:
            raise RemoteTimeoutError(
                f"{endpoint} timed out after {timeout:.0f}s", endpoint=endpoint
            ) from e
        except requests.RequestException as e:
            raise NetworkError(
                f"No response from server: {e}", endpoint=endpoint
            ) from e

        duration = time.monotonic() - started
        if duration > self.settings.slow_call_warn_s:
            logger.warning("slow_api_call", endpoint=endpoint, duration_s=round(duration, 1))

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                "Session expired. Please login again.", status=status, endpoint=endpoint
            )
        if status >= 400:
            raise RemoteApiError(
                f"HTTP {status}: {_error_message(self._body(response))}",
                status=status,
                endpoint=endpoint,
            )
        if status == 204 or not response.content:
            return None
        return self._body(response)

    @staticmethod
    def _body(response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                  timeout: Optional[float] = None) -> Any:
        return await asyncio.to_thread(self.request, 'GET', endpoint, params, None, timeout)

    async def post(self, endpoint: str, body: Any = None, params: Optional[Dict[str, Any]] = None,
                   timeout: Optional[float] = None) -> Any:
        return await asyncio.to_thread(self.request, 'POST', endpoint, params, body, timeout)

    def close(self):
        """Close the underlying HTTP session."""
        self._session.close()


class LogSource(ABC):
    """Abstract source of network logs and neighbour data."""

    @abstractmethod
    async def get_network_log(self, session_ids: Iterable, page: int, limit: int) -> Any:
        """Fetch one page of raw network-log records."""
        pass

    @abstractmethod
    async def get_neighbours(self, session_id: Any) -> Any:
        """Fetch the neighbour/collision payload of one session."""
        pass


class TelemetryApiClient(ApiClient, LogSource):
    """Client for the primary telemetry API."""

    def __init__(self, settings: Optional[ApiSettings] = None,
                 session: Optional[requests.Session] = None):
        settings = settings or ApiSettings()
        super().__init__(settings.telemetry_base_url, settings, settings.short_timeout_s, session)

    async def get_network_log(self, session_ids: Iterable, page: int = 1, limit: int = 10000) -> Any:
        return await self.get(
            "/api/MapView/GetNetworkLog",
            params={'session_Ids': join_session_ids(session_ids), 'page': page, 'limit': limit},
            timeout=self.settings.long_timeout_s,
        )

    async def get_neighbours(self, session_id: Any) -> Any:
        return await self.get(
            "/api/MapView/GetN78Neighbours",
            params={'session_Ids': join_session_ids(session_id)},
            timeout=self.settings.long_timeout_s,
        )

    async def get_threshold_settings(self) -> Any:
        return await self.get("/api/Setting/GetThresholdSettings")

    async def save_threshold(self, payload: Dict[str, Any]) -> Any:
        return await self.post("/api/Setting/SaveThreshold", payload)

    async def get_project_polygons(self, project_id: Any, source: str = "map") -> Any:
        return await self.get(
            "/api/MapView/GetProjectPolygonsV2",
            params={'projectId': project_id, 'source': source},
        )

    async def save_polygon(self, payload: Dict[str, Any]) -> Any:
        return await self.post("/api/MapView/SavePolygon", payload)


class AnalyticsApiClient(ApiClient):
    """
    Client for the analytics API.

    Aggregate queries scan whole tables server-side, so every call uses the
    long timeout unless told otherwise.
    """

    METRIC_ENDPOINTS = {
        'rsrp': 'AvgRsrpV2',
        'rsrq': 'AvgRsrqV2',
        'sinr': 'AvgSinrV2',
        'mos': 'AvgMosV2',
        'jitter': 'AvgJitterV2',
        'latency': 'AvgLatencyV2',
        'packet_loss': 'AvgPacketLossV2',
        'dl_tpt': 'AvgDlTptV2',
        'ul_tpt': 'AvgUlTptV2',
    }

    def __init__(self, settings: Optional[ApiSettings] = None,
                 session: Optional[requests.Session] = None):
        settings = settings or ApiSettings()
        super().__init__(settings.analytics_base_url, settings, settings.long_timeout_s, session)

    async def get_metric_averages(self, metric: str, filters: Optional[Dict[str, Any]] = None) -> Any:
        endpoint = self.METRIC_ENDPOINTS.get(metric)
        if endpoint is None:
            raise RemoteApiError(f"No aggregate endpoint for metric '{metric}'")
        return await self.get(f"/api/Admin/{endpoint}", params=filters)

    async def get_operator_samples(self, filters: Optional[Dict[str, Any]] = None) -> Any:
        return await self.get("/api/Admin/OperatorSamplesV2", params=filters)

    async def get_box_data(self, metric: str) -> Any:
        return await self.get("/api/Admin/BoxData", params={'metric': metric})

    async def get_band_distribution(self, filters: Optional[Dict[str, Any]] = None) -> Any:
        return await self.get("/api/Admin/BandDistributionV2", params=filters)

    async def get_coverage_ranking(self, rsrp_min: float = -95, rsrp_max: float = 0) -> Any:
        return await self.get("/api/Admin/OperatorCoverageRanking",
                              params={'min': rsrp_min, 'max': rsrp_max})

    async def get_quality_ranking(self, rsrq_min: float = -10, rsrq_max: float = 0) -> Any:
        return await self.get("/api/Admin/OperatorQualityRanking",
                              params={'min': rsrq_min, 'max': rsrq_max})

    async def get_indoor_outdoor(self) -> Any:
        return await self.get("/api/Admin/IndoorOutdoor")

    async def get_indoor_count(self, filters: Optional[Dict[str, Any]] = None) -> Any:
        return await self.get("/api/Admin/IndoorCount", params=filters,
                              timeout=self.settings.short_timeout_s)
