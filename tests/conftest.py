"""
Shared fixtures: an in-memory log source and record builders.
"""
import asyncio

import pytest

from drive_analytics.data.sources import LogSource


class FakeLogSource(LogSource):
    """
    In-memory LogSource.

    ``pages`` is either a dict of page number -> response, or a callable
    ``(session_ids, page, limit) -> response``. A response that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, pages=None, neighbours=None, delay=0.0):
        self.pages = pages if pages is not None else {}
        self.neighbours = neighbours or {}
        self.delay = delay
        self.calls = []
        self.neighbour_calls = []

    async def get_network_log(self, session_ids, page, limit):
        self.calls.append((tuple(str(s) for s in session_ids), page, limit))
        if self.delay:
            await asyncio.sleep(self.delay)
        if callable(self.pages):
            response = self.pages(list(session_ids), page, limit)
        else:
            response = self.pages.get(page, {'data': []})
        if isinstance(response, Exception):
            raise response
        return response

    async def get_neighbours(self, session_id):
        self.neighbour_calls.append(str(session_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.neighbours.get(str(session_id))
        if isinstance(response, Exception):
            raise response
        return response


def build_records(count, start=0, lat=28.6, lng=77.2, **fields):
    """Raw network-log records on a diagonal line, ids from ``start``."""
    return [
        {
            'id': start + i,
            'lat': lat + (start + i) * 0.001,
            'lon': lng + (start + i) * 0.001,
            'rsrp': -90 - i,
            'm_alpha_long': 'IND airtel',
            'network': 'LTE',
            **fields,
        }
        for i in range(count)
    ]


@pytest.fixture
def fake_source():
    """Factory for FakeLogSource instances."""
    return FakeLogSource


@pytest.fixture
def records():
    """Factory for raw network-log records."""
    return build_records


class FakeTelemetry(FakeLogSource):
    """FakeLogSource plus the settings and polygon endpoints."""

    def __init__(self, *args, thresholds=None, polygons=None, save_response=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.thresholds = thresholds
        self.polygons = polygons
        self.save_response = save_response if save_response is not None else {'Status': 1}
        self.saved = []

    async def get_threshold_settings(self):
        if isinstance(self.thresholds, Exception):
            raise self.thresholds
        return self.thresholds

    async def save_threshold(self, payload):
        self.saved.append(('threshold', payload))
        return {'Status': 1}

    async def get_project_polygons(self, project_id, source="map"):
        return self.polygons

    async def save_polygon(self, payload):
        self.saved.append(('polygon', payload))
        return self.save_response


class FakeAnalytics:
    """In-memory analytics API; ``responses`` maps method name to response."""

    def __init__(self, **responses):
        self.responses = responses
        self.calls = []

    async def _respond(self, name, *args):
        self.calls.append((name,) + args)
        await asyncio.sleep(0)
        return self.responses.get(name)

    async def get_metric_averages(self, metric, filters=None):
        return await self._respond('get_metric_averages', metric)

    async def get_operator_samples(self, filters=None):
        return await self._respond('get_operator_samples')

    async def get_box_data(self, metric):
        return await self._respond('get_box_data', metric)

    async def get_band_distribution(self, filters=None):
        return await self._respond('get_band_distribution')

    async def get_coverage_ranking(self, rsrp_min=-95, rsrp_max=0):
        return await self._respond('get_coverage_ranking', rsrp_min, rsrp_max)

    async def get_quality_ranking(self, rsrq_min=-10, rsrq_max=0):
        return await self._respond('get_quality_ranking', rsrq_min, rsrq_max)

    async def get_indoor_outdoor(self):
        return await self._respond('get_indoor_outdoor')

    async def get_indoor_count(self, filters=None):
        return await self._respond('get_indoor_count')


@pytest.fixture
def fake_telemetry():
    """Factory for FakeTelemetry instances."""
    return FakeTelemetry


@pytest.fixture
def fake_analytics():
    """Factory for FakeAnalytics instances."""
    return FakeAnalytics
