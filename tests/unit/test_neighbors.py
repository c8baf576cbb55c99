"""
Tests for neighbor flattening, PCI collision detection and the resolver.
"""
import asyncio

import pytest

from drive_analytics.analysis.neighbors import (
    NeighborResolver,
    neighbor_cache_key,
    resolve_neighbor_responses,
)
from drive_analytics.data.schemas import SourceKind
from drive_analytics.utils.config import FetchSettings
from drive_analytics.utils.exceptions import NeighborResolutionError, RemoteApiError

SESSION_ONE = {
    "pci_collision_primary": [
        {"pci": 101, "locations": [
            {"lat": 28.61, "lon": 77.20, "cells": [{"id": "c1", "cell_id": 11}, {"id": "c2", "cell_id": 12}]},
            {"lat": None, "lon": 77.20},
        ]},
    ],
    "primaries": [
        {"primary_pci": "5", "primary_cell_id": 900, "neighbours_data": [
            {"id": "n1", "pci": 7, "lat": "28.62", "lon": "77.21", "rsrp": "-95", "band": 3},
            {"id": "n2", "pci": 8},
        ]},
    ],
}

SESSION_TWO = {"data": {
    "pci_collision_primary": [
        {"pci": "101", "locations": [{"lat": 28.70, "lon": 77.10}]},
    ],
    "primaries": [
        {"primary_pci": 5, "neighbours_data": [
            {"id": "n1", "pci": 7, "lat": 28.62, "lon": 77.21},
        ]},
    ],
}}


def settings(**overrides):
    values = {'neighbor_delay_s': 0, 'neighbor_cache_ttl_s': 300}
    values.update(overrides)
    return FetchSettings(**values)


class TestResolveNeighborResponses:
    """Tests for flattening and collision detection."""

    def test_flatten_and_deduplicate(self):
        result = resolve_neighbor_responses([SESSION_ONE, SESSION_TWO])

        ids = [n.id for n in result.all_neighbors]
        assert ids[:2] == ["c1", "c2"]
        assert ids.count("n1") == 1
        assert len(ids) == 4

        stats = result.stats
        assert stats.total == 4
        assert stats.duplicates == 1
        assert stats.without_coords == 2
        assert stats.with_coords == 5
        assert stats.unique_pcis == 2

    def test_primary_neighbor_fields(self):
        result = resolve_neighbor_responses([SESSION_ONE])
        [neighbor] = [n for n in result.all_neighbors if n.source_kind == SourceKind.PRIMARY]

        assert neighbor.pci == "7"
        assert neighbor.rsrp == -95.0
        assert neighbor.band == "3"
        assert neighbor.primary_pci == "5"
        assert neighbor.primary_cell_id == "900"

    def test_collisions_span_responses(self):
        """PCI 101 at one place in each session is a collision."""
        result = resolve_neighbor_responses([SESSION_ONE, SESSION_TWO])

        assert result.collision_pcis == ["101"]
        assert result.collisions[0].location_count == 2
        assert result.stats.collisions == 1

    def test_nearby_locations_are_one_location(self):
        response = {"pci_collision_primary": [{"pci": 0, "locations": [
            {"lat": 10.0, "lon": 20.0},
            {"lat": 10.00001, "lon": 20.00001},
        ]}]}
        result = resolve_neighbor_responses([response])

        assert result.collisions == []
        assert result.all_neighbors[0].pci == "0"

    def test_empty_and_garbage(self):
        result = resolve_neighbor_responses([None, "x", {}, {"primaries": ["bad"]}])
        assert result.all_neighbors == []
        assert result.stats.total == 0


def test_neighbor_cache_key():
    assert neighbor_cache_key([3, "1", 2]) == "1-2-3"


class TestNeighborResolver:
    """Tests for sequential retrieval, isolation and reuse."""

    def test_failed_session_is_isolated(self, fake_source):
        source = fake_source(neighbours={
            "1": RemoteApiError("HTTP 500", status=500),
            "2": SESSION_ONE,
        })
        result = asyncio.run(NeighborResolver(source, settings()).resolve([1, 2]))

        assert source.neighbour_calls == ["1", "2"]
        assert result.stats.total == 3

    def test_all_sessions_failed(self, fake_source):
        source = fake_source(neighbours={"1": RemoteApiError("HTTP 500", status=500)})

        with pytest.raises(NeighborResolutionError) as exc_info:
            asyncio.run(NeighborResolver(source, settings()).resolve([1]))
        assert "1" in exc_info.value.failed_sessions

    def test_empty_bodies_are_not_failures(self, fake_source):
        source = fake_source(neighbours={"1": {}, "2": []})
        result = asyncio.run(NeighborResolver(source, settings()).resolve([1, 2]))

        assert source.neighbour_calls == ["1", "2"]
        assert result.all_neighbors == []
        assert result.collisions == []

    def test_no_sessions(self, fake_source):
        source = fake_source()
        result = asyncio.run(NeighborResolver(source, settings()).resolve([None, ""]))

        assert result.all_neighbors == []
        assert source.neighbour_calls == []

    def test_results_reused_until_ttl(self, fake_source):
        now = [0.0]
        source = fake_source(neighbours={"1": SESSION_ONE})
        resolver = NeighborResolver(source, settings(neighbor_cache_ttl_s=60), clock=lambda: now[0])

        first = asyncio.run(resolver.resolve([1]))
        second = asyncio.run(resolver.resolve(["1"]))
        assert second is first
        assert len(source.neighbour_calls) == 1

        now[0] = 61.0
        asyncio.run(resolver.resolve([1]))
        assert len(source.neighbour_calls) == 2

    def test_newer_call_supersedes(self, fake_source):
        source = fake_source(neighbours={"1": SESSION_ONE, "2": SESSION_TWO}, delay=0.05)
        resolver = NeighborResolver(source, settings())

        async def scenario():
            old = asyncio.ensure_future(resolver.resolve([1]))
            await asyncio.sleep(0.01)
            new = await resolver.resolve([2])
            return await old, new

        old, new = asyncio.run(scenario())
        assert old is None
        assert new.collision_pcis == []
        assert new.stats.total == 2
