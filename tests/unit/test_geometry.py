"""
Tests for distances, point-in-polygon filtering and WKT conversion.
"""
import math

import numpy as np
import pandas as pd
import pytest

from drive_analytics.core.geometry import (
    PolygonFilter,
    filter_dataframe_by_polygons,
    filter_samples_by_polygons,
    haversine_distance,
    point_in_polygon,
    point_in_ring,
    polygon_to_wkt,
    polygons_from_wkt,
    rectangle_polygon,
    circle_polygon,
    route_length_m,
)
from drive_analytics.data.schemas import LogSample, Polygon
from drive_analytics.utils.exceptions import DataValidationError

SQUARE = [(0, 0), (0, 1), (1, 1), (1, 0)]


@pytest.fixture
def unit_square():
    return Polygon.from_coords(SQUARE)


@pytest.fixture
def donut():
    """10x10 square with a 2x2 hole in the middle."""
    return Polygon.from_coords(
        [(0, 0), (0, 10), (10, 10), (10, 0)],
        holes=[[(4, 4), (4, 6), (6, 6), (6, 4)]],
    )


class TestDistances:
    """Tests for great-circle distances."""

    def test_haversine_known_distance(self):
        # Delhi to Mumbai
        distance = haversine_distance(28.6139, 77.2090, 19.0760, 72.8777)
        assert distance / 1000 == pytest.approx(1148, abs=2)

    def test_haversine_same_point(self):
        assert haversine_distance(10, 20, 10, 20) == 0.0

    def test_route_length_skips_session_boundaries(self):
        one_degree = haversine_distance(0, 0, 1, 0)
        route = [
            LogSample(lat=0, lng=0, session_id="1"),
            LogSample(lat=1, lng=0, session_id="1"),
            LogSample(lat=50, lng=50, session_id="2"),
            LogSample(lat=51, lng=50, session_id="2"),
        ]
        assert route_length_m(route) == pytest.approx(2 * one_degree)
        assert route_length_m(route[:1]) == 0.0


class TestPointInPolygon:
    """Tests for the scalar containment check."""

    def test_unit_square(self, unit_square):
        assert point_in_polygon(0.5, 0.5, unit_square)
        assert not point_in_polygon(1.5, 0.5, unit_square)
        assert not point_in_polygon(0.5, -0.1, unit_square)

    def test_vertex_order_and_closure_do_not_matter(self):
        points = [(0.5, 0.5), (0.9, 0.1), (1.2, 0.5), (-0.3, 0.3)]
        variants = [SQUARE, list(reversed(SQUARE)), SQUARE + [SQUARE[0]]]
        for lat, lng in points:
            results = {point_in_ring(lat, lng, ring) for ring in variants}
            assert len(results) == 1

    def test_holes_are_excluded(self, donut):
        assert point_in_polygon(1, 1, donut)
        assert not point_in_polygon(5, 5, donut)
        assert point_in_polygon(7, 5, donut)

    def test_non_finite_points_are_outside(self, unit_square):
        assert not point_in_polygon(math.nan, 0.5, unit_square)
        assert not point_in_polygon(0.5, math.inf, unit_square)
        assert not point_in_polygon(None, 0.5, unit_square)

    def test_concave_polygon(self):
        """An L shape: the notch is outside even though it is inside the bbox."""
        shape = Polygon.from_coords([(0, 0), (0, 2), (1, 2), (1, 1), (2, 1), (2, 0)])
        assert point_in_polygon(0.5, 1.5, shape)
        assert not point_in_polygon(1.5, 1.5, shape)


class TestPolygonFilter:
    """Tests for the vectorised filter."""

    def test_mask_agrees_with_scalar_check(self, unit_square, donut):
        rng = np.random.default_rng(7)
        lats = rng.uniform(-1, 11, 500)
        lngs = rng.uniform(-1, 11, 500)
        polygons = [unit_square, donut]

        mask = PolygonFilter(polygons).mask(lats, lngs)
        expected = [
            any(point_in_polygon(lat, lng, p) for p in polygons)
            for lat, lng in zip(lats, lngs)
        ]
        assert mask.tolist() == expected

    def test_nan_never_inside(self, unit_square):
        mask = PolygonFilter([unit_square]).mask([0.5, np.nan], [0.5, 0.5])
        assert mask.tolist() == [True, False]

    def test_no_polygons_passes_everything(self):
        polygon_filter = PolygonFilter([])
        assert not polygon_filter.active
        assert polygon_filter.contains(89, 179)
        assert polygon_filter.mask([1, 2], [3, 4]).all()

    def test_filter_samples_keeps_order(self, unit_square):
        samples = [
            LogSample(id="a", lat=0.2, lng=0.2),
            LogSample(id="b", lat=3, lng=3),
            LogSample(id="c", lat=0.8, lng=0.1),
        ]
        kept = filter_samples_by_polygons(samples, [unit_square])

        assert [s.id for s in kept] == ["a", "c"]
        assert filter_samples_by_polygons(samples, None) == samples


class TestFilterDataFrame:
    """Tests for DataFrame filtering."""

    def test_index_preserved_and_strings_coerced(self, unit_square):
        df = pd.DataFrame(
            {'lat': ["0.5", "5", "bad", 0.1], 'lng': [0.5, 5, 0.5, 0.9]},
            index=[10, 11, 12, 13],
        )
        result = filter_dataframe_by_polygons(df, [unit_square])

        assert result.index.tolist() == [10, 13]

    def test_custom_columns(self, unit_square):
        df = pd.DataFrame({'y': [0.5], 'x': [0.5]})
        assert len(filter_dataframe_by_polygons(df, [unit_square], lat_col='y', lng_col='x')) == 1

    def test_missing_columns(self, unit_square):
        with pytest.raises(DataValidationError, match="Missing coordinate columns"):
            filter_dataframe_by_polygons(pd.DataFrame({'lat': [1]}), [unit_square])


class TestWkt:
    """Tests for WKT parsing and serialisation."""

    def test_polygon(self):
        [area] = polygons_from_wkt(
            "POLYGON((77.1 28.5, 77.3 28.5, 77.3 28.7, 77.1 28.5))", id="7", name="Zone A"
        )
        assert area.id == "7"
        assert area.name == "Zone A"
        assert area.bbox.north == pytest.approx(28.7)
        assert area.bbox.west == pytest.approx(77.1)
        assert point_in_polygon(28.55, 77.2, area)

    def test_polygon_with_hole(self):
        [area] = polygons_from_wkt(
            "POLYGON((0 0, 10 0, 10 10, 0 10, 0 0), (4 4, 6 4, 6 6, 4 6, 4 4))"
        )
        assert len(area.rings) == 2
        assert not point_in_polygon(5, 5, area)

    def test_multipolygon(self):
        parts = polygons_from_wkt(
            "MULTIPOLYGON(((0 0, 1 0, 1 1, 0 0)), ((5 5, 6 5, 6 6, 5 5)))"
        )
        assert len(parts) == 2

    def test_blank(self):
        assert polygons_from_wkt("") == []
        assert polygons_from_wkt("   ") == []

    def test_invalid_and_wrong_type(self):
        with pytest.raises(DataValidationError):
            polygons_from_wkt("POLYGON((0 0, 1 1")
        with pytest.raises(DataValidationError, match="POINT|Point"):
            polygons_from_wkt("POINT(1 2)")

    def test_round_trip(self, unit_square):
        [parsed] = polygons_from_wkt(polygon_to_wkt(unit_square))
        original = [(p.lat, p.lng) for p in unit_square.rings[0]]
        assert [(p.lat, p.lng) for p in parsed.rings[0]][:4] == original


class TestDrawnShapes:
    """Tests for rectangles and circles drawn on the map."""

    def test_rectangle(self):
        area = rectangle_polygon(south=10, west=20, north=11, east=22, name="box")
        assert area.name == "box"
        assert point_in_polygon(10.5, 21, area)
        assert not point_in_polygon(10.5, 23, area)

    def test_circle_contains_points_within_radius(self):
        area = circle_polygon(28.6, 77.2, 1000, points=64)
        assert len(area.rings[0]) == 64
        assert point_in_polygon(28.6, 77.2, area)
        # ~800 m north is inside, ~1200 m north is not
        assert point_in_polygon(28.6 + 800 / 111111, 77.2, area)
        assert not point_in_polygon(28.6 + 1200 / 111111, 77.2, area)

    def test_invalid_circle(self):
        with pytest.raises(DataValidationError):
            circle_polygon(0, 0, 0)
