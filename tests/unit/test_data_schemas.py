"""
Tests for Pydantic data schemas.
"""
import pytest
from pydantic import ValidationError

from drive_analytics.data.schemas import (
    LogSample,
    Polygon,
    ThresholdRule,
    NeighborRecord,
    SourceKind,
)


class TestLogSample:
    """Tests for LogSample schema."""

    def test_valid_sample(self):
        """Test creating a valid sample."""
        sample = LogSample(session_id='1042', lat=28.6139, lng=77.2090, rsrp=-95.0, provider='Jio')

        assert sample.latitude == 28.6139
        assert sample.longitude == 77.2090
        assert sample.technology == 'Unknown'
        assert sample.pci == ''

    def test_invalid_latitude(self):
        """Test that invalid latitude is rejected."""
        with pytest.raises(ValidationError):
            LogSample(lat=95.0, lng=0.0)

    def test_invalid_longitude(self):
        """Test that invalid longitude is rejected."""
        with pytest.raises(ValidationError):
            LogSample(lat=0.0, lng=-181.0)

    def test_non_finite_coordinates_rejected(self):
        """NaN coordinates are not valid."""
        with pytest.raises(ValidationError):
            LogSample(lat=float('nan'), lng=0.0)

    def test_samples_are_frozen(self):
        """Samples are immutable once parsed."""
        sample = LogSample(lat=1.0, lng=2.0)
        with pytest.raises(ValidationError):
            sample.rsrp = -80.0


class TestPolygon:
    """Tests for Polygon schema."""

    def test_bbox_computed_from_outer_ring(self):
        """The bounding box covers the outer ring."""
        polygon = Polygon.from_coords([(0, 0), (0, 2), (1, 2), (1, 0)], name="area")

        assert polygon.bbox.south == 0
        assert polygon.bbox.north == 1
        assert polygon.bbox.west == 0
        assert polygon.bbox.east == 2
        assert polygon.bbox.contains(0.5, 1.5)
        assert not polygon.bbox.contains(1.5, 1.5)

    def test_holes_kept_as_extra_rings(self):
        polygon = Polygon.from_coords(
            [(0, 0), (0, 10), (10, 10), (10, 0)],
            holes=[[(4, 4), (4, 6), (6, 6), (6, 4)]],
        )
        assert len(polygon.rings) == 2

    def test_ring_needs_three_vertices(self):
        """Degenerate rings are rejected."""
        with pytest.raises(ValidationError):
            Polygon.from_coords([(0, 0), (1, 1)])

    def test_polygon_needs_a_ring(self):
        with pytest.raises(ValidationError):
            Polygon(rings=[])


class TestThresholdRule:
    """Tests for ThresholdRule schema."""

    def test_quoted_bounds_are_parsed(self):
        """Bounds stored as strings are converted."""
        rule = ThresholdRule(min=" -105", max="-95", color="#fde047")

        assert rule.min == -105.0
        assert rule.max == -95.0

    def test_non_numeric_bound_rejected(self):
        with pytest.raises(ValidationError):
            ThresholdRule(min="low", max=0, color="#000")


def test_neighbor_record_kind():
    """Collision records are flagged as such."""
    record = NeighborRecord(id="c-1", pci="101", lat=28.6, lng=77.2, source_kind="collision")

    assert record.source_kind is SourceKind.COLLISION
    assert record.is_collision
