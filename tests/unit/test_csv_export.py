"""
Tests for CSV exports.
"""
from datetime import datetime

import pandas as pd

from drive_analytics.analysis.neighbors import resolve_neighbor_responses
from drive_analytics.core.transitions import detect_transitions
from drive_analytics.data.schemas import LogSample
from drive_analytics.outputs.csv_export import (
    SAMPLE_COLUMNS,
    export_neighbors_csv,
    export_samples_csv,
    export_stats_csv,
    export_transitions_csv,
    sanitize_file_name,
    timestamped_name,
)


def test_sanitize_file_name():
    assert sanitize_file_name("RSRP by operator / 4G") == "RSRP_by_operator_4G"
    assert sanitize_file_name("") == "export"
    assert sanitize_file_name(None, default="data") == "data"
    assert len(sanitize_file_name("x" * 100)) == 64


def test_timestamped_name():
    name = timestamped_name("box data", now=datetime(2024, 5, 1, 9, 30, 5))
    assert name == "box_data_20240501_093005.csv"


class TestSampleExport:
    """Tests for sample and transition exports."""

    def test_samples(self, tmp_path):
        samples = [
            LogSample(session_id="101", lat=28.6, lng=77.2, rsrp=-95, provider="Jio", technology="4G"),
            LogSample(session_id="101", lat=28.7, lng=77.3, rsrp=-101, provider="Jio", technology="5G"),
        ]
        path = export_samples_csv(samples, tmp_path / "out" / "samples.csv")

        df = pd.read_csv(path)
        assert list(df.columns) == SAMPLE_COLUMNS
        assert df['rsrp'].tolist() == [-95, -101]
        assert df['technology'].tolist() == ["4G", "5G"]

    def test_no_samples_writes_nothing(self, tmp_path):
        path = tmp_path / "samples.csv"
        assert export_samples_csv([], path) is None
        assert not path.exists()

    def test_transitions_ordered_by_position(self, tmp_path):
        route = [
            LogSample(lat=0, lng=0, technology="4G", pci="1"),
            LogSample(lat=0, lng=1, technology="5G", pci="2"),
            LogSample(lat=0, lng=2, technology="5G", pci="3"),
        ]
        path = export_transitions_csv(detect_transitions(route), tmp_path / "handovers.csv")

        df = pd.read_csv(path)
        assert df['at_index'].tolist() == [1, 1, 2]
        assert df['kind'].tolist() == ['pci', 'technology', 'pci']


def test_neighbors_flag_collisions(tmp_path):
    resolution = resolve_neighbor_responses([{
        "pci_collision_primary": [{"pci": 9, "locations": [
            {"lat": 1, "lon": 1}, {"lat": 2, "lon": 2},
        ]}],
        "primaries": [{"primary_pci": 4, "neighbours_data": [{"pci": 5, "lat": 3, "lon": 3}]}],
    }])
    path = export_neighbors_csv(resolution, tmp_path / "neighbors.csv")

    df = pd.read_csv(path)
    assert len(df) == 3
    assert df.loc[df['pci'] == 9, 'in_collision'].all()
    assert not df.loc[df['pci'] == 5, 'in_collision'].any()
    assert set(df['source_kind']) == {'collision', 'primary'}


class TestStatsExport:
    """Tests for statistic row exports."""

    def test_nested_columns_dropped(self, tmp_path):
        rows = [
            {"name": "Jio", "value": -92.4, "count": 120, "networks": {"4G": -90}},
            {"name": "Airtel", "value": -95.0, "count": 80, "rank": 2},
        ]
        path = export_stats_csv(rows, tmp_path / "stats.csv")

        df = pd.read_csv(path)
        assert list(df.columns) == ["name", "value", "count", "rank"]
        assert df['name'].tolist() == ["Jio", "Airtel"]

    def test_empty_rows(self, tmp_path):
        assert export_stats_csv([], tmp_path / "stats.csv") is None
