"""
Tests for hand-over detection and descriptive statistics.
"""
from drive_analytics.core.stats import calculate_stats, summarize_samples
from drive_analytics.core.transitions import detect_transitions
from drive_analytics.data.schemas import LogSample


def sample(index, technology="4G", band="3", pci="0", **fields):
    return LogSample(
        id=str(index),
        lat=28.6 + index * 0.001,
        lng=77.2,
        technology=technology,
        band=band,
        pci=pci,
        session_id="101",
        **fields,
    )


class TestDetectTransitions:
    """Tests for technology, band and PCI change detection."""

    def test_changes_along_route(self):
        route = [
            sample(0),
            sample(1),
            sample(2, technology="5G", band="n78", pci="7"),
            sample(3, technology="Unknown", band="", pci=""),
            sample(4),
            sample(5, pci="5"),
        ]
        found = detect_transitions(route)

        assert [t.at_index for t in found['technology']] == [2]
        assert [t.at_index for t in found['band']] == [2]
        assert [t.at_index for t in found['pci']] == [2, 5]

        handover = found['pci'][0]
        assert (handover.from_value, handover.to_value) == ("0", "7")
        assert handover.lat == route[2].lat
        assert handover.session_id == "101"

    def test_missing_values_do_not_bridge(self):
        """A gap in reporting resets the comparison."""
        route = [sample(0, pci="1"), sample(1, pci=""), sample(2, pci="2")]
        assert detect_transitions(route)['pci'] == []

    def test_pci_zero_is_a_value(self):
        route = [sample(0, pci="0"), sample(1, pci="12")]
        assert len(detect_transitions(route)['pci']) == 1

    def test_short_routes(self):
        for route in ([], [sample(0)]):
            found = detect_transitions(route)
            assert found == {'technology': [], 'band': [], 'pci': []}

    def test_to_dict(self):
        route = [sample(0, band="3"), sample(1, band="40")]
        row = detect_transitions(route)['band'][0].to_dict()

        assert row['from'] == "3"
        assert row['to'] == "40"
        assert row['kind'] == 'band'
        assert row['at_index'] == 1


class TestStats:
    """Tests for metric summaries."""

    def test_calculate_stats(self):
        samples = [sample(0, rsrp=-90), sample(1, rsrp=-100), sample(2, rsrp=-95), sample(3)]
        assert calculate_stats(samples, 'rsrp') == {
            'avg': -95.0, 'min': -100.0, 'max': -90.0, 'median': -95.0, 'count': 3,
        }

    def test_dicts_and_strings(self):
        stats = calculate_stats([{"sinr": "3.333"}, {"sinr": 10}, {"sinr": "bad"}], 'sinr')
        assert stats['avg'] == 6.67
        assert stats['count'] == 2

    def test_no_values(self):
        assert calculate_stats([sample(0)], 'mos') is None
        assert calculate_stats([], 'rsrp') is None

    def test_summarize_samples(self):
        summary = summarize_samples(iter([sample(0, rsrp=-80)]), ['rsrp', 'sinr'])
        assert summary['rsrp']['count'] == 1
        assert summary['sinr'] is None
