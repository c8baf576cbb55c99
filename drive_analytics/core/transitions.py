"""
Hand-over detection along a drive route.

Samples are walked in fetch order; a transition is recorded wherever the
serving technology, band or PCI differs from the previous sample's.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from drive_analytics.data.normalizers import UNKNOWN, normalize_tech_name
from drive_analytics.data.schemas import LogSample

TRANSITION_KINDS = ('technology', 'band', 'pci')


@dataclass(frozen=True)
class Transition:
    """A change of serving technology, band or PCI between two samples."""
    kind: str
    from_value: str
    to_value: str
    at_index: int
    lat: float
    lng: float
    timestamp: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'from': self.from_value,
            'to': self.to_value,
            'at_index': self.at_index,
            'lat': self.lat,
            'lng': self.lng,
            'timestamp': self.timestamp,
            'session_id': self.session_id,
            'kind': self.kind,
        }


def _present(value) -> bool:
    # PCI "0" is a real cell; only missing values are skipped
    return value is not None and str(value) != ''


def detect_transitions(samples: Sequence[LogSample]) -> Dict[str, List[Transition]]:
    """
    Find technology, band and PCI changes along a route.

    A change is only recorded when both the previous and the current
    value are present. The previous value always advances, so a gap in
    reporting does not bridge two distant samples.

    Args:
        samples: Samples in route order

    Returns:
        Dict with ``technology``, ``band`` and ``pci`` lists of Transition

    Example:
        >>> route = [LogSample(lat=0, lng=0, technology='LTE', pci='0'),
        ...          LogSample(lat=0, lng=1, technology='NR', pci='7')]
        >>> [t.to_value for t in detect_transitions(route)['pci']]
        ['7']
    """
    found: Dict[str, List[Transition]] = {kind: [] for kind in TRANSITION_KINDS}
    if len(samples) < 2:
        return found

    def values(sample: LogSample) -> Dict[str, object]:
        technology = normalize_tech_name(sample.technology)
        return {
            'technology': technology if technology != UNKNOWN else None,
            'band': sample.band,
            'pci': sample.pci,
        }

    previous = values(samples[0])
    for index in range(1, len(samples)):
        sample = samples[index]
        current = values(sample)
        for kind in TRANSITION_KINDS:
            before, after = previous[kind], current[kind]
            if _present(before) and _present(after) and str(before) != str(after):
                found[kind].append(Transition(
                    kind=kind,
                    from_value=str(before),
                    to_value=str(after),
                    at_index=index,
                    lat=sample.lat,
                    lng=sample.lng,
                    timestamp=sample.timestamp,
                    session_id=sample.session_id,
                ))
        previous = current
    return found
