"""
Sample parser: one raw network-log record to one validated LogSample.

The telemetry API has gone through several payload revisions, so
coordinates and identifiers are looked up through alias lists. Parsing
never raises; records with unusable coordinates are dropped and counted
by :func:`parse_log_samples`.
"""
import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from drive_analytics.data.normalizers import normalize_provider_name, normalize_tech_name
from drive_analytics.data.schemas import LogSample
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

LAT_ALIASES = ('lat', 'latitude', 'lat_deg', 'y')
LNG_ALIASES = ('lon', 'lng', 'long', 'longitude', 'lon_deg', 'x')
ID_ALIASES = ('id', 'log_id', 'logid')
PCI_ALIASES = ('pci', 'physical_cell_id')
CELL_ID_ALIASES = ('cell_id', 'cellid')

# LogSample field -> raw field names, first present wins
NUMERIC_FIELDS = {
    'rsrp': ('rsrp',),
    'rsrq': ('rsrq',),
    'sinr': ('sinr',),
    'dl_tpt': ('dl_tpt', 'dl_thpt'),
    'ul_tpt': ('ul_tpt', 'ul_thpt'),
    'mos': ('mos',),
    'jitter': ('jitter',),
    'latency': ('latency',),
    'packet_loss': ('packet_loss',),
    'speed': ('speed',),
    'battery': ('battery',),
    'level': ('level',),
    'tac': ('tac',),
}


def parse_number(value: Any) -> Optional[float]:
    """
    Tolerant numeric coercion.

    ``None``, empty strings, booleans, non-numeric text and non-finite
    numbers all become ``None``; anything else is returned as ``float``.

    Example:
        >>> parse_number("-97.5")
        -97.5
        >>> parse_number("") is None
        True
        >>> parse_number("n/a") is None
        True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _lower_keys(raw: Mapping) -> dict:
    """Case-insensitive view of a record; the first spelling of a key wins."""
    lowered = {}
    for key, value in raw.items():
        lowered.setdefault(str(key).lower(), value)
    return lowered


def _first_present(record: Mapping, aliases: Tuple[str, ...]) -> Any:
    for alias in aliases:
        value = record.get(alias)
        if value is not None and value != '':
            return value
    return None


def _text(value: Any) -> str:
    return '' if value is None else str(value).strip()


def extract_coordinates(raw: Mapping) -> Optional[Tuple[float, float]]:
    """
    Return ``(lat, lng)`` if the record carries finite, in-range coordinates.

    Example:
        >>> extract_coordinates({"Latitude": "12.97", "LON": 77.59})
        (12.97, 77.59)
        >>> extract_coordinates({"lat": 91, "lon": 0}) is None
        True
    """
    if not isinstance(raw, Mapping):
        return None
    record = _lower_keys(raw)
    lat = parse_number(_first_present(record, LAT_ALIASES))
    lng = parse_number(_first_present(record, LNG_ALIASES))
    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def parse_log_sample(raw: Any, session_id: Any = None) -> Optional[LogSample]:
    """
    Normalize one raw network-log record.

    Args:
        raw: Record as decoded from the API (any type is accepted)
        session_id: Session the page was requested for; the record's own
            ``session_id`` is used when this is ``None``

    Returns:
        LogSample, or ``None`` when the record is not a mapping or its
        coordinates are missing, non-finite or out of range.
    """
    coords = extract_coordinates(raw)
    if coords is None:
        return None

    record = _lower_keys(raw)
    lat, lng = coords

    values = {
        name: parse_number(_first_present(record, aliases))
        for name, aliases in NUMERIC_FIELDS.items()
    }

    num_cells = parse_number(record.get('num_cells'))
    sample_id = _first_present(record, ID_ALIASES)
    session = session_id if session_id is not None else record.get('session_id')
    timestamp = record.get('timestamp')
    band = _text(record.get('band'))

    try:
        return LogSample(
            id=None if sample_id is None else str(sample_id),
            session_id=None if session is None else str(session),
            timestamp=None if timestamp is None else str(timestamp),
            lat=lat,
            lng=lng,
            num_cells=int(num_cells) if num_cells else None,
            provider=normalize_provider_name(record.get('m_alpha_long') or record.get('provider')),
            technology=normalize_tech_name(record.get('network') or record.get('technology')),
            band=band,
            pci=_text(_first_present(record, PCI_ALIASES)),
            cell_id=_text(_first_present(record, CELL_ID_ALIASES)),
            nodeb_id=_text(record.get('nodeb_id')),
            indoor_outdoor=_text(record.get('indoor_outdoor')) or None,
            apps=_text(record.get('apps')),
            **values,
        )
    except ValidationError:
        return None


@dataclass
class ParseReport:
    """Counters for one batch of records."""
    total: int = 0
    kept: int = 0

    @property
    def dropped(self) -> int:
        return self.total - self.kept

    @property
    def drop_rate(self) -> float:
        return self.dropped / self.total if self.total else 0.0

    def add(self, other: 'ParseReport') -> None:
        self.total += other.total
        self.kept += other.kept


def parse_log_samples(
    records: Iterable[Any],
    session_id: Any = None
) -> Tuple[List[LogSample], ParseReport]:
    """
    Parse a batch of raw records, keeping valid samples in input order.

    Args:
        records: Raw records of one page
        session_id: Optional session override (see :func:`parse_log_sample`)

    Returns:
        Tuple of (samples, ParseReport)

    Example:
        >>> samples, report = parse_log_samples([{"lat": 1, "lon": 2}, {"lat": None}])
        >>> report.kept, report.dropped
        (1, 1)
    """
    samples = []
    report = ParseReport()
    for raw in records:
        report.total += 1
        sample = parse_log_sample(raw, session_id)
        if sample is not None:
            samples.append(sample)
            report.kept += 1

    if report.dropped:
        logger.debug(
            "records_dropped",
            total=report.total,
            dropped=report.dropped,
            drop_rate=f"{report.drop_rate:.2%}"
        )
    return samples, report
