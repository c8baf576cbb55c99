"""
Statistical aggregation of per-operator analytics rows.

The analytics endpoints return one row per (operator, network, batch),
with the metric under whichever field name the endpoint version uses.
Rows are merged two ways:

- mean merge: a running mean per group, updated one row at a time and
  mergeable across batches by sample count
- quantile merge: five-number box summaries combined with exact extrema
  and sample-weighted quartiles

The quantile merge is an approximation (a weighted average of quantiles
is not the quantile of the union), kept because the endpoints only
expose per-batch summaries.
"""
import math
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd

from drive_analytics.data.normalizers import UNKNOWN, canonical_operator_name, normalize_provider_name
from drive_analytics.data.parser import parse_number
from drive_analytics.utils.error_handling import require_columns, safe_division
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

# Metrics reported as negative dB(m) values
NEGATIVE_METRICS = frozenset({'rsrp', 'rsrq'})

METRIC_TO_FIELD = {
    'samples': 'value',
    'rsrp': 'avg_rsrp',
    'rsrq': 'avg_rsrq',
    'sinr': 'avg_sinr',
    'mos': 'avg_mos',
    'jitter': 'avg_jitter',
    'latency': 'avg_latency',
    'packet_loss': 'avg_packet_loss',
    'dl_tpt': 'avg_dl_tpt',
    'ul_tpt': 'avg_ul_tpt',
}

METRIC_FIELD_FALLBACKS = {
    'samples': ('value', 'count', 'samples', 'sampleCount'),
    'rsrp': ('avg_rsrp', 'avgRsrp', 'rsrp', 'RSRP'),
    'rsrq': ('avg_rsrq', 'avgRsrq', 'rsrq', 'RSRQ'),
    'sinr': ('avg_sinr', 'avgSinr', 'sinr', 'SINR'),
    'mos': ('avg_mos', 'avgMos', 'mos', 'MOS'),
    'jitter': ('avg_jitter', 'avgJitter', 'jitter'),
    'latency': ('avg_latency', 'avgLatency', 'latency'),
    'packet_loss': ('avg_packet_loss', 'avgPacketLoss', 'packet_loss'),
    'dl_tpt': ('avg_dl_tpt', 'avgDlTpt', 'dl_tpt', 'downloadSpeed'),
    'ul_tpt': ('avg_ul_tpt', 'avgUlTpt', 'ul_tpt', 'uploadSpeed'),
}

_METRIC_ALIASES = {
    'packetloss': 'packet_loss',
    'dltpt': 'dl_tpt',
    'ultpt': 'ul_tpt',
    'dl_thpt': 'dl_tpt',
    'ul_thpt': 'ul_tpt',
}

# Network labels that are not a radio technology
EXCLUDED_NETWORK_MARKERS = ('edge', 'no service')


def normalize_metric_key(metric: str) -> str:
    """
    Example:
        >>> normalize_metric_key("dlTpt")
        'dl_tpt'
    """
    key = str(metric or '').strip()
    lowered = key.lower()
    return _METRIC_ALIASES.get(lowered, lowered)


def _count(value: Any, default: float = 0.0) -> float:
    number = parse_number(value)
    return default if number is None else number


def extract_metric_value(item: Mapping, metric: str) -> Optional[float]:
    """
    Read a metric from a row, trying the primary field then the fallbacks.

    The first field that is present and not ``None`` decides; a
    non-numeric value there yields ``None``.

    Example:
        >>> extract_metric_value({"avgRsrp": "-97.2"}, "rsrp")
        -97.2
    """
    if not isinstance(item, Mapping) or not metric:
        return None
    metric = normalize_metric_key(metric)
    fields = (METRIC_TO_FIELD.get(metric),) + tuple(METRIC_FIELD_FALLBACKS.get(metric, ()))
    for field_name in fields:
        if field_name and item.get(field_name) is not None:
            return parse_number(item[field_name])
    return None


def is_valid_metric_value(value: Optional[float], metric: str) -> bool:
    """
    Domain check: finite; RSRP/RSRQ non-zero; sample counts positive;
    everything else non-negative.
    """
    if value is None or not math.isfinite(value):
        return False
    metric = normalize_metric_key(metric)
    if metric in NEGATIVE_METRICS:
        return value != 0
    if metric == 'samples':
        return value > 0
    return value >= 0


def ensure_negative(value: Any) -> float:
    """
    Force the sign of a dB(m) value negative; unparseable input gives 0.

    Example:
        >>> ensure_negative(95)
        -95.0
    """
    number = _count(value)
    return -number if number > 0 else number


@dataclass
class RunningMean:
    """Incremental mean; ``merge`` combines two means by sample count."""
    mean: float = 0.0
    count: int = 0

    def add(self, value: float) -> 'RunningMean':
        if self.count == 0:
            self.mean = float(value)
        else:
            self.mean = (self.mean * self.count + value) / (self.count + 1)
        self.count += 1
        return self

    def merge(self, other: 'RunningMean') -> 'RunningMean':
        total = self.count + other.count
        if total == 0:
            return RunningMean()
        mean = (self.mean * self.count + other.mean * other.count) / total
        return RunningMean(mean=mean, count=total)


def _order(rows: List[Dict[str, Any]], key: str, metric: str) -> List[Dict[str, Any]]:
    negative = normalize_metric_key(metric) in NEGATIVE_METRICS
    return sorted(rows, key=lambda r: r[key], reverse=not negative)


def _provider(item: Mapping) -> Optional[str]:
    name = normalize_provider_name(item.get('operatorName') or item.get('name') or item.get('operator'))
    if not name or name == UNKNOWN:
        return None
    return name


def aggregate_metric_by_operator(rows: Iterable[Mapping], metric: str) -> List[Dict[str, Any]]:
    """
    Mean of ``metric`` per operator.

    Args:
        rows: Raw analytics rows
        metric: Metric key (``rsrp``, ``dl_tpt``, ...)

    Returns:
        ``[{name, value, count}]``; RSRP/RSRQ ascending (forced negative),
        other metrics descending

    Example:
        >>> aggregate_metric_by_operator(
        ...     [{"operatorName": "Jio", "avg_sinr": 10}, {"operatorName": "JIO 4G", "avg_sinr": 14}],
        ...     "sinr")
        [{'name': 'Jio', 'value': 12.0, 'count': 2}]
    """
    negative = normalize_metric_key(metric) in NEGATIVE_METRICS
    merged: Dict[str, RunningMean] = {}
    for item in rows or []:
        if not isinstance(item, Mapping):
            continue
        name = _provider(item)
        value = extract_metric_value(item, metric)
        if name is None or not is_valid_metric_value(value, metric):
            continue
        merged.setdefault(name, RunningMean()).add(value)

    result = [
        {
            'name': name,
            'value': ensure_negative(mean.mean) if negative else mean.mean,
            'count': mean.count,
        }
        for name, mean in merged.items()
    ]
    return _order(result, 'value', metric)


def _excluded_network(network: str) -> bool:
    lowered = network.lower()
    return lowered == 'unknown' or any(marker in lowered for marker in EXCLUDED_NETWORK_MARKERS)


def aggregate_metric_by_operator_network(rows: Iterable[Mapping], metric: str) -> List[Dict[str, Any]]:
    """
    Mean of ``metric`` per operator and network type.

    Each output row is ``{name, <network>: mean, ..., total}`` where
    ``total`` is the unweighted mean across that operator's networks.
    EDGE, unknown and no-service networks are skipped. The ``samples``
    metric is summed instead (see :func:`group_operator_samples_by_network`).
    """
    metric = normalize_metric_key(metric)
    if metric == 'samples':
        return group_operator_samples_by_network(rows)

    negative = metric in NEGATIVE_METRICS
    grouped: Dict[str, Dict[str, RunningMean]] = {}

    for item in rows or []:
        if not isinstance(item, Mapping):
            continue
        name = _provider(item)
        network = item.get('network') or item.get('networkType') or item.get('type')
        if name is None or not network:
            continue
        network = str(network)
        if _excluded_network(network):
            continue
        value = extract_metric_value(item, metric)
        if not is_valid_metric_value(value, metric):
            continue
        final = ensure_negative(value) if negative else value
        grouped.setdefault(name, {}).setdefault(network, RunningMean()).add(final)

    result = []
    for name, networks in grouped.items():
        row: Dict[str, Any] = {'name': name}
        for network, mean in networks.items():
            row[network] = mean.mean
        total = safe_division(sum(m.mean for m in networks.values()), len(networks))
        row['total'] = ensure_negative(total) if negative else total
        result.append(row)
    return _order(result, 'total', metric)


@dataclass(frozen=True)
class BoxSummary:
    """Five-number summary of one operator's metric distribution."""
    operator: str
    min: float
    q1: float
    median: float
    q3: float
    max: float
    samples: float = 0
    source_count: int = 1

    @classmethod
    def from_row(cls, row: Mapping) -> Optional['BoxSummary']:
        """
        Parse a box-data row; the five numbers are sorted so that
        ``min <= q1 <= median <= q3 <= max`` holds even for bad input.

        Returns ``None`` for unknown operators or missing numbers.

        Example:
            >>> BoxSummary.from_row({"Operator": "Airtel", "Min": -120, "Q1": -90,
            ...     "Median": -100, "Q3": -85, "Max": -70, "Samples": 40}).median
            -90.0
        """
        if not isinstance(row, Mapping):
            return None
        provider = normalize_provider_name(row.get('Operator') or row.get('operator'))
        if not provider:
            return None
        numbers = [parse_number(row.get(k)) for k in ('Min', 'Q1', 'Median', 'Q3', 'Max')]
        if any(n is None for n in numbers):
            return None
        low, q1, median, q3, high = sorted(numbers)
        return cls(
            operator=provider,
            min=low, q1=q1, median=median, q3=q3, max=high,
            samples=_count(row.get('Samples')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def merge_box_summaries(summaries: List[BoxSummary]) -> BoxSummary:
    """
    Combine box summaries of one operator.

    Min and max are exact; Q1, median and Q3 are sample-weighted
    averages, where a summary without a sample count weighs 1. The result
    is re-sorted to keep the five numbers ordered.

    Raises:
        ValueError: If ``summaries`` is empty
    """
    if not summaries:
        raise ValueError("merge_box_summaries needs at least one summary")
    if len(summaries) == 1:
        return summaries[0]

    weights = [s.samples or 1 for s in summaries]
    total = sum(weights)
    q1 = sum(s.q1 * w for s, w in zip(summaries, weights)) / total
    median = sum(s.median * w for s, w in zip(summaries, weights)) / total
    q3 = sum(s.q3 * w for s, w in zip(summaries, weights)) / total
    low, q1, median, q3, high = sorted([
        min(s.min for s in summaries), q1, median, q3, max(s.max for s in summaries)
    ])
    return BoxSummary(
        operator=summaries[0].operator,
        min=low, q1=q1, median=median, q3=q3, max=high,
        samples=total,
        source_count=sum(s.source_count for s in summaries),
    )


def box_summaries_from_rows(rows: Iterable[Mapping]) -> List[BoxSummary]:
    """Parse, group by operator and merge box rows; highest median first."""
    grouped: Dict[str, List[BoxSummary]] = {}
    skipped = 0
    for row in rows or []:
        summary = BoxSummary.from_row(row)
        if summary is None:
            skipped += 1
            continue
        grouped.setdefault(summary.operator, []).append(summary)
    if skipped:
        logger.debug("box_rows_skipped", skipped=skipped)
    merged = [merge_box_summaries(entries) for entries in grouped.values()]
    return sorted(merged, key=lambda s: s.median, reverse=True)


def group_operator_samples_by_network(rows: Iterable[Mapping]) -> List[Dict[str, Any]]:
    """
    Sample counts per operator and network, plus a ``total``.

    Returns:
        ``[{name, <network>: count, ..., total}]`` by descending total
    """
    records = []
    for item in rows or []:
        if not isinstance(item, Mapping):
            continue
        network = str(item.get('network') or '').strip()
        if not network:
            continue
        records.append({
            'name': canonical_operator_name(item.get('operatorName') or item.get('name')),
            'network': network,
            'value': _count(item.get('value')),
        })
    if not records:
        return []

    pivot = pd.DataFrame(records).pivot_table(
        index='name', columns='network', values='value', aggfunc='sum', sort=False
    )
    result = []
    for name, counts in pivot.iterrows():
        row: Dict[str, Any] = {'name': name}
        row.update({network: float(v) for network, v in counts.items() if pd.notna(v)})
        row['total'] = float(counts.sum(skipna=True))
        result.append(row)
    return sorted(result, key=lambda r: r['total'], reverse=True)


def build_ranking(
    rows: Iterable[Mapping],
    name_key: str = 'name',
    count_key: str = 'count',
) -> List[Dict[str, Any]]:
    """
    Merge counts per canonical operator and rank them.

    Example:
        >>> build_ranking([{"name": "IND airtel", "count": 3}, {"name": "Airtel", "count": 2},
        ...                {"name": "Jio", "count": 4}])[0]
        {'name': 'Airtel', 'value': 5.0, 'rank': 1, 'label': '#1 Airtel'}
    """
    records = [
        {'name': canonical_operator_name(r.get(name_key)), 'value': _count(r.get(count_key))}
        for r in rows or [] if isinstance(r, Mapping)
    ]
    if not records:
        return []
    totals = (
        pd.DataFrame(records)
        .groupby('name', sort=False)['value'].sum()
        .sort_values(ascending=False, kind='stable')
    )
    return [
        {'name': name, 'value': float(value), 'rank': i, 'label': f"#{i} {name}"}
        for i, (name, value) in enumerate(totals.items(), start=1)
    ]


def band_distribution(rows: Iterable[Mapping]) -> List[Dict[str, Any]]:
    """Sample count per ``Band <n>``, largest first; empty bands dropped."""
    records = []
    for item in rows or []:
        if not isinstance(item, Mapping):
            continue
        band = next(
            (item[k] for k in ('band', 'Band', 'bandNumber', 'name') if item.get(k) is not None),
            None,
        )
        if band is None:
            continue
        count_field = next(
            (item[k] for k in ('count', 'Count', 'samples', 'value') if item.get(k) is not None),
            1,
        )
        records.append({'name': f"Band {band}", 'value': _count(count_field)})
    if not records:
        return []
    totals = pd.DataFrame(records).groupby('name', sort=False)['value'].sum()
    totals = totals[totals > 0].sort_values(ascending=False, kind='stable')
    return [{'name': name, 'value': float(value)} for name, value in totals.items()]


def summarize_indoor_outdoor(rows: Iterable[Mapping]) -> List[Dict[str, Any]]:
    """Normalise indoor/outdoor comparison rows; missing numbers become 0."""
    result = []
    for item in rows or []:
        if not isinstance(item, Mapping):
            continue
        result.append({
            'provider': normalize_provider_name(item.get('OperatorName')) or UNKNOWN,
            'location': item.get('LocationType') or UNKNOWN,
            'avg_rsrp': _count(item.get('AvgRsrp')),
            'avg_rsrq': _count(item.get('AvgRsrq')),
            'avg_sinr': _count(item.get('AvgSinr')),
            'avg_mos': _count(item.get('AvgMos')),
            'avg_dl_tpt': _count(item.get('AvgDlTpt')),
            'avg_ul_tpt': _count(item.get('AvgUlTpt')),
            'sample_count': int(_count(item.get('SampleCount'))),
        })
    return result


def io_summary_totals(io_summary: Any) -> Optional[Dict[str, int]]:
    """
    Indoor/outdoor input counts summed over the sessions of a fetch.

    Example:
        >>> io_summary_totals({"101": {"Indoor": {"inputCount": 3}, "Outdoor": {"inputCount": 5}}})
        {'indoor': 3, 'outdoor': 5, 'total': 8}
    """
    if not isinstance(io_summary, Mapping) or not io_summary:
        return None
    indoor = outdoor = 0
    for session in io_summary.values():
        if not isinstance(session, Mapping):
            continue
        indoor += int(_count((session.get('Indoor') or {}).get('inputCount')))
        outdoor += int(_count((session.get('Outdoor') or {}).get('inputCount')))
    return {'indoor': indoor, 'outdoor': outdoor, 'total': indoor + outdoor}


def apply_top_n(rows: List[Any], top_n: Optional[int]) -> List[Any]:
    """First ``top_n`` rows; ``None``, 0 or -1 keeps all."""
    if not top_n or top_n == -1:
        return list(rows or [])
    return list(rows or [])[:top_n]


def to_dataframe(rows: Iterable[Any]) -> pd.DataFrame:
    """Any aggregation result (dicts or dataclasses) as a DataFrame."""
    records = [asdict(r) if is_dataclass(r) else dict(r) for r in rows or []]
    return pd.DataFrame.from_records(records)


@require_columns(['name', 'total'])
def network_share(df: pd.DataFrame) -> pd.DataFrame:
    """
    Per-network share (%) of each operator's total, for stacked charts.

    Parameters
    ----------
    df : pd.DataFrame
        Output of :func:`group_operator_samples_by_network` as a DataFrame

    Returns
    -------
    pd.DataFrame
        Same shape with network columns expressed as percentages
    """
    shares = df.copy()
    networks = [c for c in shares.columns if c not in ('name', 'total')]
    for network in networks:
        shares[network] = [
            round(100.0 * safe_division(v, t), 2) if pd.notna(v) else 0.0
            for v, t in zip(shares[network], shares['total'])
        ]
    return shares
