"""
Descriptive statistics over parsed samples.
"""
from typing import Any, Dict, Iterable, Optional

import numpy as np

from drive_analytics.data.parser import parse_number


def _metric_values(samples: Iterable[Any], metric: str) -> np.ndarray:
    values = []
    for sample in samples:
        raw = sample.get(metric) if isinstance(sample, dict) else getattr(sample, metric, None)
        number = parse_number(raw)
        if number is not None:
            values.append(number)
    return np.asarray(values, dtype=float)


def calculate_stats(samples: Iterable[Any], metric: str) -> Optional[Dict[str, float]]:
    """
    Average, extremes and median of one metric, rounded to 2 decimals.

    Args:
        samples: LogSample objects or plain dicts
        metric: Field name (e.g. ``rsrp``)

    Returns:
        Dict with ``avg``, ``min``, ``max``, ``median`` and ``count``, or
        ``None`` when no sample carries a numeric value

    Example:
        >>> calculate_stats([{"rsrp": -90}, {"rsrp": "-100"}, {"rsrp": None}], "rsrp")
        {'avg': -95.0, 'min': -100.0, 'max': -90.0, 'median': -95.0, 'count': 2}
    """
    values = _metric_values(samples, metric)
    if values.size == 0:
        return None
    return {
        'avg': round(float(values.mean()), 2),
        'min': round(float(values.min()), 2),
        'max': round(float(values.max()), 2),
        'median': round(float(np.median(values)), 2),
        'count': int(values.size),
    }


def summarize_samples(samples: Iterable[Any], metrics: Iterable[str]) -> Dict[str, Optional[Dict[str, float]]]:
    """:func:`calculate_stats` for several metrics at once."""
    samples = list(samples)
    return {metric: calculate_stats(samples, metric) for metric in metrics}
