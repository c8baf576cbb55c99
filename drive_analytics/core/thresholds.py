"""
Metric-to-color threshold classification.

A threshold set is an ordered list of ``ThresholdRule`` ranges for one
metric. Values are matched against the half-open range ``[min, max)``;
values beyond the configured extremes take the color of the extreme
rule, and anything unclassifiable (missing value, empty set, gap between
ranges) gets the neutral color.

Categorical dimensions (provider, technology, band) and PCI use fixed
color schemes instead of thresholds.
"""
import json
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from drive_analytics.data.normalizers import (
    UNKNOWN,
    normalize_band_name,
    normalize_provider_name,
    normalize_tech_name,
)
from drive_analytics.data.parser import parse_number
from drive_analytics.data.payloads import decode_response
from drive_analytics.data.schemas import ThresholdRule
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

NEUTRAL_COLOR = "#808080"
CATEGORY_FALLBACK_COLOR = "#a8a6a2"

# Metrics whose values are negative and where "higher" is better
NEGATIVE_METRICS = frozenset({'rsrp', 'rsrq'})

METRIC_ALIASES = {
    'dl_tpt': 'dl_thpt',
    'ul_tpt': 'ul_thpt',
    'dl_throughput': 'dl_thpt',
    'ul_throughput': 'ul_thpt',
    'bler': 'lte_bler',
    'mos_score': 'mos',
    'coverage_hole': 'coveragehole',
}

# Metric key -> field of the threshold-settings record (JSON-encoded list)
SETTINGS_FIELDS = {
    'coveragehole': 'coveragehole_json',
    'rsrp': 'rsrp_json',
    'rsrq': 'rsrq_json',
    'sinr': 'sinr_json',
    'dl_thpt': 'dl_thpt_json',
    'ul_thpt': 'ul_thpt_json',
    'volte_call': 'volte_call',
    'lte_bler': 'lte_bler_json',
    'mos': 'mos_json',
}

CATEGORICAL_METRICS = ('provider', 'technology', 'band')

PCI_COLOR_PALETTE = (
    "#FF6B6B", "#4ECDC4", "#45B7D1", "#FFA07A", "#98D8C8",
    "#F7DC6F", "#BB8FCE", "#85C1E2", "#F8B739", "#52BE80",
    "#EC7063", "#5DADE2", "#F39C12", "#A569BD", "#48C9B0",
    "#E74C3C", "#3498DB", "#E67E22", "#9B59B6", "#1ABC9C",
)

DYNAMIC_COLOR_PALETTE = (
    "#FF5733", "#33FF57", "#3357FF", "#FF33A1", "#A133FF",
    "#33FFF5", "#FFD133", "#FF8C33", "#8CFF33", "#338CFF",
    "#FF3333", "#33FF8C", "#5733FF", "#FF33D1", "#33FFD1",
    "#D1FF33", "#FF6633", "#66FF33", "#3366FF", "#FF3366",
    "#C70039", "#900C3F", "#581845", "#1A5276", "#148F77",
    "#D4AC0D", "#AF601A", "#6C3483", "#1E8449", "#2874A6",
    "#CB4335", "#7D3C98", "#2E86C1", "#17A589", "#D68910",
    "#BA4A00", "#8E44AD", "#3498DB", "#16A085", "#F39C12",
)

_BAND_COLORS = {
    "#EF4444": (1, 3, 6, 19),
    "#F59E0B": (2, 4, 5, 9),
    "#10B981": (7, 8, 18),
    "#3B82F6": (12, 13, 17, 20, 40),
    "#8B5CF6": (25, 26, 41),
    "#EC4899": (28,),
    "#6366F1": (38, 39),
}

COLOR_SCHEMES: Dict[str, Dict[str, str]] = {
    'provider': {
        "Jio": "#3B82F6",
        "Airtel": "#EF4444",
        "VI India": "#22C55E",
        "BSNL": "#F59E0B",
        "Yas": "#7d1b49",
        "(466001)IR": "#6b705c",
        "Far Eastone": "#00B4D8",
        "TW Mobile": "#F77F00",
        "Chunghwa Telecom": "#E63946",
        "APTG": "#2A9D8F",
        UNKNOWN: CATEGORY_FALLBACK_COLOR,
    },
    'technology': {
        "5G": "#EC4899",
        "4G": "#8B5CF6",
        "3G": "#10B981",
        "2G": "#6B7280",
        UNKNOWN: CATEGORY_FALLBACK_COLOR,
    },
    'band': {
        **{f"B{band}": color for color, bands in _BAND_COLORS.items() for band in bands},
        "n5": "#F59E0B",
        "n28": "#EC4899",
        "n78": "#F472B6",
        UNKNOWN: CATEGORY_FALLBACK_COLOR,
    },
}


def _ramp(bounds: Sequence[float], colors: Sequence[str], labels: Sequence[str]) -> List[ThresholdRule]:
    """Contiguous rules from ascending bounds; ``len(bounds) == len(colors) + 1``."""
    return [
        ThresholdRule(min=lo, max=hi, color=color, label=label)
        for lo, hi, color, label in zip(bounds[:-1], bounds[1:], colors, labels)
    ]


_QUALITY_COLORS = ("#ef4444", "#f59e0b", "#fde047", "#60a5fa", "#93c5fd", "#065f46")
_QUALITY_LABELS = ("Very Poor", "Poor", "Fair", "Good", "Very Good", "Excellent")

# Used until the server-side settings are loaded
DEFAULT_THRESHOLDS: Dict[str, List[ThresholdRule]] = {
    'rsrp': _ramp(
        (-140, -115, -105, -95, -90, -85, -75, 0),
        ("#ef4444", "#f59e0b", "#fde047", "#1d4ed8", "#60a5fa", "#86efac", "#065f46"),
        ("No Coverage", "Very Poor", "Poor", "Fair", "Good", "Very Good", "Excellent"),
    ),
    'rsrq': _ramp((-34, -16, -12, -9, -6, -3, 0), _QUALITY_COLORS, _QUALITY_LABELS),
    'sinr': _ramp((-20, 0, 5, 10, 15, 20, 40), _QUALITY_COLORS, _QUALITY_LABELS),
    'dl_thpt': _ramp((0, 1, 5, 15, 30, 60, 1000), _QUALITY_COLORS, _QUALITY_LABELS),
    'ul_thpt': _ramp((0, 1, 5, 15, 30, 60, 1000), _QUALITY_COLORS, _QUALITY_LABELS),
    'mos': _ramp(
        (1, 2, 3, 3.5, 4, 5),
        ("#ef4444", "#f59e0b", "#fde047", "#60a5fa", "#065f46"),
        ("Bad", "Poor", "Fair", "Good", "Excellent"),
    ),
    'lte_bler': _ramp(
        (0, 1, 2, 5, 10, 100),
        ("#065f46", "#60a5fa", "#fde047", "#f59e0b", "#ef4444"),
        ("Excellent", "Good", "Fair", "Poor", "Bad"),
    ),
}


def normalize_metric(metric: Any) -> str:
    """
    Canonical threshold key for a metric name.

    Example:
        >>> normalize_metric("DL-Tpt")
        'dl_thpt'
    """
    key = str(metric or '').strip().lower().replace('-', '_').replace(' ', '_')
    return METRIC_ALIASES.get(key, key)


def _as_rules(rules: Optional[Iterable[Any]]) -> List[ThresholdRule]:
    """Coerce dicts to ThresholdRule, skipping malformed entries."""
    parsed = []
    for rule in rules or []:
        if isinstance(rule, ThresholdRule):
            parsed.append(rule)
            continue
        try:
            parsed.append(ThresholdRule.model_validate(rule))
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning("threshold_rule_skipped", rule=str(rule)[:120], error=str(e))
    return parsed


def match_rule(value: Any, rules: Iterable[Any]) -> Optional[ThresholdRule]:
    """
    Find the rule a value falls into, or ``None``.

    Rules are walked in order and the first match wins: ``min <= v < max``,
    or ``v >= min`` for an open-ended rule whose ``max <= min``. When none
    matches, values at or above the largest ``max`` take that rule and
    values below the smallest ``min`` take the rule owning it.
    """
    v = parse_number(value)
    if v is None:
        return None
    rules = _as_rules(rules)
    if not rules:
        return None

    for rule in rules:
        if rule.max <= rule.min:
            if v >= rule.min:
                return rule
        elif rule.min <= v < rule.max:
            return rule

    top = max(rules, key=lambda r: r.max)
    if v >= top.max:
        return top
    bottom = min(rules, key=lambda r: r.min)
    if v < bottom.min:
        return bottom
    return None


def classify(value: Any, rules: Iterable[Any]) -> str:
    """
    Color for ``value`` under a threshold set. Never raises.

    Args:
        value: Metric value (numbers and numeric strings accepted)
        rules: Ordered ThresholdRule objects or equivalent dicts

    Returns:
        Hex color; ``NEUTRAL_COLOR`` for missing values, empty sets and gaps

    Example:
        >>> rules = [{"min": -120, "max": -100, "color": "#f00"},
        ...          {"min": -100, "max": -80, "color": "#0f0"}]
        >>> classify(-90, rules)
        '#0f0'
        >>> classify(-60, rules)
        '#0f0'
        >>> classify(None, rules)
        '#808080'
    """
    rule = match_rule(value, rules)
    return rule.color if rule is not None else NEUTRAL_COLOR


def _format_bound(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def build_legend(
    rules: Iterable[Any],
    metric: str,
    values: Optional[Iterable[Any]] = None,
) -> List[Dict[str, Any]]:
    """
    Legend entries ``{color, label, min, max}`` for a threshold set.

    Negative-domain metrics (RSRP, RSRQ) are listed strongest first, i.e.
    by descending ``min``; other metrics keep the set's own order. When
    ``values`` is given each entry also carries the number of values it
    classified, and ``count`` / ``percent`` are added.

    Example:
        >>> legend = build_legend(DEFAULT_THRESHOLDS['rsrp'], 'rsrp')
        >>> legend[0]['label']
        'Excellent'
    """
    rules = _as_rules(rules)
    entries = [
        {
            'color': rule.color,
            'label': rule.range or rule.label or f"{_format_bound(rule.min)} to {_format_bound(rule.max)}",
            'min': rule.min,
            'max': rule.max,
        }
        for rule in rules
    ]

    if values is not None:
        counts = [0] * len(rules)
        classified = 0
        for value in values:
            rule = match_rule(value, rules)
            if rule is not None:
                counts[rules.index(rule)] += 1
                classified += 1
        for entry, count in zip(entries, counts):
            entry['count'] = count
            entry['percent'] = round(100.0 * count / classified, 1) if classified else 0.0

    if normalize_metric(metric) in NEGATIVE_METRICS:
        entries.sort(key=lambda e: e['min'], reverse=True)
    return entries


def _string_hash(text: str) -> int:
    # 32-bit rolling hash, stable across processes (unlike hash())
    h = 0
    for ch in text.lower().strip():
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def palette_color(value: Any) -> str:
    """Deterministic palette color for values without a fixed color."""
    return DYNAMIC_COLOR_PALETTE[_string_hash(str(value)) % len(DYNAMIC_COLOR_PALETTE)]


def pci_color(value: Any) -> str:
    """
    20-color modulo palette for PCIs.

    Example:
        >>> pci_color(21) == pci_color(1)
        True
        >>> pci_color("n/a")
        '#808080'
    """
    number = parse_number(value)
    if number is None:
        return NEUTRAL_COLOR
    return PCI_COLOR_PALETTE[abs(math.floor(number)) % len(PCI_COLOR_PALETTE)]


def categorical_color(color_by: str, value: Any) -> str:
    """
    Color for a provider, technology or band value.

    The value is canonicalised first; unknown values get the scheme's
    ``Unknown`` color and unlisted ones a stable palette color.
    """
    scheme = COLOR_SCHEMES.get(color_by)
    if scheme is None or value is None or value == '':
        return CATEGORY_FALLBACK_COLOR

    if color_by == 'provider':
        name = normalize_provider_name(value)
    elif color_by == 'technology':
        name = normalize_tech_name(value)
    else:
        name = normalize_band_name(value)

    if not name or name == UNKNOWN:
        return scheme[UNKNOWN]
    if name in scheme:
        return scheme[name]
    for key, color in scheme.items():
        if key.lower() == name.lower():
            return color
    return palette_color(name)


class ThresholdClassifier:
    """
    Per-metric threshold sets with alias resolution.

    Starts from :data:`DEFAULT_THRESHOLDS`; :meth:`from_settings` replaces
    the sets with the user's saved settings.

    Example:
        >>> classifier = ThresholdClassifier()
        >>> classifier.classify(-98, 'rsrp')
        '#fde047'
        >>> classifier.classify(21, 'pci') == pci_color(1)
        True
    """

    def __init__(self, sets: Optional[Mapping[str, Iterable[Any]]] = None):
        self._sets: Dict[str, List[ThresholdRule]] = {
            metric: list(rules) for metric, rules in DEFAULT_THRESHOLDS.items()
        }
        self.settings_id = None
        self.user_id = None
        self.is_default = None
        for metric, rules in (sets or {}).items():
            self.update(metric, rules)

    @classmethod
    def from_settings(cls, response: Any) -> 'ThresholdClassifier':
        """
        Build from a threshold-settings response.

        Each ``*_json`` field holds a JSON-encoded list of rules. A field
        that is missing or does not decode keeps the built-in default.
        """
        data = decode_response(response, fallback={})
        classifier = cls()
        if not isinstance(data, Mapping):
            logger.warning("threshold_settings_unreadable", payload_type=type(data).__name__)
            return classifier

        classifier.settings_id = data.get('id')
        classifier.user_id = data.get('user_id')
        classifier.is_default = data.get('is_default')

        for metric, field in SETTINGS_FIELDS.items():
            raw = data.get(field)
            if raw in (None, ''):
                continue
            try:
                rules = json.loads(raw) if isinstance(raw, str) else raw
            except json.JSONDecodeError as e:
                logger.warning("threshold_field_invalid", field=field, error=str(e))
                continue
            if isinstance(rules, list):
                classifier.update(metric, rules)
        logger.info("thresholds_loaded", metrics=sorted(classifier._sets))
        return classifier

    @property
    def metrics(self) -> List[str]:
        return sorted(self._sets)

    def update(self, metric: str, rules: Iterable[Any]) -> None:
        self._sets[normalize_metric(metric)] = _as_rules(rules)

    def rules(self, metric: str) -> List[ThresholdRule]:
        return list(self._sets.get(normalize_metric(metric), []))

    def classify(self, value: Any, metric: str) -> str:
        key = normalize_metric(metric)
        if key == 'pci':
            return pci_color(value)
        if key in CATEGORICAL_METRICS:
            return categorical_color(key, value)
        return classify(value, self._sets.get(key, []))

    def legend(self, metric: str, values: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        return build_legend(self.rules(metric), metric, values)

    def threshold_info(self, value: Any, metric: str) -> Optional[Dict[str, Any]]:
        """Matched rule as ``{color, label, range, min, max}``, or ``None``."""
        rule = match_rule(value, self.rules(metric))
        if rule is None:
            return None
        return {
            'color': rule.color,
            'label': rule.label,
            'range': rule.range,
            'min': rule.min,
            'max': rule.max,
        }

    def to_payload(self) -> Dict[str, Any]:
        """Serialise to the save-threshold request body."""
        payload: Dict[str, Any] = {}
        if self.settings_id is not None:
            payload['id'] = self.settings_id
        if self.user_id is not None:
            payload['user_id'] = self.user_id
        for metric, field in SETTINGS_FIELDS.items():
            if metric in self._sets:
                payload[field] = json.dumps(
                    [rule.model_dump(exclude_none=True) for rule in self._sets[metric]]
                )
        return payload
