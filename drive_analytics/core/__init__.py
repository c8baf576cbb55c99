"""
Core algorithms: polygon filtering, threshold classification,
hand-over detection and descriptive statistics.
"""
from drive_analytics.core.geometry import (
    PolygonFilter,
    haversine_distance,
    point_in_polygon,
    filter_samples_by_polygons,
    polygons_from_wkt,
    route_length_m,
)
from drive_analytics.core.thresholds import ThresholdClassifier, classify, build_legend
from drive_analytics.core.transitions import detect_transitions, Transition
from drive_analytics.core.stats import calculate_stats

__all__ = [
    'PolygonFilter',
    'haversine_distance',
    'route_length_m',
    'point_in_polygon',
    'filter_samples_by_polygons',
    'polygons_from_wkt',
    'ThresholdClassifier',
    'classify',
    'build_legend',
    'detect_transitions',
    'Transition',
    'calculate_stats',
]
