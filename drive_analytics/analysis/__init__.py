"""
Cross-session analysis: neighbour/collision resolution and
per-operator statistical aggregation.
"""
from drive_analytics.analysis.neighbors import NeighborResolver, resolve_neighbor_responses
from drive_analytics.analysis.aggregation import (
    aggregate_metric_by_operator,
    aggregate_metric_by_operator_network,
    BoxSummary,
    merge_box_summaries,
    RunningMean,
)

__all__ = [
    'NeighborResolver',
    'resolve_neighbor_responses',
    'aggregate_metric_by_operator',
    'aggregate_metric_by_operator_network',
    'BoxSummary',
    'merge_box_summaries',
    'RunningMean',
]
