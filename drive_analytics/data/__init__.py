"""
Data model, record parsing and remote data sources.

Provides Pydantic schemas for samples, polygons, threshold rules and
neighbour records, the tolerant record parser, and the API clients.
"""
from drive_analytics.data.schemas import LogSample, Polygon, ThresholdRule, NeighborRecord
from drive_analytics.data.parser import parse_log_sample, parse_log_samples, parse_number
from drive_analytics.data.payloads import decode_records, decode_page
from drive_analytics.data.sources import (
    LogSource,
    TelemetryApiClient,
    AnalyticsApiClient,
)

__all__ = [
    'LogSample',
    'Polygon',
    'ThresholdRule',
    'NeighborRecord',
    'parse_log_sample',
    'parse_log_samples',
    'parse_number',
    'decode_records',
    'decode_page',
    'LogSource',
    'TelemetryApiClient',
    'AnalyticsApiClient',
]
