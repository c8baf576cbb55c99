"""
CSV exports of samples, hand-overs, neighbours and statistics.
"""

from drive_analytics.outputs.csv_export import (
    export_samples_csv,
    export_stats_csv,
    sanitize_file_name,
)

__all__ = ['export_samples_csv', 'export_stats_csv', 'sanitize_file_name']
