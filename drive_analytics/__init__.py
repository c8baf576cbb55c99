"""
Drive Analytics: retrieval and analysis of drive-test network telemetry.
"""
from drive_analytics.service import DriveAnalyticsService
from drive_analytics.utils.config import PipelineConfig, load_config, get_default_config

__version__ = "0.1.0"

__all__ = [
    'DriveAnalyticsService',
    'PipelineConfig',
    'load_config',
    'get_default_config',
]
