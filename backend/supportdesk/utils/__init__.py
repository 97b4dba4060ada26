"""
Utility modules for the application.
Provides time helpers and telemetry; middleware is imported from
``supportdesk.utils.middleware`` directly.
"""

from .timeutils import utcnow, format_duration
from .telemetry import setup_telemetry, metrics_collector

__all__ = [
    'utcnow',
    'format_duration',
    'setup_telemetry',
    'metrics_collector',
]
