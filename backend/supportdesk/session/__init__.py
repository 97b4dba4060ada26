"""
Task time accounting.
"""

from .recorder import SessionRecorder
from .duration_cache import DurationCache

__all__ = [
    'SessionRecorder',
    'DurationCache'
]
