"""
Realtime change notifications.
"""

from .change_feed import ChangeEvent, ChangeFeed, EventBuffer, Subscription, column_equals

__all__ = [
    'ChangeEvent',
    'ChangeFeed',
    'EventBuffer',
    'Subscription',
    'column_equals'
]
