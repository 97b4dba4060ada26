"""
API module for the support desk backend.
"""

from .websocket import task_updates_endpoint, ConnectionManager, manager
from .routes import auth, functions, health, sessions, tasks

__all__ = [
    "task_updates_endpoint",
    "ConnectionManager",
    "manager",
    "auth",
    "functions",
    "health",
    "sessions",
    "tasks",
]
