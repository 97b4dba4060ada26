"""
API routes module initialization.
"""
from . import auth, functions, health, sessions, tasks

__all__ = ["auth", "functions", "health", "sessions", "tasks"]
