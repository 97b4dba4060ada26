"""
Support desk backend.
Task lifecycle, session time accounting and LLM-guided task dialogs.

Version: 1.0.0
"""

__version__ = "1.0.0"
