"""
Jarvis Board: personal task board backend.

Task and activity persistence (SQLite or PostgreSQL), full-text search for
the command palette, and the FastAPI application serving the board UI.
"""

__version__ = "0.1.0"
