"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from src.api.routes import conversations, incidents, redaction

__all__ = [
    "conversations",
    "incidents",
    "redaction",
]
