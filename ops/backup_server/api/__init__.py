"""
HTTP API for the backup server.
"""

from .app import create_app
from .routes import event_stream
from .settings import ApiSettings

__all__ = ["ApiSettings", "create_app", "event_stream"]
