"""Web interface for the bundle workflow engine."""

from .app import create_app

__all__ = ["create_app"]
