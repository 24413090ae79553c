"""
API module: HTTP endpoints for identity, payments and health.
"""
from app.api.server import create_app, start_server

__all__ = ["create_app", "start_server"]
