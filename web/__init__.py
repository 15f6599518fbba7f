"""FastAPI web application for the bundle image builder.

This module provides the HTTP API over the build orchestrator. Route
handlers are thin proxies; all build logic lives in bundle_imagegen/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
