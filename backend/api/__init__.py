"""API module for HTTP routes.

This module exposes the FastAPI router for the Lovibe agent backend.
"""

from api.routes import Services, router, set_services

__all__ = ["Services", "router", "set_services"]
