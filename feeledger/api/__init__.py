"""FastAPI application for the billing ledger."""

from .app import create_app, get_actor

__all__ = ["create_app", "get_actor"]
