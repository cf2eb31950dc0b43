"""Billing CLI sub-application."""

from .billing_cli import app

__all__ = ["app"]
