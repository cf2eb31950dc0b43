"""Persistence layer: SQLAlchemy models, engine and session management."""
