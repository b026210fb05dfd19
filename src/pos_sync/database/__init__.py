"""Persistence layer: SQLAlchemy models, session management and repositories."""
