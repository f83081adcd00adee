"""Persistence layer for the registrar (SQLite via SQLAlchemy)."""

from server_init.storage.database import Database

__all__ = ["Database"]
