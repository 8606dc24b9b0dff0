"""SQLAlchemy async backend."""

from .connection import SqlStorage, create_all, create_engine

__all__ = ["SqlStorage", "create_all", "create_engine"]
