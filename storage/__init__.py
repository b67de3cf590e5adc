"""Storage package providing durable persistence for limit orders."""

from .sqlite_repository import SQLiteOrderStore

__all__ = ["SQLiteOrderStore"]
