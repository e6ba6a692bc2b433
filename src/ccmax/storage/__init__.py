"""Storage layer for usage history."""

from ccmax.storage.database import Database, open_database

__all__ = ["Database", "open_database"]
