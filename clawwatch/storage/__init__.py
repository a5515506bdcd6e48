"""Storage layer for activity and alert persistence."""

from clawwatch.storage.database import Database

__all__ = ["Database"]
