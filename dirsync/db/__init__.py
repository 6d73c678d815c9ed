"""
Database package for the directory synchronization engine.

This package contains the persistence models and database management
utilities backing the database catalog sink.
"""

from dirsync.db.database import (
    Base,
    BaseModel,
    DatabaseManager
)

__all__ = [
    "Base",
    "BaseModel",
    "DatabaseManager"
]
