"""
Database models for the directory synchronization engine.
"""

from dirsync.db.models.catalog import CatalogEntityRecord, CatalogRelationRecord

__all__ = [
    "CatalogEntityRecord",
    "CatalogRelationRecord",
]
