"""
Catalog side of the synchronization engine.

This package contains the catalog entity model, the mutation shapes accepted
by a catalog connection, the catalog query interface and reference sinks.
The database-backed sink lives in ``dirsync.catalog.store``.
"""

from dirsync.catalog.entities import (
    CatalogEntity,
    UserEntity,
    GroupEntity,
    EntityRelation,
    DIRECTORY_ID_ANNOTATION,
    DIRECTORY_REALM_ANNOTATION,
    entity_ref,
    with_locations,
)
from dirsync.catalog.connection import (
    CatalogApi,
    CatalogConnection,
    DeferredEntity,
    DeltaMutation,
    FullMutation,
    InMemoryCatalog,
)

__all__ = [
    "CatalogEntity",
    "UserEntity",
    "GroupEntity",
    "EntityRelation",
    "DIRECTORY_ID_ANNOTATION",
    "DIRECTORY_REALM_ANNOTATION",
    "entity_ref",
    "with_locations",
    "CatalogApi",
    "CatalogConnection",
    "DeferredEntity",
    "DeltaMutation",
    "FullMutation",
    "InMemoryCatalog",
]
