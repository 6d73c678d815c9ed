"""
Catalog persistence model.

One row per catalog entity, owned by exactly one location key. The full
entity document is stored as JSON; kind, name and directory id are broken out
for lookups. Declared links are kept in their own table, indexed on both ends.
"""

from typing import Any, Dict, List

from sqlalchemy import Column, Index, JSON, String

from dirsync.catalog.entities import CatalogEntity, entity_links
from dirsync.db.database import BaseModel


class CatalogEntityRecord(BaseModel):
    """Stored catalog entity."""

    __table_args__ = (
        Index("ix_catalog_entity_location_key", "location_key"),
        Index("ix_catalog_entity_directory_id", "directory_id"),
    )

    entity_ref = Column(String(512), unique=True, nullable=False)
    location_key = Column(String(255), nullable=False)
    kind = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    directory_id = Column(String(255), nullable=True)
    document = Column(JSON, nullable=False)

    @classmethod
    def from_entity(cls, entity: CatalogEntity, location_key: str) -> "CatalogEntityRecord":
        document: Dict[str, Any] = entity.to_dict()
        document.pop("relations", None)
        return cls(
            entity_ref=entity.ref,
            location_key=location_key,
            kind=entity.kind,
            name=entity.name,
            directory_id=entity.directory_id,
            document=document,
        )

    def to_entity(self) -> CatalogEntity:
        return CatalogEntity.from_dict(self.document)

    def __repr__(self):
        return f"<CatalogEntityRecord(ref={self.entity_ref}, location_key={self.location_key})>"


class CatalogRelationRecord(BaseModel):
    """
    One link declared by a stored entity.

    Rows are owned by their source entity and replaced with it, so relations
    of any ref can be read in both directions without loading the catalog.
    """

    __table_args__ = (
        Index("ix_catalog_relation_source_ref", "source_ref"),
        Index("ix_catalog_relation_target_ref", "target_ref"),
        Index("ix_catalog_relation_location_key", "location_key"),
    )

    source_ref = Column(String(512), nullable=False)
    relation_type = Column(String(50), nullable=False)
    target_ref = Column(String(512), nullable=False)
    inverse_type = Column(String(50), nullable=False)
    location_key = Column(String(255), nullable=False)

    @classmethod
    def for_entity(cls, entity: CatalogEntity, location_key: str) -> List["CatalogRelationRecord"]:
        return [
            cls(
                source_ref=source,
                relation_type=relation,
                target_ref=target,
                inverse_type=inverse,
                location_key=location_key,
            )
            for source, relation, target, inverse in entity_links(entity)
        ]

    def __repr__(self):
        return f"<CatalogRelationRecord({self.source_ref} {self.relation_type} {self.target_ref})>"
