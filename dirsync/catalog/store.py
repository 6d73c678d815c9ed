"""
Database-backed catalog sink.

Persists catalog entities with SQLAlchemy so that the catalog survives
process restarts; query semantics are shared with the in-memory catalog.
Lookups narrow rows in SQL and read relations from the link table, so a
query never loads the whole catalog.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from sqlalchemy import delete, func, or_, select

from dirsync.catalog.connection import ANNOTATION_FILTER_PREFIX, BaseCatalog, DeferredEntity, matches_filter
from dirsync.catalog.entities import DIRECTORY_ID_ANNOTATION, CatalogEntity, EntityRelation
from dirsync.db.database import DatabaseManager
from dirsync.db.models.catalog import CatalogEntityRecord, CatalogRelationRecord


DIRECTORY_ID_FILTER = ANNOTATION_FILTER_PREFIX + DIRECTORY_ID_ANNOTATION


def _rows(entities: Iterable[CatalogEntity], location_key: str) -> List:
    rows: List = []
    for entity in entities:
        rows.append(CatalogEntityRecord.from_entity(entity, location_key))
        rows.extend(CatalogRelationRecord.for_entity(entity, location_key))
    return rows


class DatabaseCatalog(BaseCatalog):
    """Catalog stored in the ``catalog_entity_record`` and ``catalog_relation_record`` tables."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    async def _find(self, filter: Mapping[str, str], ref: Optional[str] = None) -> List[CatalogEntity]:
        query = select(CatalogEntityRecord).order_by(CatalogEntityRecord.id)
        if ref is not None:
            query = query.where(CatalogEntityRecord.entity_ref == ref)
        for key, expected in filter.items():
            if key == "kind":
                query = query.where(func.lower(CatalogEntityRecord.kind) == expected.lower())
            elif key == "metadata.name":
                query = query.where(CatalogEntityRecord.name == expected)
            elif key == DIRECTORY_ID_FILTER:
                query = query.where(CatalogEntityRecord.directory_id == expected)

        async with self.database.session_scope() as session:
            result = await session.execute(query)
            entities = [record.to_entity() for record in result.scalars().all()]
        # other annotations are only in the stored document
        return [e for e in entities if matches_filter(e, filter)]

    async def _relations_of(self, refs: Sequence[str]) -> Dict[str, List[EntityRelation]]:
        wanted = set(refs)
        async with self.database.session_scope() as session:
            result = await session.execute(
                select(CatalogRelationRecord).where(or_(
                    CatalogRelationRecord.source_ref.in_(list(wanted)),
                    CatalogRelationRecord.target_ref.in_(list(wanted)),
                ))
            )
            links = result.scalars().all()

        relations: Dict[str, Set[EntityRelation]] = defaultdict(set)
        for link in links:
            if link.source_ref in wanted:
                relations[link.source_ref].add(EntityRelation(link.relation_type, link.target_ref))
            if link.target_ref in wanted:
                relations[link.target_ref].add(EntityRelation(link.inverse_type, link.source_ref))
        return {ref: sorted(rels) for ref, rels in relations.items()}

    async def _replace(self, location_key: str, entities: List[CatalogEntity]) -> None:
        unique = {e.ref: e for e in entities}
        async with self.database.session_scope() as session:
            await session.execute(
                delete(CatalogEntityRecord).where(CatalogEntityRecord.location_key == location_key)
            )
            await session.execute(
                delete(CatalogRelationRecord).where(CatalogRelationRecord.location_key == location_key)
            )
            # an entity claimed by another location key moves to this one
            if unique:
                await session.execute(
                    delete(CatalogEntityRecord).where(CatalogEntityRecord.entity_ref.in_(list(unique)))
                )
                await session.execute(
                    delete(CatalogRelationRecord).where(CatalogRelationRecord.source_ref.in_(list(unique)))
                )
            session.add_all(_rows(unique.values(), location_key))

    async def _apply_delta(self, added: List[DeferredEntity], removed: List[DeferredEntity]) -> None:
        async with self.database.session_scope() as session:
            for deferred in removed:
                await session.execute(
                    delete(CatalogEntityRecord).where(
                        CatalogEntityRecord.entity_ref == deferred.entity.ref,
                        CatalogEntityRecord.location_key == deferred.location_key,
                    )
                )
                await session.execute(
                    delete(CatalogRelationRecord).where(
                        CatalogRelationRecord.source_ref == deferred.entity.ref,
                        CatalogRelationRecord.location_key == deferred.location_key,
                    )
                )
            unique = {d.entity.ref: d for d in added}
            if unique:
                await session.execute(
                    delete(CatalogEntityRecord).where(CatalogEntityRecord.entity_ref.in_(list(unique)))
                )
                await session.execute(
                    delete(CatalogRelationRecord).where(CatalogRelationRecord.source_ref.in_(list(unique)))
                )
            for deferred in unique.values():
                session.add_all(_rows([deferred.entity], deferred.location_key))
