"""
Catalog sink interfaces and the in-memory reference catalog.

The engine talks to the catalog through two narrow surfaces: a connection
that accepts full or delta mutations keyed by a location key, and a query
API used by the incremental reconciler to read the catalog's current state.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Set, Union

import logfire

from dirsync.catalog.entities import CatalogEntity, EntityRelation, entity_links


ANNOTATION_FILTER_PREFIX = "metadata.annotations."


@dataclass
class DeferredEntity:
    """An entity tagged with the location key of the provider that owns it."""

    entity: CatalogEntity
    location_key: str


@dataclass
class FullMutation:
    """Replace everything owned by the location key with ``entities``."""

    entities: List[DeferredEntity]
    type: Literal["full"] = "full"


@dataclass
class DeltaMutation:
    """Add and remove individual entities, leaving the rest untouched."""

    added: List[DeferredEntity] = field(default_factory=list)
    removed: List[DeferredEntity] = field(default_factory=list)
    type: Literal["delta"] = "delta"


Mutation = Union[FullMutation, DeltaMutation]


class CatalogConnection(ABC):
    """Mutation side of the catalog."""

    @abstractmethod
    async def apply_mutation(self, mutation: Mutation) -> None:
        pass


class CatalogApi(ABC):
    """Query side of the catalog."""

    @abstractmethod
    async def get_entities(self, filter: Mapping[str, str]) -> List[CatalogEntity]:
        """
        Entities matching every key of ``filter``.

        Supported keys are ``kind`` and ``metadata.annotations.<annotation>``.
        """

    @abstractmethod
    async def get_entity_by_ref(self, ref: str) -> Optional[CatalogEntity]:
        pass


def compute_relations(entities: Iterable[CatalogEntity]) -> Dict[str, List[EntityRelation]]:
    """
    Derive relations between stored entities, keyed by entity ref.

    Both directions are emitted whichever side declared the link, so a user
    listed in a group's ``members`` has ``memberOf`` even if its own
    ``memberOf`` is empty.
    """
    relations: Dict[str, Set[EntityRelation]] = defaultdict(set)
    for entity in entities:
        for source, relation, target, inverse in entity_links(entity):
            relations[source].add(EntityRelation(relation, target))
            relations[target].add(EntityRelation(inverse, source))
    return {ref: sorted(rels) for ref, rels in relations.items()}


def check_filter(filter: Mapping[str, str]) -> None:
    for key in filter:
        if key not in ("kind", "metadata.name") and not key.startswith(ANNOTATION_FILTER_PREFIX):
            raise ValueError(f"Unsupported catalog filter key: {key}")


def matches_filter(entity: CatalogEntity, filter: Mapping[str, str]) -> bool:
    for key, expected in filter.items():
        if key == "kind":
            if entity.kind.lower() != expected.lower():
                return False
        elif key.startswith(ANNOTATION_FILTER_PREFIX):
            annotation = key[len(ANNOTATION_FILTER_PREFIX):]
            if entity.annotations.get(annotation) != expected:
                return False
        elif key == "metadata.name":
            if entity.name != expected:
                return False
        else:
            raise ValueError(f"Unsupported catalog filter key: {key}")
    return True


class BaseCatalog(CatalogConnection, CatalogApi):
    """
    Shared mutation and query logic for the reference catalogs.

    Subclasses find matching entities and the relations of a set of refs;
    relations always account for every stored entity, whichever location
    key owns it.
    """

    @abstractmethod
    async def _find(self, filter: Mapping[str, str], ref: Optional[str] = None) -> List[CatalogEntity]:
        """Stored entities matching ``filter`` (and ``ref`` when given), without relations."""

    @abstractmethod
    async def _relations_of(self, refs: Sequence[str]) -> Dict[str, List[EntityRelation]]:
        pass

    @abstractmethod
    async def _replace(self, location_key: str, entities: List[CatalogEntity]) -> None:
        pass

    @abstractmethod
    async def _apply_delta(self, added: List[DeferredEntity], removed: List[DeferredEntity]) -> None:
        pass

    async def apply_mutation(self, mutation: Mutation) -> None:
        if mutation.type == "full":
            by_key: Dict[str, List[CatalogEntity]] = defaultdict(list)
            for deferred in mutation.entities:
                by_key[deferred.location_key].append(deferred.entity)
            for location_key, entities in by_key.items():
                await self._replace(location_key, entities)
            logfire.info(
                "Applied full mutation",
                location_keys=sorted(by_key),
                entities=len(mutation.entities)
            )
        else:
            await self._apply_delta(mutation.added, mutation.removed)
            logfire.info(
                "Applied delta mutation",
                added=len(mutation.added),
                removed=len(mutation.removed)
            )

    async def _with_relations(self, entities: List[CatalogEntity]) -> List[CatalogEntity]:
        if not entities:
            return []
        relations = await self._relations_of([e.ref for e in entities])
        result = []
        for entity in entities:
            enriched = entity.copy()
            enriched.relations = list(relations.get(entity.ref, []))
            result.append(enriched)
        return result

    async def get_entities(self, filter: Mapping[str, str]) -> List[CatalogEntity]:
        check_filter(filter)
        return await self._with_relations(await self._find(filter))

    async def get_entity_by_ref(self, ref: str) -> Optional[CatalogEntity]:
        found = await self._find({}, ref.lower())
        if not found:
            return None
        return (await self._with_relations(found[:1]))[0]


class InMemoryCatalog(BaseCatalog):
    """Catalog held in process memory."""

    def __init__(self):
        self._entities: Dict[str, Dict[str, CatalogEntity]] = defaultdict(dict)
        self.mutations: List[Mutation] = []

    async def apply_mutation(self, mutation: Mutation) -> None:
        self.mutations.append(mutation)
        await super().apply_mutation(mutation)

    def _stored(self) -> List[CatalogEntity]:
        return [e for owned in self._entities.values() for e in owned.values()]

    async def _find(self, filter: Mapping[str, str], ref: Optional[str] = None) -> List[CatalogEntity]:
        return [
            e for e in self._stored()
            if (ref is None or e.ref == ref) and matches_filter(e, filter)
        ]

    async def _relations_of(self, refs: Sequence[str]) -> Dict[str, List[EntityRelation]]:
        return compute_relations(self._stored())

    async def _replace(self, location_key: str, entities: List[CatalogEntity]) -> None:
        self._entities[location_key] = {e.ref: e.copy() for e in entities}

    async def _apply_delta(self, added: List[DeferredEntity], removed: List[DeferredEntity]) -> None:
        for deferred in removed:
            self._entities[deferred.location_key].pop(deferred.entity.ref, None)
        for deferred in added:
            self._entities[deferred.location_key][deferred.entity.ref] = deferred.entity.copy()

    def owned_by(self, location_key: str) -> List[CatalogEntity]:
        return list(self._entities.get(location_key, {}).values())
