"""
Incremental reconciler.

Turns one directory change event into a delta mutation. Each handler looks
up the authoritative state (the catalog for what was emitted before, the
directory for what exists now) instead of trusting event order, and always
replaces an entity with an add/remove pair rather than updating it.
"""

from contextlib import AbstractAsyncContextManager
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import logfire

from dirsync.catalog.connection import CatalogApi, CatalogConnection, DeferredEntity, DeltaMutation
from dirsync.catalog.entities import (
    DIRECTORY_ID_ANNOTATION,
    RELATION_CHILD_OF,
    RELATION_HAS_MEMBER,
    RELATION_MEMBER_OF,
    RELATION_PARENT_OF,
    CatalogEntity,
    GroupEntity,
    UserEntity,
    with_locations,
)
from dirsync.core.config import ProviderConfig
from dirsync.core.errors import NotInitializedError
from dirsync.directory.models import DirectoryGroup
from dirsync.events.models import DirectoryEvent, EventTopic
from dirsync.sync.builder import (
    ParsedGroup,
    ParsedUser,
    parse_group,
    parse_groups,
    parse_user,
    resolve_references,
)
from dirsync.sync.reader import (
    DirectorySession,
    create_group_entities,
    enrich_group,
    get_all_groups,
)
from dirsync.sync.transformers import GroupTransformer, UserTransformer


SessionFactory = Callable[[], AbstractAsyncContextManager]


class IncrementalReconciler:
    """
    Computes minimal add/remove deltas for single directory events.

    Args:
        config: Provider the events belong to
        catalog_api: Query side of the catalog, for the previously emitted state
        session_factory: Opens an authenticated ``DirectorySession``
        user_transformer: Optional user transformer
        group_transformer: Optional group transformer
    """

    def __init__(self, config: ProviderConfig, catalog_api: CatalogApi,
                 session_factory: SessionFactory,
                 user_transformer: Optional[UserTransformer] = None,
                 group_transformer: Optional[GroupTransformer] = None):
        self.config = config
        self.catalog_api = catalog_api
        self.session_factory = session_factory
        self.user_transformer = user_transformer
        self.group_transformer = group_transformer
        self._handlers: Dict[str, Callable[[DirectoryEvent, CatalogConnection], Awaitable[None]]] = {
            EventTopic.USER_CREATE: self.handle_user_create,
            EventTopic.USER_UPDATE: self.handle_user_update,
            EventTopic.USER_DELETE: self.handle_user_delete,
            EventTopic.USER_ADD_GROUP: self.handle_membership_change,
            EventTopic.USER_REMOVE_GROUP: self.handle_membership_change,
            EventTopic.GROUP_CREATE: self.handle_group_create,
            EventTopic.GROUP_UPDATE: self.handle_group_update,
            EventTopic.GROUP_DELETE: self.handle_group_delete,
        }

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def handle(self, event: DirectoryEvent,
                     connection: Optional[CatalogConnection]) -> None:
        """
        Dispatch one event.

        Unknown event types are ignored.

        Raises:
            NotInitializedError: If there is no catalog connection yet
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logfire.debug("Ignoring unhandled event type", provider=self.config.id, event_type=event.type)
            return

        connection = self._require(connection)
        with logfire.span("Reconcile event", provider=self.config.id, event_type=event.type,
                          resource_path=event.resource_path):
            await handler(event, connection)

    def _require(self, connection: Optional[CatalogConnection]) -> CatalogConnection:
        if connection is None:
            raise NotInitializedError(provider=self.config.id)
        return connection

    def _located(self, entities: Sequence[CatalogEntity]) -> List[DeferredEntity]:
        unique: Dict[str, CatalogEntity] = {}
        for entity in entities:
            unique.setdefault(entity.ref, entity)
        return [
            DeferredEntity(
                entity=with_locations(self.config.base_url, self.config.realm, entity),
                location_key=self.config.location_key,
            )
            for entity in unique.values()
        ]

    async def _apply(self, connection: CatalogConnection,
                     added: Sequence[CatalogEntity] = (),
                     removed: Sequence[CatalogEntity] = ()) -> None:
        mutation = DeltaMutation(added=self._located(added), removed=self._located(removed))
        await connection.apply_mutation(mutation)
        logfire.info(
            "Applied event delta",
            provider=self.config.id,
            added=[d.entity.ref for d in mutation.added],
            removed=[d.entity.ref for d in mutation.removed]
        )

    async def _find_in_catalog(self, kind: str, directory_id: str) -> Optional[CatalogEntity]:
        entities = await self.catalog_api.get_entities({
            "kind": kind,
            f"metadata.annotations.{DIRECTORY_ID_ANNOTATION}": directory_id,
        })
        return entities[0] if entities else None

    async def _parse_enriched_group(self, session: DirectorySession, group: DirectoryGroup,
                                    include_subgroups: bool = True) -> Optional[GroupEntity]:
        await enrich_group(session, group, include_subgroups)
        return await parse_group(group, self.config.realm, self.group_transformer)

    # Users

    async def handle_user_create(self, event: DirectoryEvent, connection: CatalogConnection) -> None:
        user_id = event.path[1]
        async with self.session_factory() as session:
            user = await session.call(session.client.find_user, self.config.realm, user_id)
        if user is None:
            logfire.warning("Created user not found in directory", provider=self.config.id, user_id=user_id)
            return

        entity = await parse_user(user, self.config.realm, [], {}, self.user_transformer)
        if entity is None:
            return
        await self._apply(connection, added=[entity])

    async def handle_user_delete(self, event: DirectoryEvent, connection: CatalogConnection) -> None:
        user_id = event.path[1]
        old_user = await self._find_in_catalog(UserEntity.kind, user_id)
        if old_user is None:
            logfire.warning("Deleted user not found in catalog", provider=self.config.id, user_id=user_id)
            return
        await self._apply(connection, removed=[old_user])

    async def handle_user_update(self, event: DirectoryEvent, connection: CatalogConnection) -> None:
        user_id = event.path[1]
        old_user = await self._find_in_catalog(UserEntity.kind, user_id)
        if old_user is None:
            logfire.warning("Updated user not found in catalog", provider=self.config.id, user_id=user_id)
            return

        group_ids = []
        for ref in old_user.relation_targets(RELATION_MEMBER_OF):
            group_entity = await self.catalog_api.get_entity_by_ref(ref)
            if group_entity is not None and group_entity.directory_id:
                group_ids.append(group_entity.directory_id)

        async with self.session_factory() as session:
            groups = []
            for group_id in group_ids:
                group = await session.call(session.client.find_group, self.config.realm, group_id)
                if group is not None:
                    groups.append(group)
            new_user = await session.call(session.client.find_user, self.config.realm, user_id)
            if new_user is None:
                logfire.warning("Updated user not found in directory", provider=self.config.id, user_id=user_id)
                return
            groups = await create_group_entities(session, groups, include_subgroups=False)

        parsed_groups = await parse_groups(groups, self.config.realm, self.group_transformer)
        group_index = {new_user.username: [g.group.name for g in parsed_groups]}
        entity = await parse_user(new_user, self.config.realm, parsed_groups, group_index,
                                  self.user_transformer)
        if entity is None:
            await self._apply(connection, removed=[old_user])
            return

        resolve_references([ParsedUser(user=new_user, entity=entity)], parsed_groups)
        await self._apply(connection, added=[entity], removed=[old_user])

    # Memberships

    async def handle_membership_change(self, event: DirectoryEvent, connection: CatalogConnection) -> None:
        path = event.path
        user_id, group_id = path[1], path[3]

        old_user = await self._find_in_catalog(UserEntity.kind, user_id)
        if old_user is None:
            logfire.warning("Member not found in catalog", provider=self.config.id, user_id=user_id)
            return

        async with self.session_factory() as session:
            new_user = await session.call(session.client.find_user, self.config.realm, user_id)
            group = await session.call(session.client.find_group, self.config.realm, group_id)
            if new_user is None or group is None:
                logfire.warning(
                    "Membership change could not be resolved in directory",
                    provider=self.config.id,
                    user_id=user_id,
                    group_id=group_id
                )
                return
            group_entity = await self._parse_enriched_group(session, group, include_subgroups=False)

        if group_entity is None:
            logfire.debug("Membership change for a rejected group", provider=self.config.id, group_id=group_id)
            return

        member_of = list(old_user.member_of) if isinstance(old_user, UserEntity) else []
        if event.type == EventTopic.USER_ADD_GROUP:
            if group_entity.name not in member_of:
                member_of.append(group_entity.name)
        else:
            member_of = [name for name in member_of if name != group_entity.name]

        parsed_groups = [ParsedGroup(group=group, entity=group_entity)]
        entity = await parse_user(new_user, self.config.realm, parsed_groups,
                                  {new_user.username: member_of}, self.user_transformer)
        if entity is None:
            await self._apply(connection, removed=[old_user])
            return
        await self._apply(connection, added=[entity], removed=[old_user])

    # Groups

    async def handle_group_create(self, event: DirectoryEvent, connection: CatalogConnection) -> None:
        path = event.path
        if len(path) == 2:
            await self._create_top_level_group(path[1], connection)
        elif len(path) == 3:
            subgroup_id = event.representation_dict().get("id")
            if not subgroup_id:
                logfire.warning("Subgroup event without representation id", provider=self.config.id,
                                resource_path=event.resource_path)
                return
            await self._create_subgroup(path[1], subgroup_id, connection)
        else:
            logfire.warning("Unexpected group resource path", provider=self.config.id,
                            resource_path=event.resource_path)

    async def _create_top_level_group(self, group_id: str, connection: CatalogConnection) -> None:
        async with self.session_factory() as session:
            group = await session.call(session.client.find_group, self.config.realm, group_id)
            if group is None:
                logfire.warning("Created group not found in directory", provider=self.config.id, group_id=group_id)
                return
            entity = await self._parse_enriched_group(session, group)
        if entity is not None:
            await self._apply(connection, added=[entity])

    async def _create_subgroup(self, parent_id: str, subgroup_id: str,
                               connection: CatalogConnection) -> None:
        old_parent = await self._find_in_catalog(GroupEntity.kind, parent_id)

        async with self.session_factory() as session:
            parent = await session.call(session.client.find_group, self.config.realm, parent_id)
            subgroup = await session.call(session.client.find_group, self.config.realm, subgroup_id)
            if parent is None or subgroup is None:
                logfire.warning(
                    "Created subgroup could not be resolved in directory",
                    provider=self.config.id,
                    parent_id=parent_id,
                    group_id=subgroup_id
                )
                return
            if not subgroup.parent_id:
                subgroup.parent_id = parent.id
            groups = await create_group_entities(session, [subgroup, parent])

        parsed = await parse_groups(groups, self.config.realm, self.group_transformer)
        await self._apply(
            connection,
            added=[p.entity for p in parsed],
            removed=[old_parent] if old_parent is not None else [],
        )

    async def handle_group_update(self, event: DirectoryEvent, connection: CatalogConnection) -> None:
        group_id = event.path[1]
        old_group = await self._find_in_catalog(GroupEntity.kind, group_id)
        if old_group is None:
            logfire.warning("Updated group not found in catalog", provider=self.config.id, group_id=group_id)
            return

        async with self.session_factory() as session:
            group = await session.call(session.client.find_group, self.config.realm, group_id)
            if group is None:
                logfire.warning("Updated group not found in directory", provider=self.config.id, group_id=group_id)
                return
            entity = await self._parse_enriched_group(session, group)

        await self._apply(connection, added=[entity] if entity else [], removed=[old_group])

    async def _collect_subgroups(self, group: CatalogEntity) -> List[CatalogEntity]:
        subgroups: List[CatalogEntity] = []
        seen = {group.ref}
        pending = list(group.relation_targets(RELATION_PARENT_OF))
        while pending:
            ref = pending.pop(0)
            if ref in seen:
                continue
            seen.add(ref)
            entity = await self.catalog_api.get_entity_by_ref(ref)
            if entity is None:
                continue
            subgroups.append(entity)
            pending.extend(entity.relation_targets(RELATION_PARENT_OF))
        return subgroups

    async def handle_group_delete(self, event: DirectoryEvent, connection: CatalogConnection) -> None:
        """
        Remove a group, its subgroups and the stale entities that point at them.

        Affected users get their memberships recomputed from the directory;
        their new ``memberOf`` holds directory group names as returned, without
        the post-transform name resolution of a full read.
        """
        group_id = event.path[1]
        old_group = await self._find_in_catalog(GroupEntity.kind, group_id)
        if old_group is None:
            logfire.warning("Deleted group not found in catalog", provider=self.config.id, group_id=group_id)
            return

        parent_refs = old_group.relation_targets(RELATION_CHILD_OF)
        old_parent = await self.catalog_api.get_entity_by_ref(parent_refs[0]) if parent_refs else None
        subgroups = await self._collect_subgroups(old_group)

        user_refs: List[str] = []
        for group in [old_group, *subgroups]:
            for ref in group.relation_targets(RELATION_HAS_MEMBER):
                if ref not in user_refs:
                    user_refs.append(ref)
        old_users = []
        for ref in user_refs:
            user = await self.catalog_api.get_entity_by_ref(ref)
            if user is not None:
                old_users.append(user)

        added: List[CatalogEntity] = []
        async with self.session_factory() as session:
            if old_parent is not None and old_parent.directory_id:
                parent = await session.call(session.client.find_group, self.config.realm,
                                            old_parent.directory_id)
                if parent is not None:
                    parent_entity = await self._parse_enriched_group(session, parent)
                    if parent_entity is not None:
                        added.append(parent_entity)

            for old_user in old_users:
                if not old_user.directory_id:
                    continue
                user = await session.call(session.client.find_user, self.config.realm,
                                          old_user.directory_id)
                if user is None:
                    continue
                groups = await get_all_groups(session, old_user.directory_id)
                entity = await parse_user(
                    user,
                    self.config.realm,
                    [],
                    {user.username: [g.name for g in groups]},
                    self.user_transformer,
                )
                if entity is not None:
                    added.append(entity)

        removed = [old_group]
        if old_parent is not None:
            removed.append(old_parent)
        removed.extend(subgroups)
        removed.extend(old_users)

        logfire.info(
            "Group deletion cascades",
            provider=self.config.id,
            group_id=group_id,
            subgroups=len(subgroups),
            users=len(old_users)
        )
        await self._apply(connection, added=added, removed=removed)

