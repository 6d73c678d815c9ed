"""
Entity builder.

Turns raw directory records into catalog entities, runs the pluggable
transformers over them and builds the username -> groups index. Because
transformers may rename entities, a second pass rewrites every cross-entity
reference (members, children, parent, memberOf) from raw directory names to
the post-transform entity names, dropping references that no longer resolve.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import logfire

from dirsync.catalog.entities import (
    DIRECTORY_ID_ANNOTATION,
    DIRECTORY_REALM_ANNOTATION,
    GroupEntity,
    UserEntity,
)
from dirsync.core.errors import EntityRejected
from dirsync.directory.models import DirectoryGroup, DirectoryUser
from dirsync.sync.transformers import (
    GroupTransformer,
    UserTransformer,
    noop_group_transformer,
    noop_user_transformer,
)


GroupIndex = Dict[str, List[str]]


@dataclass
class ParsedGroup:
    """A directory group together with the entity built from it."""

    group: DirectoryGroup
    entity: GroupEntity


@dataclass
class ParsedUser:
    """A directory user together with the entity built from it."""

    user: DirectoryUser
    entity: UserEntity


async def _apply(transformer, *args: Any):
    result = transformer(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _annotations(directory_id: str, realm: str) -> Dict[str, str]:
    return {
        DIRECTORY_ID_ANNOTATION: directory_id,
        DIRECTORY_REALM_ANNOTATION: realm,
    }


async def parse_group(group: DirectoryGroup, realm: str,
                      transformer: Optional[GroupTransformer] = None) -> Optional[GroupEntity]:
    """
    Build a Group entity from a directory group.

    ``children``, ``parent`` and ``members`` hold raw directory names here;
    they are rewritten by ``resolve_references`` once every transformer ran.

    Returns:
        The transformed entity, or None if the record was rejected
    """
    if not group.id:
        logfire.warning("Skipping directory group without id", group=group.name)
        return None

    entity = GroupEntity(
        name=group.name,
        annotations=_annotations(group.id, realm),
        display_name=group.name,
        parent=group.parent,
        children=[g.name for g in group.sub_groups],
        members=list(group.members),
    )

    try:
        result = await _apply(transformer or noop_group_transformer, entity, group, realm)
    except EntityRejected as e:
        logfire.debug("Group rejected by transformer", group_id=group.id, reason=e.message)
        return None

    if result is None:
        logfire.debug("Group rejected by transformer", group_id=group.id)
        return None
    if not result.directory_id or not result.realm:
        logfire.warning("Transformer removed the directory id or realm annotation, dropping group",
                        group_id=group.id)
        return None
    return result


async def parse_user(user: DirectoryUser, realm: str, groups: Sequence[ParsedGroup],
                     group_index: Mapping[str, List[str]],
                     transformer: Optional[UserTransformer] = None) -> Optional[UserEntity]:
    """
    Build a User entity from a directory user.

    ``memberOf`` is looked up from ``group_index`` by username.

    Returns:
        The transformed entity, or None if the record was rejected
    """
    if not user.id:
        logfire.warning("Skipping directory user without id", username=user.username)
        return None

    entity = UserEntity(
        name=user.username,
        annotations=_annotations(user.id, realm),
        email=user.email,
        display_name=user.display_name,
        member_of=list(group_index.get(user.username, [])),
    )

    try:
        result = await _apply(transformer or noop_user_transformer, entity, user, realm, list(groups))
    except EntityRejected as e:
        logfire.debug("User rejected by transformer", user_id=user.id, reason=e.message)
        return None

    if result is None:
        logfire.debug("User rejected by transformer", user_id=user.id)
        return None
    if not result.directory_id or not result.realm:
        logfire.warning("Transformer removed the directory id or realm annotation, dropping user",
                        user_id=user.id)
        return None
    return result


async def parse_groups(groups: Sequence[DirectoryGroup], realm: str,
                       transformer: Optional[GroupTransformer] = None) -> List[ParsedGroup]:
    parsed = []
    for group in groups:
        entity = await parse_group(group, realm, transformer)
        if entity is not None:
            parsed.append(ParsedGroup(group=group, entity=entity))
    return parsed


async def parse_users(users: Sequence[DirectoryUser], realm: str, groups: Sequence[ParsedGroup],
                      group_index: Mapping[str, List[str]],
                      transformer: Optional[UserTransformer] = None) -> List[ParsedUser]:
    parsed = []
    for user in users:
        entity = await parse_user(user, realm, groups, group_index, transformer)
        if entity is not None:
            parsed.append(ParsedUser(user=user, entity=entity))
    return parsed


def build_group_index(groups: Sequence[ParsedGroup]) -> GroupIndex:
    """
    Map each member username to the raw names of the groups it belongs to.

    Set semantics per user: a group name appears at most once.
    """
    index: GroupIndex = {}
    for parsed in groups:
        for member in parsed.group.members:
            names = index.setdefault(member, [])
            if parsed.group.name not in names:
                names.append(parsed.group.name)
    return index


def _resolve_all(names: Sequence[str], mapping: Mapping[str, str]) -> List[str]:
    resolved: List[str] = []
    for name in names:
        target = mapping.get(name)
        if target is not None and target not in resolved:
            resolved.append(target)
    return resolved


def resolve_references(users: Sequence[ParsedUser],
                       groups: Sequence[ParsedGroup]) -> None:
    """Rewrite raw directory names into post-transform entity names, in place."""
    user_names = {u.user.username: u.entity.name for u in users}
    group_names = {g.group.name: g.entity.name for g in groups}

    for parsed in groups:
        entity = parsed.entity
        entity.members = _resolve_all(entity.members, user_names)
        entity.children = _resolve_all(entity.children, group_names)
        entity.parent = group_names.get(entity.parent) if entity.parent else None

    for parsed in users:
        parsed.entity.member_of = _resolve_all(parsed.entity.member_of, group_names)


async def build_entities(users: Sequence[DirectoryUser], groups: Sequence[DirectoryGroup],
                         realm: str,
                         user_transformer: Optional[UserTransformer] = None,
                         group_transformer: Optional[GroupTransformer] = None):
    """
    Build the resolved user and group entities of one full read.

    Returns:
        Tuple of (user entities, group entities)
    """
    parsed_groups = await parse_groups(groups, realm, group_transformer)
    group_index = build_group_index(parsed_groups)
    parsed_users = await parse_users(users, realm, parsed_groups, group_index, user_transformer)

    resolve_references(parsed_users, parsed_groups)
    return [u.entity for u in parsed_users], [g.entity for g in parsed_groups]
