"""
Pluggable entity transformers.

A transformer receives the freshly built entity plus the raw directory record
and returns the entity to emit, possibly renamed or otherwise adjusted. Returning
``None`` (or raising ``EntityRejected``) drops the record. Transformers may be
plain functions or coroutines.
"""

import re
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Sequence, Union

from dirsync.catalog.entities import GroupEntity, UserEntity
from dirsync.core.errors import ConfigError
from dirsync.directory.models import DirectoryGroup, DirectoryUser

if TYPE_CHECKING:
    from dirsync.sync.builder import ParsedGroup


UserTransformer = Callable[
    [UserEntity, DirectoryUser, str, Sequence["ParsedGroup"]],
    Union[Optional[UserEntity], Awaitable[Optional[UserEntity]]],
]
GroupTransformer = Callable[
    [GroupEntity, DirectoryGroup, str],
    Union[Optional[GroupEntity], Awaitable[Optional[GroupEntity]]],
]


async def noop_user_transformer(entity: UserEntity, user: DirectoryUser, realm: str,
                                groups: Sequence["ParsedGroup"]) -> Optional[UserEntity]:
    return entity


async def noop_group_transformer(entity: GroupEntity, group: DirectoryGroup,
                                 realm: str) -> Optional[GroupEntity]:
    return entity


async def sanitize_email_transformer(entity: UserEntity, user: DirectoryUser, realm: str,
                                     groups: Sequence["ParsedGroup"]) -> Optional[UserEntity]:
    """Make e-mail style usernames valid entity names."""
    entity.name = re.sub(r"[^a-zA-Z0-9]", "-", entity.name)
    return entity


class TransformerRegistry:
    """
    Holds the user and group transformer of the process.

    Each transformer may be bound once; a second bind is a configuration error.
    """

    def __init__(self):
        self._user_transformer: Optional[UserTransformer] = None
        self._group_transformer: Optional[GroupTransformer] = None

    def set_user_transformer(self, transformer: UserTransformer) -> None:
        if self._user_transformer is not None:
            raise ConfigError("User transformer may only be set once")
        self._user_transformer = transformer

    def set_group_transformer(self, transformer: GroupTransformer) -> None:
        if self._group_transformer is not None:
            raise ConfigError("Group transformer may only be set once")
        self._group_transformer = transformer

    @property
    def user_transformer(self) -> Optional[UserTransformer]:
        return self._user_transformer

    @property
    def group_transformer(self) -> Optional[GroupTransformer]:
        return self._group_transformer


transformer_registry = TransformerRegistry()
