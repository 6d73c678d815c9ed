"""
Directory reader.

Paginated, bounded-concurrency reads of users and groups, plus the two group
hierarchy strategies:

- recursive listing (server major version >= 23): subgroups are listed per
  group through ``/groups/{id}/children``, one hierarchy level at a time
- embedded subgroups (older servers): the top-level listing already carries
  full subgroup trees, which are walked depth first

Both produce the same flat, depth-first ordered list of groups with parent
names resolved, which is then enriched with member usernames.
"""

import math
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterator,
    List,
    Optional,
    Protocol,
    TypeVar,
)

import logfire

from dirsync.core.config import ProviderConfig
from dirsync.core.errors import AuthError, BatchFetchError, DirectoryRequestError
from dirsync.directory.auth import TokenGuard
from dirsync.directory.client import DirectoryClient
from dirsync.directory.limiter import BoundedFetchScheduler
from dirsync.directory.models import DirectoryGroup, DirectoryUser


T = TypeVar("T")

RECURSIVE_LISTING_MIN_VERSION = 23


class Counter(Protocol):
    def add(self, amount: int, attributes: Optional[dict] = None) -> None: ...


@dataclass
class DirectorySession:
    """
    One authenticated use of a directory client.

    Every directory call goes through ``call``, which makes sure the token is
    valid first. The limiter is scoped to this session.
    """

    client: DirectoryClient
    token_guard: TokenGuard
    limiter: BoundedFetchScheduler
    config: ProviderConfig

    @property
    def realm(self) -> str:
        return self.config.realm

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        await self.token_guard.ensure_valid()
        return await fn(*args, **kwargs)


@asynccontextmanager
async def open_session(config: ProviderConfig,
                       client_factory: Callable[[ProviderConfig], DirectoryClient]
                       ) -> AsyncIterator[DirectorySession]:
    """
    Create a client for ``config``, authenticate it and close it afterwards.

    Raises:
        AuthError: If authentication fails
    """
    client = client_factory(config)
    try:
        session = DirectorySession(
            client=client,
            token_guard=TokenGuard(client, config),
            limiter=BoundedFetchScheduler(config.max_concurrency),
            config=config,
        )
        await session.token_guard.ensure_valid()
        yield session
    finally:
        await client.aclose()


@dataclass
class ReadResult:
    """Raw records of one full read."""

    users: List[DirectoryUser] = field(default_factory=list)
    groups: List[DirectoryGroup] = field(default_factory=list)
    failed_batches: List[BatchFetchError] = field(default_factory=list)
    server_version: Optional[int] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    def complete(self) -> None:
        self.completed_at = datetime.now(timezone.utc)

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()


async def get_server_version(session: DirectorySession) -> int:
    """
    Major version of the directory server.

    Raises:
        DirectoryRequestError: If the version cannot be determined
    """
    try:
        return await session.call(session.client.server_version)
    except (AuthError, DirectoryRequestError):
        raise
    except Exception as e:
        raise DirectoryRequestError(f"Could not determine server version: {e}") from e


async def get_entities(session: DirectorySession, kind: str,
                       count: Callable[[], Awaitable[int]],
                       fetch_page: Callable[[int, int], Awaitable[List[T]]],
                       page_size: int,
                       on_failure: Optional[Callable[[BatchFetchError], None]] = None) -> List[T]:
    """
    Fetch every page of a listing through the session's limiter.

    ``fetch_page(max, first)`` is issued ``ceil(count / page_size)`` times. A
    failed page is reported to ``on_failure`` and contributes nothing; the
    other pages are kept. Authentication failures are not page failures and
    abort the read.

    Returns:
        Records of all successful pages, in page order
    """
    total = await session.call(count)
    pages = math.ceil(total / page_size) if total > 0 else 0

    async def fetch(index: int) -> List[T]:
        try:
            with logfire.span("Fetch directory page", provider=session.config.id, kind=kind,
                              page_index=index):
                return await session.call(fetch_page, page_size, index * page_size)
        except AuthError:
            raise
        except Exception as e:
            error = BatchFetchError(kind, index, e, provider=session.config.id)
            logfire.warning(
                "Failed to fetch directory page",
                provider=session.config.id,
                kind=kind,
                page_index=index,
                error=str(e)
            )
            if on_failure is not None:
                on_failure(error)
            return []

    results = await session.limiter.run_all(
        (lambda index=index: fetch(index)) for index in range(pages)
    )
    logfire.debug("Fetched directory pages", provider=session.config.id, kind=kind, pages=pages)
    return [record for page in results for record in page]


async def _page_until_short(session: DirectorySession,
                            fetch_page: Callable[[int, int], Awaitable[List[T]]],
                            page_size: int) -> List[T]:
    records: List[T] = []
    first = 0
    while True:
        page = await session.call(fetch_page, page_size, first)
        records = records + list(page)
        if len(page) < page_size:
            return records
        first += page_size


async def get_all_group_members(session: DirectorySession, group_id: str) -> List[str]:
    """Usernames of every member of a group, paged by ``userQuerySize``."""
    members = await _page_until_short(
        session,
        lambda max, first: session.client.list_group_members(session.realm, group_id, max, first),
        session.config.user_query_size,
    )
    return [member.username for member in members]


async def get_all_groups(session: DirectorySession, user_id: str) -> List[DirectoryGroup]:
    """Every group a user belongs to, paged by ``groupQuerySize``."""
    return await _page_until_short(
        session,
        lambda max, first: session.client.list_user_groups(session.realm, user_id, max, first),
        session.config.group_query_size,
    )


def _adopt(parent: DirectoryGroup, child: DirectoryGroup) -> None:
    child.parent = parent.name
    if not child.parent_id:
        child.parent_id = parent.id


def traverse_groups(group: DirectoryGroup) -> Iterator[DirectoryGroup]:
    """
    Walk an embedded subgroup tree depth first, parents before children.

    Each child's ``parent`` is stamped with its parent's name as it is
    visited.
    """
    stack = [group]
    while stack:
        current = stack.pop()
        yield current
        for child in reversed(current.sub_groups):
            _adopt(current, child)
            stack.append(child)


def flatten_groups(groups: List[DirectoryGroup]) -> List[DirectoryGroup]:
    """Depth-first flattening of already-attached subgroup trees."""
    return [g for group in groups for g in traverse_groups(group)]


async def _list_subgroups(session: DirectorySession, group: DirectoryGroup) -> List[DirectoryGroup]:
    return await session.call(
        session.client.list_subgroups,
        session.realm,
        group.id,
        group.sub_group_count,
        0,
        session.config.brief_representation,
    )


async def process_groups_recursively(session: DirectorySession,
                                     top_groups: List[DirectoryGroup]) -> List[DirectoryGroup]:
    """
    Resolve the hierarchy by listing subgroups through the limiter.

    Works one hierarchy level at a time so that all subgroup listings of a
    level are in flight together, then flattens the attached tree.
    """
    level = list(top_groups)
    while level:
        pending = [g for g in level if g.id and g.sub_group_count > 0]
        children = await session.limiter.run_all(
            (lambda g=g: _list_subgroups(session, g)) for g in pending
        )
        level = []
        for group, subgroups in zip(pending, children):
            group.sub_groups = list(subgroups)
            for child in group.sub_groups:
                _adopt(group, child)
            level.extend(group.sub_groups)

    return flatten_groups(top_groups)


async def enrich_group(session: DirectorySession, group: DirectoryGroup,
                       include_subgroups: bool = True) -> DirectoryGroup:
    """
    Attach members, subgroups and the parent name to one group, in place.

    Subgroups are only listed when the group reports some and none are
    attached yet; the parent name is only looked up when it is not known.
    """
    if group.id:
        group.members = await get_all_group_members(session, group.id)

    if include_subgroups and group.id and group.sub_group_count > 0 and not group.sub_groups:
        group.sub_groups = list(await _list_subgroups(session, group))
        for child in group.sub_groups:
            _adopt(group, child)

    if group.parent is None and group.parent_id:
        parent = await session.call(session.client.find_group, session.realm, group.parent_id)
        if parent is not None:
            group.parent = parent.name

    return group


async def create_group_entities(session: DirectorySession, groups: List[DirectoryGroup],
                                include_subgroups: bool = True) -> List[DirectoryGroup]:
    """Enrich every group, one limiter slot per group."""
    return await session.limiter.run_all(
        (lambda g=g: enrich_group(session, g, include_subgroups)) for g in groups
    )


async def read_directory(session: DirectorySession,
                         task_instance_id: Optional[str] = None,
                         batch_failure_counter: Optional[Counter] = None) -> ReadResult:
    """
    Read every user and group of the configured realm.

    Failed pages are recorded on the result and counted; anything else that
    escapes (authentication, server version) aborts the read.
    """
    config = session.config
    result = ReadResult()

    def record_failure(error: BatchFetchError) -> None:
        result.failed_batches.append(error)
        if batch_failure_counter is not None:
            batch_failure_counter.add(1, {"taskInstanceId": task_instance_id})

    with logfire.span("Read directory", provider=config.id, realm=config.realm,
                      task_instance_id=task_instance_id):
        result.server_version = await get_server_version(session)

        result.users = await get_entities(
            session,
            "users",
            lambda: session.client.count_users(config.realm),
            lambda max, first: session.client.list_users(
                config.realm, max, first, config.brief_representation
            ),
            config.user_query_size,
            record_failure,
        )

        top_groups = await get_entities(
            session,
            "groups",
            lambda: session.client.count_groups(config.realm, top=True),
            lambda max, first: session.client.list_top_groups(
                config.realm, max, first, config.brief_representation
            ),
            config.group_query_size,
            record_failure,
        )

        if result.server_version >= RECURSIVE_LISTING_MIN_VERSION:
            groups = await process_groups_recursively(session, top_groups)
        else:
            groups = flatten_groups(top_groups)

        result.groups = await create_group_entities(session, groups, include_subgroups=False)
        result.complete()

    if result.failed_batches:
        logfire.warning(
            "Directory read completed with failed batches",
            provider=config.id,
            failed_batches=len(result.failed_batches),
            task_instance_id=task_instance_id
        )
    return result
