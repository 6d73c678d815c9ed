"""
Directory entity provider.

One provider per configured directory instance. It owns the catalog entities
tagged with its location key, keeps them in sync with a scheduled full read
and applies incremental deltas for change events in between.
"""

import asyncio
import time
import uuid
from typing import Callable, List, Optional, Sequence

import logfire

from dirsync.catalog.connection import CatalogApi, CatalogConnection, DeferredEntity, FullMutation
from dirsync.catalog.entities import with_locations
from dirsync.core.config import ProviderConfig, settings
from dirsync.core.errors import ConfigError, NotInitializedError
from dirsync.directory.client import DirectoryClient, HttpDirectoryClient
from dirsync.events.bus import EventsService
from dirsync.events.models import EventParams
from dirsync.scheduling.runner import Scheduler, TaskRunner
from dirsync.sync.builder import build_entities
from dirsync.sync.reader import Counter, open_session, read_directory
from dirsync.sync.reconciler import IncrementalReconciler
from dirsync.sync.transformers import GroupTransformer, UserTransformer, transformer_registry


TASK_FAILURE_COUNTER = "directory.fetch.task.failure.count"
BATCH_FAILURE_COUNTER = "directory.fetch.data.batch.failure.count"

ClientFactory = Callable[[ProviderConfig], DirectoryClient]


def http_client_factory(config: ProviderConfig) -> DirectoryClient:
    return HttpDirectoryClient(config.base_url, login_realm=config.login_realm)


def task_failure_counter() -> Counter:
    return logfire.metric_counter(
        TASK_FAILURE_COUNTER,
        unit="1",
        description="Directory fetch task failure counter. Incremented for each full sync that did not complete.",
    )


def batch_failure_counter() -> Counter:
    return logfire.metric_counter(
        BATCH_FAILURE_COUNTER,
        unit="1",
        description=(
            "Directory data batch fetch failure counter. Incremented for each page that could not "
            "be fetched and was skipped during the current fetch task."
        ),
    )


class DirectoryEntityProvider:
    """
    Provides User and Group entities read from a directory.

    Args:
        config: Provider configuration
        catalog_api: Query side of the catalog, used by the reconciler
        events: Optional event service to subscribe to
        task_runner: Optional runner for the recurring full read
        user_transformer: Optional user transformer
        group_transformer: Optional group transformer
        client_factory: Builds a fresh directory client per read or event
    """

    def __init__(self, config: ProviderConfig, catalog_api: CatalogApi,
                 events: Optional[EventsService] = None,
                 task_runner: Optional[TaskRunner] = None,
                 user_transformer: Optional[UserTransformer] = None,
                 group_transformer: Optional[GroupTransformer] = None,
                 client_factory: ClientFactory = http_client_factory,
                 task_failures: Optional[Counter] = None,
                 batch_failures: Optional[Counter] = None):
        self.config = config
        self.catalog_api = catalog_api
        self.events = events
        self.user_transformer = user_transformer
        self.group_transformer = group_transformer
        self.client_factory = client_factory
        self.task_failures = task_failures or task_failure_counter()
        self.batch_failures = batch_failures or batch_failure_counter()
        self.connection: Optional[CatalogConnection] = None
        self.reconciler = IncrementalReconciler(
            config,
            catalog_api,
            self.open_session,
            user_transformer=user_transformer,
            group_transformer=group_transformer,
        )
        self._schedule_fn = None
        if task_runner is not None:
            self.schedule(task_runner)

    @classmethod
    def from_config(cls, provider_configs: Sequence[ProviderConfig], catalog_api: CatalogApi,
                    events: Optional[EventsService] = None,
                    scheduler: Optional[Scheduler] = None,
                    schedule: Optional[TaskRunner] = None,
                    user_transformer: Optional[UserTransformer] = None,
                    group_transformer: Optional[GroupTransformer] = None,
                    client_factory: ClientFactory = http_client_factory) -> List["DirectoryEntityProvider"]:
        """
        Build one provider per configuration.

        A provider's own ``schedule`` config wins over the shared ``schedule``
        task runner.

        Raises:
            ConfigError: If a provider ends up without any schedule
        """
        providers = []
        for config in provider_configs:
            if config.schedule is not None:
                if scheduler is None:
                    raise ConfigError(
                        f"No scheduler provided for {config.location_key}.", provider=config.id
                    )
                task_runner = scheduler.create_runner(config.schedule)
            elif schedule is not None:
                task_runner = schedule
            else:
                raise ConfigError(
                    f"No schedule provided neither via code nor config for {config.location_key}.",
                    provider=config.id,
                )

            providers.append(cls(
                config,
                catalog_api,
                events=events,
                task_runner=task_runner,
                user_transformer=user_transformer or transformer_registry.user_transformer,
                group_transformer=group_transformer or transformer_registry.group_transformer,
                client_factory=client_factory,
            ))
        return providers

    @property
    def provider_name(self) -> str:
        return f"KeycloakOrgEntityProvider:{self.config.id}"

    def open_session(self):
        return open_session(self.config, self.client_factory)

    async def connect(self, connection: CatalogConnection) -> None:
        """Attach the catalog connection, subscribe to events and start the schedule."""
        self.connection = connection
        if self.events is not None:
            await self.events.subscribe(self.provider_name, [settings.event_topic], self.on_event)
        if self._schedule_fn is not None:
            await self._schedule_fn()

    async def on_event(self, params: EventParams) -> None:
        event = params.event_payload
        logfire.info("Received event", provider=self.config.id, topic=params.topic, event_type=event.type)
        await self.reconciler.handle(event, self.connection)

    async def read(self, task_instance_id: Optional[str] = None) -> None:
        """
        Run one complete sync and replace the provider's entities.

        Raises:
            NotInitializedError: If ``connect`` has not been called
        """
        if self.connection is None:
            raise NotInitializedError(provider=self.config.id)

        config = self.config
        started = time.monotonic()
        logfire.info("Reading directory users and groups", provider=config.id,
                     task_instance_id=task_instance_id)

        async with self.open_session() as session:
            result = await read_directory(session, task_instance_id, self.batch_failures)

        users, groups = await build_entities(
            result.users,
            result.groups,
            config.realm,
            self.user_transformer,
            self.group_transformer,
        )

        summary = f"{len(users)} directory users and {len(groups)} directory groups"
        logfire.info(
            "Read {summary} in {read_seconds} seconds. Committing...",
            summary=summary,
            read_seconds=round(time.monotonic() - started, 1),
            provider=config.id,
            task_instance_id=task_instance_id,
            failed_batches=len(result.failed_batches)
        )

        started = time.monotonic()
        await self.connection.apply_mutation(FullMutation(entities=[
            DeferredEntity(
                entity=with_locations(config.base_url, config.realm, entity),
                location_key=config.location_key,
            )
            for entity in [*users, *groups]
        ]))
        logfire.info(
            "Committed {summary} in {commit_seconds} seconds.",
            summary=summary,
            commit_seconds=round(time.monotonic() - started, 1),
            provider=config.id,
            task_instance_id=task_instance_id
        )

    async def refresh(self) -> None:
        """One scheduled invocation: a fresh correlation id and a full read."""
        task_id = f"{self.provider_name}:refresh"
        task_instance_id = str(uuid.uuid4())
        with logfire.span("Scheduled directory sync", task_id=task_id, task_instance_id=task_instance_id):
            try:
                await self.read(task_instance_id)
            except asyncio.CancelledError:
                # timed out or stopped by the task runner
                self.task_failures.add(1, {"taskInstanceId": task_instance_id})
                logfire.warning("Directory sync cancelled", task_id=task_id,
                                task_instance_id=task_instance_id)
                raise
            except Exception as e:
                self.task_failures.add(1, {"taskInstanceId": task_instance_id})
                logfire.error(
                    "Error while syncing directory users and groups",
                    task_id=task_id,
                    task_instance_id=task_instance_id,
                    name=type(e).__name__,
                    cause=repr(e.__cause__) if e.__cause__ else None,
                    message=str(e),
                    status=getattr(e, "status", None)
                )

    def schedule(self, task_runner: TaskRunner) -> None:
        """Register the recurring full read; it starts on ``connect``."""
        async def schedule_fn() -> None:
            await task_runner.run(f"{self.provider_name}:refresh", self.refresh)

        self._schedule_fn = schedule_fn
