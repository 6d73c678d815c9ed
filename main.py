"""
Directory Synchronization Engine - Main Application Entry Point

This module initializes the FastAPI application with observability through
Logfire, wires the configured directory providers to the catalog, the event
bus and their schedules, and exposes the event intake and refresh endpoints.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
import logfire

# Load environment variables before settings are read
load_dotenv()

from dirsync.catalog.store import DatabaseCatalog
from dirsync.core.config import load_provider_configs, settings
from dirsync.core.errors import DirectorySyncError
from dirsync.db.database import DatabaseManager
from dirsync.events import DirectoryEvent, EventParams, InMemoryEventBus
from dirsync.scheduling import Scheduler
from dirsync.sync import DirectoryEntityProvider

# Configure Logfire for observability
logfire.configure(**settings.get_logfire_settings())
logfire.instrument_httpx()


class AdminEvent(BaseModel):
    """Admin event as posted by the directory's event listener."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    resource_type: str
    operation_type: str
    resource_path: str
    representation: Optional[Union[str, Dict[str, Any]]] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events.

    Builds the catalog, event bus and providers on startup; stops the
    schedules and releases the database on shutdown.
    """
    logfire.info(
        "Application starting up",
        environment=settings.environment,
        version=settings.app_version
    )

    database = DatabaseManager()
    await database.create_tables()
    catalog = DatabaseCatalog(database)
    events = InMemoryEventBus()
    scheduler = Scheduler()

    configs = load_provider_configs(settings.providers_config_file) if settings.providers_config_file else []
    providers = DirectoryEntityProvider.from_config(
        configs,
        catalog,
        events=events,
        scheduler=scheduler,
        schedule=scheduler.create_runner() if configs else None,
    )
    for provider in providers:
        await provider.connect(catalog)

    app.state.catalog = catalog
    app.state.events = events
    app.state.providers = {provider.config.id: provider for provider in providers}
    logfire.info("Providers connected", providers=sorted(app.state.providers))

    yield

    logfire.info("Application shutting down")
    await scheduler.stop()
    await database.dispose()


# Create FastAPI application instance
app = FastAPI(
    title=settings.app_name,
    description=(
        "Keeps a catalog of users and groups in sync with a hierarchical "
        "directory through periodic full reads and incremental change events"
    ),
    version=settings.app_version,
    docs_url=settings.api_docs_url,
    openapi_url=settings.api_openapi_url,
    lifespan=lifespan
)

# Enable Logfire instrumentation
logfire.instrument_fastapi(app)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTP exceptions with proper logging.
    """
    logfire.warning(
        "HTTP Exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# Root endpoint
@app.get("/", tags=["Health"])
async def root() -> Dict[str, Any]:
    """
    Root endpoint providing basic API information.
    """
    return {
        "message": settings.app_name,
        "status": "operational",
        "version": settings.app_version,
        "docs": settings.api_docs_url,
        "health": "/health"
    }


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Health check endpoint.

    Lists the connected providers.
    """
    with logfire.span("Health check"):
        providers = getattr(request.app.state, "providers", {})
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": settings.logfire_service_name,
            "environment": settings.environment,
            "version": settings.app_version,
            "providers": sorted(providers),
        }


@app.post(f"{settings.api_v1_prefix}/events/keycloak", tags=["Events"],
          status_code=status.HTTP_202_ACCEPTED)
async def receive_admin_event(event: AdminEvent, request: Request) -> Dict[str, Any]:
    """
    Accept a directory admin event and deliver it to the subscribed providers.

    Handler failures are logged by the bus; the event is still accepted.
    """
    payload = DirectoryEvent.from_admin_event(event.model_dump(by_alias=True))
    await request.app.state.events.publish(EventParams(topic=settings.event_topic, event_payload=payload))
    return {"accepted": True, "type": payload.type, "resource_path": payload.resource_path}


@app.post(f"{settings.api_v1_prefix}/providers/{{provider_id}}/refresh", tags=["Providers"])
async def refresh_provider(provider_id: str, request: Request) -> Dict[str, Any]:
    """
    Run one full read of a provider now.
    """
    provider = request.app.state.providers.get(provider_id)
    if provider is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider_id}")

    task_instance_id = str(uuid.uuid4())
    try:
        await provider.read(task_instance_id)
    except DirectorySyncError as e:
        logfire.error("Manual refresh failed", provider=provider_id, error=e.to_dict())
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message) from e

    return {"provider": provider_id, "task_instance_id": task_instance_id, "status": "completed"}


if __name__ == "__main__":
    import uvicorn

    # Development server configuration
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )
