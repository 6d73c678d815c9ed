"""
Authentication and token guarding for directory clients.

``TokenGuard`` makes sure the wrapped client holds a bearer token with more
than ``refresh_margin`` seconds of validity before any directory call. A
refresh is single-flight: concurrent callers that find the token stale all
await the same in-flight authentication.
"""

import asyncio
import time
from typing import Callable, Optional

import logfire
from jose import JWTError, jwt

from dirsync.core.config import DEFAULT_CLIENT_ID, ProviderConfig
from dirsync.core.errors import AuthError
from dirsync.directory.client import DirectoryClient, DirectoryCredentials


TOKEN_REFRESH_MARGIN_SECONDS = 30


def credentials_from_config(config: ProviderConfig) -> DirectoryCredentials:
    """
    Pick the grant type from the configured credential pair.

    Raises:
        AuthError: If neither username/password nor clientId/clientSecret is set
    """
    if config.username and config.password:
        return DirectoryCredentials(
            grant_type="password",
            client_id=config.client_id or DEFAULT_CLIENT_ID,
            username=config.username,
            password=config.password,
        )
    if config.client_id and config.client_secret:
        return DirectoryCredentials(
            grant_type="client_credentials",
            client_id=config.client_id,
            client_secret=config.client_secret,
        )
    raise AuthError(
        "username and password or clientId and clientSecret must be provided.",
        provider=config.id,
    )


async def authenticate(client: DirectoryClient, config: ProviderConfig) -> None:
    """Authenticate the client with the provider's credentials."""
    with logfire.span("Authenticate with directory", provider=config.id):
        try:
            credentials = credentials_from_config(config)
            await client.authenticate(credentials)
        except AuthError as e:
            logfire.error("Failed to authenticate", provider=config.id, error=e.message)
            raise
        except Exception as e:
            logfire.error("Failed to authenticate", provider=config.id, error=str(e))
            raise AuthError(f"Authentication failed: {e}", provider=config.id) from e


def token_expiry(token: str) -> Optional[float]:
    """Expiry of a JWT as a unix timestamp, or None if it carries no ``exp``."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    exp = claims.get("exp")
    return float(exp) if isinstance(exp, (int, float)) else None


class TokenGuard:
    """
    Guards one client instance.

    The in-flight refresh task is the only shared mutable state; it belongs
    to this guard, never to the process.
    """

    def __init__(self, client: DirectoryClient, config: ProviderConfig,
                 refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.config = config
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._refresh_task: Optional[asyncio.Task] = None

    async def ensure_valid(self) -> None:
        """Return once the client holds a token that is not about to expire."""
        if not self.client.access_token:
            await self._refresh()
            return

        expiry = token_expiry(self.client.access_token)
        if expiry is None:
            return

        if self._clock() > expiry - self.refresh_margin:
            logfire.debug("Directory token about to expire, refreshing", provider=self.config.id)
            await self._refresh()
        elif self._refresh_task is not None:
            await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> None:
        task = self._refresh_task
        if task is None:
            task = asyncio.ensure_future(authenticate(self.client, self.config))
            self._refresh_task = task
            task.add_done_callback(self._clear_refresh)
        # shield so one cancelled waiter does not cancel the shared refresh
        await asyncio.shield(task)

    def _clear_refresh(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # mark the exception retrieved, waiters re-raise it themselves
            task.exception()
