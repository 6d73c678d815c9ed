"""
Directory client adapter.

``DirectoryClient`` is the authenticated RPC surface the engine reads from.
``HttpDirectoryClient`` implements it against the Keycloak admin REST API
with httpx.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx
import logfire

from dirsync.core.errors import AuthError, DirectoryRequestError
from dirsync.directory.models import DirectoryGroup, DirectoryUser


@dataclass(frozen=True)
class DirectoryCredentials:
    """Credentials for one of the two supported grant types."""

    grant_type: str
    client_id: str
    username: Optional[str] = None
    password: Optional[str] = None
    client_secret: Optional[str] = None

    def to_form(self) -> Dict[str, str]:
        form = {"grant_type": self.grant_type, "client_id": self.client_id}
        if self.grant_type == "password":
            form["username"] = self.username or ""
            form["password"] = self.password or ""
        else:
            form["client_secret"] = self.client_secret or ""
        return form


class DirectoryClient(ABC):
    """
    Abstract directory adapter.

    Implementations hold the bearer token in ``access_token`` once
    ``authenticate`` succeeded.
    """

    access_token: Optional[str] = None

    @abstractmethod
    async def authenticate(self, credentials: DirectoryCredentials) -> None:
        """Obtain a bearer token, raising AuthError on rejection."""

    @abstractmethod
    async def count_users(self, realm: str) -> int:
        pass

    @abstractmethod
    async def count_groups(self, realm: str, top: bool = True) -> int:
        pass

    @abstractmethod
    async def list_users(self, realm: str, max: int, first: int,
                         brief: bool = True) -> List[DirectoryUser]:
        pass

    @abstractmethod
    async def list_top_groups(self, realm: str, max: int, first: int,
                              brief: bool = True) -> List[DirectoryGroup]:
        pass

    @abstractmethod
    async def list_subgroups(self, realm: str, parent_id: str, max: int, first: int,
                             brief: bool = True) -> List[DirectoryGroup]:
        pass

    @abstractmethod
    async def list_group_members(self, realm: str, group_id: str, max: int,
                                 first: int) -> List[DirectoryUser]:
        pass

    @abstractmethod
    async def list_user_groups(self, realm: str, user_id: str, max: int,
                               first: int) -> List[DirectoryGroup]:
        pass

    @abstractmethod
    async def find_user(self, realm: str, user_id: str) -> Optional[DirectoryUser]:
        pass

    @abstractmethod
    async def find_group(self, realm: str, group_id: str) -> Optional[DirectoryGroup]:
        pass

    @abstractmethod
    async def server_version(self) -> int:
        """Major version of the directory server."""

    async def aclose(self) -> None:
        """Release transport resources."""

    async def __aenter__(self) -> "DirectoryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class HttpDirectoryClient(DirectoryClient):
    """
    Keycloak admin REST client.

    Args:
        base_url: Server root, e.g. ``https://sso.example.com``
        login_realm: Realm the admin credentials belong to
        transport: Optional httpx transport (used by tests)
        timeout: Request timeout in seconds
    """

    def __init__(self, base_url: str, login_realm: str = "master",
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.login_realm = login_realm
        self.access_token: Optional[str] = None
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def authenticate(self, credentials: DirectoryCredentials) -> None:
        path = f"/realms/{self.login_realm}/protocol/openid-connect/token"
        try:
            response = await self._http.post(path, data=credentials.to_form())
        except httpx.HTTPError as e:
            raise AuthError(f"Token request failed: {e}") from e

        if response.status_code in (400, 401, 403):
            raise AuthError(
                "Directory rejected the configured credentials",
                details={"status": response.status_code},
            )
        if response.is_error:
            raise AuthError(
                f"Token request failed with status {response.status_code}",
                details={"status": response.status_code},
            )

        self.access_token = response.json()["access_token"]

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None,
                   allow_missing: bool = False) -> Any:
        headers = {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
        try:
            response = await self._http.get(path, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise DirectoryRequestError(f"GET {path} failed: {e}") from e

        if allow_missing and response.status_code == 404:
            return None
        if response.status_code == 401:
            raise AuthError(f"GET {path} was not authorized", details={"status": 401})
        if response.is_error:
            logfire.debug("Directory request failed", path=path, status=response.status_code)
            raise DirectoryRequestError(
                f"GET {path} failed with status {response.status_code}",
                status=response.status_code,
            )
        return response.json()

    @staticmethod
    def _page(max: int, first: int, brief: Optional[bool] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"max": max, "first": first}
        if brief is not None:
            params["briefRepresentation"] = str(brief).lower()
        return params

    @staticmethod
    def _count(value: Union[int, Dict[str, int]]) -> int:
        return value if isinstance(value, int) else int(value["count"])

    async def count_users(self, realm: str) -> int:
        return self._count(await self._get(f"/admin/realms/{realm}/users/count"))

    async def count_groups(self, realm: str, top: bool = True) -> int:
        data = await self._get(
            f"/admin/realms/{realm}/groups/count",
            params={"top": str(top).lower()},
        )
        return self._count(data)

    async def list_users(self, realm: str, max: int, first: int,
                         brief: bool = True) -> List[DirectoryUser]:
        data = await self._get(f"/admin/realms/{realm}/users", self._page(max, first, brief))
        return [DirectoryUser.from_representation(u) for u in data]

    async def list_top_groups(self, realm: str, max: int, first: int,
                              brief: bool = True) -> List[DirectoryGroup]:
        data = await self._get(f"/admin/realms/{realm}/groups", self._page(max, first, brief))
        return [DirectoryGroup.from_representation(g) for g in data]

    async def list_subgroups(self, realm: str, parent_id: str, max: int, first: int,
                             brief: bool = True) -> List[DirectoryGroup]:
        data = await self._get(
            f"/admin/realms/{realm}/groups/{parent_id}/children",
            self._page(max, first, brief),
        )
        return [DirectoryGroup.from_representation(g) for g in data]

    async def list_group_members(self, realm: str, group_id: str, max: int,
                                 first: int) -> List[DirectoryUser]:
        data = await self._get(
            f"/admin/realms/{realm}/groups/{group_id}/members",
            self._page(max, first),
        )
        return [DirectoryUser.from_representation(u) for u in data]

    async def list_user_groups(self, realm: str, user_id: str, max: int,
                               first: int) -> List[DirectoryGroup]:
        data = await self._get(
            f"/admin/realms/{realm}/users/{user_id}/groups",
            self._page(max, first),
        )
        return [DirectoryGroup.from_representation(g) for g in data]

    async def find_user(self, realm: str, user_id: str) -> Optional[DirectoryUser]:
        data = await self._get(f"/admin/realms/{realm}/users/{user_id}", allow_missing=True)
        return DirectoryUser.from_representation(data) if data else None

    async def find_group(self, realm: str, group_id: str) -> Optional[DirectoryGroup]:
        data = await self._get(f"/admin/realms/{realm}/groups/{group_id}", allow_missing=True)
        return DirectoryGroup.from_representation(data) if data else None

    async def server_version(self) -> int:
        data = await self._get("/admin/serverinfo")
        version = ((data or {}).get("systemInfo") or {}).get("version") or ""
        try:
            return int(version.split(".")[0])
        except ValueError as e:
            raise DirectoryRequestError(f"Unrecognized server version: {version!r}") from e
