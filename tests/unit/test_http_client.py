"""
Unit tests for the HTTP directory client.

Requests are answered by an httpx.MockTransport so no server is needed.
"""

import httpx
import pytest

from dirsync.core.errors import AuthError, DirectoryRequestError
from dirsync.directory.client import DirectoryCredentials, HttpDirectoryClient


BASE_URL = "https://sso.example.com"


def make_client(routes, requests=None):
    """Client whose requests are answered from ``routes`` keyed by (method, path)."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        route = routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        status, body = route
        return httpx.Response(status, json=body)

    return HttpDirectoryClient(BASE_URL, login_realm="master", transport=httpx.MockTransport(handler))


PASSWORD = DirectoryCredentials(grant_type="password", client_id="admin-cli",
                                username="admin", password="secret")


class TestAuthenticate:
    """Test the token request."""

    @pytest.mark.asyncio
    async def test_token_request(self):
        """Test credentials are posted as a form to the login realm."""
        requests = []
        client = make_client({
            ("POST", "/realms/master/protocol/openid-connect/token"): (200, {"access_token": "abc"}),
        }, requests)

        await client.authenticate(PASSWORD)
        await client.aclose()

        assert client.access_token == "abc"
        body = dict(httpx.QueryParams(requests[0].content.decode()))
        assert body == {
            "grant_type": "password",
            "client_id": "admin-cli",
            "username": "admin",
            "password": "secret",
        }

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        """Test a 401 from the token endpoint is an AuthError."""
        client = make_client({
            ("POST", "/realms/master/protocol/openid-connect/token"): (401, {"error": "invalid_grant"}),
        })

        with pytest.raises(AuthError) as exc_info:
            await client.authenticate(PASSWORD)
        await client.aclose()

        assert exc_info.value.details == {"status": 401}
        assert client.access_token is None


class TestAdminApi:
    """Test admin API calls."""

    @pytest.mark.asyncio
    async def test_bearer_token_and_paging(self):
        """Test listings send the token, the page window and briefRepresentation."""
        requests = []
        client = make_client({
            ("GET", "/admin/realms/acme/users"): (200, [
                {"id": "u-1", "username": "alice", "firstName": "Alice"},
            ]),
        }, requests)
        client.access_token = "abc"

        users = await client.list_users("acme", max=50, first=100)
        await client.aclose()

        assert users[0].username == "alice"
        assert users[0].display_name == "Alice"
        request = requests[0]
        assert request.headers["Authorization"] == "Bearer abc"
        assert request.url.params["max"] == "50"
        assert request.url.params["first"] == "100"
        assert request.url.params["briefRepresentation"] == "true"

    @pytest.mark.asyncio
    async def test_members_have_no_brief_flag(self):
        """Test member listings leave briefRepresentation out."""
        requests = []
        client = make_client({
            ("GET", "/admin/realms/acme/groups/g-1/members"): (200, []),
        }, requests)

        await client.list_group_members("acme", "g-1", max=10, first=0)
        await client.aclose()

        assert "briefRepresentation" not in requests[0].url.params

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [7, {"count": 7}])
    async def test_count_shapes(self, body):
        """Test counts are accepted as a bare number or a count object."""
        client = make_client({("GET", "/admin/realms/acme/groups/count"): (200, body)})

        assert await client.count_groups("acme") == 7
        await client.aclose()

    @pytest.mark.asyncio
    async def test_group_representation(self):
        """Test subGroupCount and embedded subGroups are parsed."""
        client = make_client({
            ("GET", "/admin/realms/acme/groups/g-1"): (200, {
                "id": "g-1",
                "name": "engineering",
                "subGroupCount": 1,
                "subGroups": [{"id": "g-2", "name": "backend", "parentId": "g-1"}],
            }),
        })

        group = await client.find_group("acme", "g-1")
        await client.aclose()

        assert group.sub_group_count == 1
        assert group.sub_groups[0].parent_id == "g-1"

    @pytest.mark.asyncio
    async def test_missing_record(self):
        """Test a 404 on a single record lookup returns None."""
        client = make_client({})

        assert await client.find_user("acme", "u-gone") is None
        assert await client.find_group("acme", "g-gone") is None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_listing_is_an_error(self):
        """Test a 404 on a listing is a request error carrying the status."""
        client = make_client({})

        with pytest.raises(DirectoryRequestError) as exc_info:
            await client.list_users("acme", max=10, first=0)
        await client.aclose()

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        """Test a 401 on an admin call is an AuthError."""
        client = make_client({("GET", "/admin/realms/acme/users/count"): (401, {})})

        with pytest.raises(AuthError):
            await client.count_users("acme")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        """Test connection errors surface as request errors."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = HttpDirectoryClient(BASE_URL, transport=httpx.MockTransport(handler))

        with pytest.raises(DirectoryRequestError):
            await client.count_users("acme")
        await client.aclose()


class TestServerVersion:
    """Test server version detection."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("version,major", [("9.0.3", 9), ("23.0.0", 23), ("24.0.1", 24)])
    async def test_major_version(self, version, major):
        """Test the major component of systemInfo.version is returned."""
        client = make_client({
            ("GET", "/admin/serverinfo"): (200, {"systemInfo": {"version": version}}),
        })

        assert await client.server_version() == major
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"systemInfo": {"version": "nightly"}}, {}])
    async def test_unrecognized_version(self, body):
        """Test an unparsable version is a request error."""
        client = make_client({("GET", "/admin/serverinfo"): (200, body)})

        with pytest.raises(DirectoryRequestError):
            await client.server_version()
        await client.aclose()


def test_credentials_form_for_client_grant():
    """Test the client credentials form carries the secret only."""
    credentials = DirectoryCredentials(grant_type="client_credentials", client_id="sync",
                                       client_secret="s3cret")

    assert credentials.to_form() == {
        "grant_type": "client_credentials",
        "client_id": "sync",
        "client_secret": "s3cret",
    }
