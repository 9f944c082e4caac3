"""Tests for the Rancher adapter against a mocked HTTP transport."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from installer.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PlatformUnavailableError,
    VersionConflictError,
)
from installer.platforms.http import RequestRejectedError
from installer.platforms.rancher import (
    CLUSTER,
    MANAGEMENT_CLUSTER,
    PROJECT,
    RancherPlatform,
)

BASE_URL = "https://rancher.example.com"

Handler = Callable[[httpx.Request], httpx.Response]


def make_rancher(handler: Handler) -> tuple[RancherPlatform, list[httpx.Request]]:
    """Rancher adapter whose requests go to ``handler`` after a canned login."""
    seen: list[httpx.Request] = []

    def dispatch(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v3-public/localProviders/local":
            return httpx.Response(201, json={"token": "token-abc:secret"})
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(dispatch))
    return RancherPlatform(BASE_URL, "admin", "password", client=client), seen


class TestAuthentication:
    """Tests for local user login."""

    @pytest.mark.asyncio
    async def test_bearer_token_is_sent(self) -> None:
        """Test the login token is attached to every request."""
        platform, seen = make_rancher(lambda r: httpx.Response(200, json={"data": []}))

        await platform.list(MANAGEMENT_CLUSTER)
        await platform.list(MANAGEMENT_CLUSTER)

        assert all(r.headers["Authorization"] == "Bearer token-abc:secret" for r in seen)

    @pytest.mark.asyncio
    async def test_login_rejected(self) -> None:
        """Test a rejected login raises AuthenticationError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "unauthorized"})

        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        platform = RancherPlatform(BASE_URL, "admin", "wrong", client=client)

        with pytest.raises(AuthenticationError):
            await platform.list(MANAGEMENT_CLUSTER)


class TestList:
    """Tests for collection listing."""

    @pytest.mark.asyncio
    async def test_v1_clusters_in_namespace(self) -> None:
        """Test provisioning clusters are listed in the scoped namespace."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/provisioning.cattle.io.clusters/fleet-default"
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "id": "fleet-default/prod",
                            "metadata": {"name": "prod", "resourceVersion": "812"},
                            "status": {"ready": True, "clusterName": "c-m-abc"},
                        }
                    ]
                },
            )

        platform, _ = make_rancher(handler)

        [cluster] = await platform.list(CLUSTER, {"namespace": "fleet-default"})

        assert cluster.id == "fleet-default/prod"
        assert cluster.name == "prod"
        assert cluster.version_token == "812"
        assert cluster.status == "True"

    @pytest.mark.asyncio
    async def test_follows_v3_pagination(self) -> None:
        """Test pagination.next links are followed to the end."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("marker") == "p2":
                return httpx.Response(200, json={"data": [{"id": "p-2", "name": "b"}]})
            return httpx.Response(
                200,
                json={
                    "data": [{"id": "p-1", "name": "a"}],
                    "pagination": {"next": f"{BASE_URL}/v3/clusters/c-1/projects?marker=p2"},
                },
            )

        platform, seen = make_rancher(handler)

        projects = await platform.list(PROJECT, {"cluster_id": "c-1"})

        assert [p.id for p in projects] == ["p-1", "p-2"]
        assert len(seen) == 2
        assert seen[1].url.params.get("marker") == "p2"
        assert seen[1].url.path == "/v3/clusters/c-1/projects"

    @pytest.mark.asyncio
    async def test_follows_v1_continue(self) -> None:
        """Test v1 continue tokens are sent back as a query parameter."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("continue") == "next-page":
                return httpx.Response(
                    200, json={"data": [{"id": "fleet-default/b", "metadata": {"name": "b"}}]}
                )
            return httpx.Response(
                200,
                json={
                    "data": [{"id": "fleet-default/a", "metadata": {"name": "a"}}],
                    "continue": "next-page",
                },
            )

        platform, _ = make_rancher(handler)

        clusters = await platform.list(CLUSTER)

        assert [c.name for c in clusters] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cluster_scoped_kind_requires_cluster_id(self) -> None:
        """Test projects cannot be listed without a cluster id."""
        platform, _ = make_rancher(lambda r: httpx.Response(200, json={"data": []}))

        with pytest.raises(ValueError, match="cluster_id"):
            await platform.list(PROJECT)


class TestWrites:
    """Tests for create, replace and error mapping."""

    @pytest.mark.asyncio
    async def test_create_conflict(self) -> None:
        """Test 409 on create is reported as ConflictError."""
        platform, _ = make_rancher(lambda r: httpx.Response(409, json={"code": "AlreadyExists"}))

        with pytest.raises(ConflictError):
            await platform.create(PROJECT, {"name": "apps", "clusterId": "c-1"})

    @pytest.mark.asyncio
    async def test_replace_sends_resource_version(self) -> None:
        """Test the version token travels in metadata.resourceVersion."""
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json={"id": "fleet-default/prod", **body})

        platform, seen = make_rancher(handler)

        await platform.replace(
            CLUSTER, "fleet-default/prod", {"metadata": {"name": "prod"}}, version_token="812"
        )

        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/v1/provisioning.cattle.io.clusters/fleet-default/prod"
        assert bodies[0]["metadata"] == {"name": "prod", "resourceVersion": "812"}

    @pytest.mark.asyncio
    async def test_replace_stale_token(self) -> None:
        """Test 409 on replace is reported as VersionConflictError."""
        platform, _ = make_rancher(lambda r: httpx.Response(409, json={"code": "Conflict"}))

        with pytest.raises(VersionConflictError) as exc_info:
            await platform.replace(CLUSTER, "fleet-default/prod", {}, version_token="1")
        assert exc_info.value.version_token == "1"

    @pytest.mark.asyncio
    async def test_status_mapping(self) -> None:
        """Test 404, 422 and 503 map onto the error taxonomy."""
        responses = iter(
            [httpx.Response(404), httpx.Response(422, text="bad"), httpx.Response(503)]
        )
        platform, _ = make_rancher(lambda r: next(responses))

        with pytest.raises(NotFoundError):
            await platform.get(PROJECT, "c-1:p-1")
        with pytest.raises(RequestRejectedError) as exc_info:
            await platform.get(PROJECT, "c-1:p-1")
        assert exc_info.value.status_code == 422
        with pytest.raises(PlatformUnavailableError):
            await platform.get(PROJECT, "c-1:p-1")

    @pytest.mark.asyncio
    async def test_transport_failure(self) -> None:
        """Test a connection error is reported as PlatformUnavailableError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        platform, _ = make_rancher(handler)

        with pytest.raises(PlatformUnavailableError, match="connection refused"):
            await platform.list(MANAGEMENT_CLUSTER)


class TestRancherOperations:
    """Tests for server availability and kubeconfig generation."""

    @pytest.mark.asyncio
    async def test_generate_kubeconfig(self) -> None:
        """Test the generateKubeconfig action returns the config text."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["action"] == "generateKubeconfig"
            return httpx.Response(200, json={"config": "apiVersion: v1\nkind: Config\n"})

        platform, _ = make_rancher(handler)

        assert (await platform.generate_kubeconfig("c-m-abc")).startswith("apiVersion: v1")

    @pytest.mark.asyncio
    async def test_wait_until_available(self) -> None:
        """Test unreachable and 503 responses are polled through."""
        responses: list[httpx.Response | Exception] = [
            httpx.ConnectError("refused"),
            httpx.Response(503),
            httpx.Response(200, json={}),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            item = responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        platform, seen = make_rancher(handler)

        await platform.wait_until_available(timeout=5, interval=0)

        assert len(seen) == 3
