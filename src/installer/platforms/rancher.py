"""Rancher adapter (v1 provisioning API + v3 management API) over httpx.

One cluster is visible through two surfaces:

- ``cluster``: ``provisioning.cattle.io.clusters`` on ``/v1``, addressed by
  ``<namespace>/<name>``. This is what the installer creates.
- ``management_cluster``: ``/v3/clusters``, addressed by a generated
  ``c-xxxxx`` id. Registration tokens, projects, namespaces and kubeconfig
  generation only exist here.

``IdentityBridge`` maps the first onto the second through
``status.clusterName``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from ..errors import AuthenticationError, PlatformUnavailableError
from ..models import (
    RemoteObject,
    ReconcileStrategy,
    ResourceKind,
    get_path,
)
from ..poller import poll_until
from .http import DEFAULT_HTTP_TIMEOUT_SECONDS, OnConflict, RestPlatform

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_NAMESPACE = "fleet-default"

# Name Rancher gives the token it creates alongside every cluster
DEFAULT_REGISTRATION_TOKEN = "default-token"

# Upper bound on followed pagination links, guards against a looping API
MAX_PAGES = 100

# =============================================================================
# Resource kinds
# =============================================================================

CLUSTER = ResourceKind(
    "cluster", name_field="metadata.name", status_field="status.ready", mutable=True
)
MANAGEMENT_CLUSTER = ResourceKind("management_cluster", status_field="state")
REGISTRATION_TOKEN = ResourceKind("registration_token", status_field="state")
PROJECT = ResourceKind("project", status_field="state")
NAMESPACE = ResourceKind(
    "namespace", strategy=ReconcileStrategy.CONVERGE_TO_SPEC, status_field="state"
)


def to_remote(kind: ResourceKind, item: Mapping[str, Any]) -> RemoteObject:
    """Normalise a v1 or v3 collection item."""
    raw = dict(item)
    name = get_path(raw, kind.name_field)
    status = get_path(raw, kind.status_field)
    version = get_path(raw, "metadata.resourceVersion")
    return RemoteObject(
        id=str(raw["id"]),
        name=str(name) if name is not None else None,
        status=str(status) if status is not None else None,
        version_token=str(version) if version is not None else None,
        raw=raw,
    )


class RancherPlatform(RestPlatform):
    """Rancher server authenticated as a local user.

    Args:
        base_url: Rancher server URL, e.g. ``https://rancher.example.com``.
        username: Local provider user.
        password: Local provider password.
        verify_tls: Verify the server certificate.
        cluster_namespace: Namespace of provisioning clusters.
    """

    name = "rancher"

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        verify_tls: bool = True,
        cluster_namespace: str = DEFAULT_CLUSTER_NAMESPACE,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url, verify_tls=verify_tls, timeout=timeout, client=client)
        self._username = username
        self._password = password
        self._cluster_namespace = cluster_namespace

    async def _authenticate(self) -> str:
        logger.info("Authenticating with Rancher", extra={"username": self._username})
        response = await self._send(
            "POST",
            "/v3-public/localProviders/local",
            params={"action": "login"},
            json={
                "username": self._username,
                "password": self._password,
                "responseType": "token",
            },
        )
        if response.status_code in (401, 403):
            raise AuthenticationError(self.name, "login rejected for local user")
        self._raise_for_status(response, "login", self._username)
        token = response.json().get("token")
        if not token:
            raise AuthenticationError(self.name, "login response carried no token")
        return str(token)

    # -------------------------------------------------------------------------
    # URL routing
    # -------------------------------------------------------------------------

    def _collection_url(self, kind: ResourceKind, scope: Mapping[str, str] | None) -> str:
        scope = scope or {}
        if kind.name == CLUSTER.name:
            namespace = scope.get("namespace", self._cluster_namespace)
            return f"/v1/provisioning.cattle.io.clusters/{namespace}"
        if kind.name == MANAGEMENT_CLUSTER.name:
            return "/v3/clusters"
        if kind.name in (REGISTRATION_TOKEN.name, PROJECT.name, NAMESPACE.name):
            cluster_id = scope.get("cluster_id")
            if not cluster_id:
                raise ValueError(f"Rancher {kind.name} requires 'cluster_id' in scope")
            plural = {
                REGISTRATION_TOKEN.name: "clusterregistrationtokens",
                PROJECT.name: "projects",
                NAMESPACE.name: "namespaces",
            }[kind.name]
            return f"/v3/clusters/{cluster_id}/{plural}"
        raise ValueError(f"Rancher does not manage kind '{kind.name}'")

    def _create_url(self, kind: ResourceKind, scope: Mapping[str, str] | None) -> str:
        if kind.name == CLUSTER.name:
            return "/v1/provisioning.cattle.io.clusters"
        if kind.name == REGISTRATION_TOKEN.name:
            return "/v3/clusterregistrationtokens"
        if kind.name == PROJECT.name:
            return "/v3/projects"
        return self._collection_url(kind, scope)

    def _object_url(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None
    ) -> str:
        if kind.name == CLUSTER.name:
            # v1 ids are already "<namespace>/<name>"
            return f"/v1/provisioning.cattle.io.clusters/{object_id}"
        if kind.name == MANAGEMENT_CLUSTER.name:
            return f"/v3/clusters/{object_id}"
        if kind.name == REGISTRATION_TOKEN.name:
            return f"/v3/clusterregistrationtokens/{object_id}"
        if kind.name == PROJECT.name:
            return f"/v3/projects/{object_id}"
        return f"{self._collection_url(kind, scope)}/{object_id}"

    # -------------------------------------------------------------------------
    # capability contract
    # -------------------------------------------------------------------------

    async def list(
        self, kind: ResourceKind, scope: Mapping[str, str] | None = None
    ) -> list[RemoteObject]:
        """List every item, following ``pagination.next`` (v3) and ``continue`` (v1)."""
        url: str | None = self._collection_url(kind, scope)
        # None keeps the query string of a followed next link intact
        params: dict[str, str] | None = None
        items: list[RemoteObject] = []

        pages = 0
        while url is not None:
            pages += 1
            if pages > MAX_PAGES:
                raise PlatformUnavailableError(
                    self.name, f"more than {MAX_PAGES} pages of {kind.name}"
                )
            body = await self._request("GET", url, kind=kind.name, key="*", params=params)
            items.extend(to_remote(kind, item) for item in (body or {}).get("data") or [])

            next_url = get_path(body, "pagination.next")
            continue_token = (body or {}).get("continue")
            if next_url:
                url, params = str(next_url), None
            elif continue_token:
                params = {"continue": str(continue_token)}
            else:
                url = None

        return items

    async def create(
        self,
        kind: ResourceKind,
        body: dict[str, Any],
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        key = str(get_path(body, kind.name_field) or kind.name)
        result = await self._request(
            "POST", self._create_url(kind, scope), kind=kind.name, key=key, json=body
        )
        logger.info(f"Created Rancher {kind.name} {key}")
        return to_remote(kind, result)

    async def replace(
        self,
        kind: ResourceKind,
        object_id: str,
        body: dict[str, Any],
        version_token: str | None = None,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        payload = dict(body)
        if version_token is not None and kind.mutable:
            payload["metadata"] = {**payload.get("metadata", {}), "resourceVersion": version_token}
        result = await self._request(
            "PUT",
            self._object_url(kind, object_id, scope),
            kind=kind.name,
            key=object_id,
            on_conflict=OnConflict.STALE,
            version_token=version_token,
            json=payload,
        )
        return to_remote(kind, result)

    async def get(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> RemoteObject:
        result = await self._request(
            "GET", self._object_url(kind, object_id, scope), kind=kind.name, key=object_id
        )
        return to_remote(kind, result)

    async def delete(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> None:
        await self._request(
            "DELETE", self._object_url(kind, object_id, scope), kind=kind.name, key=object_id
        )

    # -------------------------------------------------------------------------
    # Rancher-specific operations
    # -------------------------------------------------------------------------

    async def wait_until_available(self, timeout: float, interval: float) -> None:
        """Poll the server root until it answers 200.

        Transport errors count as "not yet available" while polling.
        """

        async def server_status() -> int | None:
            try:
                response = await self._client.get("/", headers={"Accept": "application/json"})
            except httpx.HTTPError as e:
                logger.debug(f"Rancher not reachable yet: {e}")
                return None
            return response.status_code

        await poll_until(
            server_status,
            lambda status: status == 200,
            timeout=timeout,
            interval=interval,
            description=f"Rancher at {self.base_url}",
            describe=lambda status: f"HTTP {status}" if status else "unreachable",
        )

    async def generate_kubeconfig(self, cluster_id: str) -> str:
        """Return a kubeconfig for the management cluster ``cluster_id``."""
        result = await self._request(
            "POST",
            f"/v3/clusters/{cluster_id}",
            kind=MANAGEMENT_CLUSTER.name,
            key=cluster_id,
            params={"action": "generateKubeconfig"},
        )
        config = (result or {}).get("config")
        if not config:
            raise PlatformUnavailableError(self.name, f"no kubeconfig returned for {cluster_id}")
        return str(config)
