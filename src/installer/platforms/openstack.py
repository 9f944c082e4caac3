"""OpenStack adapter built on openstacksdk.

openstacksdk is synchronous; every call runs in the default executor
under a timeout so the event loop keeps polling other resources. Listing
goes through the SDK's resource generators, which follow Neutron, Nova,
Cinder and Octavia pagination links transparently.

Payloads are normalised with ``to_dict(original_names=True)`` so ``raw``
carries the wire names (``security_group_rules``, ``port_range_min``,
``provisioning_status``) rather than SDK attribute aliases.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import openstack
from openstack import exceptions as os_exc
from openstack.connection import Connection

from ..errors import (
    AuthenticationError,
    ConflictError,
    InstallerError,
    NotFoundError,
    PlatformUnavailableError,
)
from ..models import IdentityScheme, RemoteObject, ResourceKind
from ..platform import Platform
from .blocking import run_blocking

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_API_CALL_TIMEOUT_SECONDS = 120

# Neutron messages meaning the desired state is already there
ROUTER_INTERFACE_EXISTS = "Router already has"
RULE_EXISTS = "Security group rule already exists"

# Server-managed fields never sent back on update
READ_ONLY_FIELDS = frozenset(
    {
        "id",
        "created_at",
        "updated_at",
        "revision_number",
        "project_id",
        "tenant_id",
        "status",
        "provisioning_status",
        "operating_status",
        "tags",
        "location",
        "links",
    }
)

# =============================================================================
# Resource kinds
# =============================================================================

NETWORK = ResourceKind("network")
SUBNET = ResourceKind("subnet")
ROUTER = ResourceKind("router")
SECURITY_GROUP = ResourceKind("security_group")
SECURITY_GROUP_RULE = ResourceKind("security_group_rule")
PORT = ResourceKind("port")
SERVER = ResourceKind("server")
VOLUME = ResourceKind("volume")
FLOATING_IP = ResourceKind("floating_ip", identity=IdentityScheme.TAG)
LOAD_BALANCER = ResourceKind("load_balancer", status_field="provisioning_status")
LISTENER = ResourceKind("listener", status_field="provisioning_status")
POOL = ResourceKind("pool", status_field="provisioning_status")
HEALTH_MONITOR = ResourceKind("health_monitor", status_field="provisioning_status")
MEMBER = ResourceKind("member", status_field="provisioning_status")


@dataclass(frozen=True)
class KindApi:
    """Where a kind lives in the SDK: proxy name and method names."""

    proxy: str
    list: str
    create: str
    get: str
    delete: str
    update: str | None = None
    # Scope key passed positionally as the parent (members live under a pool)
    parent: str | None = None


KIND_APIS: dict[str, KindApi] = {
    "network": KindApi("network", "networks", "create_network", "get_network",
                       "delete_network", "update_network"),
    "subnet": KindApi("network", "subnets", "create_subnet", "get_subnet",
                      "delete_subnet", "update_subnet"),
    "router": KindApi("network", "routers", "create_router", "get_router",
                      "delete_router", "update_router"),
    "security_group": KindApi("network", "security_groups", "create_security_group",
                              "get_security_group", "delete_security_group",
                              "update_security_group"),
    "security_group_rule": KindApi("network", "security_group_rules",
                                   "create_security_group_rule", "get_security_group_rule",
                                   "delete_security_group_rule"),
    "port": KindApi("network", "ports", "create_port", "get_port", "delete_port",
                    "update_port"),
    "floating_ip": KindApi("network", "ips", "create_ip", "get_ip", "delete_ip", "update_ip"),
    "server": KindApi("compute", "servers", "create_server", "get_server", "delete_server",
                      "update_server"),
    "volume": KindApi("block_storage", "volumes", "create_volume", "get_volume",
                      "delete_volume"),
    "load_balancer": KindApi("load_balancer", "load_balancers", "create_load_balancer",
                             "get_load_balancer", "delete_load_balancer",
                             "update_load_balancer"),
    "listener": KindApi("load_balancer", "listeners", "create_listener", "get_listener",
                        "delete_listener", "update_listener"),
    "pool": KindApi("load_balancer", "pools", "create_pool", "get_pool", "delete_pool",
                    "update_pool"),
    "health_monitor": KindApi("load_balancer", "health_monitors", "create_health_monitor",
                              "get_health_monitor", "delete_health_monitor",
                              "update_health_monitor"),
    "member": KindApi("load_balancer", "members", "create_member", "get_member",
                      "delete_member", "update_member", parent="pool_id"),
}


def to_remote(kind: ResourceKind, resource: Any) -> RemoteObject:
    """Normalise an SDK resource (or plain dict) into a RemoteObject."""
    if hasattr(resource, "to_dict"):
        raw = resource.to_dict(original_names=True)
    else:
        raw = dict(resource)
    status = raw.get(kind.status_field)
    revision = raw.get("revision_number")
    return RemoteObject(
        id=str(raw["id"]),
        name=raw.get("name"),
        status=str(status) if status is not None else None,
        version_token=str(revision) if revision is not None else None,
        tags=tuple(raw.get("tags") or ()),
        raw=raw,
    )


class OpenStackPlatform(Platform):
    """OpenStack through a clouds.yaml entry.

    Args:
        cloud: clouds.yaml entry name (OS_CLOUD).
        connection: Pre-built connection, mainly for tests.
        call_timeout: Per-call timeout in seconds.
    """

    name = "openstack"

    def __init__(
        self,
        cloud: str | None = None,
        connection: Connection | None = None,
        call_timeout: float = MAX_API_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._cloud = cloud
        self._conn = connection
        self._call_timeout = call_timeout

    @property
    def conn(self) -> Connection:
        """Get or create the OpenStack connection."""
        if self._conn is None:
            logger.info("Connecting to OpenStack cloud", extra={"cloud": self._cloud})
            self._conn = openstack.connect(cloud=self._cloud)
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -------------------------------------------------------------------------
    # plumbing
    # -------------------------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await run_blocking(self.name, operation, self._call_timeout, fn, *args, **kwargs)

    def _translate(self, e: Exception, kind: ResourceKind, key: str) -> InstallerError:
        """Map an SDK exception onto the installer error taxonomy."""
        if isinstance(e, os_exc.NotFoundException):
            return NotFoundError(kind.name, key)
        if isinstance(e, os_exc.ConflictException):
            return ConflictError(kind.name, key, str(getattr(e, "details", "") or e))
        if isinstance(e, os_exc.HttpException):
            if e.status_code in (401, 403):
                return AuthenticationError(self.name, str(e))
            if RULE_EXISTS in str(e):
                return ConflictError(kind.name, key, RULE_EXISTS)
        return PlatformUnavailableError(self.name, f"{kind.name} {key}: {e}")

    def _api(self, kind: ResourceKind) -> tuple[Any, KindApi]:
        try:
            api = KIND_APIS[kind.name]
        except KeyError:
            raise ValueError(f"OpenStack does not manage kind '{kind.name}'") from None
        return getattr(self.conn, api.proxy), api

    @staticmethod
    def _split_scope(
        api: KindApi, scope: Mapping[str, str] | None
    ) -> tuple[list[str], dict[str, str]]:
        filters = dict(scope or {})
        parents: list[str] = []
        if api.parent is not None:
            parent = filters.pop(api.parent, None)
            if not parent:
                raise ValueError(f"{api.list} requires '{api.parent}' in scope")
            parents.append(parent)
        return parents, filters

    # -------------------------------------------------------------------------
    # capability contract
    # -------------------------------------------------------------------------

    async def list(
        self, kind: ResourceKind, scope: Mapping[str, str] | None = None
    ) -> list[RemoteObject]:
        proxy, api = self._api(kind)
        parents, filters = self._split_scope(api, scope)
        lister = getattr(proxy, api.list)
        try:
            resources = await self._call(
                f"list {kind.name}", lambda: list(lister(*parents, **filters))
            )
        except os_exc.SDKException as e:
            raise self._translate(e, kind, "*") from e
        return [to_remote(kind, r) for r in resources]

    async def create(
        self,
        kind: ResourceKind,
        body: dict[str, Any],
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        proxy, api = self._api(kind)
        parents, _ = self._split_scope(api, scope)
        key = str(body.get("name") or kind.name)
        try:
            resource = await self._call(
                f"create {kind.name}", getattr(proxy, api.create), *parents, **body
            )
        except os_exc.SDKException as e:
            raise self._translate(e, kind, key) from e
        logger.info(f"Created {kind.name} {key}", extra={"platform": self.name})
        return to_remote(kind, resource)

    async def replace(
        self,
        kind: ResourceKind,
        object_id: str,
        body: dict[str, Any],
        version_token: str | None = None,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        proxy, api = self._api(kind)
        if api.update is None:
            raise ValueError(f"OpenStack kind '{kind.name}' cannot be updated in place")
        parents, _ = self._split_scope(api, scope)
        attrs = {k: v for k, v in body.items() if k not in READ_ONLY_FIELDS}
        try:
            resource = await self._call(
                f"update {kind.name}", getattr(proxy, api.update), object_id, *parents, **attrs
            )
        except os_exc.SDKException as e:
            raise self._translate(e, kind, object_id) from e
        return to_remote(kind, resource)

    async def get(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> RemoteObject:
        proxy, api = self._api(kind)
        parents, _ = self._split_scope(api, scope)
        try:
            resource = await self._call(
                f"get {kind.name}", getattr(proxy, api.get), object_id, *parents
            )
        except os_exc.SDKException as e:
            raise self._translate(e, kind, object_id) from e
        return to_remote(kind, resource)

    async def delete(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> None:
        proxy, api = self._api(kind)
        parents, _ = self._split_scope(api, scope)
        try:
            await self._call(
                f"delete {kind.name}",
                getattr(proxy, api.delete),
                object_id,
                *parents,
                ignore_missing=False,
            )
        except os_exc.SDKException as e:
            raise self._translate(e, kind, object_id) from e

    async def add_tag(
        self,
        kind: ResourceKind,
        object_id: str,
        tag: str,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        """Attach ``tag`` with a single PUT on ``/<resource>/{id}/tags/{tag}``."""
        proxy, api = self._api(kind)
        if api.proxy != "network":
            raise ValueError(f"Tagging is only supported for Neutron kinds, not {kind.name}")

        def tag_resource() -> Any:
            resource = getattr(proxy, api.get)(object_id)
            if tag not in (resource.tags or []):
                resource.add_tag(proxy, tag)
            return getattr(proxy, api.get)(object_id)

        try:
            resource = await self._call(f"tag {kind.name}", tag_resource)
        except os_exc.SDKException as e:
            raise self._translate(e, kind, object_id) from e
        logger.info(f"Tagged {kind.name} {object_id} with {tag}")
        return to_remote(kind, resource)

    # -------------------------------------------------------------------------
    # OpenStack-specific operations
    # -------------------------------------------------------------------------

    async def external_network_id(self, name: str) -> str:
        """Return the id of the external network routers and floating IPs use."""
        networks = await self.list(NETWORK, {"name": name, "is_router_external": True})
        if not networks:
            raise NotFoundError("external network", name)
        return networks[0].id

    async def add_router_interface(self, router_id: str, subnet_id: str) -> bool:
        """Connect a subnet to a router.

        Returns:
            False when the subnet was already connected.
        """
        proxy = self.conn.network
        try:
            await self._call(
                "add router interface",
                proxy.add_interface_to_router,
                router_id,
                subnet_id=subnet_id,
            )
        except os_exc.SDKException as e:
            if ROUTER_INTERFACE_EXISTS in str(e):
                logger.info(
                    f"Subnet {subnet_id} is already connected to router {router_id}"
                )
                return False
            raise self._translate(e, ROUTER, router_id) from e
        logger.info(f"Connected subnet {subnet_id} to router {router_id}")
        return True

    async def find_image_id(self, name: str) -> str:
        try:
            image = await self._call(
                "find image", self.conn.image.find_image, name, ignore_missing=False
            )
        except os_exc.SDKException as e:
            raise NotFoundError("image", name) from e
        return str(image.id)

    async def find_flavor_id(self, name: str) -> str:
        try:
            flavor = await self._call(
                "find flavor", self.conn.compute.find_flavor, name, ignore_missing=False
            )
        except os_exc.SDKException as e:
            raise NotFoundError("flavor", name) from e
        return str(flavor.id)

    async def associate_floating_ip(self, floating_ip_id: str, port_id: str) -> RemoteObject:
        """Point a floating IP at a port (server NIC or load balancer VIP)."""
        current = await self.get(FLOATING_IP, floating_ip_id)
        if current.get("port_id") == port_id:
            logger.info(f"Floating IP {floating_ip_id} already associated with port {port_id}")
            return current
        return await self.replace(FLOATING_IP, floating_ip_id, {"port_id": port_id})

    async def attach_volume(self, server_id: str, volume_id: str) -> bool:
        """Attach a volume to a server unless it already is.

        Returns:
            False when the attachment already existed.
        """
        volume = await self.get(VOLUME, volume_id)
        attachments = volume.get("attachments") or []
        if any(a.get("server_id") == server_id for a in attachments):
            logger.info(f"Volume {volume_id} already attached to server {server_id}")
            return False
        try:
            await self._call(
                "attach volume",
                self.conn.compute.create_volume_attachment,
                server_id,
                volume_id=volume_id,
            )
        except os_exc.SDKException as e:
            raise self._translate(e, VOLUME, volume_id) from e
        logger.info(f"Attached volume {volume_id} to server {server_id}")
        return True
