"""Install tasks composed from the reconcile primitives.

Each task reconciles one layer of the installation and records what it
found or created in the shared ``RunContext``. ``run_plan`` executes the
tasks in the fixed dependency order:

    network -> security groups -> floating IPs -> rancher server
    -> cluster (+ nodes)
    -> volumes -> load balancer -> kubernetes objects -> keycloak

Every task is safe to re-run: a second run against an unchanged plan
resolves the same objects and creates nothing.
"""

from __future__ import annotations

import base64
import logging
import os
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

import httpx

from .bridge import IdentityBridge
from .config import Config
from .models import (
    BackRef,
    ClusterRef,
    FrontRef,
    RemoteObject,
    ResourceDescriptor,
)
from .plan import (
    InstallPlan,
    KeycloakPlan,
    KubernetesPlan,
    LoadBalancerConfig,
    NodePoolConfig,
    OpenStackPlan,
    RancherPlan,
)
from .platforms import keycloak as kc
from .platforms import openstack as os_kinds
from .platforms import rancher as rn
from .platforms.kubernetes import KubernetesPlatform, kind_for
from .poller import all_of, condition_true, field_equals, field_present, status_is
from .reconciler import ReconcileRecord, Reconciler, SubStep
from .sequencer import run_bounded

logger = logging.getLogger(__name__)

# Placeholders replaced in node user data
RANCHER_URL_PLACEHOLDER = "__RANCHER_URL__"
RANCHER_TOKEN_PLACEHOLDER = "__RANCHER_AGENT_TOKEN__"
RANCHER_ROLE = "rancher"

USER_DATA_FETCH_TIMEOUT_SECONDS = 30

# Load balancer front ends: (protocol, port, health monitor port)
LB_FRONTENDS = (("HTTP", 80, None), ("HTTPS", 443, 80))

HEALTH_MONITOR_DEFAULTS = {
    "type": "HTTP",
    "delay": 5,
    "timeout": 5,
    "max_retries": 3,
    "max_retries_down": 3,
    "http_method": "GET",
}


@dataclass
class RunContext:
    """Objects resolved during one run, shared between tasks."""

    plan: InstallPlan
    config: Config
    reconciler: Reconciler
    network: RemoteObject | None = None
    subnets: dict[str, RemoteObject] = field(default_factory=dict)
    security_groups: dict[str, RemoteObject] = field(default_factory=dict)
    floating_ips: dict[str, RemoteObject] = field(default_factory=dict)
    servers: dict[str, RemoteObject] = field(default_factory=dict)
    cluster_id: str | None = None
    registration_token: RemoteObject | None = None
    kubeconfig: str | None = None


@dataclass
class RunSummary:
    """Outcome of ``run_plan``."""

    plan: str
    records: list[ReconcileRecord]
    duration_seconds: float

    @property
    def counts(self) -> dict[str, int]:
        return dict(Counter(r.outcome.value for r in self.records))


def _openstack(ctx: RunContext) -> os_kinds.OpenStackPlatform:
    return cast(os_kinds.OpenStackPlatform, ctx.reconciler.platform("openstack"))


def _rancher(ctx: RunContext) -> rn.RancherPlatform:
    return cast(rn.RancherPlatform, ctx.reconciler.platform("rancher"))


def _keycloak(ctx: RunContext) -> kc.KeycloakAdminPlatform:
    return cast(kc.KeycloakAdminPlatform, ctx.reconciler.platform("keycloak"))


# =============================================================================
# OpenStack
# =============================================================================


async def network(ctx: RunContext, plan: OpenStackPlan) -> None:
    """Network, subnets and a router with an external gateway and one
    interface per subnet."""
    r = ctx.reconciler
    openstack = _openstack(ctx)
    net_cfg = plan.network

    ctx.network = await r.ensure(
        ResourceDescriptor(os_kinds.NETWORK, net_cfg.name, {"name": net_cfg.name}, "openstack")
    )
    for subnet in net_cfg.subnets:
        ctx.subnets[subnet.name] = await r.ensure(
            ResourceDescriptor(
                os_kinds.SUBNET,
                subnet.name,
                subnet.to_body(ctx.network.id),
                "openstack",
                scope={"network_id": ctx.network.id},
            )
        )

    external_id = await openstack.external_network_id(ctx.config.external_network)
    router = ResourceDescriptor(
        os_kinds.ROUTER,
        net_cfg.router_name,
        {
            "name": net_cfg.router_name,
            "external_gateway_info": {"network_id": external_id, "enable_snat": True},
        },
        "openstack",
    )

    steps = []
    for name, subnet_obj in ctx.subnets.items():

        async def connect(router_obj: RemoteObject, subnet_id: str = subnet_obj.id) -> None:
            await openstack.add_router_interface(router_obj.id, subnet_id)

        steps.append(SubStep(name=f"interface:{name}", apply=connect))

    await r.ensure_composite(router, steps)


async def security_groups(ctx: RunContext, plan: OpenStackPlan) -> None:
    """Security groups in two passes.

    Rules referencing another group need that group's id, so every group
    is created with its plain rules first and the remote-group rules are
    added once all ids are known.
    """
    r = ctx.reconciler
    descriptors = {
        group.name: ResourceDescriptor(
            os_kinds.SECURITY_GROUP, group.name, group.to_body(), "openstack"
        )
        for group in plan.security_groups
    }

    for group in plan.security_groups:
        rules = [rule.to_body() for rule in group.plain_rules]
        ctx.security_groups[group.name] = await r.ensure_rules(
            descriptors[group.name], rules, os_kinds.SECURITY_GROUP_RULE
        )

    for group in plan.security_groups:
        if not group.group_rules:
            continue
        rules = [
            rule.to_body(remote_group_id=ctx.security_groups[rule.remote_group].id)
            for rule in group.group_rules
            if rule.remote_group is not None
        ]
        ctx.security_groups[group.name] = await r.ensure_composite(
            descriptors[group.name],
            r.rule_steps(descriptors[group.name], rules, os_kinds.SECURITY_GROUP_RULE),
        )


async def floating_ips(ctx: RunContext, plan: OpenStackPlan) -> None:
    """Floating IPs, found again on re-runs through their ``name:`` tag."""
    external_id = await _openstack(ctx).external_network_id(ctx.config.external_network)
    for ip in plan.floating_ips:
        ctx.floating_ips[ip.name] = await ctx.reconciler.ensure(
            ResourceDescriptor(os_kinds.FLOATING_IP, ip.name, ip.to_body(external_id), "openstack")
        )


async def volumes(ctx: RunContext, plan: OpenStackPlan) -> None:
    r = ctx.reconciler
    openstack = _openstack(ctx)

    for volume in plan.volumes:
        obj = await r.ensure(
            ResourceDescriptor(os_kinds.VOLUME, volume.name, volume.to_body(), "openstack"),
            wait=lambda o: r.poller.condition(
                os_kinds.VOLUME, o.id, status_is("available", "in-use")
            ),
        )
        if volume.attach_to:
            server = ctx.servers.get(volume.attach_to) or await r.resolver.require(
                openstack, os_kinds.SERVER, volume.attach_to
            )
            await openstack.attach_volume(server.id, obj.id)


async def render_user_data(
    source: str | None, rancher_url: str | None, token: str | None
) -> str | None:
    """Return base64 user data with the Rancher placeholders filled in.

    ``source`` is either the cloud-init document itself or an http(s) URL
    it is fetched from.
    """
    if not source:
        return None
    if source.startswith(("http://", "https://")):
        async with httpx.AsyncClient(timeout=USER_DATA_FETCH_TIMEOUT_SECONDS) as client:
            response = await client.get(source)
            response.raise_for_status()
            source = response.text
    rendered = source.replace(RANCHER_URL_PLACEHOLDER, rancher_url or "").replace(
        RANCHER_TOKEN_PLACEHOLDER, token or ""
    )
    return base64.b64encode(rendered.encode()).decode()


async def node_pool(ctx: RunContext, pool: NodePoolConfig, token: str | None) -> None:
    """Create the servers of one pool, at most MAX_PARALLEL_NODES at a time.

    Each node gets a port with its fixed address first, then a server on
    that port which is awaited until ACTIVE.
    """
    r = ctx.reconciler
    openstack = _openstack(ctx)
    subnet = ctx.subnets[pool.subnet]
    group_ids = [ctx.security_groups[name].id for name in pool.security_groups]
    image_id = await openstack.find_image_id(pool.image)
    flavor_id = await openstack.find_flavor_id(pool.flavor)
    user_data = await render_user_data(pool.user_data, ctx.config.rancher_url, token)

    async def create_node(index: int) -> RemoteObject:
        name = pool.node_name(index)
        address = pool.node_address(subnet.raw["cidr"], index)
        port = await r.ensure(
            ResourceDescriptor(
                os_kinds.PORT,
                f"{name}-port",
                {
                    "name": f"{name}-port",
                    "network_id": subnet.raw["network_id"],
                    "fixed_ips": [{"subnet_id": subnet.id, "ip_address": address}],
                    "security_group_ids": group_ids,
                },
                "openstack",
            )
        )

        body: dict[str, Any] = {
            "name": name,
            "image_id": image_id,
            "flavor_id": flavor_id,
            "networks": [{"port": port.id}],
            "metadata": {"role": pool.role, "subnet": pool.subnet},
        }
        if pool.key_name:
            body["key_name"] = pool.key_name
        if user_data:
            body["user_data"] = user_data

        steps = []
        if pool.floating_ip:
            ip = ctx.floating_ips[pool.floating_ip]

            async def ip_attached(_server: RemoteObject) -> bool:
                current = await openstack.get(os_kinds.FLOATING_IP, ip.id)
                return current.get("port_id") == port.id

            async def attach_ip(_server: RemoteObject) -> None:
                await openstack.associate_floating_ip(ip.id, port.id)

            steps.append(SubStep("floating-ip", apply=attach_ip, is_applied=ip_attached))

        return await r.ensure_composite(
            ResourceDescriptor(os_kinds.SERVER, name, body, "openstack"),
            steps,
            wait=lambda o: r.poller.condition(os_kinds.SERVER, o.id, status_is("ACTIVE")),
        )

    logger.info(f"Creating {pool.count} {pool.role} node(s) for pool {pool.name}")
    servers = await run_bounded(
        [lambda i=i: create_node(i) for i in range(1, pool.count + 1)],
        limit=ctx.config.max_parallel_nodes,
    )
    for server in servers:
        ctx.servers[str(server.name)] = server


async def rancher_servers(ctx: RunContext, plan: OpenStackPlan) -> None:
    """The Rancher server pool, with its floating IP, ahead of the cluster."""
    for pool in plan.node_pools:
        if pool.role == RANCHER_ROLE:
            await node_pool(ctx, pool, token=None)


async def nodes(ctx: RunContext, plan: OpenStackPlan, token: str | None = None) -> None:
    """Cluster node pools in plan order; masters come before workers."""
    members = [p for p in plan.node_pools if p.role != RANCHER_ROLE]
    ordered = sorted(members, key=lambda p: p.role != "master")
    for pool in ordered:
        await node_pool(ctx, pool, token)


async def load_balancer(ctx: RunContext, plan: OpenStackPlan, lb: LoadBalancerConfig) -> None:
    """Load balancer with HTTP/HTTPS listeners, pools, monitors and members.

    Octavia rejects changes while the load balancer is not ACTIVE, so
    every child is awaited before the next one is created.
    """
    r = ctx.reconciler
    openstack = _openstack(ctx)

    def active(kind: Any) -> Any:
        return lambda o: r.poller.condition(kind, o.id, status_is("ACTIVE"))

    balancer = await r.ensure(
        ResourceDescriptor(
            os_kinds.LOAD_BALANCER,
            lb.name,
            {"name": lb.name, "vip_subnet_id": ctx.subnets[lb.subnet].id},
            "openstack",
        ),
        wait=active(os_kinds.LOAD_BALANCER),
    )

    if lb.floating_ip:
        await openstack.associate_floating_ip(
            ctx.floating_ips[lb.floating_ip].id, str(balancer.get("vip_port_id"))
        )

    members = [
        (
            pool.node_name(i),
            pool.node_address(plan.network.subnet(pool.subnet).cidr, i),
            pool.subnet,
        )
        for pool in plan.node_pools
        if pool.role == lb.member_role
        for i in range(1, pool.count + 1)
    ]

    for protocol, port, monitor_port in LB_FRONTENDS:
        suffix = protocol.lower()
        listener = await r.ensure(
            ResourceDescriptor(
                os_kinds.LISTENER,
                f"{lb.name}-{suffix}-listener",
                {
                    "name": f"{lb.name}-{suffix}-listener",
                    "protocol": protocol,
                    "protocol_port": port,
                    "loadbalancer_id": balancer.id,
                },
                "openstack",
            ),
            wait=active(os_kinds.LISTENER),
        )
        pool = await r.ensure(
            ResourceDescriptor(
                os_kinds.POOL,
                f"{lb.name}-{suffix}-pool",
                {
                    "name": f"{lb.name}-{suffix}-pool",
                    "protocol": protocol,
                    "lb_algorithm": "ROUND_ROBIN",
                    "listener_id": listener.id,
                },
                "openstack",
            ),
            wait=active(os_kinds.POOL),
        )
        await r.ensure(
            ResourceDescriptor(
                os_kinds.HEALTH_MONITOR,
                f"{lb.name}-{suffix}-monitor",
                {
                    **HEALTH_MONITOR_DEFAULTS,
                    "name": f"{lb.name}-{suffix}-monitor",
                    "pool_id": pool.id,
                    "url_path": lb.health_check_path,
                    "expected_codes": lb.expected_codes,
                },
                "openstack",
            ),
            wait=active(os_kinds.HEALTH_MONITOR),
        )

        for node_name, address, subnet_name in members:
            body: dict[str, Any] = {
                "name": f"{node_name}-{suffix}",
                "address": address,
                "protocol_port": port,
                "subnet_id": ctx.subnets[subnet_name].id,
            }
            if monitor_port is not None:
                body["monitor_port"] = monitor_port
            scope = {"pool_id": pool.id}
            await r.ensure(
                ResourceDescriptor(
                    os_kinds.MEMBER, f"{node_name}-{suffix}", body, "openstack", scope=scope
                ),
                wait=lambda o, scope=scope: r.poller.condition(
                    os_kinds.MEMBER, o.id, status_is("ACTIVE"), scope=scope
                ),
            )


# =============================================================================
# Rancher
# =============================================================================


async def cluster(ctx: RunContext, plan: RancherPlan) -> None:
    """Downstream cluster: front object, back id, token, nodes, readiness,
    projects and namespaces, kubeconfig."""
    r = ctx.reconciler
    rancher = _rancher(ctx)
    config = ctx.config
    cluster_cfg = plan.cluster
    front_scope = {"namespace": cluster_cfg.namespace}

    await rancher.wait_until_available(
        timeout=config.cluster_wait_timeout_seconds, interval=config.poll_interval_seconds
    )

    ref: ClusterRef
    front: RemoteObject | None = None
    if cluster_cfg.cluster_id:
        ref = BackRef(cluster_cfg.cluster_id)
    else:
        front = await r.ensure(
            ResourceDescriptor(
                rn.CLUSTER, cluster_cfg.name, cluster_cfg.to_body(), "rancher", scope=front_scope
            )
        )
        ref = FrontRef(cluster_cfg.name)

    bridge = IdentityBridge(
        rancher,
        rn.CLUSTER,
        rn.MANAGEMENT_CLUSTER,
        attempts=config.bridge_attempts,
        delay=config.bridge_delay_seconds,
        scope=front_scope,
        resolver=r.resolver,
    )
    ctx.cluster_id = cluster_id = await bridge.resolve_back_id(ref)
    back_scope = {"cluster_id": cluster_id}

    ctx.registration_token = token = await r.ensure(
        ResourceDescriptor(
            rn.REGISTRATION_TOKEN,
            rn.DEFAULT_REGISTRATION_TOKEN,
            {
                "type": "clusterRegistrationToken",
                "clusterId": cluster_id,
                "name": rn.DEFAULT_REGISTRATION_TOKEN,
            },
            "rancher",
            scope=back_scope,
        ),
        wait=lambda o: r.poller.condition(
            rn.REGISTRATION_TOKEN,
            o.id,
            all_of(field_present("token"), field_present("nodeCommand")),
            scope=back_scope,
            description=f"registration token of {cluster_id}",
        ),
    )

    if ctx.plan.openstack is not None and ctx.plan.openstack.node_pools:
        await nodes(ctx, ctx.plan.openstack, token=str(token.get("token")))

    if front is not None:
        await r.poller.wait_for(
            rancher,
            rn.CLUSTER,
            front.id,
            field_equals("status.ready", True),
            timeout=config.cluster_wait_timeout_seconds,
            interval=config.cluster_poll_interval_seconds,
            scope=front_scope,
            description=f"cluster {cluster_cfg.name} ready",
        )
    else:
        await r.poller.wait_for(
            rancher,
            rn.MANAGEMENT_CLUSTER,
            cluster_id,
            status_is("active"),
            timeout=config.cluster_wait_timeout_seconds,
            interval=config.cluster_poll_interval_seconds,
            description=f"cluster {cluster_id} active",
        )

    for project_cfg in plan.projects:
        project = await r.ensure(
            ResourceDescriptor(
                rn.PROJECT,
                project_cfg.name,
                {
                    "name": project_cfg.name,
                    "clusterId": cluster_id,
                    "description": project_cfg.description or "",
                },
                "rancher",
                scope=back_scope,
            )
        )
        for namespace in project_cfg.namespaces:
            await r.ensure(
                ResourceDescriptor(
                    rn.NAMESPACE,
                    namespace.name,
                    {"name": namespace.name, "projectId": project.id},
                    "rancher",
                    scope=back_scope,
                )
            )

    ctx.kubeconfig = await rancher.generate_kubeconfig(cluster_id)
    if plan.kubeconfig_path:
        write_kubeconfig(Path(plan.kubeconfig_path), ctx.kubeconfig)


def write_kubeconfig(path: Path, content: str) -> None:
    """Write a kubeconfig readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    logger.info("Wrote kubeconfig", extra={"path": str(path)})


# =============================================================================
# Kubernetes
# =============================================================================


async def kubernetes_objects(ctx: RunContext, plan: KubernetesPlan) -> None:
    """Upsert every manifest, then wait for the declared readiness conditions."""
    r = ctx.reconciler
    platform = r.platform("kubernetes")

    for obj in plan.objects:
        kind = kind_for(obj.api_version, obj.kind, obj.plural)
        scope = {"namespace": obj.namespace} if kind.namespaced and obj.namespace else {}
        await r.upsert(
            ResourceDescriptor(kind, obj.name, obj.to_body(), "kubernetes", scope=scope)
        )

    for wait in plan.waits:
        kind = kind_for(wait.api_version, wait.kind, wait.plural)
        scope = {"namespace": wait.namespace} if kind.namespaced and wait.namespace else {}
        await r.poller.wait_for(
            platform,
            kind,
            wait.name,
            condition_true(wait.condition),
            timeout=wait.timeout,
            interval=ctx.config.cluster_poll_interval_seconds,
            scope=scope,
            description=f"{wait.kind} {wait.name} {wait.condition}",
        )


# =============================================================================
# Keycloak
# =============================================================================


async def keycloak(ctx: RunContext, plan: KeycloakPlan) -> None:
    """Users (with realm roles), identity providers and clients."""
    r = ctx.reconciler
    admin = _keycloak(ctx)

    for user in plan.users:
        obj = await r.ensure(
            ResourceDescriptor(
                kc.USER, user.email, user.to_body(), "keycloak", scope={"email": user.email}
            )
        )
        await admin.assign_realm_roles(obj.id, user.realm_roles)

    for provider in plan.identity_providers:
        await r.ensure(
            ResourceDescriptor(kc.IDENTITY_PROVIDER, provider.alias, provider.to_body(), "keycloak")
        )

    for client in plan.clients:
        await r.ensure(
            ResourceDescriptor(
                kc.CLIENT,
                client.client_id,
                client.to_body(),
                "keycloak",
                scope={"clientId": client.client_id},
            )
        )


# =============================================================================
# Run
# =============================================================================


async def run_plan(plan: InstallPlan, config: Config, reconciler: Reconciler) -> RunSummary:
    """Execute every section of ``plan`` in dependency order.

    The first failure propagates; objects created before it stay in place
    and the next run picks up from what it finds.
    """
    start = time.monotonic()
    ctx = RunContext(plan=plan, config=config, reconciler=reconciler)
    logger.info(f"Applying plan {plan.name}", extra={"platforms": sorted(plan.platforms())})

    openstack_plan = plan.openstack
    if openstack_plan is not None:
        await network(ctx, openstack_plan)
        await security_groups(ctx, openstack_plan)
        await floating_ips(ctx, openstack_plan)
        await rancher_servers(ctx, openstack_plan)

    if plan.rancher is not None:
        await cluster(ctx, plan.rancher)
    elif openstack_plan is not None and openstack_plan.node_pools:
        await nodes(ctx, openstack_plan)

    if openstack_plan is not None:
        await volumes(ctx, openstack_plan)
        if openstack_plan.load_balancer is not None:
            await load_balancer(ctx, openstack_plan, openstack_plan.load_balancer)

    if plan.kubernetes is not None and "kubernetes" in plan.platforms():
        if ctx.kubeconfig is not None and config.kubeconfig is None:
            reconciler.register(
                "kubernetes", KubernetesPlatform.from_kubeconfig_text(ctx.kubeconfig)
            )
        await kubernetes_objects(ctx, plan.kubernetes)

    if plan.keycloak is not None:
        await keycloak(ctx, plan.keycloak)

    summary = RunSummary(
        plan=plan.name,
        records=list(reconciler.history),
        duration_seconds=round(time.monotonic() - start, 1),
    )
    logger.info(f"Plan {plan.name} applied", extra={"outcomes": summary.counts})
    return summary
