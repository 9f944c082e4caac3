"""Pydantic models for the install plan with validation.

The plan is the desired state of one installation: OpenStack
infrastructure, the Rancher cluster on top of it, the Kubernetes objects
inside that cluster and the Keycloak realm configuration. Each section is
optional so a plan can target a single platform.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Conversion to the native request bodies the platforms expect
"""

from __future__ import annotations

import ipaddress
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .platforms.kubernetes import kind_for

NODE_INDEX_PLACEHOLDER = "{index}"

# =============================================================================
# OpenStack
# =============================================================================


class SubnetConfig(BaseModel):
    """IPv4 subnet inside the plan's network."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    cidr: str
    enable_dhcp: bool = Field(True, alias="enableDhcp")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        network = ipaddress.ip_network(v, strict=True)
        if network.version != 4:
            raise ValueError("only IPv4 subnets are supported")
        return v

    def to_body(self, network_id: str) -> dict[str, Any]:
        return {
            "name": self.name,
            "network_id": network_id,
            "ip_version": 4,
            "cidr": self.cidr,
            "enable_dhcp": self.enable_dhcp,
        }


class NetworkConfig(BaseModel):
    """Tenant network, its subnets and the router joining them to the outside."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    router_name: Annotated[str, Field(min_length=1, max_length=255, alias="routerName")]
    subnets: list[SubnetConfig] = Field(min_length=1)

    @field_validator("subnets")
    @classmethod
    def validate_unique_subnets(cls, v: list[SubnetConfig]) -> list[SubnetConfig]:
        names = [s.name for s in v]
        if len(names) != len(set(names)):
            raise ValueError("subnet names must be unique")
        return v

    def subnet(self, name: str) -> SubnetConfig:
        for subnet in self.subnets:
            if subnet.name == name:
                return subnet
        raise KeyError(f"Subnet {name} is not part of network {self.name}")


class SecurityGroupRuleConfig(BaseModel):
    """One ingress/egress rule; identity is (direction, protocol, port range)."""

    model_config = {"extra": "ignore"}

    direction: Literal["ingress", "egress"] = "ingress"
    protocol: Literal["tcp", "udp", "icmp"] | None = "tcp"
    port_range_min: int | None = Field(None, ge=0, le=65535, alias="portRangeMin")
    port_range_max: int | None = Field(None, ge=0, le=65535, alias="portRangeMax")
    remote_ip_prefix: str | None = Field(None, alias="remoteIpPrefix")
    # Name of another security group in the plan
    remote_group: str | None = Field(None, alias="remoteGroup")

    @model_validator(mode="after")
    def validate_rule(self) -> SecurityGroupRuleConfig:
        if self.remote_ip_prefix and self.remote_group:
            raise ValueError("remoteIpPrefix and remoteGroup are mutually exclusive")
        if self.port_range_max is None and self.port_range_min is not None:
            self.port_range_max = self.port_range_min
        if (
            self.port_range_min is not None
            and self.port_range_max is not None
            and self.port_range_min > self.port_range_max
        ):
            raise ValueError("portRangeMin must not exceed portRangeMax")
        return self

    def to_body(self, remote_group_id: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "direction": self.direction,
            "protocol": self.protocol,
            "port_range_min": self.port_range_min,
            "port_range_max": self.port_range_max,
            "ethertype": "IPv4",
        }
        if self.remote_ip_prefix:
            body["remote_ip_prefix"] = self.remote_ip_prefix
        if remote_group_id:
            body["remote_group_id"] = remote_group_id
        return body


class SecurityGroupConfig(BaseModel):
    """Security group and its rules."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: str | None = None
    rules: list[SecurityGroupRuleConfig] = Field(default_factory=list)

    @property
    def plain_rules(self) -> list[SecurityGroupRuleConfig]:
        return [r for r in self.rules if not r.remote_group]

    @property
    def group_rules(self) -> list[SecurityGroupRuleConfig]:
        return [r for r in self.rules if r.remote_group]

    def to_body(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description or f"Security group for {self.name}",
        }


class FloatingIpConfig(BaseModel):
    """Public address; located on re-runs through its ``name:`` tag."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=200)]
    description: str | None = None

    def to_body(self, external_network_id: str) -> dict[str, Any]:
        return {
            "floating_network_id": external_network_id,
            "description": self.description or f"Floating IP for {self.name}",
        }


class VolumeConfig(BaseModel):
    """Block storage volume, optionally attached to a node."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    size: Annotated[int, Field(ge=1, le=16384)]
    volume_type: str | None = Field(None, alias="volumeType")
    description: str | None = None
    attach_to: str | None = Field(None, alias="attachTo")

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"name": self.name, "size": self.size}
        if self.volume_type:
            body["volume_type"] = self.volume_type
        if self.description:
            body["description"] = self.description
        return body


class NodePoolConfig(BaseModel):
    """A group of identical servers joining the cluster in one role.

    A ``rancher`` pool is the single Rancher server itself; it is created
    before the cluster exists and never joins it.

    ``name`` may contain ``{index}``; node ``i`` (1-based) receives the
    fixed address ``<subnet base> + ipOffset + i - 1``.
    """

    model_config = {"extra": "ignore"}

    role: Literal["rancher", "master", "worker", "storage"]
    name: Annotated[str, Field(min_length=1, max_length=200)]
    count: Annotated[int, Field(ge=1, le=100)] = 1
    image: Annotated[str, Field(min_length=1)]
    flavor: Annotated[str, Field(min_length=1)]
    subnet: Annotated[str, Field(min_length=1)]
    security_groups: list[str] = Field(default_factory=list, alias="securityGroups")
    key_name: str | None = Field(None, alias="keyName")
    user_data: str | None = Field(None, alias="userData")
    ip_offset: Annotated[int, Field(ge=2, le=250, alias="ipOffset")] = 10
    floating_ip: str | None = Field(None, alias="floatingIp")

    @model_validator(mode="after")
    def validate_naming(self) -> NodePoolConfig:
        if self.count > 1 and NODE_INDEX_PLACEHOLDER not in self.name:
            raise ValueError(f"name must contain {NODE_INDEX_PLACEHOLDER} when count > 1")
        if self.floating_ip and self.count > 1:
            raise ValueError("floatingIp can only be set on single-node pools")
        if self.role == "rancher" and self.count > 1:
            raise ValueError("a rancher pool runs a single server")
        return self

    def node_name(self, index: int) -> str:
        return self.name.replace(NODE_INDEX_PLACEHOLDER, str(index))

    def node_address(self, cidr: str, index: int) -> str:
        network = ipaddress.ip_network(cidr)
        address = network.network_address + self.ip_offset + index - 1
        if address not in network or address == network.broadcast_address:
            raise ValueError(f"Node {index} of {self.name} does not fit in {cidr}")
        return str(address)


class LoadBalancerConfig(BaseModel):
    """Octavia load balancer fronting the worker nodes on 80 and 443."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    subnet: Annotated[str, Field(min_length=1)]
    floating_ip: str | None = Field(None, alias="floatingIp")
    member_role: str = Field("worker", alias="memberRole")
    health_check_path: str = Field("/", alias="healthCheckPath")
    expected_codes: str = Field("200,301,302,404", alias="expectedCodes")


class OpenStackPlan(BaseModel):
    """Everything created on OpenStack, in dependency order."""

    model_config = {"extra": "ignore"}

    network: NetworkConfig
    security_groups: list[SecurityGroupConfig] = Field(
        default_factory=list, alias="securityGroups"
    )
    floating_ips: list[FloatingIpConfig] = Field(default_factory=list, alias="floatingIps")
    volumes: list[VolumeConfig] = Field(default_factory=list)
    node_pools: list[NodePoolConfig] = Field(default_factory=list, alias="nodePools")
    load_balancer: LoadBalancerConfig | None = Field(None, alias="loadBalancer")

    @model_validator(mode="after")
    def validate_references(self) -> OpenStackPlan:
        subnets = {s.name for s in self.network.subnets}
        groups = {g.name for g in self.security_groups}
        ips = {ip.name for ip in self.floating_ips}
        errors: list[str] = []

        for group in self.security_groups:
            for rule in group.group_rules:
                if rule.remote_group not in groups:
                    errors.append(
                        f"securityGroups.{group.name}: unknown remoteGroup {rule.remote_group}"
                    )

        nodes: set[str] = set()
        for pool in self.node_pools:
            if pool.subnet not in subnets:
                errors.append(f"nodePools.{pool.name}: unknown subnet {pool.subnet}")
            for sg in pool.security_groups:
                if sg not in groups:
                    errors.append(f"nodePools.{pool.name}: unknown security group {sg}")
            if pool.floating_ip and pool.floating_ip not in ips:
                errors.append(f"nodePools.{pool.name}: unknown floating IP {pool.floating_ip}")
            nodes.update(pool.node_name(i) for i in range(1, pool.count + 1))

        for volume in self.volumes:
            if volume.attach_to and volume.attach_to not in nodes:
                errors.append(f"volumes.{volume.name}: unknown node {volume.attach_to}")

        lb = self.load_balancer
        if lb is not None:
            if lb.subnet not in subnets:
                errors.append(f"loadBalancer: unknown subnet {lb.subnet}")
            if lb.floating_ip and lb.floating_ip not in ips:
                errors.append(f"loadBalancer: unknown floating IP {lb.floating_ip}")

        if errors:
            raise ValueError("; ".join(errors))
        return self

    def kinds(self) -> set[str]:
        """Resource kinds this section will reconcile."""
        kinds = {"network", "subnet", "router"}
        if self.security_groups:
            kinds.add("security_group")
        if self.floating_ips:
            kinds.add("floating_ip")
        if self.volumes:
            kinds.add("volume")
        if self.node_pools:
            kinds.update({"port", "server"})
        if self.load_balancer is not None:
            kinds.update({"load_balancer", "listener", "pool", "health_monitor", "member"})
        return kinds


# =============================================================================
# Rancher
# =============================================================================


class NamespaceConfig(BaseModel):
    """Namespace placed in a Rancher project."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=63, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")]
    description: str | None = None


class ProjectConfig(BaseModel):
    """Rancher project and the namespaces it owns."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: str | None = None
    namespaces: list[NamespaceConfig] = Field(default_factory=list)


class ClusterConfig(BaseModel):
    """RKE2 custom cluster provisioned through Rancher."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=63, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")]
    kubernetes_version: Annotated[str, Field(min_length=1, alias="kubernetesVersion")]
    namespace: str = "fleet-default"
    machine_pools: list[dict[str, Any]] = Field(default_factory=list, alias="machinePools")
    # Existing management cluster id (c-xxxxx) when the front object is not ours
    cluster_id: str | None = Field(None, alias="clusterId")

    def to_body(self) -> dict[str, Any]:
        return {
            "apiVersion": "provisioning.cattle.io/v1",
            "kind": "Cluster",
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {
                "kubernetesVersion": self.kubernetes_version,
                "enableNetworkPolicy": True,
                "rkeConfig": {
                    "machineGlobalConfig": {
                        "cni": "canal",
                        "disable-kube-proxy": False,
                        "etcd-expose-metrics": True,
                    },
                    "etcd": {
                        "disableSnapshots": False,
                        "snapshotRetention": 5,
                        "snapshotScheduleCron": "0 */5 * * *",
                    },
                    "upgradeStrategy": {
                        "controlPlaneConcurrency": "1",
                        "workerConcurrency": "1",
                    },
                    "machinePools": list(self.machine_pools),
                },
            },
        }


class RancherPlan(BaseModel):
    """Cluster, projects and kubeconfig output."""

    model_config = {"extra": "ignore"}

    cluster: ClusterConfig
    projects: list[ProjectConfig] = Field(default_factory=list)
    kubeconfig_path: str | None = Field(None, alias="kubeconfigPath")

    def kinds(self) -> set[str]:
        kinds = {"registration_token"}
        if self.cluster.cluster_id is None:
            kinds.add("cluster")
        if self.projects:
            kinds.add("project")
        if any(p.namespaces for p in self.projects):
            kinds.add("namespace")
        return kinds


# =============================================================================
# Kubernetes
# =============================================================================


class KubernetesObject(BaseModel):
    """A manifest created or replaced with optimistic concurrency."""

    model_config = {"extra": "allow"}

    api_version: Annotated[str, Field(min_length=1, alias="apiVersion")]
    kind: Annotated[str, Field(min_length=1)]
    metadata: dict[str, Any]
    # Override when the plural is not the lowercased kind + "s"
    plural: str | None = None

    @field_validator("metadata")
    @classmethod
    def validate_metadata(cls, v: dict[str, Any]) -> dict[str, Any]:
        if not v.get("name"):
            raise ValueError("metadata.name is required")
        return v

    @property
    def name(self) -> str:
        return str(self.metadata["name"])

    @property
    def namespace(self) -> str | None:
        return self.metadata.get("namespace")

    @model_validator(mode="after")
    def validate_namespace(self) -> KubernetesObject:
        if kind_for(self.api_version, self.kind, self.plural).namespaced and not self.namespace:
            raise ValueError(f"{self.kind} {self.name} is namespaced, set metadata.namespace")
        return self

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"plural"})


class ReadinessWait(BaseModel):
    """Wait for a ``status.conditions`` entry on a custom resource."""

    model_config = {"extra": "ignore"}

    api_version: Annotated[str, Field(min_length=1, alias="apiVersion")]
    kind: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    namespace: str | None = None
    plural: str | None = None
    condition: str = "Ready"
    timeout: Annotated[int, Field(ge=1, le=3600)] = 600

    @model_validator(mode="after")
    def validate_namespace(self) -> ReadinessWait:
        if kind_for(self.api_version, self.kind, self.plural).namespaced and not self.namespace:
            raise ValueError(f"{self.kind} {self.name} is namespaced, set namespace")
        return self


class KubernetesPlan(BaseModel):
    """Objects upserted into the downstream cluster, then awaited."""

    model_config = {"extra": "ignore"}

    objects: list[KubernetesObject] = Field(default_factory=list)
    waits: list[ReadinessWait] = Field(default_factory=list)


# =============================================================================
# Keycloak
# =============================================================================


class KeycloakUser(BaseModel):
    """Realm user, identified by email."""

    model_config = {"extra": "ignore"}

    email: Annotated[str, Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")]
    username: str | None = None
    first_name: str | None = Field(None, alias="firstName")
    last_name: str | None = Field(None, alias="lastName")
    password: str | None = Field(None, repr=False)
    realm_roles: list[str] = Field(default_factory=list, alias="realmRoles")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        # Keycloak lower-cases emails on write; the lookup key must match
        return v.lower()

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "username": self.username or self.email,
            "email": self.email,
            "enabled": True,
            "emailVerified": True,
        }
        if self.first_name:
            body["firstName"] = self.first_name
        if self.last_name:
            body["lastName"] = self.last_name
        if self.password:
            body["credentials"] = [{"type": "password", "value": self.password, "temporary": False}]
        return body


class IdentityProviderConfig(BaseModel):
    """Upstream identity provider (github, google, oidc ...), identified by alias."""

    model_config = {"extra": "ignore"}

    alias: Annotated[str, Field(min_length=1)]
    provider_id: Annotated[str, Field(min_length=1, alias="providerId")]
    display_name: str | None = Field(None, alias="displayName")
    enabled: bool = True
    trust_email: bool = Field(True, alias="trustEmail")
    config: dict[str, str] = Field(default_factory=dict)

    def to_body(self) -> dict[str, Any]:
        return {
            "alias": self.alias,
            "providerId": self.provider_id,
            "displayName": self.display_name or self.alias,
            "enabled": self.enabled,
            "trustEmail": self.trust_email,
            "config": dict(self.config),
        }


class KeycloakClientConfig(BaseModel):
    """OIDC client, identified by clientId."""

    model_config = {"extra": "ignore"}

    client_id: Annotated[str, Field(min_length=1, alias="clientId")]
    name: str | None = None
    description: str = ""
    public_client: bool = Field(False, alias="publicClient")
    standard_flow_enabled: bool = Field(True, alias="standardFlowEnabled")
    direct_access_grants_enabled: bool = Field(False, alias="directAccessGrantsEnabled")
    service_accounts_enabled: bool = Field(False, alias="serviceAccountsEnabled")
    redirect_uris: list[str] = Field(default_factory=list, alias="redirectUris")
    web_origins: list[str] = Field(default_factory=list, alias="webOrigins")
    root_url: str = Field("", alias="rootUrl")
    secret: str | None = Field(None, repr=False)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "clientId": self.client_id,
            "name": self.name or self.client_id,
            "description": self.description,
            "enabled": True,
            "protocol": "openid-connect",
            "publicClient": self.public_client,
            "standardFlowEnabled": self.standard_flow_enabled,
            "directAccessGrantsEnabled": self.direct_access_grants_enabled,
            "serviceAccountsEnabled": self.service_accounts_enabled,
            "redirectUris": list(self.redirect_uris),
            "webOrigins": list(self.web_origins),
            "rootUrl": self.root_url,
        }
        if self.secret and not self.public_client:
            body["secret"] = self.secret
        return body


class KeycloakPlan(BaseModel):
    """Realm content managed through the admin REST API."""

    model_config = {"extra": "ignore"}

    users: list[KeycloakUser] = Field(default_factory=list)
    identity_providers: list[IdentityProviderConfig] = Field(
        default_factory=list, alias="identityProviders"
    )
    clients: list[KeycloakClientConfig] = Field(default_factory=list)


# =============================================================================
# Plan
# =============================================================================


class InstallPlan(BaseModel):
    """Top-level desired state of one installation."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    openstack: OpenStackPlan | None = None
    rancher: RancherPlan | None = None
    kubernetes: KubernetesPlan | None = None
    keycloak: KeycloakPlan | None = None

    @model_validator(mode="after")
    def validate_not_empty(self) -> InstallPlan:
        if not any((self.openstack, self.rancher, self.kubernetes, self.keycloak)):
            raise ValueError("plan must contain at least one platform section")
        return self

    def platforms(self) -> set[str]:
        """Platforms this plan touches."""
        platforms = set()
        if self.openstack is not None:
            platforms.add("openstack")
        if self.rancher is not None:
            platforms.add("rancher")
        if self.kubernetes is not None and (self.kubernetes.objects or self.kubernetes.waits):
            platforms.add("kubernetes")
        if self.keycloak is not None:
            platforms.add("keycloak")
        return platforms

    def kinds(self) -> set[str]:
        """Resource kinds this plan will reconcile, for the ordering guard."""
        kinds: set[str] = set()
        if self.openstack is not None:
            kinds |= self.openstack.kinds()
        if self.rancher is not None:
            kinds |= self.rancher.kinds()
        return kinds
