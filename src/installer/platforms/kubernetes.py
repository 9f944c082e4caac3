"""Kubernetes adapter built on the official kubernetes client.

Core (``v1``) kinds go through ``CoreV1Api``; every grouped kind
(``cert-manager.io/v1`` certificates, ``k8s.keycloak.org/v2alpha1``
keycloaks, ``networking.k8s.io/v1`` ingresses ...) goes through
``CustomObjectsApi``, which only needs group, version and plural.

``metadata.resourceVersion`` is the version token. A replace carries it
in the body, so the API server rejects a stale write with 409, surfaced
as VersionConflictError. Listing follows ``metadata.continue`` tokens.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from ..errors import (
    AuthenticationError,
    ConflictError,
    InstallerError,
    NotFoundError,
    PlatformUnavailableError,
    VersionConflictError,
)
from ..models import RemoteObject, ResourceKind, get_path
from ..platform import Platform
from .blocking import run_blocking
from .http import RequestRejectedError

logger = logging.getLogger(__name__)

MAX_API_CALL_TIMEOUT_SECONDS = 60
LIST_PAGE_SIZE = 250

# Plurals that are not "<lowercased kind>s"
IRREGULAR_PLURALS = {
    "ingress": "ingresses",
    "networkpolicy": "networkpolicies",
    "storageclass": "storageclasses",
    "ingressclass": "ingressclasses",
}

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "ClusterIssuer",
        "ClusterRole",
        "ClusterRoleBinding",
        "StorageClass",
        "CustomResourceDefinition",
        "PersistentVolume",
        "IngressClass",
    }
)

# CoreV1Api method suffix per plural
CORE_SUFFIXES = {
    "secrets": "secret",
    "configmaps": "config_map",
    "persistentvolumeclaims": "persistent_volume_claim",
    "services": "service",
    "serviceaccounts": "service_account",
    "namespaces": "namespace",
}


@dataclass(frozen=True)
class KubernetesKind(ResourceKind):
    """A Kubernetes resource type addressed by group, version and plural."""

    group: str = ""
    version: str = "v1"
    plural: str = ""
    namespaced: bool = True

    @property
    def is_core(self) -> bool:
        return self.group == ""


def kind_for(
    api_version: str,
    kind: str,
    plural: str | None = None,
    namespaced: bool | None = None,
) -> KubernetesKind:
    """Build the KubernetesKind for a manifest's ``apiVersion`` and ``kind``."""
    group, _, version = api_version.rpartition("/")
    lowered = kind.lower()
    plural = plural or IRREGULAR_PLURALS.get(lowered, f"{lowered}s")
    if namespaced is None:
        namespaced = kind not in CLUSTER_SCOPED_KINDS
    return KubernetesKind(
        name=f"{plural}.{group}" if group else plural,
        name_field="metadata.name",
        status_field="status.phase",
        mutable=True,
        group=group,
        version=version,
        plural=plural,
        namespaced=namespaced,
    )


SECRET = kind_for("v1", "Secret")
NAMESPACE = kind_for("v1", "Namespace")
PERSISTENT_VOLUME_CLAIM = kind_for("v1", "PersistentVolumeClaim")
CERTIFICATE = kind_for("cert-manager.io/v1", "Certificate")
CLUSTER_ISSUER = kind_for("cert-manager.io/v1", "ClusterIssuer")
INGRESS = kind_for("networking.k8s.io/v1", "Ingress")
KEYCLOAK = kind_for("k8s.keycloak.org/v2alpha1", "Keycloak")


def to_remote(kind: ResourceKind, item: Mapping[str, Any]) -> RemoteObject:
    raw = dict(item)
    metadata = raw.get("metadata") or {}
    name = metadata.get("name")
    status = get_path(raw, kind.status_field)
    return RemoteObject(
        # Objects are addressed by name within their namespace
        id=str(name),
        name=name,
        status=str(status) if status is not None else None,
        version_token=metadata.get("resourceVersion"),
        tags=tuple(f"{k}={v}" for k, v in sorted((metadata.get("labels") or {}).items())),
        raw=raw,
    )


class KubernetesPlatform(Platform):
    """One Kubernetes cluster.

    Args:
        api_client: Configured ``ApiClient``. Use ``from_kubeconfig`` /
            ``from_kubeconfig_text`` to build one.
    """

    name = "kubernetes"

    def __init__(
        self,
        api_client: client.ApiClient,
        call_timeout: float = MAX_API_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._custom = client.CustomObjectsApi(api_client)
        self._call_timeout = call_timeout

    @classmethod
    def from_kubeconfig(cls, path: Path | None = None) -> KubernetesPlatform:
        """Load ``path``, or fall back to in-cluster then default kubeconfig."""
        if path is not None:
            logger.info("Loading kubeconfig", extra={"path": str(path)})
            return cls(config.new_client_from_config(config_file=str(path)))
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except ConfigException:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")
        return cls(client.ApiClient())

    @classmethod
    def from_kubeconfig_text(cls, text: str) -> KubernetesPlatform:
        """Build a client from kubeconfig content (as generated by Rancher)."""
        kubeconfig = yaml.safe_load(text)
        if not isinstance(kubeconfig, dict):
            raise ValueError("kubeconfig must be a YAML mapping")
        return cls(config.new_client_from_config_dict(kubeconfig))

    async def close(self) -> None:
        self._api_client.close()

    # -------------------------------------------------------------------------
    # plumbing
    # -------------------------------------------------------------------------

    @staticmethod
    def _kind(kind: ResourceKind) -> KubernetesKind:
        if not isinstance(kind, KubernetesKind):
            raise ValueError(f"'{kind.name}' is not a Kubernetes kind")
        return kind

    @staticmethod
    def _namespace(kind: KubernetesKind, scope: Mapping[str, str] | None) -> str | None:
        if not kind.namespaced:
            return None
        namespace = (scope or {}).get("namespace")
        if not namespace:
            raise ValueError(f"Kubernetes {kind.name} requires 'namespace' in scope")
        return namespace

    def _translate(
        self, e: Exception, kind: ResourceKind, key: str, version_token: str | None = None
    ) -> InstallerError:
        if isinstance(e, ApiException):
            if e.status == 404:
                return NotFoundError(kind.name, key)
            if e.status == 409:
                if version_token is not None:
                    return VersionConflictError(kind.name, key, version_token)
                return ConflictError(kind.name, key, str(e.reason or ""))
            if e.status in (401, 403):
                return AuthenticationError(self.name, f"{e.status} {e.reason}")
            if e.status is not None and 400 <= e.status < 500:
                return RequestRejectedError(self.name, e.status, str(e.body or e.reason))
        return PlatformUnavailableError(self.name, f"{kind.name} {key}: {e}")

    async def _call_api(
        self,
        verb: str,
        kind: KubernetesKind,
        namespace: str | None,
        name: str | None = None,
        body: dict[str, Any] | None = None,
        version_token: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Dispatch ``verb`` (list/create/read/replace/delete) to the right API.

        CoreV1Api:        ``<verb>_[namespaced_]<kind>([name], [namespace], [body])``
        CustomObjectsApi: ``<verb>_<namespaced|cluster>_custom_object(group,
        version, [namespace], plural, [name], [body])``
        """
        args: list[Any] = []
        if kind.is_core:
            suffix = CORE_SUFFIXES.get(kind.plural)
            if suffix is None:
                raise ValueError(f"Unsupported core kind '{kind.plural}'")
            fn = getattr(self._core, f"{verb}_{'namespaced_' if namespace else ''}{suffix}")
            if name is not None:
                args.append(name)
            if namespace:
                args.append(namespace)
        else:
            method = "get" if verb == "read" else verb
            scoped = "namespaced" if namespace else "cluster"
            fn = getattr(self._custom, f"{method}_{scoped}_custom_object")
            args.extend([kind.group, kind.version])
            if namespace:
                args.append(namespace)
            args.append(kind.plural)
            if name is not None:
                args.append(name)
        if body is not None:
            args.append(body)

        key = name or str(get_path(body, "metadata.name") or "*")
        try:
            result = await run_blocking(
                self.name, f"{verb} {kind.name}", self._call_timeout, fn, *args, **kwargs
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise self._translate(e, kind, key, version_token) from e

        if isinstance(result, dict):
            return result
        return self._api_client.sanitize_for_serialization(result) or {}

    # -------------------------------------------------------------------------
    # capability contract
    # -------------------------------------------------------------------------

    async def list(
        self, kind: ResourceKind, scope: Mapping[str, str] | None = None
    ) -> list[RemoteObject]:
        """List every object, following ``metadata.continue``."""
        k = self._kind(kind)
        namespace = self._namespace(k, scope)
        items: list[RemoteObject] = []
        token: str | None = None

        while True:
            page_kwargs: dict[str, Any] = {"limit": LIST_PAGE_SIZE}
            if token:
                page_kwargs["_continue"] = token
            body = await self._call_api("list", k, namespace, **page_kwargs)
            items.extend(to_remote(k, item) for item in body.get("items") or [])
            token = get_path(body, "metadata.continue")
            if not token:
                return items

    async def create(
        self,
        kind: ResourceKind,
        body: dict[str, Any],
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        k = self._kind(kind)
        namespace = self._namespace(k, scope)
        result = await self._call_api("create", k, namespace, body=body)
        logger.info(
            f"Created {k.name} {get_path(body, 'metadata.name')}",
            extra={"namespace": namespace},
        )
        return to_remote(k, result)

    async def replace(
        self,
        kind: ResourceKind,
        object_id: str,
        body: dict[str, Any],
        version_token: str | None = None,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        k = self._kind(kind)
        namespace = self._namespace(k, scope)
        metadata = {**(body.get("metadata") or {}), "name": object_id}
        if version_token is not None:
            metadata["resourceVersion"] = version_token
        result = await self._call_api(
            "replace",
            k,
            namespace,
            name=object_id,
            body={**body, "metadata": metadata},
            version_token=version_token,
        )
        return to_remote(k, result)

    async def get(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> RemoteObject:
        k = self._kind(kind)
        result = await self._call_api("read", k, self._namespace(k, scope), name=object_id)
        return to_remote(k, result)

    async def delete(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> None:
        k = self._kind(kind)
        await self._call_api("delete", k, self._namespace(k, scope), name=object_id)
