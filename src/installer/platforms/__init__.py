"""Platform adapters implementing the ``Platform`` capability contract."""

from __future__ import annotations

from .keycloak import KeycloakAdminPlatform
from .kubernetes import KubernetesPlatform
from .openstack import OpenStackPlatform
from .rancher import RancherPlatform

__all__ = [
    "KeycloakAdminPlatform",
    "KubernetesPlatform",
    "OpenStackPlatform",
    "RancherPlatform",
]
