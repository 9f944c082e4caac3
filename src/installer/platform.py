"""Capability contract every platform adapter provides to the core.

The core only ever needs list/create/replace/get/delete plus tagging.
Adapters normalise native payloads into ``RemoteObject`` and translate
native exceptions into the taxonomy in ``errors``.
"""

from __future__ import annotations

import abc
from collections.abc import Mapping
from typing import Any

from .models import RemoteObject, ResourceKind


class Platform(abc.ABC):
    """Async REST control plane seen through the core's capability set.

    ``list`` must return the complete set for the kind and scope; adapters
    are responsible for following pagination where their API has it.
    """

    name: str = "platform"

    @abc.abstractmethod
    async def list(
        self, kind: ResourceKind, scope: Mapping[str, str] | None = None
    ) -> list[RemoteObject]:
        """Return every object of ``kind`` visible in ``scope``."""

    @abc.abstractmethod
    async def create(
        self,
        kind: ResourceKind,
        body: dict[str, Any],
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        """Create an object. Raises ConflictError if it already exists."""

    @abc.abstractmethod
    async def replace(
        self,
        kind: ResourceKind,
        object_id: str,
        body: dict[str, Any],
        version_token: str | None = None,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        """Fully replace an object. Raises VersionConflictError on a stale token."""

    @abc.abstractmethod
    async def get(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> RemoteObject:
        """Fetch one object. Raises NotFoundError if absent."""

    @abc.abstractmethod
    async def delete(
        self, kind: ResourceKind, object_id: str, scope: Mapping[str, str] | None = None
    ) -> None:
        """Delete one object. Raises NotFoundError if absent."""

    async def add_tag(
        self,
        kind: ResourceKind,
        object_id: str,
        tag: str,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        """Attach a tag to an object lacking a native name field."""
        raise NotImplementedError(f"{self.name} does not support tagging {kind.name}")

    async def close(self) -> None:
        """Release transport resources."""
        return None
