"""Identity resolution: find the remote object holding a logical name.

Two schemes are supported:
- NAME: linear scan of the full listing for an exact match on the kind's
  natural name field.
- TAG: linear scan for objects whose tag set contains ``name:<logical-name>``
  (floating IPs and other objects without a name field).

Resolution is read-only and never retries; transport failures propagate
as PlatformUnavailableError. More than one match is reported as an
AmbiguousIdentityError instead of silently picking the first one.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from .errors import AmbiguousIdentityError, NotFoundError
from .models import IdentityScheme, RemoteObject, ResourceKind, has_name_tag
from .platform import Platform

logger = logging.getLogger(__name__)


def matches_identity(obj: RemoteObject, kind: ResourceKind, name: str) -> bool:
    """Check whether ``obj`` carries the logical ``name`` under the kind's scheme."""
    if kind.identity == IdentityScheme.TAG:
        return has_name_tag(obj.tags, name)
    if kind.name_field == "name":
        return obj.name == name
    return obj.get(kind.name_field) == name


class IdentityResolver:
    """Resolves logical names to remote objects.

    Stateless; one instance can be shared by every reconcile call in a run.
    """

    async def resolve(
        self,
        platform: Platform,
        kind: ResourceKind,
        name: str,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject | None:
        """Return the single object holding ``name``, or None if absent.

        Raises:
            AmbiguousIdentityError: If more than one object matches.
            PlatformUnavailableError: If the listing call fails.
        """
        objects = await platform.list(kind, scope)
        matches = [obj for obj in objects if matches_identity(obj, kind, name)]

        if len(matches) > 1:
            logger.error(
                "Logical name is not unique",
                extra={
                    "platform": platform.name,
                    "kind": kind.name,
                    "logical_name": name,
                    "match_ids": [m.id for m in matches],
                },
            )
            raise AmbiguousIdentityError(kind.name, name, matches)

        if not matches:
            logger.debug(
                "No object found for logical name",
                extra={"platform": platform.name, "kind": kind.name, "logical_name": name},
            )
            return None

        return matches[0]

    async def require(
        self,
        platform: Platform,
        kind: ResourceKind,
        name: str,
        scope: Mapping[str, str] | None = None,
    ) -> RemoteObject:
        """Like ``resolve`` but raises NotFoundError when absent."""
        obj = await self.resolve(platform, kind, name, scope)
        if obj is None:
            raise NotFoundError(kind.name, name)
        return obj
