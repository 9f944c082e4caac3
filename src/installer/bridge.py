"""Cross-API identity bridge.

Some platforms expose one logical resource through two APIs: a
declarative front surface addressed by name and an imperative back
surface addressed by a platform-assigned id. Rancher is the case at hand:
``provisioning.cattle.io.clusters/<name>`` (v1) is the front object and
its ``status.clusterName`` holds the ``c-xxxxx`` id of the v3 management
cluster used for tokens, projects and kubeconfigs.

The back reference is populated asynchronously after the front object
is created, so reading it is a short fixed-delay retry. Callers pass an
explicit ``FrontRef`` or ``BackRef``; the bridge never guesses which kind
of string it was given.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from .errors import BackReferencePendingError
from .models import BackRef, ClusterRef, FrontRef, ResourceKind
from .platform import Platform
from .resolver import IdentityResolver

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_ATTEMPTS = 5
DEFAULT_BRIDGE_DELAY_SECONDS = 5.0
DEFAULT_BACK_FIELD = "status.clusterName"


class IdentityBridge:
    """Maps a front object name to the id the back surface uses.

    Args:
        platform: Adapter exposing both surfaces.
        front_kind: Kind of the declarative object, looked up by name.
        back_kind: Kind of the imperative object; consulted by name as a
            fallback when the front object has no back reference yet.
        attempts: Total reads before giving up.
        delay: Fixed delay in seconds between reads.
        back_field: Dotted path of the back reference on the front object.
        scope: Scope for front object lookups (e.g. ``fleet-default``).
    """

    def __init__(
        self,
        platform: Platform,
        front_kind: ResourceKind,
        back_kind: ResourceKind,
        attempts: int = DEFAULT_BRIDGE_ATTEMPTS,
        delay: float = DEFAULT_BRIDGE_DELAY_SECONDS,
        back_field: str = DEFAULT_BACK_FIELD,
        scope: Mapping[str, str] | None = None,
        resolver: IdentityResolver | None = None,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._platform = platform
        self._front_kind = front_kind
        self._back_kind = back_kind
        self._attempts = attempts
        self._delay = delay
        self._back_field = back_field
        self._scope = dict(scope or {})
        self._resolver = resolver or IdentityResolver()

    async def resolve_back_id(self, ref: ClusterRef) -> str:
        """Return the back-surface id for ``ref``.

        Raises:
            BackReferencePendingError: If no back id appeared within the allowed attempts.
            PlatformUnavailableError: On transport failure (not retried).
        """
        if isinstance(ref, BackRef):
            return ref.id

        for attempt in range(1, self._attempts + 1):
            back_id = await self._read_back_reference(ref)
            if back_id:
                logger.info(
                    f"Resolved {self._front_kind.name} {ref.name} to {back_id}",
                    extra={"attempt": attempt},
                )
                return back_id

            if attempt < self._attempts:
                logger.info(
                    f"Back reference for {ref.name} not populated yet",
                    extra={"attempt": attempt, "max_attempts": self._attempts},
                )
                await asyncio.sleep(self._delay)

        logger.error(
            f"Back reference for {ref.name} never appeared",
            extra={"attempts": self._attempts, "back_field": self._back_field},
        )
        raise BackReferencePendingError(ref.name, self._attempts)

    async def _read_back_reference(self, ref: FrontRef) -> str | None:
        front = await self._resolver.resolve(
            self._platform, self._front_kind, ref.name, self._scope
        )
        if front is not None:
            back_id = front.get(self._back_field)
            if back_id:
                return str(back_id)

        # Fallback: the management cluster may already list the display name
        back = await self._resolver.resolve(self._platform, self._back_kind, ref.name)
        return back.id if back is not None else None
