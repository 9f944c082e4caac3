"""Generic wait-until-condition primitive.

Every asynchronous state transition (server ACTIVE, volume available,
load balancer ACTIVE, cluster ready, custom resource Ready) goes through
``StatusPoller``. The loop is deliberately simple:

    fetch -> evaluate predicate -> sleep(interval) -> repeat

No exponential backoff and no jitter: a fixed interval keeps request
rates predictable and well under platform rate limits. The only
suspension points are the fetch and the sleep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from .errors import NotFoundError, WaitTimeoutError
from .models import Predicate, RemoteObject, ResourceKind, WaitCondition, get_path
from .platform import Platform

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 300.0


# =============================================================================
# Predicates
# =============================================================================


def status_is(*values: str) -> Predicate:
    """Object status equals one of ``values`` (case-insensitive)."""
    wanted = {v.lower() for v in values}

    def predicate(obj: RemoteObject) -> bool:
        return obj.status is not None and obj.status.lower() in wanted

    return predicate


def field_equals(path: str, value: Any) -> Predicate:
    """Native payload field at ``path`` equals ``value``."""

    def predicate(obj: RemoteObject) -> bool:
        return obj.get(path) == value

    return predicate


def field_present(path: str) -> Predicate:
    """Native payload field at ``path`` is populated."""

    def predicate(obj: RemoteObject) -> bool:
        return bool(obj.get(path))

    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    """Every one of ``predicates`` holds."""

    def predicate(obj: RemoteObject) -> bool:
        return all(p(obj) for p in predicates)

    return predicate


def condition_true(condition_type: str = "Ready") -> Predicate:
    """Kubernetes-style ``status.conditions`` entry has status "True"."""

    def predicate(obj: RemoteObject) -> bool:
        conditions = obj.get("status.conditions") or []
        return any(
            c.get("type") == condition_type and str(c.get("status")) == "True"
            for c in conditions
            if isinstance(c, Mapping)
        )

    return predicate


# =============================================================================
# Poller
# =============================================================================


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    timeout: float,
    interval: float,
    description: str,
    describe: Callable[[T], str | None] | None = None,
) -> T:
    """Poll ``fetch`` until ``predicate`` holds or ``timeout`` elapses.

    Returns within ``timeout + interval`` of the predicate first becoming
    true. Exceptions raised by ``fetch`` propagate unchanged.

    Raises:
        WaitTimeoutError: If the predicate never held within ``timeout``.
    """
    start = time.monotonic()
    last_status: str | None = None

    logger.info(f"Waiting for {description}", extra={"timeout_seconds": timeout})

    while True:
        value = await fetch()
        if predicate(value):
            logger.info(
                f"Condition met for {description}",
                extra={"elapsed_seconds": round(time.monotonic() - start, 1)},
            )
            return value

        if describe is not None:
            last_status = describe(value)

        elapsed = time.monotonic() - start
        if elapsed >= timeout:
            logger.error(
                f"Timed out waiting for {description}",
                extra={"timeout_seconds": timeout, "last_status": last_status},
            )
            raise WaitTimeoutError(description, timeout, last_status)

        percent = min(100, int(elapsed / timeout * 100)) if timeout else 100
        logger.info(
            f"Still waiting for {description}",
            extra={"status": last_status, "progress_percent": percent},
        )
        await asyncio.sleep(interval)


class StatusPoller:
    """Waits for remote objects to reach a state.

    Args:
        interval: Default poll interval in seconds.
        timeout: Default timeout in seconds.
    """

    def __init__(
        self,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
    ) -> None:
        self.interval = interval
        self.timeout = timeout

    def condition(
        self,
        kind: ResourceKind,
        target: str,
        predicate: Predicate,
        *,
        timeout: float | None = None,
        interval: float | None = None,
        scope: Mapping[str, str] | None = None,
        description: str = "",
    ) -> WaitCondition:
        """Build a WaitCondition using this poller's defaults."""
        return WaitCondition(
            kind=kind,
            target=target,
            predicate=predicate,
            timeout=self.timeout if timeout is None else timeout,
            interval=self.interval if interval is None else interval,
            scope=dict(scope or {}),
            description=description,
        )

    async def wait(self, platform: Platform, condition: WaitCondition) -> RemoteObject | None:
        """Wait until ``condition`` holds.

        Returns the object that satisfied the predicate, or None when the
        condition accepts absence and the object is gone.
        """
        description = condition.description or f"{condition.kind.name} {condition.target}"

        async def fetch() -> RemoteObject | None:
            try:
                return await platform.get(condition.kind, condition.target, condition.scope)
            except NotFoundError:
                if condition.absence_satisfies:
                    return None
                raise

        def satisfied(obj: RemoteObject | None) -> bool:
            if obj is None:
                return True
            return condition.predicate(obj)

        def describe(obj: RemoteObject | None) -> str | None:
            if obj is None:
                return None
            return obj.status or str(get_path(obj.raw, condition.kind.status_field))

        return await poll_until(
            fetch,
            satisfied,
            timeout=condition.timeout,
            interval=condition.interval,
            description=description,
            describe=describe,
        )

    async def wait_for(
        self,
        platform: Platform,
        kind: ResourceKind,
        object_id: str,
        predicate: Predicate,
        *,
        timeout: float | None = None,
        interval: float | None = None,
        scope: Mapping[str, str] | None = None,
        description: str = "",
    ) -> RemoteObject:
        """Wait for ``predicate`` to hold on the object ``object_id``.

        Raises:
            WaitTimeoutError: If the predicate never held within the timeout.
            NotFoundError: If the object disappears while waiting.
        """
        condition = self.condition(
            kind,
            object_id,
            predicate,
            timeout=timeout,
            interval=interval,
            scope=scope,
            description=description,
        )
        obj = await self.wait(platform, condition)
        assert obj is not None
        return obj

    async def wait_for_absence(
        self,
        platform: Platform,
        kind: ResourceKind,
        object_id: str,
        *,
        timeout: float | None = None,
        interval: float | None = None,
        scope: Mapping[str, str] | None = None,
    ) -> None:
        """Wait until the object is gone; a 404 means the condition is met."""
        condition = WaitCondition(
            kind=kind,
            target=object_id,
            predicate=lambda _obj: False,
            timeout=self.timeout if timeout is None else timeout,
            interval=self.interval if interval is None else interval,
            absence_satisfies=True,
            scope=dict(scope or {}),
            description=f"deletion of {kind.name} {object_id}",
        )
        await self.wait(platform, condition)
