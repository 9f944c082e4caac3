"""Create-or-update decision engine.

Two flavours:

1. ``ensure`` (create-if-absent) for resources whose spec is immutable once
   created: networks, subnets, routers, security groups, servers, volumes,
   floating IPs. Found objects are returned unchanged unless the kind (or
   descriptor) opts into CONVERGE_TO_SPEC.

2. ``upsert`` (create-or-replace with optimistic concurrency) for
   mutate-in-place resources such as Kubernetes secrets, certificates,
   Keycloak instances and ingresses. The live version token travels with
   the replace so the backing store rejects stale writes.

Composite resources (security group + rules, server + port) are driven by
an explicit per-run state machine (ABSENT -> PARTIALLY_CREATED -> READY).
A failure part-way leaves the resource partially configured and the next
call completes only the missing sub-steps. Nothing is rolled back: the
documented recovery path is to re-run.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .errors import ConflictError, NotFoundError
from .models import (
    CompositeState,
    IdentityScheme,
    ReconcileOutcome,
    ReconcileStrategy,
    RemoteObject,
    ResourceDescriptor,
    ResourceKind,
    WaitCondition,
    name_tag,
)
from .platform import Platform
from .poller import StatusPoller
from .resolver import IdentityResolver
from .sequencer import Sequencer

logger = logging.getLogger(__name__)

# Re-resolve attempts after a create conflicted but the object is not yet listed
CONFLICT_RESOLVE_ATTEMPTS = 3

# Identity of a security group rule: direction, protocol and port range
RULE_KEY_FIELDS = ("direction", "protocol", "port_range_min", "port_range_max")

# Admin APIs return stored secrets as this placeholder instead of the value
MASKED_VALUE = "**********"

WaitFactory = Callable[[RemoteObject], WaitCondition]


@dataclass(frozen=True)
class ReconcileRecord:
    """One reconcile decision, kept for the run summary."""

    resource: str
    outcome: ReconcileOutcome
    object_id: str | None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SubStep:
    """One ordered step of a composite resource.

    Attributes:
        name: Stable step name, used as the completion key.
        apply: Performs the step against the parent object.
        is_applied: Optional check run before ``apply`` so steps completed
            by an earlier run are detected instead of repeated.
    """

    name: str
    apply: Callable[[RemoteObject], Awaitable[Any]]
    is_applied: Callable[[RemoteObject], Awaitable[bool]] | None = None


@dataclass
class CompositeProgress:
    """Recorded progress of one composite resource in this run."""

    state: CompositeState = CompositeState.ABSENT
    object_id: str | None = None
    completed: set[str] = field(default_factory=set)


class CompositeTracker:
    """In-memory state machine store for composite resources.

    Lives for one run. Resumption inside a run is driven by the recorded
    steps; a fresh run starts empty and re-derives progress by querying.
    """

    def __init__(self) -> None:
        self._progress: dict[tuple[Any, ...], CompositeProgress] = {}

    def progress(self, descriptor: ResourceDescriptor) -> CompositeProgress:
        return self._progress.setdefault(descriptor.key, CompositeProgress())

    def state(self, descriptor: ResourceDescriptor) -> CompositeState:
        progress = self._progress.get(descriptor.key)
        return progress.state if progress else CompositeState.ABSENT


def rule_key(rule: Mapping[str, Any]) -> tuple[Any, ...]:
    """Identity of a security group rule, independent of its remote id."""
    return tuple(rule.get(f) for f in RULE_KEY_FIELDS)


def find_drift(desired: Mapping[str, Any], actual: Mapping[str, Any], prefix: str = "") -> list[str]:
    """Return dotted paths where ``actual`` differs from ``desired``.

    Only keys present in ``desired`` are compared; extra live fields set by
    the platform are not drift, and neither is a secret read back as
    ``MASKED_VALUE``.
    """
    drifted: list[str] = []
    for key, want in desired.items():
        path = f"{prefix}{key}"
        have = actual.get(key) if isinstance(actual, Mapping) else None
        if isinstance(want, Mapping) and isinstance(have, Mapping):
            drifted.extend(find_drift(want, have, prefix=f"{path}."))
        elif want != have and have != MASKED_VALUE:
            drifted.append(path)
    return drifted


def merge_spec(live: Mapping[str, Any], desired: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay ``desired`` onto a copy of the live payload.

    Nested mappings merge key by key; everything else in ``desired``
    (lists included) replaces the live value outright.
    """
    merged = copy.deepcopy(dict(live))
    for key, want in desired.items():
        have = merged.get(key)
        if isinstance(want, Mapping) and isinstance(have, Mapping):
            merged[key] = merge_spec(have, want)
        else:
            merged[key] = copy.deepcopy(want)
    return merged


class Reconciler:
    """Idempotent reconcile primitives used by every task.

    Args:
        platforms: Platform adapters keyed by the name descriptors use.
        resolver: Identity resolver (a default one is created if omitted).
        poller: Status poller supplying default wait interval and timeout.
        sequencer: Optional ordering guard checked before each ensure.
    """

    def __init__(
        self,
        platforms: Mapping[str, Platform],
        resolver: IdentityResolver | None = None,
        poller: StatusPoller | None = None,
        sequencer: Sequencer | None = None,
    ) -> None:
        self._platforms = dict(platforms)
        self._resolver = resolver or IdentityResolver()
        self._poller = poller or StatusPoller()
        self._sequencer = sequencer
        self._composites = CompositeTracker()
        self.history: list[ReconcileRecord] = []

    @property
    def platforms(self) -> Mapping[str, Platform]:
        return dict(self._platforms)

    @property
    def poller(self) -> StatusPoller:
        return self._poller

    @property
    def resolver(self) -> IdentityResolver:
        return self._resolver

    @property
    def composites(self) -> CompositeTracker:
        return self._composites

    def register(self, name: str, platform: Platform) -> None:
        """Add an adapter that only became reachable during the run."""
        self._platforms[name] = platform

    def platform(self, name: str) -> Platform:
        """Look up a registered platform adapter."""
        try:
            return self._platforms[name]
        except KeyError:
            raise ValueError(
                f"Unknown platform '{name}'. Registered: {sorted(self._platforms)}"
            ) from None

    # -------------------------------------------------------------------------
    # create-if-absent
    # -------------------------------------------------------------------------

    async def ensure(
        self,
        descriptor: ResourceDescriptor,
        wait: WaitFactory | None = None,
    ) -> RemoteObject:
        """Make sure the object named by ``descriptor`` exists.

        Args:
            descriptor: Desired resource; its logical name is the idempotency key.
            wait: Optional factory building a wait condition for the returned
                object, evaluated before control returns to the caller.

        Returns:
            The existing, created or adopted remote object.

        Raises:
            AmbiguousIdentityError: If the logical name is held by several objects.
            PlatformUnavailableError: On transport or auth failure.
            WaitTimeoutError: If the wait condition is not met in time.
        """
        platform = self.platform(descriptor.platform)
        kind = descriptor.kind

        if self._sequencer is not None:
            self._sequencer.check(kind.name)

        existing = await self._resolver.resolve(platform, kind, descriptor.name, descriptor.scope)

        if existing is not None:
            obj, outcome = await self._handle_existing(platform, descriptor, existing)
        else:
            obj, outcome = await self._create(platform, descriptor)

        if wait is not None:
            waited = await self._poller.wait(platform, wait(obj))
            if waited is not None:
                obj = waited

        self._record(platform, descriptor, outcome, obj.id)
        if self._sequencer is not None:
            self._sequencer.record(kind.name)
        return obj

    async def _handle_existing(
        self,
        platform: Platform,
        descriptor: ResourceDescriptor,
        existing: RemoteObject,
    ) -> tuple[RemoteObject, ReconcileOutcome]:
        if descriptor.effective_strategy == ReconcileStrategy.CREATE_ONLY:
            return existing, ReconcileOutcome.EXISTING

        drifted = find_drift(descriptor.spec, existing.raw)
        if not drifted:
            return existing, ReconcileOutcome.EXISTING

        logger.info(
            f"Drift detected on {descriptor.describe()}, converging",
            extra={"platform": platform.name, "drifted_fields": drifted},
        )
        body = merge_spec(existing.raw, descriptor.spec)
        converged = await platform.replace(
            descriptor.kind,
            existing.id,
            body,
            version_token=existing.version_token,
            scope=descriptor.scope,
        )
        return converged, ReconcileOutcome.CONVERGED

    async def _create(
        self, platform: Platform, descriptor: ResourceDescriptor
    ) -> tuple[RemoteObject, ReconcileOutcome]:
        kind = descriptor.kind
        body = copy.deepcopy(descriptor.spec)
        if kind.identity == IdentityScheme.NAME and kind.name_field == "name":
            body.setdefault("name", descriptor.name)

        try:
            created = await platform.create(kind, body, descriptor.scope)
        except ConflictError as e:
            logger.info(
                f"{descriptor.describe()} already exists, adopting it",
                extra={"platform": platform.name, "detail": e.detail},
            )
            adopted = await self._resolve_after_conflict(platform, descriptor, e)
            return adopted, ReconcileOutcome.ADOPTED

        if kind.identity == IdentityScheme.TAG:
            try:
                created = await platform.add_tag(
                    kind, created.id, name_tag(descriptor.name), descriptor.scope
                )
            except Exception:
                # The object exists but cannot be found by name on a re-run
                logger.error(
                    f"Created {kind.name} {created.id} but failed to tag it",
                    extra={"platform": platform.name, "logical_name": descriptor.name},
                )
                raise

        return created, ReconcileOutcome.CREATED

    async def _resolve_after_conflict(
        self,
        platform: Platform,
        descriptor: ResourceDescriptor,
        conflict: ConflictError,
    ) -> RemoteObject:
        """Re-resolve an object whose create reported "already exists".

        The listing may lag the create on eventually consistent platforms,
        so a few fixed-interval attempts are made before giving up.
        """
        for attempt in range(1, CONFLICT_RESOLVE_ATTEMPTS + 1):
            obj = await self._resolver.resolve(
                platform, descriptor.kind, descriptor.name, descriptor.scope
            )
            if obj is not None:
                return obj
            if attempt < CONFLICT_RESOLVE_ATTEMPTS:
                await asyncio.sleep(self._poller.interval)

        logger.error(
            f"{descriptor.describe()} reported as existing but cannot be resolved",
            extra={"platform": platform.name, "attempts": CONFLICT_RESOLVE_ATTEMPTS},
        )
        raise conflict

    # -------------------------------------------------------------------------
    # composite resources
    # -------------------------------------------------------------------------

    async def ensure_composite(
        self,
        descriptor: ResourceDescriptor,
        steps: list[SubStep],
        wait: WaitFactory | None = None,
    ) -> RemoteObject:
        """Ensure a base object, then apply its sub-steps in fixed order.

        Steps already recorded as complete in this run are skipped; the
        others are checked with ``is_applied`` before being applied. A
        failing step propagates and leaves the resource PARTIALLY_CREATED.
        """
        progress = self._composites.progress(descriptor)
        obj = await self.ensure(descriptor, wait=wait)

        if progress.object_id is not None and progress.object_id != obj.id:
            # Base object was replaced out-of-band, recorded steps are stale
            progress.completed.clear()
        progress.object_id = obj.id
        if progress.state == CompositeState.ABSENT:
            progress.state = CompositeState.PARTIALLY_CREATED

        platform = self.platform(descriptor.platform)
        applied_any = False

        for step in steps:
            if step.name in progress.completed:
                logger.debug(f"Step {step.name} of {descriptor.describe()} already recorded")
                continue
            if step.is_applied is not None and await step.is_applied(obj):
                logger.info(f"Step {step.name} of {descriptor.describe()} already present")
                progress.completed.add(step.name)
                continue

            try:
                await step.apply(obj)
            except Exception:
                progress.state = CompositeState.PARTIALLY_CREATED
                logger.error(
                    f"Step {step.name} of {descriptor.describe()} failed",
                    extra={
                        "platform": platform.name,
                        "completed_steps": sorted(progress.completed),
                    },
                )
                raise
            progress.completed.add(step.name)
            applied_any = True

        progress.state = CompositeState.READY
        if applied_any:
            obj = await platform.get(descriptor.kind, obj.id, descriptor.scope)
        return obj

    def rule_steps(
        self,
        descriptor: ResourceDescriptor,
        rules: list[dict[str, Any]],
        rule_kind: ResourceKind,
        parent_field: str = "security_group_id",
        rules_field: str = "security_group_rules",
    ) -> list[SubStep]:
        """Build sub-steps adding each rule not already present on the group.

        Rules are matched by (direction, protocol, port range), never by
        remote rule id.
        """
        platform = self.platform(descriptor.platform)
        steps: list[SubStep] = []

        for rule in rules:
            key = rule_key(rule)

            async def is_applied(group: RemoteObject, key: tuple[Any, ...] = key) -> bool:
                present = {rule_key(r) for r in group.raw.get(rules_field) or []}
                return key in present

            async def apply(group: RemoteObject, rule: dict[str, Any] = rule) -> None:
                body = {**rule, parent_field: group.id}
                try:
                    await platform.create(rule_kind, body, descriptor.scope)
                except ConflictError:
                    logger.info(f"Rule {rule_key(rule)} already exists on {group.name}")
                    return
                logger.info(
                    f"Added rule to {descriptor.describe()}",
                    extra={"rule": list(rule_key(rule))},
                )

            steps.append(SubStep(name=f"rule:{key}", apply=apply, is_applied=is_applied))

        return steps

    async def ensure_rules(
        self,
        descriptor: ResourceDescriptor,
        rules: list[dict[str, Any]],
        rule_kind: ResourceKind,
    ) -> RemoteObject:
        """Ensure a security group and exactly the missing rules on it."""
        return await self.ensure_composite(
            descriptor, self.rule_steps(descriptor, rules, rule_kind)
        )

    # -------------------------------------------------------------------------
    # create-or-replace with optimistic concurrency
    # -------------------------------------------------------------------------

    async def upsert(self, descriptor: ResourceDescriptor) -> RemoteObject:
        """Create the object, or fully replace it guarded by its version token.

        A present object without a version token is logged and left as is.
        A stale token is rejected by the store and the resulting
        VersionConflictError propagates; it is never retried here.
        """
        platform = self.platform(descriptor.platform)
        kind = descriptor.kind

        if self._sequencer is not None:
            self._sequencer.check(kind.name)

        existing = await self._resolver.resolve(platform, kind, descriptor.name, descriptor.scope)

        if existing is None:
            obj = await platform.create(kind, copy.deepcopy(descriptor.spec), descriptor.scope)
            outcome = ReconcileOutcome.CREATED
        elif not existing.version_token:
            logger.warning(
                f"{descriptor.describe()} has no version token, skipping update",
                extra={"platform": platform.name, "object_id": existing.id},
            )
            obj = existing
            outcome = ReconcileOutcome.SKIPPED
        else:
            obj = await platform.replace(
                kind,
                existing.id,
                copy.deepcopy(descriptor.spec),
                version_token=existing.version_token,
                scope=descriptor.scope,
            )
            outcome = ReconcileOutcome.REPLACED

        self._record(platform, descriptor, outcome, obj.id)
        if self._sequencer is not None:
            self._sequencer.record(kind.name)
        return obj

    # -------------------------------------------------------------------------
    # deletion
    # -------------------------------------------------------------------------

    async def delete(self, descriptor: ResourceDescriptor, wait: bool = True) -> bool:
        """Delete the object if present; absence counts as success.

        Returns:
            True if a delete call was issued, False if nothing was there.
        """
        platform = self.platform(descriptor.platform)
        existing = await self._resolver.resolve(
            platform, descriptor.kind, descriptor.name, descriptor.scope
        )
        if existing is None:
            self._record(platform, descriptor, ReconcileOutcome.ABSENT, None)
            return False

        try:
            await platform.delete(descriptor.kind, existing.id, descriptor.scope)
        except NotFoundError:
            self._record(platform, descriptor, ReconcileOutcome.ABSENT, existing.id)
            return False

        if wait:
            await self._poller.wait_for_absence(
                platform, descriptor.kind, existing.id, scope=descriptor.scope
            )
        self._record(platform, descriptor, ReconcileOutcome.DELETED, existing.id)
        return True

    def _record(
        self,
        platform: Platform,
        descriptor: ResourceDescriptor,
        outcome: ReconcileOutcome,
        object_id: str | None,
    ) -> None:
        self.history.append(ReconcileRecord(descriptor.describe(), outcome, object_id))
        logger.info(
            f"{descriptor.describe()}: {outcome.value}",
            extra={
                "platform": platform.name,
                "kind": descriptor.kind.name,
                "logical_name": descriptor.name,
                "outcome": outcome.value,
                "object_id": object_id,
            },
        )
