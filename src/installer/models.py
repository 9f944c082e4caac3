"""Core data model shared by the resolver, poller, reconciler and bridge.

Everything here is ephemeral: objects are rebuilt from the remote
platforms on every run and nothing is persisted locally.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Tag attached to objects whose API has no name field
NAME_TAG_PREFIX = "name:"

_MISSING = object()


class IdentityScheme(str, Enum):
    """How a logical name is located on the remote platform."""

    # Natural unique field on the object (name, metadata.name, clientId, ...)
    NAME = "name"
    # ``name:<logical-name>`` entry in the object's tag set
    TAG = "tag"


class ReconcileStrategy(str, Enum):
    """What ``ensure`` does when the object already exists."""

    # Create once, never compare against the desired spec afterwards
    CREATE_ONLY = "createOnly"
    # Compare desired fields against the live object and replace on drift
    CONVERGE_TO_SPEC = "convergeToSpec"


class ReconcileOutcome(str, Enum):
    """What a reconcile call actually did."""

    CREATED = "created"
    EXISTING = "existing"
    ADOPTED = "adopted"  # create conflicted, pre-existing object returned
    CONVERGED = "converged"
    REPLACED = "replaced"
    SKIPPED = "skipped"
    DELETED = "deleted"
    ABSENT = "absent"


class CompositeState(str, Enum):
    """Lifecycle of a multi-step resource within one run."""

    ABSENT = "absent"
    PARTIALLY_CREATED = "partiallyCreated"
    READY = "ready"


def name_tag(name: str) -> str:
    """Return the identity tag for a logical name."""
    return f"{NAME_TAG_PREFIX}{name}"


def has_name_tag(tags: Iterable[str] | None, name: str) -> bool:
    """Exact membership test, so ``name:X`` never matches ``name:XY``."""
    if not tags:
        return False
    return name_tag(name) in set(tags)


def get_path(data: Mapping[str, Any] | None, path: str, default: Any = None) -> Any:
    """Look up a dotted path (``status.clusterName``) in nested mappings."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return default
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return default
    return current


@dataclass(frozen=True)
class ResourceKind:
    """A resource type on one platform and how the core treats it.

    Attributes:
        name: Short type name (``network``, ``floating_ip``, ``secret``).
        identity: Whether the logical name lives in a field or in a tag.
        strategy: Default reconcile strategy for ``ensure``.
        name_field: Dotted path of the natural name for NAME identity.
        status_field: Dotted path of the status/phase field.
        mutable: True for mutate-in-place kinds carrying a version token.
    """

    name: str
    identity: IdentityScheme = IdentityScheme.NAME
    strategy: ReconcileStrategy = ReconcileStrategy.CREATE_ONLY
    name_field: str = "name"
    status_field: str = "status"
    mutable: bool = False

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class RemoteObject:
    """Uniform shape of an object read back from any platform."""

    id: str
    name: str | None = None
    status: str | None = None
    version_token: str | None = None
    tags: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def get(self, path: str, default: Any = None) -> Any:
        """Read a dotted path from the native payload."""
        return get_path(self.raw, path, default)


@dataclass
class ResourceDescriptor:
    """Desired state for one logical resource.

    The logical name is the idempotency key: within one platform, kind and
    scope it must identify at most one remote object.
    """

    kind: ResourceKind
    name: str
    spec: dict[str, Any] = field(default_factory=dict)
    platform: str = ""
    scope: dict[str, str] = field(default_factory=dict)
    strategy: ReconcileStrategy | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("ResourceDescriptor requires a logical name")

    @property
    def effective_strategy(self) -> ReconcileStrategy:
        """Per-descriptor override, falling back to the kind default."""
        return self.strategy or self.kind.strategy

    @property
    def key(self) -> tuple[str, str, tuple[tuple[str, str], ...], str]:
        return (self.platform, self.kind.name, tuple(sorted(self.scope.items())), self.name)

    def describe(self) -> str:
        scope = "".join(f"{v}/" for _, v in sorted(self.scope.items()))
        return f"{self.kind.name} {scope}{self.name}"


Predicate = Callable[[RemoteObject], bool]


@dataclass(frozen=True)
class WaitCondition:
    """One wait: created per call, discarded after success or timeout."""

    kind: ResourceKind
    target: str
    predicate: Predicate
    timeout: float
    interval: float
    absence_satisfies: bool = False
    scope: dict[str, str] = field(default_factory=dict)
    description: str = ""


@dataclass(frozen=True)
class FrontRef:
    """Reference to the declarative (front) surface of a composite resource."""

    name: str


@dataclass(frozen=True)
class BackRef:
    """Reference to the imperative (back) surface by platform-assigned id."""

    id: str


ClusterRef = FrontRef | BackRef
