"""Error taxonomy shared by the reconciliation core and platform adapters.

Categories and how the core treats them:

- NotFoundError: benign, drives the create path.
- ConflictError: benign inside ``ensure``; the object is re-resolved.
- VersionConflictError: a replace carried a stale version token. Surfaced
  to the caller, never retried.
- WaitTimeoutError: fatal, the run is aborted.
- PlatformUnavailableError / AuthenticationError: fatal, no retry.
- AmbiguousIdentityError: more than one remote object holds a logical name.
- BackReferencePendingError: the platform never populated a back id.
- OutOfOrderError: a resource was reconciled before its prerequisites.
"""

from __future__ import annotations

from typing import Any


class InstallerError(Exception):
    """Base class for all installer errors."""

    pass


class NotFoundError(InstallerError):
    """Raised when a remote object does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' not found")


class ConflictError(InstallerError):
    """Raised when a create call collides with an existing object."""

    def __init__(self, kind: str, key: str, detail: str = "") -> None:
        self.kind = kind
        self.key = key
        self.detail = detail
        message = f"{kind} '{key}' already exists"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class VersionConflictError(InstallerError):
    """Raised when a replace is rejected because the version token is stale."""

    def __init__(self, kind: str, key: str, version_token: str | None = None) -> None:
        self.kind = kind
        self.key = key
        self.version_token = version_token
        super().__init__(
            f"{kind} '{key}' was modified concurrently (stale version token {version_token!r})"
        )


class WaitTimeoutError(InstallerError, TimeoutError):
    """Raised when a wait condition is not met within its timeout."""

    def __init__(self, target: str, timeout: float, last_status: str | None = None) -> None:
        self.target = target
        self.timeout = timeout
        self.last_status = last_status
        super().__init__(
            f"Timed out after {timeout:.0f}s waiting for {target} (last status: {last_status})"
        )


class PlatformUnavailableError(InstallerError):
    """Raised on network or transport failures talking to a platform."""

    def __init__(self, platform: str, reason: str) -> None:
        self.platform = platform
        self.reason = reason
        super().__init__(f"{platform} unavailable: {reason}")


class AuthenticationError(PlatformUnavailableError):
    """Raised when a platform rejects the supplied credentials."""

    pass


class AmbiguousIdentityError(InstallerError):
    """Raised when more than one remote object matches a logical name."""

    def __init__(self, kind: str, name: str, matches: list[Any]) -> None:
        self.kind = kind
        self.name = name
        self.matches = matches
        ids = [getattr(m, "id", m) for m in matches]
        super().__init__(f"{len(matches)} {kind} objects match logical name '{name}': {ids}")


class BackReferencePendingError(InstallerError):
    """Raised when a front object's back reference stays unpopulated."""

    def __init__(self, front: str, attempts: int) -> None:
        self.front = front
        self.attempts = attempts
        super().__init__(
            f"Back reference for '{front}' still pending after {attempts} attempts"
        )


class OutOfOrderError(InstallerError):
    """Raised when a resource kind is reconciled before its prerequisites."""

    def __init__(self, kind: str, missing: list[str]) -> None:
        self.kind = kind
        self.missing = missing
        super().__init__(f"Cannot reconcile {kind} before {', '.join(missing)}")
