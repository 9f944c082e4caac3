"""In-memory platform for reconcile tests.

Provides a fake implementation of the platform capability contract so the
reconcile core can be exercised without OpenStack, Rancher, Kubernetes or
Keycloak.

Key Features:
- In-memory object state per kind and scope
- Version tokens that advance on every replace
- "Already exists" conflicts and lagging listings
- Scripted status sequences for wait tests
- Error injection per method
- Call counters for asserting idempotency
- Per-platform fakes (FakeOpenStack, FakeRancher, FakeKeycloak) for the
  extra operations install tasks use

Usage:
    from platform_mock import FakePlatform

    platform = FakePlatform("openstack", unique_names=True)
    reconciler = Reconciler({"openstack": platform})
    await reconciler.ensure(descriptor)

    assert platform.state.call_count("create", "network") == 1
"""

from .platform import FakePlatform
from .platforms import FakeKeycloak, FakeOpenStack, FakeRancher
from .state import MockObject, MockObjectState

__all__ = [
    "FakeKeycloak",
    "FakeOpenStack",
    "FakePlatform",
    "FakeRancher",
    "MockObject",
    "MockObjectState",
]
