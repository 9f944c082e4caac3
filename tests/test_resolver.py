"""Tests for logical-name identity resolution."""

from __future__ import annotations

import pytest
from platform_mock import FakePlatform

from installer.errors import AmbiguousIdentityError, NotFoundError, PlatformUnavailableError
from installer.models import IdentityScheme, ResourceKind, RemoteObject, name_tag
from installer.resolver import IdentityResolver, matches_identity

NETWORK = ResourceKind("network")
FLOATING_IP = ResourceKind("floating_ip", identity=IdentityScheme.TAG)
CLUSTER = ResourceKind("cluster", name_field="metadata.name")


class TestMatchesIdentity:
    """Tests for matches_identity."""

    def test_name_field(self) -> None:
        """Test NAME identity compares the natural name."""
        obj = RemoteObject(id="1", name="net-a")
        assert matches_identity(obj, NETWORK, "net-a")
        assert not matches_identity(obj, NETWORK, "net-b")

    def test_dotted_name_field(self) -> None:
        """Test NAME identity on a nested name field."""
        obj = RemoteObject(id="1", raw={"metadata": {"name": "prod"}})
        assert matches_identity(obj, CLUSTER, "prod")

    def test_tag_exact_membership(self) -> None:
        """Test name:X never matches an object tagged name:XY."""
        obj = RemoteObject(id="1", tags=(name_tag("lb-public"),))
        assert matches_identity(obj, FLOATING_IP, "lb-public")
        assert not matches_identity(obj, FLOATING_IP, "lb")
        assert not matches_identity(obj, FLOATING_IP, "lb-public-2")


class TestIdentityResolver:
    """Tests for IdentityResolver."""

    @pytest.mark.asyncio
    async def test_absent_returns_none(self, fake: FakePlatform) -> None:
        """Test zero matches resolves to None."""
        assert await IdentityResolver().resolve(fake, NETWORK, "net-a") is None

    @pytest.mark.asyncio
    async def test_single_match(self, fake: FakePlatform) -> None:
        """Test one match returns that object."""
        seeded = fake.seed(NETWORK, {"name": "net-a"})
        fake.seed(NETWORK, {"name": "net-b"})

        obj = await IdentityResolver().resolve(fake, NETWORK, "net-a")

        assert obj is not None
        assert obj.id == seeded.id

    @pytest.mark.asyncio
    async def test_duplicate_names_are_ambiguous(self, fake: FakePlatform) -> None:
        """Test more than one match is reported instead of picking the first."""
        fake.seed(NETWORK, {"name": "net-a"})
        fake.seed(NETWORK, {"name": "net-a"})

        with pytest.raises(AmbiguousIdentityError) as exc_info:
            await IdentityResolver().resolve(fake, NETWORK, "net-a")

        assert len(exc_info.value.matches) == 2

    @pytest.mark.asyncio
    async def test_tag_prefix_safety(self, fake: FakePlatform) -> None:
        """Test tag lookup ignores objects whose tag merely starts with the name."""
        fake.seed(FLOATING_IP, {}, tags=[name_tag("ingress-2")])
        wanted = fake.seed(FLOATING_IP, {}, tags=["env=prod", name_tag("ingress")])

        obj = await IdentityResolver().resolve(fake, FLOATING_IP, "ingress")

        assert obj is not None
        assert obj.id == wanted.id

    @pytest.mark.asyncio
    async def test_scope_limits_matches(self, fake: FakePlatform) -> None:
        """Test objects outside the scope are not considered."""
        fake.seed(NETWORK, {"name": "app"}, scope={"namespace": "a"})
        other = fake.seed(NETWORK, {"name": "app"}, scope={"namespace": "b"})

        obj = await IdentityResolver().resolve(fake, NETWORK, "app", {"namespace": "b"})

        assert obj is not None
        assert obj.id == other.id

    @pytest.mark.asyncio
    async def test_listing_failure_propagates(self, fake: FakePlatform) -> None:
        """Test transport failures are not retried or swallowed."""
        fake.fail_next("list", PlatformUnavailableError("fake", "connection reset"))

        with pytest.raises(PlatformUnavailableError):
            await IdentityResolver().resolve(fake, NETWORK, "net-a")
        assert fake.state.call_count("list") == 1

    @pytest.mark.asyncio
    async def test_require_raises_not_found(self, fake: FakePlatform) -> None:
        """Test require turns absence into NotFoundError."""
        with pytest.raises(NotFoundError, match="net-a"):
            await IdentityResolver().require(fake, NETWORK, "net-a")
