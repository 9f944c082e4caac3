"""Tests for the create-if-absent and create-or-replace reconcile paths."""

from __future__ import annotations

from typing import Any

import pytest
from platform_mock import FakePlatform

from installer.errors import (
    ConflictError,
    OutOfOrderError,
    PlatformUnavailableError,
    VersionConflictError,
)
from installer.models import (
    CompositeState,
    IdentityScheme,
    ReconcileOutcome,
    ReconcileStrategy,
    RemoteObject,
    ResourceDescriptor,
    ResourceKind,
    name_tag,
)
from installer.poller import StatusPoller, status_is
from installer.reconciler import (
    MASKED_VALUE,
    Reconciler,
    SubStep,
    find_drift,
    merge_spec,
    rule_key,
)
from installer.sequencer import Sequencer

NETWORK = ResourceKind("network")
SUBNET = ResourceKind("subnet")
SECURITY_GROUP = ResourceKind("security_group")
SECURITY_GROUP_RULE = ResourceKind("security_group_rule")
FLOATING_IP = ResourceKind("floating_ip", identity=IdentityScheme.TAG)
CLIENT = ResourceKind(
    "client", name_field="clientId", strategy=ReconcileStrategy.CONVERGE_TO_SPEC
)
SECRET = ResourceKind("secrets", name_field="metadata.name", mutable=True)

R1 = {"direction": "ingress", "protocol": "tcp", "port_range_min": 22, "port_range_max": 22}
R2 = {"direction": "ingress", "protocol": "tcp", "port_range_min": 443, "port_range_max": 443}


def make_reconciler(platform: FakePlatform, **kwargs: Any) -> Reconciler:
    return Reconciler(
        {platform.name: platform}, poller=StatusPoller(interval=0, timeout=1), **kwargs
    )


class TestHelpers:
    """Tests for drift and merge helpers."""

    def test_find_drift_ignores_extra_live_fields(self) -> None:
        """Test only desired keys are compared."""
        desired = {"name": "a", "config": {"x": "1"}}
        actual = {"name": "a", "id": "42", "config": {"x": "1", "y": "2"}}
        assert find_drift(desired, actual) == []

    def test_find_drift_reports_nested_paths(self) -> None:
        """Test drifted nested keys are reported by dotted path."""
        assert find_drift({"config": {"x": "1"}}, {"config": {"x": "2"}}) == ["config.x"]

    def test_find_drift_ignores_masked_secrets(self) -> None:
        """Test a secret read back masked is not reported as drift."""
        desired = {"config": {"clientId": "app", "clientSecret": "s3cret"}}
        actual = {"config": {"clientId": "app", "clientSecret": MASKED_VALUE}}
        assert find_drift(desired, actual) == []

    def test_merge_spec_keeps_live_fields(self) -> None:
        """Test desired values overlay a copy of the live payload."""
        live = {"id": "1", "spec": {"a": 1, "b": 2}, "list": [1, 2]}
        merged = merge_spec(live, {"spec": {"b": 3}, "list": [9]})

        assert merged == {"id": "1", "spec": {"a": 1, "b": 3}, "list": [9]}
        assert live["spec"]["b"] == 2

    def test_rule_key(self) -> None:
        """Test rule identity ignores the remote id."""
        assert rule_key({**R1, "id": "abc"}) == ("ingress", "tcp", 22, 22)


class TestEnsure:
    """Tests for Reconciler.ensure."""

    @pytest.mark.asyncio
    async def test_creates_when_absent(self, fake: FakePlatform) -> None:
        """Test an absent object is created with its logical name."""
        reconciler = make_reconciler(fake)

        obj = await reconciler.ensure(ResourceDescriptor(NETWORK, "net-a", {}, "fake"))

        assert obj.name == "net-a"
        assert fake.state.call_count("create", "network") == 1
        assert reconciler.history[-1].outcome == ReconcileOutcome.CREATED

    @pytest.mark.asyncio
    async def test_idempotent(self, fake: FakePlatform) -> None:
        """Test a second ensure returns the same object without creating."""
        reconciler = make_reconciler(fake)
        descriptor = ResourceDescriptor(NETWORK, "net-a", {"name": "net-a"}, "fake")

        first = await reconciler.ensure(descriptor)
        second = await reconciler.ensure(descriptor)

        assert first.id == second.id
        assert fake.state.call_count("create") == 1
        assert fake.state.count("network") == 1
        assert reconciler.history[-1].outcome == ReconcileOutcome.EXISTING

    @pytest.mark.asyncio
    async def test_polls_until_active(self, fake: FakePlatform) -> None:
        """Test create, then BUILD, BUILD, ACTIVE before returning."""
        reconciler = make_reconciler(fake)
        fake.script_status(NETWORK, "network-1", ["BUILD", "BUILD", "ACTIVE"])

        obj = await reconciler.ensure(
            ResourceDescriptor(NETWORK, "net-a", {}, "fake"),
            wait=lambda o: reconciler.poller.condition(NETWORK, o.id, status_is("ACTIVE")),
        )

        assert obj.id == "network-1"
        assert obj.status == "ACTIVE"
        assert fake.state.call_count("get", "network") == 3

    @pytest.mark.asyncio
    async def test_conflict_returns_existing(self) -> None:
        """Test "already exists" on create adopts the pre-existing object."""
        platform = FakePlatform("fake", unique_names=True)
        existing = platform.seed(NETWORK, {"name": "net-a"})
        # Listing lags behind the store: first lookup misses it
        platform.hide(existing.id, calls=1)
        reconciler = make_reconciler(platform)

        obj = await reconciler.ensure(ResourceDescriptor(NETWORK, "net-a", {}, "fake"))

        assert obj.id == existing.id
        assert platform.state.count("network") == 1
        assert reconciler.history[-1].outcome == ReconcileOutcome.ADOPTED

    @pytest.mark.asyncio
    async def test_conflict_retries_lagging_listing(self) -> None:
        """Test the re-resolve after a conflict tolerates a short listing lag."""
        platform = FakePlatform("fake", unique_names=True)
        existing = platform.seed(NETWORK, {"name": "net-a"})
        platform.hide(existing.id, calls=2)
        reconciler = make_reconciler(platform)

        obj = await reconciler.ensure(ResourceDescriptor(NETWORK, "net-a", {}, "fake"))

        assert obj.id == existing.id
        assert platform.state.call_count("list", "network") == 3

    @pytest.mark.asyncio
    async def test_conflict_without_object_propagates(self) -> None:
        """Test a conflict that never becomes resolvable is surfaced."""
        platform = FakePlatform("fake", unique_names=True)
        existing = platform.seed(NETWORK, {"name": "net-a"})
        platform.hide(existing.id, calls=10)
        reconciler = make_reconciler(platform)

        with pytest.raises(ConflictError):
            await reconciler.ensure(ResourceDescriptor(NETWORK, "net-a", {}, "fake"))

    @pytest.mark.asyncio
    async def test_tag_identity_created_and_found_again(self, fake: FakePlatform) -> None:
        """Test tag-only objects are tagged on create and resolved by tag later."""
        reconciler = make_reconciler(fake)
        fake.seed(FLOATING_IP, {}, tags=[name_tag("ingress-2")])
        descriptor = ResourceDescriptor(FLOATING_IP, "ingress", {"floating_network_id": "ext"}, "fake")

        created = await reconciler.ensure(descriptor)
        again = await reconciler.ensure(descriptor)

        assert name_tag("ingress") in created.tags
        assert again.id == created.id
        assert fake.state.call_count("create", "floating_ip") == 1
        assert fake.state.call_count("add_tag", "floating_ip") == 1

    @pytest.mark.asyncio
    async def test_tag_failure_propagates(self, fake: FakePlatform) -> None:
        """Test a failed tag call is not swallowed."""
        reconciler = make_reconciler(fake)
        fake.fail_next("add_tag", PlatformUnavailableError("fake", "timeout"))

        with pytest.raises(PlatformUnavailableError):
            await reconciler.ensure(ResourceDescriptor(FLOATING_IP, "ingress", {}, "fake"))

    @pytest.mark.asyncio
    async def test_create_only_ignores_drift(self, fake: FakePlatform) -> None:
        """Test CREATE_ONLY never touches an existing object."""
        fake.seed(NETWORK, {"name": "net-a", "mtu": 1400})
        reconciler = make_reconciler(fake)

        obj = await reconciler.ensure(
            ResourceDescriptor(NETWORK, "net-a", {"name": "net-a", "mtu": 1500}, "fake")
        )

        assert obj.get("mtu") == 1400
        assert fake.state.call_count("replace") == 0

    @pytest.mark.asyncio
    async def test_converge_replaces_drifted_object(self, fake: FakePlatform) -> None:
        """Test CONVERGE_TO_SPEC replaces with desired fields merged over live ones."""
        seeded = fake.seed(CLIENT, {"clientId": "grafana", "rootUrl": "http://old", "extra": 1})
        reconciler = make_reconciler(fake)

        obj = await reconciler.ensure(
            ResourceDescriptor(CLIENT, "grafana", {"clientId": "grafana", "rootUrl": "http://new"}, "fake")
        )

        assert obj.id == seeded.id
        assert obj.get("rootUrl") == "http://new"
        assert obj.get("extra") == 1
        assert reconciler.history[-1].outcome == ReconcileOutcome.CONVERGED

    @pytest.mark.asyncio
    async def test_converge_without_drift_is_noop(self, fake: FakePlatform) -> None:
        """Test no replace is issued when nothing drifted."""
        fake.seed(CLIENT, {"clientId": "grafana", "rootUrl": "http://x"})
        reconciler = make_reconciler(fake)

        await reconciler.ensure(
            ResourceDescriptor(CLIENT, "grafana", {"clientId": "grafana", "rootUrl": "http://x"}, "fake")
        )

        assert fake.state.call_count("replace") == 0

    @pytest.mark.asyncio
    async def test_converge_masked_secret_is_noop(self, fake: FakePlatform) -> None:
        """Test a masked stored secret does not trigger a replace on every run."""
        fake.seed(
            CLIENT, {"clientId": "grafana", "secret": MASKED_VALUE, "rootUrl": "http://x"}
        )
        reconciler = make_reconciler(fake)

        await reconciler.ensure(
            ResourceDescriptor(
                CLIENT,
                "grafana",
                {"clientId": "grafana", "secret": "s3cret", "rootUrl": "http://x"},
                "fake",
            )
        )

        assert fake.state.call_count("replace") == 0
        assert reconciler.history[-1].outcome == ReconcileOutcome.EXISTING

    @pytest.mark.asyncio
    async def test_strategy_override(self, fake: FakePlatform) -> None:
        """Test a descriptor can opt a create-only kind into convergence."""
        fake.seed(NETWORK, {"name": "net-a", "mtu": 1400})
        reconciler = make_reconciler(fake)

        obj = await reconciler.ensure(
            ResourceDescriptor(
                NETWORK,
                "net-a",
                {"name": "net-a", "mtu": 1500},
                "fake",
                strategy=ReconcileStrategy.CONVERGE_TO_SPEC,
            )
        )

        assert obj.get("mtu") == 1500

    @pytest.mark.asyncio
    async def test_unknown_platform(self, fake: FakePlatform) -> None:
        """Test descriptors naming an unregistered platform are rejected."""
        reconciler = make_reconciler(fake)

        with pytest.raises(ValueError, match="Unknown platform"):
            await reconciler.ensure(ResourceDescriptor(NETWORK, "net-a", {}, "openstack"))

    @pytest.mark.asyncio
    async def test_out_of_order_in_strict_mode(self, fake: FakePlatform) -> None:
        """Test a subnet before its planned network is refused."""
        reconciler = make_reconciler(
            fake, sequencer=Sequencer(planned={"network", "subnet"}, strict=True)
        )

        with pytest.raises(OutOfOrderError, match="network"):
            await reconciler.ensure(ResourceDescriptor(SUBNET, "subnet-a", {}, "fake"))
        assert fake.state.call_count("list") == 0

    @pytest.mark.asyncio
    async def test_in_order_is_recorded(self, fake: FakePlatform) -> None:
        """Test reconciled kinds are recorded on the sequencer."""
        sequencer = Sequencer(planned={"network", "subnet"}, strict=True)
        reconciler = make_reconciler(fake, sequencer=sequencer)

        await reconciler.ensure(ResourceDescriptor(NETWORK, "net-a", {}, "fake"))
        await reconciler.ensure(ResourceDescriptor(SUBNET, "subnet-a", {}, "fake"))

        assert sequencer.reconciled == {"network", "subnet"}


class TestComposite:
    """Tests for composite resources and security group rules."""

    @pytest.mark.asyncio
    async def test_partial_failure_then_resume(self, fake: FakePlatform) -> None:
        """Test the second call skips R1 and adds only R2."""
        reconciler = make_reconciler(fake)
        descriptor = ResourceDescriptor(SECURITY_GROUP, "sg-1", {"name": "sg-1"}, "fake")
        steps = reconciler.rule_steps(descriptor, [R1, R2], SECURITY_GROUP_RULE)

        original_create = fake.create
        rule_creates = 0

        async def flaky_create(kind: ResourceKind, body: dict[str, Any], scope: Any = None) -> RemoteObject:
            nonlocal rule_creates
            if kind == SECURITY_GROUP_RULE:
                rule_creates += 1
                if rule_creates == 2:
                    raise PlatformUnavailableError("fake", "connection reset")
            return await original_create(kind, body, scope)

        fake.create = flaky_create  # type: ignore[method-assign]

        with pytest.raises(PlatformUnavailableError):
            await reconciler.ensure_composite(descriptor, steps)
        assert reconciler.composites.state(descriptor) == CompositeState.PARTIALLY_CREATED

        await reconciler.ensure_composite(descriptor, steps)

        assert reconciler.composites.state(descriptor) == CompositeState.READY
        assert fake.state.count("security_group") == 1
        assert fake.state.count("security_group_rule") == 2
        ports = sorted(r.raw["port_range_min"] for r in fake.state.all("security_group_rule"))
        assert ports == [22, 443]

    @pytest.mark.asyncio
    async def test_fresh_run_rederives_from_live_rules(self, fake: FakePlatform) -> None:
        """Test a new run detects rules already on the group by querying."""
        fake.seed(SECURITY_GROUP, {"name": "sg-1", "security_group_rules": [{**R1, "id": "r1"}]})
        reconciler = make_reconciler(fake)

        await reconciler.ensure_rules(
            ResourceDescriptor(SECURITY_GROUP, "sg-1", {"name": "sg-1"}, "fake"),
            [R1, R2],
            SECURITY_GROUP_RULE,
        )

        assert fake.state.call_count("create", "security_group") == 0
        assert fake.state.call_count("create", "security_group_rule") == 1
        assert fake.state.all("security_group_rule")[0].raw["port_range_min"] == 443

    @pytest.mark.asyncio
    async def test_rule_conflict_is_tolerated(self, fake: FakePlatform) -> None:
        """Test a rule reported as existing counts as applied."""
        fake.seed(SECURITY_GROUP, {"name": "sg-1"})
        fake.fail_next("create", ConflictError("security_group_rule", "ssh"))
        reconciler = make_reconciler(fake)
        descriptor = ResourceDescriptor(SECURITY_GROUP, "sg-1", {"name": "sg-1"}, "fake")

        await reconciler.ensure_rules(descriptor, [R1], SECURITY_GROUP_RULE)

        assert reconciler.composites.state(descriptor) == CompositeState.READY
        assert fake.state.call_count("create", "security_group_rule") == 1

    @pytest.mark.asyncio
    async def test_generic_sub_steps_run_in_order(self, fake: FakePlatform) -> None:
        """Test sub-steps are applied in order against the base object."""
        reconciler = make_reconciler(fake)
        seen: list[str] = []

        async def step_a(obj: RemoteObject) -> None:
            seen.append(f"a:{obj.name}")

        async def step_b(obj: RemoteObject) -> None:
            seen.append(f"b:{obj.name}")

        async def b_present(obj: RemoteObject) -> bool:
            return False

        await reconciler.ensure_composite(
            ResourceDescriptor(NETWORK, "router-1", {}, "fake"),
            [SubStep("a", step_a), SubStep("b", step_b, is_applied=b_present)],
        )

        assert seen == ["a:router-1", "b:router-1"]


class TestUpsert:
    """Tests for Reconciler.upsert."""

    def secret(self, value: str) -> ResourceDescriptor:
        return ResourceDescriptor(
            SECRET,
            "db-credentials",
            {"metadata": {"name": "db-credentials"}, "stringData": {"password": value}},
            "fake",
            scope={"namespace": "apps"},
        )

    @pytest.mark.asyncio
    async def test_creates_then_replaces(self, fake: FakePlatform) -> None:
        """Test absent creates, present replaces with the live token."""
        reconciler = make_reconciler(fake)

        created = await reconciler.upsert(self.secret("a"))
        replaced = await reconciler.upsert(self.secret("b"))

        assert replaced.id == created.id
        assert replaced.get("stringData.password") == "b"
        assert replaced.version_token == "2"
        assert fake.state.call_count("create") == 1
        assert [r.outcome for r in reconciler.history] == [
            ReconcileOutcome.CREATED,
            ReconcileOutcome.REPLACED,
        ]

    @pytest.mark.asyncio
    async def test_stale_token_is_surfaced(self, fake: FakePlatform) -> None:
        """Test a concurrent write between read and replace is not retried."""
        reconciler = make_reconciler(fake)
        await reconciler.upsert(self.secret("a"))

        original_list = fake.list

        async def racing_list(kind: ResourceKind, scope: Any = None) -> list[RemoteObject]:
            result = await original_list(kind, scope)
            for obj in result:
                fake.bump(kind, obj.id)
            return result

        fake.list = racing_list  # type: ignore[method-assign]

        with pytest.raises(VersionConflictError):
            await reconciler.upsert(self.secret("b"))
        assert fake.state.call_count("replace") == 1

    @pytest.mark.asyncio
    async def test_missing_token_skips(self, fake: FakePlatform) -> None:
        """Test an object without a version token is left as is."""
        fake.seed(NETWORK, {"name": "net-a"})
        reconciler = make_reconciler(fake)

        obj = await reconciler.upsert(ResourceDescriptor(NETWORK, "net-a", {"name": "net-a"}, "fake"))

        assert obj.name == "net-a"
        assert fake.state.call_count("replace") == 0
        assert reconciler.history[-1].outcome == ReconcileOutcome.SKIPPED


class TestDelete:
    """Tests for Reconciler.delete."""

    @pytest.mark.asyncio
    async def test_absent_is_success(self, fake: FakePlatform) -> None:
        """Test deleting an absent object is a no-op."""
        reconciler = make_reconciler(fake)

        assert await reconciler.delete(ResourceDescriptor(NETWORK, "net-a", {}, "fake")) is False
        assert reconciler.history[-1].outcome == ReconcileOutcome.ABSENT

    @pytest.mark.asyncio
    async def test_deletes_and_waits(self, fake: FakePlatform) -> None:
        """Test an existing object is deleted and awaited until gone."""
        fake.seed(NETWORK, {"name": "net-a"})
        reconciler = make_reconciler(fake)

        assert await reconciler.delete(ResourceDescriptor(NETWORK, "net-a", {}, "fake")) is True
        assert fake.state.count("network") == 0
        assert reconciler.history[-1].outcome == ReconcileOutcome.DELETED
