"""Tests for dependency ordering and bounded fan-out."""

from __future__ import annotations

import asyncio

import pytest

from installer.errors import OutOfOrderError
from installer.sequencer import (
    RESOURCE_DEPENDENCIES,
    CyclicDependencyError,
    DependencyGraph,
    Sequencer,
    run_bounded,
)


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_default_table_is_acyclic(self) -> None:
        """Test the built-in kind table sorts without error."""
        order = DependencyGraph.from_table().topological_sort()
        assert set(order) == set(RESOURCE_DEPENDENCIES)

    def test_network_chain_order(self) -> None:
        """Test prerequisites always precede their dependents."""
        order = DependencyGraph.from_table().order(
            ["member", "pool", "listener", "load_balancer", "floating_ip", "router", "subnet", "network"]
        )
        assert order == [
            "network",
            "subnet",
            "router",
            "floating_ip",
            "load_balancer",
            "listener",
            "pool",
            "member",
        ]

    def test_cycle_detected(self) -> None:
        """Test a cyclic table is rejected."""
        graph = DependencyGraph.from_table({"a": ["b"], "b": ["c"], "c": ["a"]})
        with pytest.raises(CyclicDependencyError, match="a"):
            graph.topological_sort()

    def test_unknown_prerequisite_becomes_node(self) -> None:
        """Test referenced kinds are added implicitly."""
        graph = DependencyGraph.from_table({"secret": ["namespace"]})
        assert graph.topological_sort() == ["namespace", "secret"]

    def test_transitive_prerequisites(self) -> None:
        """Test prerequisites are collected transitively."""
        prerequisites = DependencyGraph.from_table().prerequisites("listener")
        assert {"load_balancer", "subnet", "network", "floating_ip", "router"} <= prerequisites


class TestSequencer:
    """Tests for Sequencer."""

    def test_missing_only_counts_planned_kinds(self) -> None:
        """Test unplanned prerequisites are not enforced."""
        sequencer = Sequencer(planned={"network", "subnet", "server"})
        sequencer.record("network")

        assert sequencer.missing("server") == ["subnet"]

    def test_strict_raises(self) -> None:
        """Test strict mode refuses out-of-order kinds."""
        sequencer = Sequencer(planned={"network", "subnet", "server"}, strict=True)
        sequencer.record("network")

        with pytest.raises(OutOfOrderError) as exc_info:
            sequencer.check("server")
        assert exc_info.value.missing == ["subnet"]

    def test_lenient_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test non-strict mode only warns."""
        sequencer = Sequencer(planned={"network", "subnet"})

        sequencer.check("subnet")

        assert "before its prerequisites" in caplog.text

    def test_in_order_passes(self) -> None:
        """Test a correctly ordered run passes the check."""
        sequencer = Sequencer(planned={"network", "subnet"}, strict=True)
        sequencer.check("network")
        sequencer.record("network")
        sequencer.check("subnet")


class TestRunBounded:
    """Tests for run_bounded."""

    @pytest.mark.asyncio
    async def test_results_in_submission_order(self) -> None:
        """Test results line up with the factories regardless of finish order."""

        def factory(value: int, delay: float):  # type: ignore[no-untyped-def]
            async def run() -> int:
                await asyncio.sleep(delay)
                return value

            return run

        results = await run_bounded([factory(1, 0.03), factory(2, 0.0), factory(3, 0.01)], limit=3)
        assert results == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_limit_is_respected(self) -> None:
        """Test no more than ``limit`` coroutines run at once."""
        in_flight = 0
        peak = 0

        async def run() -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        await run_bounded([run] * 6, limit=2)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_first_failure_cancels_the_rest(self) -> None:
        """Test a failure propagates unwrapped and pending work is cancelled."""
        finished: list[str] = []

        async def fail() -> None:
            raise RuntimeError("node-2 failed")

        async def slow() -> None:
            await asyncio.sleep(1)
            finished.append("slow")

        with pytest.raises(RuntimeError, match="node-2 failed"):
            await run_bounded([slow, fail], limit=2)
        assert finished == []

    @pytest.mark.asyncio
    async def test_limit_must_be_positive(self) -> None:
        """Test a zero limit is rejected."""
        with pytest.raises(ValueError):
            await run_bounded([], limit=0)

    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        """Test no factories yields no results."""
        assert await run_bounded([], limit=1) == []
