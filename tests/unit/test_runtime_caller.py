import asyncio

import pytest

from dockplan.exceptions import RuntimeCallError
from dockplan.MANAGERS.runtime import ContainerRuntime, RuntimeCaller
from dockplan.TRANSLATORS.network import NetworkSpec


class TestRuntimeCaller:
    """Tests for RuntimeCaller."""

    def test_fake_runtime_satisfies_the_protocol(self, runtime):
        assert isinstance(runtime, ContainerRuntime)

    @pytest.mark.asyncio
    async def test_returns_the_runtime_result(self, runtime):
        caller = RuntimeCaller(runtime)
        outcome = await caller.call("ensure_network", "net", 1.0, NetworkSpec(name="net"))
        assert outcome.created
        assert runtime.calls == [("ensure_network", "net")]

    @pytest.mark.asyncio
    async def test_wraps_runtime_errors(self, runtime):
        runtime.failures[("ensure_network", "net")] = ConnectionError("engine went away")
        caller = RuntimeCaller(runtime)
        with pytest.raises(RuntimeCallError) as exc_info:
            await caller.call("ensure_network", "net", 1.0, NetworkSpec(name="net"))
        assert exc_info.value.operation == "ensure_network"
        assert exc_info.value.target == "net"
        assert isinstance(exc_info.value.cause, ConnectionError)

    @pytest.mark.asyncio
    async def test_timeout_becomes_runtime_call_error(self, runtime):
        runtime.delays[("ensure_network", "slow")] = 1.0
        caller = RuntimeCaller(runtime)
        with pytest.raises(RuntimeCallError) as exc_info:
            await caller.call("ensure_network", "slow", 0.05, NetworkSpec(name="slow"))
        assert isinstance(exc_info.value.cause, TimeoutError)
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_concurrent_calls_overlap_by_default(self, runtime):
        caller = RuntimeCaller(runtime)
        names = ["a", "b", "c"]
        for name in names:
            runtime.delays[("ensure_network", name)] = 0.05
        await asyncio.gather(*(caller.call("ensure_network", n, 1.0, NetworkSpec(name=n)) for n in names))
        assert runtime.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_serialized_calls_run_one_at_a_time(self, runtime):
        caller = RuntimeCaller(runtime, serialize=True)
        names = ["a", "b", "c"]
        for name in names:
            runtime.delays[("ensure_network", name)] = 0.02
        await asyncio.gather(*(caller.call("ensure_network", n, 1.0, NetworkSpec(name=n)) for n in names))
        assert runtime.max_in_flight == 1
        assert sorted(runtime.networks) == names

    def test_serialized_caller_built_outside_a_loop_serves_several_loops(self, runtime):
        caller = RuntimeCaller(runtime, serialize=True)
        names = ["a", "b"]
        for name in names:
            runtime.delays[("ensure_network", name)] = 0.02

        async def contend():
            await asyncio.gather(*(caller.call("ensure_network", n, 1.0, NetworkSpec(name=n)) for n in names))

        asyncio.run(contend())
        asyncio.run(contend())
        assert runtime.max_in_flight == 1
        assert len(runtime.calls) == 4
