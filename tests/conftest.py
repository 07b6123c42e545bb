import asyncio

import pytest
import yaml

from dockplan.config import OrchestratorSettings
from dockplan.MANAGERS.runtime import EnsureOutcome, ExecResult, HealthStatus
from dockplan.PARSERS.compose_parser import ComposeParser


class FakeRuntime:
    """
    In-memory container runtime.

    :param health: Per-service sequence of health statuses; the last one repeats.
    :param failures: ``(operation, target) -> exception`` raised by that call.
        Targets are network/volume names, image references, service names for
        container operations.
    :param delays: ``(operation, target) -> seconds`` slept before answering.

    Containers are removed by id or by name; unknown ones count as removed.
    """

    def __init__(self, health=None, failures=None, delays=None):
        self.health = {name: list(statuses) for name, statuses in (health or {}).items()}
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.calls = []
        self.networks = {}
        self.volumes = {}
        self.images = []
        self.containers = {}
        self.started = []
        self.removed = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def _enter(self, operation, target):
        self.calls.append((operation, target))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get((operation, target))
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        error = self.failures.get((operation, target))
        if error is not None:
            raise error

    def _service(self, container_id):
        return self.containers[container_id].service

    def _find(self, container):
        if container in self.containers:
            return container
        for container_id, spec in self.containers.items():
            if spec.name == container:
                return container_id
        return None

    async def ensure_network(self, spec):
        await self._enter("ensure_network", spec.name)
        if spec.name in self.networks:
            return EnsureOutcome(created=False, actual=self.networks[spec.name])
        self.networks[spec.name] = spec
        return EnsureOutcome(created=True, actual=spec)

    async def ensure_volume(self, spec):
        await self._enter("ensure_volume", spec.name)
        if spec.name in self.volumes:
            return EnsureOutcome(created=False, actual=self.volumes[spec.name])
        self.volumes[spec.name] = spec
        return EnsureOutcome(created=True, actual=spec)

    async def pull_or_build_image(self, spec):
        await self._enter("pull_or_build_image", spec.reference)
        self.images.append(spec)
        return spec.reference

    async def create_container(self, spec):
        await self._enter("create_container", spec.service)
        container_id = f"id-{spec.service}"
        self.containers[container_id] = spec
        return container_id

    async def start_container(self, container_id):
        await self._enter("start_container", self._service(container_id))
        self.started.append(self._service(container_id))

    async def inspect_health(self, container_id):
        service = self._service(container_id)
        await self._enter("inspect_health", service)
        statuses = self.health.get(service)
        if not statuses:
            return HealthStatus.HEALTHY
        if len(statuses) > 1:
            return statuses.pop(0)
        return statuses[0]

    async def remove_container(self, container):
        container_id = self._find(container)
        await self._enter("remove_container", self._service(container_id) if container_id else container)
        self.removed.append(("container", container))

    async def remove_network(self, name):
        await self._enter("remove_network", name)
        self.networks.pop(name, None)
        self.removed.append(("network", name))

    async def remove_volume(self, name):
        await self._enter("remove_volume", name)
        self.volumes.pop(name, None)
        self.removed.append(("volume", name))

    async def get_logs(self, container_id, tail=None):
        service = self._service(container_id)
        await self._enter("get_logs", service)
        lines = [f"{service} line {n}" for n in range(1, 4)]
        if tail is not None:
            lines = lines[-tail:]
        return ("\n".join(lines) + "\n").encode()

    async def exec(self, container_id, argv):
        await self._enter("exec", self._service(container_id))
        return ExecResult(exit_code=0, output=" ".join(argv).encode())

    async def close(self):
        self.closed = True


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def settings():
    return OrchestratorSettings(
        project_name="test",
        health_poll_interval=0.01,
        network_retries=2,
        retry_backoff=0.01,
    )


@pytest.fixture
def make_config():
    def _make(document, context=None):
        parser = ComposeParser(context=context or {})
        return parser.parse_from_string(yaml.dump(document))
    return _make
