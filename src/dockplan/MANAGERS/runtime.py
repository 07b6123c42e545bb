# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
The contract between the orchestrator and a container runtime.

Implementations may raise any exception; the orchestrator wraps them into
``RuntimeCallError``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Protocol, TypeVar, runtime_checkable

from ..exceptions import RuntimeCallError
from ..MODELS.service_definition import Mount, PortBinding, RestartPolicy
from ..TRANSLATORS.health import HealthConfig
from ..TRANSLATORS.network import NetworkSpec, VolumeSpec
from ..TRANSLATORS.resources import HostResources

__all__ = [
    "ContainerRuntime",
    "ContainerSpec",
    "EnsureOutcome",
    "ExecResult",
    "HealthStatus",
    "ImageSpec",
    "NetworkSpec",
    "RuntimeCaller",
    "VolumeSpec",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HealthStatus(str, Enum):
    """Health status of a container as reported by the runtime."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


@dataclass(frozen=True)
class ImageSpec:
    """
    An image to make available: built when it has a context or Dockerfile text,
    pulled otherwise.

    ``dockerfile_content`` replaces the file named ``dockerfile``; the context
    may then be omitted.
    """
    reference: str
    build_context: Optional[str] = None
    dockerfile: str = "Dockerfile"
    build_args: Dict[str, str] = field(default_factory=dict)
    target: Optional[str] = None
    dockerfile_content: Optional[str] = None

    @property
    def is_build(self) -> bool:
        return self.build_context is not None or self.dockerfile_content is not None


@dataclass(frozen=True)
class ContainerSpec:
    """
    Everything needed to create one service container.
    """
    name: str
    service: str
    image: str
    command: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    environment: Dict[str, str] = field(default_factory=dict)
    ports: List[PortBinding] = field(default_factory=list)
    mounts: List[Mount] = field(default_factory=list)
    networks: List[str] = field(default_factory=list)
    healthcheck: Optional[HealthConfig] = None
    resources: HostResources = field(default_factory=HostResources)
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)
    working_dir: Optional[str] = None
    user: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EnsureOutcome(Generic[T]):
    """
    Result of an idempotent ensure call: whether the resource was created by this
    call, and the configuration it actually has.
    """
    created: bool
    actual: T


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: bytes


@runtime_checkable
class ContainerRuntime(Protocol):
    """
    Asynchronous container engine operations.
    """

    async def ensure_network(self, spec: NetworkSpec) -> EnsureOutcome[NetworkSpec]:
        ...

    async def ensure_volume(self, spec: VolumeSpec) -> EnsureOutcome[VolumeSpec]:
        ...

    async def pull_or_build_image(self, spec: ImageSpec) -> str:
        ...

    async def create_container(self, spec: ContainerSpec) -> str:
        ...

    async def start_container(self, container_id: str) -> None:
        ...

    async def inspect_health(self, container_id: str) -> HealthStatus:
        ...

    async def remove_container(self, container: str) -> None:
        """Removes by id or name. A container that is already gone counts as removed."""
        ...

    async def remove_network(self, name: str) -> None:
        """A network that is already gone counts as removed."""
        ...

    async def remove_volume(self, name: str) -> None:
        """A volume that is already gone counts as removed."""
        ...

    async def get_logs(self, container_id: str, tail: Optional[int] = None) -> bytes:
        ...

    async def exec(self, container_id: str, argv: List[str]) -> ExecResult:
        ...

    async def close(self) -> None:
        """Releases engine connections; called once, inside the loop that used them."""
        ...


class RuntimeCaller:
    """
    Issues calls on a ``ContainerRuntime`` with a per-call timeout, wrapping
    every failure into ``RuntimeCallError``.

    With ``serialize=True`` a single lock admits one call at a time, for runtimes
    that are not safe for concurrent use. The lock belongs to the event loop
    running the calls and is replaced when a new loop takes over.
    """

    def __init__(self, runtime: ContainerRuntime, serialize: bool = False):
        self.runtime = runtime
        self.serialize = serialize
        self._gate: Optional[asyncio.Lock] = None
        self._gate_loop: Optional[asyncio.AbstractEventLoop] = None

    def _lock(self) -> Optional[asyncio.Lock]:
        if not self.serialize:
            return None
        loop = asyncio.get_running_loop()
        if self._gate is None or self._gate_loop is not loop:
            self._gate = asyncio.Lock()
            self._gate_loop = loop
        return self._gate

    async def call(self, operation: str, target: str, timeout: float, *args: Any) -> Any:
        """
        :param operation: Name of the runtime method.
        :param target: What the call acts on, for errors and logs.
        :param timeout: Seconds the call may take once admitted.
        :raises RuntimeCallError: If the call fails or times out.
        """
        method = getattr(self.runtime, operation)
        logger.debug("Runtime call %s(%s)", operation, target)
        gate = self._lock()
        try:
            if gate is None:
                return await asyncio.wait_for(method(*args), timeout)
            async with gate:
                return await asyncio.wait_for(method(*args), timeout)
        except asyncio.TimeoutError as e:
            raise RuntimeCallError(operation, target, TimeoutError(f"timed out after {timeout:g}s")) from e
        except RuntimeCallError:
            raise
        except Exception as e:
            raise RuntimeCallError(operation, target, e) from e
