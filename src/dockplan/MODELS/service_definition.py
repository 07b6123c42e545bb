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
Models for defining services, including restart policies, health checks, and mounts.
"""
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .dockerfile_ast import BuildConfig

HEALTHCHECK_MODES = ("CMD", "CMD-SHELL", "NONE")


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class RestartPolicy(BaseModel):
    """
    Defines how the engine restarts a container on exit.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.

    Durations are nanoseconds; ``None`` leaves the engine default in place.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: Optional[int] = None
    timeout: Optional[int] = None
    start_period: Optional[int] = None
    start_interval: Optional[int] = None
    retries: Optional[int] = Field(default=None, ge=0)

    @field_validator("test")
    @classmethod
    def _check_mode(cls, test: List[str]) -> List[str]:
        if not test or test[0] not in HEALTHCHECK_MODES:
            raise ValueError(f"healthcheck test must start with one of {', '.join(HEALTHCHECK_MODES)}")
        return test

    @property
    def disabled(self) -> bool:
        return self.test[0] == "NONE"


class PortBinding(BaseModel):
    """
    Publishes a container port, optionally on a fixed host port and address.
    """
    model_config = ConfigDict(frozen=True)

    container: int
    host: Optional[int] = None
    protocol: str = "tcp"
    host_ip: Optional[str] = None


class MountType(str, Enum):
    BIND = "bind"
    VOLUME = "volume"
    TMPFS = "tmpfs"


class Mount(BaseModel):
    """
    Defines a mapping between a host path or named volume and a container path.

    ``source`` is ``None`` for anonymous volumes.
    """
    model_config = ConfigDict(frozen=True)

    source: Optional[str] = None
    target: str
    mode: str = "rw"
    type: MountType = MountType.VOLUME

    @property
    def read_only(self) -> bool:
        return "ro" in self.mode.split(",")


class ResourceLimits(BaseModel):
    """
    Resource constraints as declared in the compose file.

    Values are kept in their declared form (``"512m"``, ``"0.5"``) and converted
    by the resource translator right before a container is created.
    """
    model_config = ConfigDict(frozen=True)

    cpu_limit: Optional[Union[float, str]] = None
    memory_limit: Optional[Union[int, str]] = None
    memory_swap: Optional[Union[int, str]] = None
    memory_reservation: Optional[Union[int, str]] = None
    cpu_shares: Optional[int] = None
    cpuset_cpus: Optional[str] = None


class BuildSpec(BaseModel):
    """
    The ``build`` section of a service.

    ``config`` holds the parsed Dockerfile when it was available at parse time.
    With ``inline`` the image is built from ``config`` rendered back to text
    instead of the file named ``dockerfile``, and ``context`` may be omitted.
    """
    model_config = ConfigDict(frozen=True)

    context: Optional[str] = None
    dockerfile: str = "Dockerfile"
    args: Dict[str, str] = {}
    target: Optional[str] = None
    config: Optional[BuildConfig] = None
    inline: bool = False


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from Docker Compose.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: Optional[str] = None
    build: Optional[BuildSpec] = None

    # Execution
    command: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    working_dir: Optional[str] = None
    user: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}

    # Networking
    ports: List[PortBinding] = []
    networks: FrozenSet[str] = frozenset()

    # Storage
    volume_mounts: List[Mount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    healthcheck: Optional[HealthCheck] = None
    depends_on: FrozenSet[str] = frozenset()

    # Resources
    resources: Optional[ResourceLimits] = None

    # Metadata
    labels: Dict[str, str] = {}

    @property
    def build_context(self) -> Optional[BuildConfig]:
        """The parsed Dockerfile of the build section, if any."""
        return self.build.config if self.build else None


Service = ServiceDefinition
