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
Health check translation and gating deadlines.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..MODELS.dockerfile_ast import HealthCheckInstruction
from ..MODELS.service_definition import HealthCheck, ServiceDefinition
from ..UTILS.durations import SECOND, format_duration, parse_duration, to_seconds

__all__ = [
    "DEFAULT_INTERVAL",
    "DEFAULT_RETRIES",
    "DEFAULT_START_PERIOD",
    "HealthConfig",
    "effective_healthcheck",
    "format_duration",
    "health_gate_deadline",
    "parse_duration",
    "to_health_config",
]

# Engine defaults for omitted fields.
DEFAULT_INTERVAL = 30 * SECOND
DEFAULT_RETRIES = 3
DEFAULT_START_PERIOD = 0

_ENGINE_FIELDS = (
    ("interval", "Interval"),
    ("timeout", "Timeout"),
    ("retries", "Retries"),
    ("start_period", "StartPeriod"),
    ("start_interval", "StartInterval"),
)


@dataclass(frozen=True)
class HealthConfig:
    """
    Health check as attached to a container at creation time.
    """
    test: List[str]
    interval: Optional[int] = None
    timeout: Optional[int] = None
    retries: Optional[int] = None
    start_period: Optional[int] = None
    start_interval: Optional[int] = None

    @property
    def disabled(self) -> bool:
        return self.test[0] == "NONE"

    def as_engine_dict(self) -> Dict[str, Any]:
        """
        The ``Healthcheck`` object of an Engine API container config.
        """
        out: Dict[str, Any] = {"Test": list(self.test)}
        for key, name in _ENGINE_FIELDS:
            value = getattr(self, key)
            if value is not None:
                out[name] = value
        return out


def to_health_config(healthcheck: Optional[HealthCheck]) -> Optional[HealthConfig]:
    """
    Converts a parsed healthcheck into the container-level form.

    ``None`` means the image's own healthcheck applies; a ``NONE`` test disables it.
    """
    if healthcheck is None:
        return None
    if healthcheck.disabled:
        return HealthConfig(test=["NONE"])
    return HealthConfig(
        test=list(healthcheck.test),
        interval=healthcheck.interval,
        timeout=healthcheck.timeout,
        retries=healthcheck.retries,
        start_period=healthcheck.start_period,
        start_interval=healthcheck.start_interval,
    )


def effective_healthcheck(service: ServiceDefinition) -> Optional[HealthCheck]:
    """
    The healthcheck the container will actually run.

    A compose ``healthcheck`` wins; otherwise the last ``HEALTHCHECK`` of the
    final build stage applies, when the Dockerfile was parsed.
    """
    if service.healthcheck is not None:
        return service.healthcheck
    config = service.build_context
    if config is None:
        return None
    stage = config.stage(service.build.target) if service.build.target else None
    stage = stage or config.stages[-1]
    found = None
    for command in stage.commands:
        if isinstance(command, HealthCheckInstruction):
            found = command
    if found is None:
        return None
    return HealthCheck(
        test=found.test,
        interval=found.interval,
        timeout=found.timeout,
        start_period=found.start_period,
        start_interval=found.start_interval,
        retries=found.retries,
    )


def health_gate_deadline(healthcheck: HealthCheck) -> float:
    """
    Seconds to wait for a healthy report: ``start_period + interval * retries``.

    Omitted fields take the engine defaults (30s interval, 3 retries, no start period).
    """
    interval = healthcheck.interval if healthcheck.interval is not None else DEFAULT_INTERVAL
    retries = healthcheck.retries if healthcheck.retries is not None else DEFAULT_RETRIES
    start_period = (
        healthcheck.start_period if healthcheck.start_period is not None else DEFAULT_START_PERIOD
    )
    return to_seconds(start_period + interval * retries)
