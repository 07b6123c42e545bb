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
Health gating: waiting for a started container to report healthy within
``start_period + interval * retries``.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from ..config import OrchestratorSettings
from ..exceptions import DeploymentCancelledError, HealthCheckTimeoutError
from ..MODELS.service_definition import HealthCheck
from ..TRANSLATORS.health import health_gate_deadline
from .runtime import HealthStatus, RuntimeCaller

logger = logging.getLogger(__name__)


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.STARTING
    checks: int = 0
    failing_streak: int = 0
    last_check: Optional[str] = None


class HealthGate:
    """
    Polls a container's health until it is healthy or its deadline passes.

    The poll is a bounded retry owned by the caller's task: cancelling that task
    or setting the cancellation event stops it.
    """

    def __init__(self, caller: RuntimeCaller, settings: OrchestratorSettings):
        """
        :param caller: Runtime access shared with the orchestrator.
        :param settings: Poll interval and per-call timeout.
        """
        self.caller = caller
        self.settings = settings

    async def wait_healthy(
        self,
        service: str,
        container_id: str,
        healthcheck: HealthCheck,
        cancel: Optional[asyncio.Event] = None,
    ) -> ServiceHealth:
        """
        Blocks until the container reports healthy.

        :param service: Service name, for errors and logs.
        :param container_id: Container to inspect.
        :param healthcheck: The check the container runs; gives the deadline.
        :param cancel: Optional cancellation token.
        :return: The final health information.
        :raises HealthCheckTimeoutError: If the deadline passes first.
        :raises DeploymentCancelledError: If ``cancel`` is set while waiting.
        :raises RuntimeCallError: If inspecting the container fails.
        """
        deadline = health_gate_deadline(healthcheck)
        health = ServiceHealth()
        logger.info("Waiting up to %.1fs for %s to become healthy", deadline, service)

        async def inspect() -> HealthStatus:
            if cancel is not None and cancel.is_set():
                raise DeploymentCancelledError()
            status = HealthStatus(await self.caller.call(
                "inspect_health", service, self.settings.start_timeout, container_id
            ))
            health.status = status
            health.checks += 1
            health.failing_streak = 0 if status == HealthStatus.HEALTHY else health.failing_streak + 1
            health.last_check = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            logger.debug("Health of %s: %s", service, status.value)
            return status

        retrying = AsyncRetrying(
            stop=stop_after_delay(deadline),
            wait=wait_fixed(self.settings.health_poll_interval),
            retry=retry_if_result(lambda status: status != HealthStatus.HEALTHY),
        )
        try:
            await retrying(inspect)
        except RetryError:
            raise HealthCheckTimeoutError(service, deadline, health.status.value)

        logger.info("Service %s is healthy after %d check(s)", service, health.checks)
        return health
