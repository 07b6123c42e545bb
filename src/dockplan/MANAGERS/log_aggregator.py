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
Aggregation of service logs into a single prefixed stream.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from ..MODELS.deployment_state import DeploymentResult
from .service_orchestrator import DeploymentOrchestrator

logger = logging.getLogger(__name__)


class LogAggregator:
    """
    Collects logs from the containers of a deployment.
    """
    def __init__(self, orchestrator: DeploymentOrchestrator):
        """
        Initializes the LogAggregator.

        :param orchestrator: The orchestrator that produced the deployment.
        """
        self.orchestrator = orchestrator

    async def collect(
        self,
        result: DeploymentResult,
        services: Optional[Iterable[str]] = None,
        tail: Optional[int] = None,
    ) -> Dict[str, List[str]]:
        """
        Fetches the logs of several services concurrently.

        :param result: The deployment to read from.
        :param services: Names of the services; all of them when omitted.
        :param tail: Only the last ``tail`` lines of each service.
        :return: Log lines per service, in the order requested.
        """
        names = list(services) if services else list(result)
        logger.debug("Collecting logs for: %s", ", ".join(names))
        chunks = await asyncio.gather(
            *(self.orchestrator.logs(result, name, tail) for name in names)
        )
        return {
            name: chunk.decode("utf-8", errors="replace").splitlines()
            for name, chunk in zip(names, chunks)
        }

    @staticmethod
    def format_lines(collected: Dict[str, List[str]]) -> List[str]:
        """
        Prefixes every line with its service name.
        """
        return [
            f"{name:15} | {line.rstrip()}"
            for name, lines in collected.items()
            for line in lines
        ]
