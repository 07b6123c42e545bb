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
Resolution of service dependencies into startup waves.
"""
import logging
from collections import deque
from typing import Dict, List, Mapping, Optional, Set, Union

from ..exceptions import DependencyCycleError
from ..MODELS.orchestration_config import DeploymentConfig
from ..MODELS.service_definition import ServiceDefinition

logger = logging.getLogger(__name__)

Services = Union[DeploymentConfig, Mapping[str, ServiceDefinition]]


class DependencyResolver:
    """
    Orders services so that every service starts after the services it depends on.
    """
    def resolve_waves(self, config: Services) -> List[List[str]]:
        """
        Groups services into waves: wave 0 has no dependencies, wave k only
        depends on waves before k. Each wave is sorted by name.

        :param config: The deployment configuration, or its services mapping.
        :return: The waves, in startup order.
        :raises DependencyCycleError: With one shortest cycle if the services cannot all be placed.
        """
        dependencies = self._dependencies(config)
        remaining = {name: set(deps) for name, deps in dependencies.items()}

        waves: List[List[str]] = []
        ready = sorted(name for name, deps in remaining.items() if not deps)
        while ready:
            waves.append(ready)
            for name in ready:
                del remaining[name]
            placed = set(ready)
            for deps in remaining.values():
                deps -= placed
            ready = sorted(name for name, deps in remaining.items() if not deps)

        if remaining:
            raise DependencyCycleError(self._shortest_cycle(dependencies, set(remaining)))

        logger.debug("Resolved %d service(s) into %d wave(s)", len(dependencies), len(waves))
        return waves

    def resolve_order(self, config: Services) -> List[str]:
        """
        Resolves the startup order of services based on their dependencies.

        :param config: The deployment configuration.
        :return: Service names in the order they should be started.
        :raises DependencyCycleError: If a circular dependency is detected.
        """
        return [name for wave in self.resolve_waves(config) for name in wave]

    @staticmethod
    def _dependencies(config: Services) -> Dict[str, Set[str]]:
        services = config.services if isinstance(config, DeploymentConfig) else config
        # Undeclared names are reported by validation, not here.
        return {
            name: {dep for dep in service.depends_on if dep in services}
            for name, service in services.items()
        }

    @staticmethod
    def _shortest_cycle(dependencies: Dict[str, Set[str]], candidates: Set[str]) -> List[str]:
        """
        Finds the shortest cycle among ``candidates``, lexically first on ties,
        rotated to start at its smallest name.
        """
        best: Optional[List[str]] = None
        for start in sorted(candidates):
            cycle = DependencyResolver._cycle_through(dependencies, candidates, start)
            if cycle is None:
                continue
            pivot = cycle.index(min(cycle))
            cycle = cycle[pivot:] + cycle[:pivot]
            if best is None or (len(cycle), cycle) < (len(best), best):
                best = cycle
        # Kahn leftovers always contain a cycle.
        return best if best is not None else sorted(candidates)

    @staticmethod
    def _cycle_through(dependencies: Dict[str, Set[str]], candidates: Set[str], start: str) -> Optional[List[str]]:
        parents: Dict[str, Optional[str]] = {start: None}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for dep in sorted(dependencies[node] & candidates):
                if dep == start:
                    path = [node]
                    while parents[path[-1]] is not None:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                if dep not in parents:
                    parents[dep] = node
                    queue.append(dep)
        return None
