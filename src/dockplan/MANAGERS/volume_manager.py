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
Provisioning of named volumes and resolution of service mounts.
"""
import logging
from typing import Dict, List, Mapping

from ..config import OrchestratorSettings
from ..exceptions import ResourceConflictError
from ..MODELS.deployment_state import CreationLedger, ResourceKind
from ..MODELS.orchestration_config import Volume
from ..MODELS.service_definition import Mount, MountType
from ..TRANSLATORS.network import VolumeSpec, to_volume_spec
from .network_manager import ensure_recorded
from .runtime import RuntimeCaller

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Ensures the declared volumes exist and maps service mounts onto them.
    """
    def __init__(self, caller: RuntimeCaller, settings: OrchestratorSettings):
        """
        Initializes the volume manager.

        :param caller: Runtime access shared with the orchestrator.
        :param settings: Timeouts and retry policy.
        """
        self.caller = caller
        self.settings = settings

    async def ensure_volumes(
        self, project: str, volumes: Mapping[str, Volume], ledger: CreationLedger
    ) -> Dict[str, str]:
        """
        Ensures every non-external volume, in declaration order.

        :return: Mapping from declared name to engine-side name.
        :raises ResourceConflictError: If an existing volume does not match its declaration.
        """
        resolved = {}
        for name, volume in volumes.items():
            if volume.external:
                logger.info("Using external volume %s", name)
                resolved[name] = name
                continue

            spec = to_volume_spec(project, name, volume)
            outcome = await ensure_recorded(
                self.caller, self.settings, "ensure_volume", ResourceKind.VOLUME, spec, ledger
            )
            if outcome.created:
                logger.info("Volume %s created", spec.name)
            else:
                self.check_matches(spec, outcome.actual)
                logger.info("Volume %s already exists, reusing it", spec.name)
            resolved[name] = spec.name
        return resolved

    @staticmethod
    def check_matches(declared: VolumeSpec, actual: VolumeSpec) -> None:
        """
        :raises ResourceConflictError: If the driver or a declared driver option differs.
        """
        if actual.driver != declared.driver:
            raise ResourceConflictError(
                "volume", declared.name, f"driver is {actual.driver!r}, declared {declared.driver!r}"
            )
        for key, value in declared.driver_opts.items():
            if actual.driver_opts.get(key) != value:
                raise ResourceConflictError(
                    "volume", declared.name,
                    f"driver option {key} is {actual.driver_opts.get(key)!r}, declared {value!r}",
                )

    @staticmethod
    def resolve_mounts(mounts: List[Mount], resolved: Mapping[str, str]) -> List[Mount]:
        """
        Rewrites named-volume sources to their engine-side names.

        :param mounts: Mounts of one service.
        :param resolved: Result of ``ensure_volumes``.
        """
        out = []
        for mount in mounts:
            if mount.type == MountType.VOLUME and mount.source in resolved:
                mount = mount.model_copy(update={"source": resolved[mount.source]})
            out.append(mount)
        return out

    async def remove(self, name: str) -> None:
        await self.caller.call("remove_volume", name, self.settings.remove_timeout, name)
