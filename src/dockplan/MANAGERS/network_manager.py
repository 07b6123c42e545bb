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
Provisioning of deployment networks.
"""
import ipaddress
import logging
from typing import Dict, Mapping, Optional, Union

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import OrchestratorSettings
from ..exceptions import ResourceConflictError, RuntimeCallError
from ..MODELS.deployment_state import CreationLedger, ResourceKind
from ..MODELS.orchestration_config import Network
from ..TRANSLATORS.network import PROJECT_LABEL, NetworkSpec, VolumeSpec, to_network_spec
from .runtime import EnsureOutcome, RuntimeCaller

logger = logging.getLogger(__name__)


def ensure_retrying(settings: OrchestratorSettings) -> AsyncRetrying:
    """
    Retry policy for idempotent ensure calls: transient runtime failures are
    retried with exponential backoff.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(settings.network_retries),
        wait=wait_exponential(multiplier=settings.retry_backoff, max=10),
        retry=retry_if_exception_type(RuntimeCallError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def ensure_recorded(
    caller: RuntimeCaller,
    settings: OrchestratorSettings,
    operation: str,
    kind: ResourceKind,
    spec: Union[NetworkSpec, VolumeSpec],
    ledger: CreationLedger,
) -> EnsureOutcome:
    """
    Runs an idempotent ensure call with retries, keeping ``ledger`` in step
    with what the engine may now hold.

    The resource is reserved under its engine-side name before the first
    attempt. It stays in the ledger when the call created it, or when an
    attempt timed out and the resource found afterwards carries this
    project's label. It also stays, pending, when every attempt failed and
    one of them timed out.

    :raises RuntimeCallError: If the runtime keeps failing.
    """
    entry = ledger.reserve(kind, spec.name)
    timed_out = False

    async def attempt() -> EnsureOutcome:
        nonlocal timed_out
        try:
            return await caller.call(operation, spec.name, settings.resource_timeout, spec)
        except RuntimeCallError as e:
            timed_out = timed_out or e.timed_out
            raise

    try:
        outcome = await ensure_retrying(settings)(attempt)
    except RuntimeCallError:
        if not timed_out:
            ledger.discard(entry)
        raise

    ours = timed_out and outcome.actual.labels.get(PROJECT_LABEL) == spec.labels.get(PROJECT_LABEL)
    if outcome.created or ours:
        ledger.confirm(entry)
    else:
        ledger.discard(entry)
    return outcome


def _same_network(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return left == right
    try:
        return ipaddress.ip_network(left, strict=False) == ipaddress.ip_network(right, strict=False)
    except ValueError:
        return left == right


class NetworkManager:
    """
    Ensures the declared networks exist, reusing pre-existing ones whose
    configuration matches.
    """
    def __init__(self, caller: RuntimeCaller, settings: OrchestratorSettings):
        """
        :param caller: Runtime access shared with the orchestrator.
        :param settings: Timeouts and retry policy.
        """
        self.caller = caller
        self.settings = settings

    async def ensure_networks(
        self, project: str, networks: Mapping[str, Network], ledger: CreationLedger
    ) -> Dict[str, str]:
        """
        Ensures every non-external network, in declaration order.

        :param project: Project name used to scope engine-side names.
        :param networks: Declared networks.
        :param ledger: Receives an entry for every network created here.
        :return: Mapping from declared name to engine-side name.
        :raises ResourceConflictError: If an existing network does not match its declaration.
        :raises RuntimeCallError: If the runtime keeps failing.
        """
        resolved = {}
        for name, network in networks.items():
            if network.external:
                logger.info("Using external network %s", name)
                resolved[name] = name
                continue

            spec = to_network_spec(project, name, network)
            outcome: EnsureOutcome[NetworkSpec] = await ensure_recorded(
                self.caller, self.settings, "ensure_network", ResourceKind.NETWORK, spec, ledger
            )
            if outcome.created:
                logger.info("Network %s created", spec.name)
            else:
                self.check_matches(spec, outcome.actual)
                logger.info("Network %s already exists, reusing it", spec.name)
            resolved[name] = spec.name
        return resolved

    @staticmethod
    def check_matches(declared: NetworkSpec, actual: NetworkSpec) -> None:
        """
        :raises ResourceConflictError: If driver or a declared IPAM field differs.
        """
        if actual.driver != declared.driver:
            raise ResourceConflictError(
                "network", declared.name, f"driver is {actual.driver!r}, declared {declared.driver!r}"
            )
        if declared.ipam is None:
            return
        if actual.ipam is None:
            raise ResourceConflictError("network", declared.name, "existing network has no IPAM configuration")
        if not _same_network(declared.ipam.subnet, actual.ipam.subnet):
            raise ResourceConflictError(
                "network", declared.name, f"subnet is {actual.ipam.subnet}, declared {declared.ipam.subnet}"
            )
        if declared.ipam.gateway is not None and declared.ipam.gateway != actual.ipam.gateway:
            raise ResourceConflictError(
                "network", declared.name, f"gateway is {actual.ipam.gateway}, declared {declared.ipam.gateway}"
            )
        if declared.ipam.ip_range is not None and not _same_network(declared.ipam.ip_range, actual.ipam.ip_range):
            raise ResourceConflictError(
                "network", declared.name, f"ip_range is {actual.ipam.ip_range}, declared {declared.ipam.ip_range}"
            )

    async def remove(self, name: str) -> None:
        await self.caller.call("remove_network", name, self.settings.remove_timeout, name)
