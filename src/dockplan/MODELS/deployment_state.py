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
Bookkeeping of a single deployment run: state history, the creation ledger,
per-service runtime state and the final result.
"""
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class DeploymentState(str, Enum):
    """States of a deployment run."""

    PLANNED = "planned"
    NETWORKS_READY = "networks_ready"
    VOLUMES_READY = "volumes_ready"
    DEPLOYING = "deploying"
    HEALTH_GATING = "health_gating"
    COMPLETE = "complete"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


@dataclass(frozen=True)
class StateTransition:
    state: DeploymentState
    wave: Optional[int] = None

    def __str__(self) -> str:
        if self.wave is None:
            return self.state.value
        return f"{self.state.value}({self.wave})"


class ResourceKind(str, Enum):
    NETWORK = "network"
    VOLUME = "volume"
    CONTAINER = "container"


@dataclass(frozen=True)
class LedgerEntry:
    """
    One resource created during the run.

    A ``pending`` entry was reserved under its engine-side name before the
    runtime call that creates it, and that call never settled.
    """

    kind: ResourceKind
    identifier: str
    service: Optional[str] = None
    pending: bool = False


@dataclass(frozen=True)
class RollbackFailure:
    entry: LedgerEntry
    error: str


@dataclass
class RollbackReport:
    """What a rollback removed and what it failed to remove."""

    removed: List[LedgerEntry] = field(default_factory=list)
    failures: List[RollbackFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def removed_containers(self) -> List[str]:
        return [entry.identifier for entry in self.removed if entry.kind == ResourceKind.CONTAINER]


@dataclass
class ServiceRuntimeState:
    """Runtime facts about one service, tracked apart from its parsed definition."""

    service: str
    image: Optional[str] = None
    container_id: Optional[str] = None
    started: bool = False
    health: Optional[str] = None


class CreationLedger:
    """
    Ordered record of created resources, in creation order.

    Creating calls reserve their entry first and then confirm or discard it,
    so a resource whose call timed out or was cancelled is still removed on
    rollback, by name.
    """

    def __init__(self) -> None:
        self._entries: List[LedgerEntry] = []

    def reserve(self, kind: ResourceKind, name: str, service: Optional[str] = None) -> LedgerEntry:
        """
        Records a resource about to be created, under its engine-side name.
        """
        entry = LedgerEntry(kind, name, service, pending=True)
        self._entries.append(entry)
        logger.debug("Reserved %s %s", kind.value, name)
        return entry

    def confirm(self, entry: LedgerEntry, identifier: Optional[str] = None) -> LedgerEntry:
        """
        Marks a reserved entry as created, optionally replacing its name by the
        identifier the runtime returned.
        """
        confirmed = dataclasses.replace(entry, identifier=identifier or entry.identifier, pending=False)
        self._entries[self._position(entry)] = confirmed
        logger.debug("Recorded %s %s", confirmed.kind.value, confirmed.identifier)
        return confirmed

    def discard(self, entry: LedgerEntry) -> None:
        """
        Drops a reserved entry whose resource was not created by this run.
        """
        del self._entries[self._position(entry)]

    def _position(self, entry: LedgerEntry) -> int:
        for index, candidate in enumerate(self._entries):
            if candidate is entry:
                return index
        raise KeyError(f"{entry.kind.value} {entry.identifier} is not in the ledger")

    @property
    def entries(self) -> Tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(tuple(self._entries))

    def __reversed__(self) -> Iterator[LedgerEntry]:
        return reversed(tuple(self._entries))


@dataclass
class DeploymentRun:
    """
    Mutable bookkeeping owned by one ``deploy()`` call.
    """

    project: str
    waves: List[List[str]] = field(default_factory=list)
    ledger: CreationLedger = field(default_factory=CreationLedger)
    history: List[StateTransition] = field(default_factory=list)
    services: Dict[str, ServiceRuntimeState] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(StateTransition(DeploymentState.PLANNED))

    @property
    def state(self) -> DeploymentState:
        return self.history[-1].state

    def transition(self, state: DeploymentState, wave: Optional[int] = None) -> None:
        transition = StateTransition(state, wave)
        self.history.append(transition)
        logger.info("Deployment %s: %s", self.project, transition)

    def service_state(self, name: str) -> ServiceRuntimeState:
        if name not in self.services:
            self.services[name] = ServiceRuntimeState(service=name)
        return self.services[name]


class DeploymentResult(Mapping[str, str]):
    """
    Read-only mapping from service name to container id of a finished deployment.

    Also exposes the waves that were run, the state history and the ledger of
    created resources, which ``teardown`` consumes.
    """

    def __init__(
        self,
        project: str,
        containers: Mapping[str, str],
        waves: List[List[str]],
        history: List[StateTransition],
        created: Tuple[LedgerEntry, ...],
    ):
        self.project = project
        self._containers = dict(containers)
        self.waves = [list(wave) for wave in waves]
        self.history = list(history)
        self.created = tuple(created)

    def __getitem__(self, name: str) -> str:
        return self._containers[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._containers)

    def __len__(self) -> int:
        return len(self._containers)

    def __repr__(self) -> str:
        return f"DeploymentResult({self._containers!r})"

    @property
    def states(self) -> List[str]:
        return [str(transition) for transition in self.history]
