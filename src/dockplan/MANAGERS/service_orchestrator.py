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
Orchestration for multiple services, managing dependencies, health and rollback.
"""
import asyncio
import logging
from typing import Awaitable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..BUILDERS.image_builder import ImageBuilder
from ..config import OrchestratorSettings
from ..exceptions import (
    DeploymentCancelledError,
    DockplanError,
    RollbackError,
    RuntimeCallError,
)
from ..MODELS.deployment_state import (
    DeploymentResult,
    DeploymentRun,
    DeploymentState,
    LedgerEntry,
    ResourceKind,
    RollbackFailure,
    RollbackReport,
)
from ..MODELS.dockerfile_ast import BuildConfig
from ..MODELS.orchestration_config import DeploymentConfig
from ..MODELS.service_definition import BuildSpec, HealthCheck, ServiceDefinition
from ..PARSERS.validation import ensure_valid
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..TRANSLATORS.health import effective_healthcheck, to_health_config
from ..TRANSLATORS.network import PROJECT_LABEL, SERVICE_LABEL, scoped_name
from ..TRANSLATORS.resources import to_host_resources
from .health_monitor import HealthGate
from .network_manager import NetworkManager
from .runtime import ContainerRuntime, ContainerSpec, ExecResult, RuntimeCaller
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    Deploys a ``DeploymentConfig`` wave by wave against a container runtime.

    Each ``deploy()`` call owns its own run bookkeeping; nothing is shared
    between runs except the runtime handle.
    """

    def __init__(self, runtime: ContainerRuntime, settings: Optional[OrchestratorSettings] = None):
        """
        Initializes the orchestrator.

        :param runtime: The container runtime collaborator.
        :param settings: Timeouts, project name and retry policy. Read from the
            environment when omitted.
        """
        self.settings = settings or OrchestratorSettings()
        self.caller = RuntimeCaller(runtime, serialize=self.settings.serialize_runtime_calls)
        self.resolver = DependencyResolver()
        self.networks = NetworkManager(self.caller, self.settings)
        self.volumes = VolumeManager(self.caller, self.settings)
        self.images = ImageBuilder(self.caller, self.settings)
        self.health = HealthGate(self.caller, self.settings)

    @property
    def project(self) -> str:
        return self.settings.project_name

    def validate(self, config: DeploymentConfig) -> List[List[str]]:
        """
        Runs every check that can fail before the runtime is touched.

        :return: The deployment waves.
        :raises ValidationError: Listing every violation found.
        :raises DependencyCycleError: If services depend on each other in a cycle.
        """
        ensure_valid(config, translate=True)
        return self.resolver.resolve_waves(config)

    async def deploy(
        self, config: DeploymentConfig, cancel: Optional[asyncio.Event] = None
    ) -> DeploymentResult:
        """
        Deploys all services in dependency order.

        On failure everything created by this call is removed in reverse creation
        order and the original error is re-raised with ``report`` (and
        ``rollback_error`` when cleanup failed) attached.

        :param config: The validated or raw deployment configuration.
        :param cancel: Optional cancellation token; setting it aborts the wave in flight.
        :return: Mapping from service name to container id.
        """
        waves = self.validate(config)
        run = DeploymentRun(project=self.project, waves=waves)
        logger.info(
            "Deploying %d service(s) in %d wave(s): %s",
            len(config.services), len(waves), " | ".join(", ".join(wave) for wave in waves),
        )

        try:
            await self._run(config, run, cancel)
        except asyncio.CancelledError:
            logger.warning("Deployment %s cancelled, rolling back", self.project)
            await self._rollback(run)
            raise
        except Exception as error:
            logger.error("Deployment %s failed: %s", self.project, error)
            report = await self._rollback(run)
            if isinstance(error, DockplanError):
                error.report = report
                if not report.ok:
                    error.rollback_error = RollbackError(report.failures)
            raise

        run.transition(DeploymentState.COMPLETE)
        containers = {
            name: run.services[name].container_id for name in config.services if name in run.services
        }
        return DeploymentResult(self.project, containers, run.waves, run.history, run.ledger.entries)

    async def deploy_dockerfile(
        self,
        build: BuildConfig,
        name: str = "app",
        tag: Optional[str] = None,
        context: Optional[str] = None,
        build_args: Optional[Mapping[str, str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> DeploymentResult:
        """
        Builds an image from a parsed Dockerfile and runs one container from it.

        The Dockerfile is rendered back to text and built with ``context``, or
        with no context at all. A HEALTHCHECK in its final stage gates the
        deployment, and failures roll back as in ``deploy``.

        :param build: The parsed Dockerfile.
        :param name: Service name; the container is named ``<project>_<name>``.
        :param tag: Image tag. Defaults to ``<project>_<name>``.
        :param context: Directory sent as the build context.
        :param build_args: Values for the Dockerfile's ARG instructions.
        :return: Mapping from ``name`` to the container id.
        """
        service = ServiceDefinition(
            name=name,
            image=tag,
            build=BuildSpec(context=context, args=dict(build_args or {}), config=build, inline=True),
        )
        return await self.deploy(DeploymentConfig(services={name: service}), cancel)

    async def _run(
        self, config: DeploymentConfig, run: DeploymentRun, cancel: Optional[asyncio.Event]
    ) -> None:
        networks = await self.networks.ensure_networks(self.project, config.networks, run.ledger)
        run.transition(DeploymentState.NETWORKS_READY)
        volumes = await self.volumes.ensure_volumes(self.project, config.volumes, run.ledger)
        run.transition(DeploymentState.VOLUMES_READY)

        for index, wave in enumerate(run.waves):
            self._check_cancelled(cancel, index)
            run.transition(DeploymentState.DEPLOYING, index)
            await self._join(
                index,
                wave,
                [self._launch(run, config.services[name], networks, volumes) for name in wave],
                cancel,
            )

            self._check_cancelled(cancel, index)
            run.transition(DeploymentState.HEALTH_GATING, index)
            gated = []
            for name in wave:
                healthcheck = effective_healthcheck(config.services[name])
                if healthcheck is not None and not healthcheck.disabled:
                    gated.append((name, healthcheck))
            if gated:
                await self._join(
                    index,
                    [name for name, _ in gated],
                    [
                        self._gate(run, name, healthcheck, cancel)
                        for name, healthcheck in gated
                    ],
                    cancel,
                )

    async def _launch(
        self,
        run: DeploymentRun,
        service: ServiceDefinition,
        networks: Mapping[str, str],
        volumes: Mapping[str, str],
    ) -> None:
        """
        Resolves the image of one service, creates its container and starts it.
        """
        state = run.service_state(service.name)
        state.image = await self.images.resolve(service)
        spec = self.container_spec(service, state.image, networks, volumes)

        # Reserved by name: a create that times out or is cancelled may still land.
        entry = run.ledger.reserve(ResourceKind.CONTAINER, spec.name, service.name)
        try:
            container_id = await self.caller.call(
                "create_container", service.name, self.settings.create_timeout, spec
            )
        except RuntimeCallError as e:
            if not e.timed_out:
                run.ledger.discard(entry)
            raise
        run.ledger.confirm(entry, container_id)
        state.container_id = container_id

        await self.caller.call("start_container", service.name, self.settings.start_timeout, container_id)
        state.started = True
        logger.info("Service %s started (container %s)", service.name, container_id)

    async def _gate(
        self, run: DeploymentRun, name: str, healthcheck: HealthCheck, cancel: Optional[asyncio.Event]
    ) -> None:
        state = run.service_state(name)
        health = await self.health.wait_healthy(name, state.container_id, healthcheck, cancel)
        state.health = health.status.value

    def container_spec(
        self,
        service: ServiceDefinition,
        image: str,
        networks: Mapping[str, str],
        volumes: Mapping[str, str],
    ) -> ContainerSpec:
        """
        Translates a service into its container creation request.

        :param service: The service definition.
        :param image: Image reference returned by the image resolution.
        :param networks: Declared network name to engine-side name.
        :param volumes: Declared volume name to engine-side name.
        :raises InvalidResourceLimit: If the resource limits cannot be translated.
        """
        labels = dict(service.labels)
        labels[PROJECT_LABEL] = self.project
        labels[SERVICE_LABEL] = service.name
        return ContainerSpec(
            name=scoped_name(self.project, service.name),
            service=service.name,
            image=image,
            command=service.command,
            entrypoint=service.entrypoint,
            environment=dict(service.environment),
            ports=list(service.ports),
            mounts=VolumeManager.resolve_mounts(service.volume_mounts, volumes),
            networks=[networks.get(name, name) for name in sorted(service.networks)],
            healthcheck=to_health_config(effective_healthcheck(service)),
            resources=to_host_resources(service.resources),
            restart_policy=service.restart_policy,
            working_dir=service.working_dir,
            user=service.user,
            labels=labels,
        )

    @staticmethod
    def _check_cancelled(cancel: Optional[asyncio.Event], wave: int) -> None:
        if cancel is not None and cancel.is_set():
            raise DeploymentCancelledError(wave)

    async def _join(
        self,
        wave: int,
        names: List[str],
        coros: Iterable[Awaitable[None]],
        cancel: Optional[asyncio.Event],
    ) -> None:
        """
        Runs one task per service and waits until all of them have finished.

        Setting ``cancel`` cancels the tasks still in flight. When several
        services fail, the first one in wave order is raised; the others are logged.
        """
        tasks = [asyncio.ensure_future(coro) for coro in coros]
        joined = asyncio.gather(*tasks, return_exceptions=True)
        waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        try:
            if waiter is None:
                results = await joined
            else:
                await asyncio.wait({joined, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not joined.done():
                    raise DeploymentCancelledError(wave)
                results = joined.result()
        finally:
            if waiter is not None:
                waiter.cancel()
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        failures: List[Tuple[str, BaseException]] = [
            (name, result) for name, result in zip(names, results) if isinstance(result, BaseException)
        ]
        if not failures:
            return
        for name, error in failures:
            logger.error("Service %s failed in wave %d: %s", name, wave, error)
        errors = [error for _, error in failures if isinstance(error, Exception)]
        if not errors:
            raise DeploymentCancelledError(wave)
        raise errors[0]

    async def _rollback(self, run: DeploymentRun) -> RollbackReport:
        run.transition(DeploymentState.ROLLING_BACK)
        report = await self._remove(reversed(run.ledger))
        run.transition(DeploymentState.FAILED)
        if report.ok:
            logger.info("Rollback removed %d resource(s)", len(report.removed))
        else:
            logger.error(
                "Rollback removed %d resource(s), %d could not be removed",
                len(report.removed), len(report.failures),
            )
        return report

    async def _remove(self, entries: Iterable[LedgerEntry]) -> RollbackReport:
        """
        Removes resources one at a time, collecting failures instead of raising them.

        Pending entries are removed by engine-side name; runtimes treat removing
        a resource that does not exist as done.
        """
        report = RollbackReport()
        for entry in entries:
            try:
                if entry.kind == ResourceKind.CONTAINER:
                    await self.caller.call(
                        "remove_container", entry.service or entry.identifier,
                        self.settings.remove_timeout, entry.identifier,
                    )
                elif entry.kind == ResourceKind.NETWORK:
                    await self.networks.remove(entry.identifier)
                else:
                    await self.volumes.remove(entry.identifier)
            except RuntimeCallError as e:
                logger.warning("Could not remove %s %s: %s", entry.kind.value, entry.identifier, e)
                report.failures.append(RollbackFailure(entry, str(e)))
            else:
                logger.info("Removed %s %s", entry.kind.value, entry.identifier)
                report.removed.append(entry)
        return report

    async def teardown(self, result: DeploymentResult) -> RollbackReport:
        """
        Removes everything a completed deployment created, in reverse creation order.

        :param result: The result returned by ``deploy``.
        :return: What was removed.
        :raises RollbackError: If some resources could not be removed; the
            report is attached as ``report``.
        """
        logger.info("Tearing down deployment %s", result.project)
        report = await self._remove(reversed(result.created))
        if not report.ok:
            error = RollbackError(report.failures)
            error.report = report
            raise error
        return report

    def _container(self, result: DeploymentResult, service: str) -> str:
        if service not in result:
            raise DockplanError(f"Service '{service}' is not part of deployment {result.project}")
        return result[service]

    async def status(self, result: DeploymentResult) -> Dict[str, str]:
        """
        Reports the current health of every deployed service.

        :return: Service names and their health statuses.
        """
        statuses = {}
        for name, container_id in result.items():
            health = await self.caller.call(
                "inspect_health", name, self.settings.start_timeout, container_id
            )
            statuses[name] = getattr(health, "value", str(health))
        return statuses

    async def logs(self, result: DeploymentResult, service: str, tail: Optional[int] = None) -> bytes:
        """
        Fetches the logs of a deployed service.
        """
        container_id = self._container(result, service)
        return await self.caller.call(
            "get_logs", service, self.settings.resource_timeout, container_id, tail
        )

    async def exec(self, result: DeploymentResult, service: str, argv: List[str]) -> ExecResult:
        """
        Runs a command inside a deployed service's container.

        :param argv: Command and arguments.
        """
        container_id = self._container(result, service)
        return await self.caller.call("exec", service, self.settings.start_timeout, container_id, list(argv))
