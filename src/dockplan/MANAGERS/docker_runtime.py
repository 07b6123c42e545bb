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
Container runtime backed by the Docker Engine.

Engine calls go through ``aiodocker`` and are cancelled with the task that
issued them. Image builds use the Docker SDK for Python in a worker thread,
since they need build targets and in-memory Dockerfiles.
"""
import asyncio
import io
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiodocker
import docker
import docker.utils
from aiodocker.exceptions import DockerError

from ..MODELS.orchestration_config import Ipam
from ..MODELS.service_definition import Mount, MountType, PortBinding, RestartPolicyCondition
from .runtime import (
    ContainerSpec,
    EnsureOutcome,
    ExecResult,
    HealthStatus,
    ImageSpec,
    NetworkSpec,
    VolumeSpec,
)

logger = logging.getLogger(__name__)

INLINE_DOCKERFILE = ".dockplan.Dockerfile"


def _missing(error: DockerError) -> bool:
    return error.status == 404


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def split_reference(reference: str) -> Tuple[str, str]:
    """
    Splits an image reference into repository and tag (or digest).

    A colon before the last slash belongs to a registry port, not a tag.
    """
    if "@" in reference:
        repository, digest = reference.split("@", 1)
        return repository, digest
    colon = reference.rfind(":")
    if colon > reference.rfind("/"):
        return reference[:colon], reference[colon + 1:]
    return reference, "latest"


class DockerRuntime:
    """
    ``ContainerRuntime`` implementation talking to a local or remote Docker daemon.

    Clients are opened on first use, inside the running loop; call ``close``
    before that loop ends.
    """
    def __init__(
        self,
        client: Optional[aiodocker.Docker] = None,
        build_client: Optional[docker.DockerClient] = None,
        url: Optional[str] = None,
    ):
        """
        :param client: A configured aiodocker client. Defaults to one built from the environment.
        :param build_client: A Docker SDK client for builds. Defaults to ``docker.from_env()``.
        :param url: Daemon address for the default aiodocker client.
        """
        self._client = client
        self._build_client = build_client
        self.url = url

    @property
    def client(self) -> aiodocker.Docker:
        if self._client is None:
            self._client = aiodocker.Docker(url=self.url)
        return self._client

    @property
    def build_client(self) -> docker.DockerClient:
        if self._build_client is None:
            self._build_client = docker.from_env()
        return self._build_client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._build_client is not None:
            self._build_client.close()
            self._build_client = None

    # Networks and volumes

    async def ensure_network(self, spec: NetworkSpec) -> EnsureOutcome[NetworkSpec]:
        try:
            network = await self.client.networks.get(spec.name)
        except DockerError as e:
            if not _missing(e):
                raise
            config: Dict[str, Any] = {"Name": spec.name, "Driver": spec.driver, "Labels": spec.labels}
            if spec.ipam is not None:
                pool = _compact({
                    "Subnet": spec.ipam.subnet,
                    "Gateway": spec.ipam.gateway,
                    "IPRange": spec.ipam.ip_range,
                })
                config["IPAM"] = {"Driver": "default", "Config": [pool]}
            await self.client.networks.create(config)
            logger.info("Created network %s", spec.name)
            return EnsureOutcome(created=True, actual=spec)
        attrs = await network.show()
        return EnsureOutcome(created=False, actual=self._network_from_attrs(spec.name, attrs))

    @staticmethod
    def _network_from_attrs(name: str, attrs: Dict[str, Any]) -> NetworkSpec:
        configs = (attrs.get("IPAM") or {}).get("Config") or []
        ipam = None
        if configs and configs[0].get("Subnet"):
            ipam = Ipam(
                subnet=configs[0]["Subnet"],
                gateway=configs[0].get("Gateway") or None,
                ip_range=configs[0].get("IPRange") or None,
            )
        return NetworkSpec(
            name=name,
            driver=attrs.get("Driver", ""),
            ipam=ipam,
            labels=attrs.get("Labels") or {},
        )

    async def ensure_volume(self, spec: VolumeSpec) -> EnsureOutcome[VolumeSpec]:
        try:
            volume = await self.client.volumes.get(spec.name)
        except DockerError as e:
            if not _missing(e):
                raise
            await self.client.volumes.create({
                "Name": spec.name,
                "Driver": spec.driver,
                "DriverOpts": spec.driver_opts,
                "Labels": spec.labels,
            })
            logger.info("Created volume %s", spec.name)
            return EnsureOutcome(created=True, actual=spec)
        attrs = await volume.show()
        actual = VolumeSpec(
            name=spec.name,
            driver=attrs.get("Driver", ""),
            driver_opts=attrs.get("Options") or {},
            labels=attrs.get("Labels") or {},
        )
        return EnsureOutcome(created=False, actual=actual)

    async def remove_network(self, name: str) -> None:
        try:
            network = await self.client.networks.get(name)
            await network.delete()
        except DockerError as e:
            if not _missing(e):
                raise
            logger.debug("Network %s already removed", name)

    async def remove_volume(self, name: str) -> None:
        try:
            volume = await self.client.volumes.get(name)
            await volume.delete()
        except DockerError as e:
            if not _missing(e):
                raise
            logger.debug("Volume %s already removed", name)

    # Images

    async def pull_or_build_image(self, spec: ImageSpec) -> str:
        if spec.is_build:
            return await asyncio.to_thread(self._build, spec)
        try:
            await self.client.images.inspect(spec.reference)
            logger.debug("Image %s already present", spec.reference)
            return spec.reference
        except DockerError as e:
            if not _missing(e):
                raise
        logger.info("Pulling image %s", spec.reference)
        repository, tag = split_reference(spec.reference)
        progress = await self.client.images.pull(repository, tag=tag)
        for entry in progress or []:
            if "error" in entry:
                raise DockerError(500, {"message": entry["error"]})
        return spec.reference

    def _build(self, spec: ImageSpec) -> str:
        kwargs: Dict[str, Any] = dict(
            tag=spec.reference,
            buildargs=spec.build_args or None,
            target=spec.target,
            rm=True,
        )
        if spec.dockerfile_content is None:
            kwargs.update(path=spec.build_context, dockerfile=spec.dockerfile)
        elif spec.build_context is not None:
            context = docker.utils.tar(
                spec.build_context, dockerfile=(INLINE_DOCKERFILE, spec.dockerfile_content)
            )
            kwargs.update(fileobj=context, custom_context=True, dockerfile=INLINE_DOCKERFILE)
        else:
            kwargs["fileobj"] = io.BytesIO(spec.dockerfile_content.encode("utf-8"))
        image, _ = self.build_client.images.build(**kwargs)
        logger.info("Built image %s (%s)", spec.reference, image.short_id)
        return spec.reference

    # Containers

    async def create_container(self, spec: ContainerSpec) -> str:
        container = await self.client.containers.create(self.container_config(spec), name=spec.name)
        try:
            for name in spec.networks[1:]:
                network = await self.client.networks.get(name)
                await network.connect({"Container": container.id, "EndpointConfig": {"Aliases": [spec.service]}})
        except DockerError:
            await container.delete(force=True)
            raise
        logger.info("Created container %s (%s) for %s", spec.name, container.id[:12], spec.service)
        return container.id

    @classmethod
    def container_config(cls, spec: ContainerSpec) -> Dict[str, Any]:
        """
        The Engine API create body for ``spec``.
        """
        resources = spec.resources
        host_config = _compact({
            "PortBindings": cls._port_bindings(spec.ports),
            "Mounts": [cls._mount(mount) for mount in spec.mounts],
            "NanoCpus": resources.nano_cpus,
            "Memory": resources.memory,
            "MemorySwap": resources.memory_swap,
            "MemoryReservation": resources.memory_reservation,
            "CpuShares": resources.cpu_shares,
            "CpusetCpus": resources.cpuset_cpus,
        })
        if spec.restart_policy.condition != RestartPolicyCondition.NO:
            host_config["RestartPolicy"] = {
                "Name": spec.restart_policy.condition.value,
                "MaximumRetryCount": spec.restart_policy.max_retries,
            }

        config = _compact({
            "Image": spec.image,
            "Cmd": spec.command,
            "Entrypoint": spec.entrypoint,
            "Env": [f"{key}={value}" for key, value in spec.environment.items()],
            "ExposedPorts": {f"{port.container}/{port.protocol}": {} for port in spec.ports},
            "Labels": spec.labels,
            "WorkingDir": spec.working_dir,
            "User": spec.user,
            "HostConfig": host_config,
        })
        if spec.networks:
            host_config["NetworkMode"] = spec.networks[0]
            config["NetworkingConfig"] = {
                "EndpointsConfig": {spec.networks[0]: {"Aliases": [spec.service]}}
            }
        if spec.healthcheck is not None:
            config["Healthcheck"] = spec.healthcheck.as_engine_dict()
        return config

    @staticmethod
    def _port_bindings(ports: List[PortBinding]) -> Dict[str, List[Dict[str, str]]]:
        bindings: Dict[str, List[Dict[str, str]]] = {}
        for port in ports:
            bindings.setdefault(f"{port.container}/{port.protocol}", []).append({
                "HostIp": port.host_ip or "",
                "HostPort": str(port.host) if port.host is not None else "",
            })
        return bindings

    @staticmethod
    def _mount(mount: Mount) -> Dict[str, Any]:
        return _compact({
            "Target": mount.target,
            "Source": mount.source if mount.type != MountType.TMPFS else None,
            "Type": mount.type.value,
            "ReadOnly": mount.read_only,
        })

    async def start_container(self, container_id: str) -> None:
        container = await self.client.containers.get(container_id)
        await container.start()

    async def inspect_health(self, container_id: str) -> HealthStatus:
        container = await self.client.containers.get(container_id)
        attrs = await container.show()
        status = ((attrs.get("State") or {}).get("Health") or {}).get("Status")
        if status is None:
            return HealthStatus.NONE
        return HealthStatus(status)

    async def remove_container(self, container: str) -> None:
        try:
            found = await self.client.containers.get(container)
            await found.delete(force=True)
        except DockerError as e:
            if not _missing(e):
                raise
            logger.debug("Container %s already removed", container)

    async def get_logs(self, container_id: str, tail: Optional[int] = None) -> bytes:
        container = await self.client.containers.get(container_id)
        lines = await container.log(stdout=True, stderr=True, tail="all" if tail is None else tail)
        return "".join(lines).encode("utf-8")

    async def exec(self, container_id: str, argv: List[str]) -> ExecResult:
        container = await self.client.containers.get(container_id)
        execution = await container.exec(argv, stdout=True, stderr=True)
        chunks: List[bytes] = []
        async with execution.start(detach=False) as stream:
            while True:
                message = await stream.read_out()
                if message is None:
                    break
                chunks.append(message.data)
        info = await execution.inspect()
        return ExecResult(exit_code=info["ExitCode"], output=b"".join(chunks))
