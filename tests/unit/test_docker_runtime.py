import io
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiodocker.exceptions import DockerError

from dockplan.MANAGERS.docker_runtime import INLINE_DOCKERFILE, DockerRuntime, split_reference
from dockplan.MANAGERS.runtime import ContainerSpec, HealthStatus, ImageSpec
from dockplan.MODELS.orchestration_config import Ipam
from dockplan.MODELS.service_definition import Mount, MountType, PortBinding, RestartPolicy, RestartPolicyCondition
from dockplan.TRANSLATORS.health import HealthConfig
from dockplan.TRANSLATORS.network import NetworkSpec, VolumeSpec
from dockplan.TRANSLATORS.resources import HostResources


def not_found():
    return DockerError(404, {"message": "no such object"})


@pytest.fixture
def client():
    client = MagicMock()
    for manager, methods in {
        "networks": ("get", "create"),
        "volumes": ("get", "create"),
        "images": ("inspect", "pull"),
        "containers": ("get", "create"),
    }.items():
        for method in methods:
            setattr(getattr(client, manager), method, AsyncMock())
    client.close = AsyncMock()
    return client


@pytest.fixture
def container(client):
    container = MagicMock(id="abc123def4567890")
    for method in ("start", "show", "delete", "log", "exec"):
        setattr(container, method, AsyncMock())
    client.containers.get.return_value = container
    client.containers.create.return_value = container
    return container


@pytest.fixture
def build_client():
    return MagicMock()


@pytest.mark.asyncio
async def test_ensure_network_creates_missing_network(client):
    client.networks.get.side_effect = not_found()
    spec = NetworkSpec(name="shop_back", ipam=Ipam(subnet="10.5.0.0/16", gateway="10.5.0.1"))

    outcome = await DockerRuntime(client).ensure_network(spec)

    assert outcome.created
    (config,), _ = client.networks.create.call_args
    assert config["Name"] == "shop_back"
    assert config["Driver"] == "bridge"
    assert config["IPAM"]["Config"] == [{"Subnet": "10.5.0.0/16", "Gateway": "10.5.0.1"}]


@pytest.mark.asyncio
async def test_ensure_network_reports_existing_config(client):
    network = MagicMock(show=AsyncMock(return_value={
        "Driver": "bridge",
        "IPAM": {"Config": [{"Subnet": "10.5.0.0/16", "Gateway": "10.5.0.1"}]},
        "Labels": {"dockplan.project": "shop"},
    }))
    client.networks.get.return_value = network
    outcome = await DockerRuntime(client).ensure_network(NetworkSpec(name="shop_back"))
    assert not outcome.created
    assert outcome.actual.ipam == Ipam(subnet="10.5.0.0/16", gateway="10.5.0.1")
    assert outcome.actual.labels == {"dockplan.project": "shop"}
    client.networks.create.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_network_propagates_engine_errors(client):
    client.networks.get.side_effect = DockerError(500, {"message": "daemon busy"})
    with pytest.raises(DockerError):
        await DockerRuntime(client).ensure_network(NetworkSpec(name="shop_back"))
    client.networks.create.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_volume_creates_missing_volume(client):
    client.volumes.get.side_effect = not_found()

    outcome = await DockerRuntime(client).ensure_volume(VolumeSpec(name="shop_data", labels={"a": "b"}))

    assert outcome.created
    client.volumes.create.assert_awaited_once_with(
        {"Name": "shop_data", "Driver": "local", "DriverOpts": {}, "Labels": {"a": "b"}}
    )


@pytest.mark.parametrize("reference, expected", [
    ("redis", ("redis", "latest")),
    ("redis:7", ("redis", "7")),
    ("registry.local:5000/team/api", ("registry.local:5000/team/api", "latest")),
    ("registry.local:5000/team/api:2.1", ("registry.local:5000/team/api", "2.1")),
    ("redis@sha256:abcd", ("redis", "sha256:abcd")),
])
def test_split_reference(reference, expected):
    assert split_reference(reference) == expected


@pytest.mark.asyncio
async def test_pull_skips_present_images(client):
    reference = await DockerRuntime(client).pull_or_build_image(ImageSpec(reference="redis:7"))
    assert reference == "redis:7"
    client.images.pull.assert_not_called()

    client.images.inspect.side_effect = not_found()
    client.images.pull.return_value = [{"status": "Downloaded newer image for redis:7"}]
    await DockerRuntime(client).pull_or_build_image(ImageSpec(reference="redis:7"))
    client.images.pull.assert_awaited_once_with("redis", tag="7")


@pytest.mark.asyncio
async def test_pull_reports_errors_from_the_progress_stream(client):
    client.images.inspect.side_effect = not_found()
    client.images.pull.return_value = [{"error": "manifest unknown"}]
    with pytest.raises(DockerError, match="manifest unknown"):
        await DockerRuntime(client).pull_or_build_image(ImageSpec(reference="redis:99"))


@pytest.mark.asyncio
async def test_build_tags_the_image(client, build_client):
    build_client.images.build.return_value = (MagicMock(short_id="sha256:abc"), iter([]))
    spec = ImageSpec(reference="shop_api", build_context="/src/api", build_args={"MODE": "prod"}, target="final")

    assert await DockerRuntime(client, build_client).pull_or_build_image(spec) == "shop_api"

    _, kwargs = build_client.images.build.call_args
    assert kwargs["path"] == "/src/api"
    assert kwargs["dockerfile"] == "Dockerfile"
    assert kwargs["tag"] == "shop_api"
    assert kwargs["buildargs"] == {"MODE": "prod"}
    assert kwargs["target"] == "final"
    client.images.inspect.assert_not_called()


@pytest.mark.asyncio
async def test_build_from_dockerfile_text_without_context(client, build_client):
    build_client.images.build.return_value = (MagicMock(short_id="sha256:abc"), iter([]))
    spec = ImageSpec(reference="scratchpad", dockerfile_content="FROM alpine\nRUN echo hi\n")

    await DockerRuntime(client, build_client).pull_or_build_image(spec)

    _, kwargs = build_client.images.build.call_args
    assert "path" not in kwargs
    assert isinstance(kwargs["fileobj"], io.BytesIO)
    assert kwargs["fileobj"].getvalue() == b"FROM alpine\nRUN echo hi\n"


@pytest.mark.asyncio
async def test_build_from_dockerfile_text_with_context(client, build_client):
    build_client.images.build.return_value = (MagicMock(short_id="sha256:abc"), iter([]))
    spec = ImageSpec(reference="api", build_context="/src/api", dockerfile_content="FROM alpine\n")

    with patch("docker.utils.tar") as tar:
        await DockerRuntime(client, build_client).pull_or_build_image(spec)

    tar.assert_called_once_with("/src/api", dockerfile=(INLINE_DOCKERFILE, "FROM alpine\n"))
    _, kwargs = build_client.images.build.call_args
    assert kwargs["fileobj"] is tar.return_value
    assert kwargs["custom_context"] is True
    assert kwargs["dockerfile"] == INLINE_DOCKERFILE


def web_spec(**overrides):
    values = dict(
        name="shop_web",
        service="web",
        image="nginx:1.25",
        ports=[
            PortBinding(container=80, host=8080),
            PortBinding(container=80, host=8081, host_ip="127.0.0.1"),
            PortBinding(container=53, protocol="udp"),
        ],
        mounts=[Mount(source="shop_data", target="/data", mode="ro"), Mount(target="/tmp", type=MountType.TMPFS)],
        networks=["shop_back", "shop_front"],
        healthcheck=HealthConfig(test=["CMD", "true"], retries=2, start_interval=1_000_000_000),
        resources=HostResources(memory=536870912, nano_cpus=500_000_000),
        restart_policy=RestartPolicy(condition=RestartPolicyCondition.ON_FAILURE, max_retries=3),
        environment={"MODE": "prod"},
    )
    values.update(overrides)
    return ContainerSpec(**values)


def test_container_config_translates_the_spec():
    config = DockerRuntime.container_config(web_spec())

    assert config["Image"] == "nginx:1.25"
    assert config["Env"] == ["MODE=prod"]
    assert config["ExposedPorts"] == {"80/tcp": {}, "53/udp": {}}
    host = config["HostConfig"]
    assert host["PortBindings"] == {
        "80/tcp": [{"HostIp": "", "HostPort": "8080"}, {"HostIp": "127.0.0.1", "HostPort": "8081"}],
        "53/udp": [{"HostIp": "", "HostPort": ""}],
    }
    assert host["Mounts"] == [
        {"Target": "/data", "Source": "shop_data", "Type": "volume", "ReadOnly": True},
        {"Target": "/tmp", "Type": "tmpfs", "ReadOnly": False},
    ]
    assert host["Memory"] == 536870912
    assert host["NanoCpus"] == 500_000_000
    assert "MemorySwap" not in host
    assert host["RestartPolicy"] == {"Name": "on-failure", "MaximumRetryCount": 3}
    assert host["NetworkMode"] == "shop_back"
    assert config["NetworkingConfig"] == {"EndpointsConfig": {"shop_back": {"Aliases": ["web"]}}}
    assert config["Healthcheck"] == {"Test": ["CMD", "true"], "Retries": 2, "StartInterval": 1_000_000_000}
    assert "Cmd" not in config


def test_container_config_without_networks_or_restart():
    config = DockerRuntime.container_config(web_spec(networks=[], restart_policy=RestartPolicy(), healthcheck=None))
    assert "NetworkingConfig" not in config
    assert "NetworkMode" not in config["HostConfig"]
    assert "RestartPolicy" not in config["HostConfig"]
    assert "Healthcheck" not in config


@pytest.mark.asyncio
async def test_create_container_connects_extra_networks(client, container):
    front = MagicMock(connect=AsyncMock())
    client.networks.get.return_value = front

    assert await DockerRuntime(client).create_container(web_spec()) == container.id

    _, kwargs = client.containers.create.call_args
    assert kwargs == {"name": "shop_web"}
    client.networks.get.assert_awaited_once_with("shop_front")
    front.connect.assert_awaited_once_with({"Container": container.id, "EndpointConfig": {"Aliases": ["web"]}})


@pytest.mark.asyncio
async def test_create_container_removes_the_container_when_connect_fails(client, container):
    client.networks.get.side_effect = not_found()
    with pytest.raises(DockerError):
        await DockerRuntime(client).create_container(web_spec())
    container.delete.assert_awaited_once_with(force=True)


@pytest.mark.asyncio
async def test_inspect_health(client, container):
    container.show.return_value = {"State": {"Health": {"Status": "starting"}}}
    assert await DockerRuntime(client).inspect_health("abc") == HealthStatus.STARTING

    container.show.return_value = {"State": {"Status": "running"}}
    assert await DockerRuntime(client).inspect_health("abc") == HealthStatus.NONE


@pytest.mark.asyncio
async def test_removal_of_missing_resources_is_not_an_error(client):
    client.containers.get.side_effect = not_found()
    client.networks.get.side_effect = not_found()
    client.volumes.get.side_effect = not_found()
    runtime = DockerRuntime(client)

    await runtime.remove_container("shop_web")
    await runtime.remove_network("shop_back")
    await runtime.remove_volume("shop_data")


@pytest.mark.asyncio
async def test_removal_propagates_other_engine_errors(client):
    client.containers.get.side_effect = DockerError(409, {"message": "removal in progress"})
    with pytest.raises(DockerError):
        await DockerRuntime(client).remove_container("shop_web")


@pytest.mark.asyncio
async def test_remove_container_forces_removal(client, container):
    await DockerRuntime(client).remove_container("shop_web")
    client.containers.get.assert_awaited_once_with("shop_web")
    container.delete.assert_awaited_once_with(force=True)


@pytest.mark.asyncio
async def test_logs_tail(client, container):
    container.log.return_value = ["line\n", "other\n"]
    assert await DockerRuntime(client).get_logs("abc") == b"line\nother\n"
    container.log.assert_awaited_with(stdout=True, stderr=True, tail="all")
    await DockerRuntime(client).get_logs("abc", tail=5)
    container.log.assert_awaited_with(stdout=True, stderr=True, tail=5)


@pytest.mark.asyncio
async def test_exec_collects_output_and_exit_code(client, container):
    stream = MagicMock()
    stream.__aenter__ = AsyncMock(return_value=stream)
    stream.__aexit__ = AsyncMock(return_value=False)
    stream.read_out = AsyncMock(side_effect=[MagicMock(data=b"ok\n"), MagicMock(data=b"done\n"), None])
    execution = MagicMock()
    execution.start.return_value = stream
    execution.inspect = AsyncMock(return_value={"ExitCode": 3})
    container.exec.return_value = execution

    result = await DockerRuntime(client).exec("abc", ["cat", "/etc/hostname"])

    assert result.exit_code == 3
    assert result.output == b"ok\ndone\n"
    execution.start.assert_called_once_with(detach=False)


@pytest.mark.asyncio
async def test_close_releases_both_clients(client, build_client):
    runtime = DockerRuntime(client, build_client)
    await runtime.close()
    client.close.assert_awaited_once()
    build_client.close.assert_called_once()
