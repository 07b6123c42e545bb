import asyncio

import pytest

from dockplan.config import OrchestratorSettings
from dockplan.exceptions import (
    DependencyCycleError,
    DeploymentCancelledError,
    DockplanError,
    HealthCheckTimeoutError,
    ResourceConflictError,
    RollbackError,
    RuntimeCallError,
    ValidationError,
)
from dockplan.MANAGERS.log_aggregator import LogAggregator
from dockplan.MANAGERS.runtime import HealthStatus
from dockplan.MANAGERS.service_orchestrator import DeploymentOrchestrator
from dockplan.MODELS.deployment_state import LedgerEntry, ResourceKind
from dockplan.PARSERS.dockerfile_parser import DockerfileParser
from dockplan.TRANSLATORS.network import PROJECT_LABEL, SERVICE_LABEL, NetworkSpec

STACK = {
    'services': {
        'db': {
            'image': 'postgres:16',
            'networks': ['back'],
            'volumes': ['data:/var/lib/postgresql/data'],
            'healthcheck': {'test': ['CMD', 'pg_isready'], 'interval': '1s', 'retries': 3},
            'mem_limit': '512m',
        },
        'cache': {'image': 'redis:7', 'networks': ['back']},
        'web': {
            'image': 'nginx:1.25',
            'networks': ['back', 'front'],
            'ports': ['8080:80'],
            'depends_on': ['db', 'cache'],
            'labels': {'tier': 'frontend'},
        },
    },
    'networks': {'front': {}, 'back': {}},
    'volumes': {'data': {}},
}


def quick_healthcheck():
    return {'test': ['CMD', 'pg_isready'], 'interval': '10ms', 'retries': 2}


@pytest.mark.asyncio
async def test_deploy_runs_waves_in_order(runtime, settings, make_config):
    config = make_config(STACK)
    result = await DeploymentOrchestrator(runtime, settings).deploy(config)

    assert dict(result) == {'db': 'id-db', 'cache': 'id-cache', 'web': 'id-web'}
    assert result.waves == [['cache', 'db'], ['web']]
    assert result.states == [
        'planned', 'networks_ready', 'volumes_ready',
        'deploying(0)', 'health_gating(0)', 'deploying(1)', 'health_gating(1)', 'complete',
    ]
    assert runtime.started.index('web') > runtime.started.index('db')
    assert runtime.started.index('web') > runtime.started.index('cache')
    assert ('inspect_health', 'db') in runtime.calls
    assert ('inspect_health', 'cache') not in runtime.calls

    assert result.created[:3] == (
        LedgerEntry(ResourceKind.NETWORK, 'test_back'),
        LedgerEntry(ResourceKind.NETWORK, 'test_front'),
        LedgerEntry(ResourceKind.VOLUME, 'test_data'),
    )
    assert result.created[-1] == LedgerEntry(ResourceKind.CONTAINER, 'id-web', 'web')


@pytest.mark.asyncio
async def test_container_specs_carry_translated_config(runtime, settings, make_config):
    await DeploymentOrchestrator(runtime, settings).deploy(make_config(STACK))

    web = runtime.containers['id-web']
    assert web.name == 'test_web'
    assert web.image == 'nginx:1.25'
    assert web.networks == ['test_back', 'test_front']
    assert web.labels == {'tier': 'frontend', PROJECT_LABEL: 'test', SERVICE_LABEL: 'web'}
    assert web.healthcheck is None

    db = runtime.containers['id-db']
    assert db.mounts[0].source == 'test_data'
    assert db.resources.memory == 536870912
    assert db.healthcheck.test == ['CMD', 'pg_isready']


@pytest.mark.asyncio
async def test_services_in_a_wave_start_concurrently(runtime, settings, make_config):
    for name in ('a', 'b', 'c'):
        runtime.delays[('create_container', name)] = 0.05
    config = make_config({'services': {name: {'image': 'busybox'} for name in ('a', 'b', 'c')}})
    await DeploymentOrchestrator(runtime, settings).deploy(config)
    assert runtime.max_in_flight == 3


@pytest.mark.asyncio
async def test_serialized_runtime_calls(runtime, make_config):
    settings = OrchestratorSettings(project_name='test', serialize_runtime_calls=True)
    for name in ('a', 'b', 'c'):
        runtime.delays[('create_container', name)] = 0.02
    config = make_config({'services': {name: {'image': 'busybox'} for name in ('a', 'b', 'c')}})
    await DeploymentOrchestrator(runtime, settings).deploy(config)
    assert runtime.max_in_flight == 1


@pytest.mark.asyncio
async def test_built_images_are_tagged_by_project(runtime, settings, make_config):
    config = make_config({'services': {'api': {'build': {'context': '/src/api', 'args': {'MODE': 'prod'}}}}})
    await DeploymentOrchestrator(runtime, settings).deploy(config)
    image = runtime.images[0]
    assert image.reference == 'test_api'
    assert image.build_context == '/src/api'
    assert image.build_args == {'MODE': 'prod'}
    assert runtime.containers['id-api'].image == 'test_api'


@pytest.mark.asyncio
async def test_health_timeout_rolls_back_everything(runtime, settings, make_config):
    document = dict(STACK, services=dict(STACK['services']))
    document['services']['db'] = dict(STACK['services']['db'], healthcheck=quick_healthcheck())
    runtime.health['db'] = [HealthStatus.STARTING]

    with pytest.raises(HealthCheckTimeoutError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(make_config(document))

    error = exc_info.value
    assert error.service == 'db'
    assert error.report.ok
    assert error.rollback_error is None
    assert sorted(error.report.removed_containers()) == ['id-cache', 'id-db']
    assert 'id-web' not in runtime.containers
    assert runtime.removed[-3:] == [('volume', 'test_data'), ('network', 'test_front'), ('network', 'test_back')]
    assert runtime.networks == {}
    assert runtime.volumes == {}


@pytest.mark.asyncio
async def test_failed_rollback_is_attached(runtime, settings, make_config):
    runtime.failures[('create_container', 'web')] = RuntimeError('image platform mismatch')
    runtime.failures[('remove_container', 'db')] = RuntimeError('device busy')

    with pytest.raises(RuntimeCallError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(make_config(STACK))

    error = exc_info.value
    assert error.operation == 'create_container'
    assert error.target == 'web'
    assert isinstance(error.rollback_error, RollbackError)
    assert [failure.entry.identifier for failure in error.rollback_error.failures] == ['id-db']
    assert error.report.removed_containers() == ['id-cache']
    assert ('container', 'id-cache') in runtime.removed


@pytest.mark.asyncio
async def test_first_failure_in_wave_order_is_raised(runtime, settings, make_config):
    runtime.failures[('create_container', 'a')] = RuntimeError('a failed')
    runtime.failures[('create_container', 'b')] = RuntimeError('b failed')
    runtime.delays[('create_container', 'a')] = 0.05
    config = make_config({'services': {'b': {'image': 'busybox'}, 'a': {'image': 'busybox'}}})

    with pytest.raises(RuntimeCallError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(config)
    assert exc_info.value.target == 'a'


@pytest.mark.asyncio
async def test_network_conflict_stops_before_any_container(runtime, settings, make_config):
    runtime.networks['test_front'] = NetworkSpec(name='test_front', driver='macvlan')
    with pytest.raises(ResourceConflictError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(make_config(STACK))
    assert runtime.containers == {}
    assert exc_info.value.report.removed == [LedgerEntry(ResourceKind.NETWORK, 'test_back')]
    assert 'test_front' in runtime.networks


@pytest.mark.asyncio
async def test_invalid_config_never_touches_the_runtime(runtime, settings, make_config):
    config = make_config({'services': {
        'a': {'image': 'x', 'ports': ['80:80']},
        'b': {'image': 'x', 'ports': ['80:8080']},
    }})
    with pytest.raises(ValidationError):
        await DeploymentOrchestrator(runtime, settings).deploy(config)
    assert runtime.calls == []


@pytest.mark.asyncio
async def test_cycle_never_touches_the_runtime(runtime, settings, make_config):
    config = make_config({'services': {
        'a': {'image': 'x', 'depends_on': ['b']},
        'b': {'image': 'x', 'depends_on': ['a']},
    }})
    with pytest.raises(DependencyCycleError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(config)
    assert exc_info.value.cycle == ['a', 'b']
    assert runtime.calls == []


@pytest.mark.asyncio
async def test_cancellation_token_aborts_and_rolls_back(runtime, settings, make_config):
    runtime.delays[('start_container', 'db')] = 5.0
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    with pytest.raises(DeploymentCancelledError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(make_config(STACK), cancel=cancel)

    assert exc_info.value.wave == 0
    assert 'id-db' in exc_info.value.report.removed_containers()
    assert 'id-web' not in runtime.containers
    assert runtime.networks == {}


@pytest.mark.asyncio
async def test_task_cancellation_rolls_back(runtime, settings, make_config):
    runtime.delays[('start_container', 'db')] = 5.0
    task = asyncio.ensure_future(DeploymentOrchestrator(runtime, settings).deploy(make_config(STACK)))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert ('container', 'id-db') in runtime.removed
    assert runtime.volumes == {}


@pytest.mark.asyncio
async def test_teardown_removes_in_reverse_creation_order(runtime, settings, make_config):
    orchestrator = DeploymentOrchestrator(runtime, settings)
    result = await orchestrator.deploy(make_config(STACK))

    report = await orchestrator.teardown(result)
    assert report.removed == list(reversed(result.created))
    assert runtime.networks == {}
    assert runtime.removed[0] == ('container', 'id-web')


@pytest.mark.asyncio
async def test_teardown_failure_raises_with_report(runtime, settings, make_config):
    orchestrator = DeploymentOrchestrator(runtime, settings)
    result = await orchestrator.deploy(make_config(STACK))
    runtime.failures[('remove_network', 'test_back')] = RuntimeError('network has active endpoints')

    with pytest.raises(RollbackError) as exc_info:
        await orchestrator.teardown(result)
    assert [failure.entry.identifier for failure in exc_info.value.failures] == ['test_back']
    assert len(exc_info.value.report.removed) == len(result.created) - 1


@pytest.mark.asyncio
async def test_status_logs_and_exec(runtime, settings, make_config):
    orchestrator = DeploymentOrchestrator(runtime, settings)
    result = await orchestrator.deploy(make_config(STACK))

    assert await orchestrator.status(result) == {'db': 'healthy', 'cache': 'healthy', 'web': 'healthy'}
    assert await orchestrator.logs(result, 'web', tail=1) == b'web line 3\n'
    executed = await orchestrator.exec(result, 'db', ['psql', '-c', 'select 1'])
    assert executed.exit_code == 0
    assert executed.output == b'psql -c select 1'

    with pytest.raises(DockplanError):
        await orchestrator.logs(result, 'missing')


@pytest.mark.asyncio
async def test_log_aggregator_prefixes_lines(runtime, settings, make_config):
    orchestrator = DeploymentOrchestrator(runtime, settings)
    result = await orchestrator.deploy(make_config(STACK))

    collected = await LogAggregator(orchestrator).collect(result, services=['web', 'db'], tail=2)
    assert collected == {'web': ['web line 2', 'web line 3'], 'db': ['db line 2', 'db line 3']}
    lines = LogAggregator.format_lines(collected)
    assert lines[0] == f"{'web':15} | web line 2"
    assert len(lines) == 4


@pytest.mark.asyncio
async def test_runs_do_not_share_state(runtime, settings, make_config):
    orchestrator = DeploymentOrchestrator(runtime, settings)
    first = await orchestrator.deploy(make_config({'services': {'a': {'image': 'x'}}}))
    second = await orchestrator.deploy(make_config({'services': {'b': {'image': 'x'}}}))
    assert list(first) == ['a']
    assert list(second) == ['b']
    assert all(entry.service != 'a' for entry in second.created if entry.kind == ResourceKind.CONTAINER)


@pytest.mark.asyncio
async def test_create_timeout_removes_the_container_by_name(runtime, settings, make_config):
    create = runtime.create_container

    async def lands_but_answers_late(spec):
        container_id = await create(spec)
        await asyncio.sleep(1.0)
        return container_id

    runtime.create_container = lands_but_answers_late
    settings = settings.model_copy(update={'create_timeout': 0.05})
    config = make_config({'services': {'web': {'image': 'nginx:1.25'}}})

    with pytest.raises(RuntimeCallError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(config)

    error = exc_info.value
    assert error.operation == 'create_container'
    assert error.timed_out
    assert LedgerEntry(ResourceKind.CONTAINER, 'test_web', 'web', pending=True) in error.report.removed
    assert ('container', 'test_web') in runtime.removed
    assert runtime.started == []


@pytest.mark.asyncio
async def test_definite_create_failure_leaves_a_same_named_container_alone(runtime, settings, make_config):
    runtime.failures[('create_container', 'web')] = RuntimeError('container name "/test_web" is already in use')
    config = make_config({'services': {'web': {'image': 'nginx:1.25'}}})

    with pytest.raises(RuntimeCallError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy(config)

    assert not exc_info.value.timed_out
    assert exc_info.value.report.removed_containers() == []
    assert [kind for kind, _ in runtime.removed if kind == 'container'] == []


@pytest.mark.asyncio
async def test_cancellation_during_create_removes_by_name(runtime, settings, make_config):
    runtime.delays[('create_container', 'db')] = 5.0
    task = asyncio.ensure_future(DeploymentOrchestrator(runtime, settings).deploy(make_config(STACK)))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert ('container', 'test_db') in runtime.removed
    assert ('container', 'id-cache') in runtime.removed


DOCKERFILE = """\
ARG VERSION=3.19
FROM alpine:$VERSION
ENV PATH=/app/bin:$PATH
HEALTHCHECK --interval=1s --retries=2 CMD wget -q localhost
CMD ["serve"]
"""


@pytest.mark.asyncio
async def test_deploy_dockerfile_builds_and_runs_one_container(runtime, settings):
    build = DockerfileParser().parse_from_string(DOCKERFILE)
    orchestrator = DeploymentOrchestrator(runtime, settings)

    result = await orchestrator.deploy_dockerfile(build, name='app', tag='demo:latest')

    assert dict(result) == {'app': 'id-app'}
    image = runtime.images[0]
    assert image.reference == 'demo:latest'
    assert image.build_context is None
    assert image.dockerfile_content == build.to_dockerfile()
    assert DockerfileParser().parse_from_string(image.dockerfile_content) == build
    container = runtime.containers['id-app']
    assert container.name == 'test_app'
    assert container.image == 'demo:latest'
    assert container.healthcheck is not None
    assert runtime.started == ['app']
    assert ('inspect_health', 'app') in runtime.calls


@pytest.mark.asyncio
async def test_deploy_dockerfile_rolls_back_a_failed_start(runtime, settings):
    build = DockerfileParser().parse_from_string("FROM alpine\nCMD [\"serve\"]\n")
    runtime.failures[('start_container', 'app')] = RuntimeError('exec format error')

    with pytest.raises(RuntimeCallError) as exc_info:
        await DeploymentOrchestrator(runtime, settings).deploy_dockerfile(
            build, context='/src/app', build_args={'MODE': 'prod'},
        )

    image = runtime.images[0]
    assert image.reference == 'test_app'
    assert image.build_context == '/src/app'
    assert image.build_args == {'MODE': 'prod'}
    assert exc_info.value.report.removed_containers() == ['id-app']
