import itertools
import random

import pytest

from dockplan.exceptions import DependencyCycleError
from dockplan.MODELS.service_definition import ServiceDefinition
from dockplan.RUNNERS.dependency_resolver import DependencyResolver


def services(**depends_on):
    return {
        name: ServiceDefinition(name=name, image="busybox", depends_on=frozenset(deps))
        for name, deps in depends_on.items()
    }


def test_chain_gives_one_service_per_wave():
    waves = DependencyResolver().resolve_waves(services(c=["b"], b=["a"], a=[]))
    assert waves == [["a"], ["b"], ["c"]]


def test_independent_services_share_a_sorted_wave():
    waves = DependencyResolver().resolve_waves(services(web=["db", "cache"], db=[], cache=[], worker=["db"]))
    assert waves == [["cache", "db"], ["web", "worker"]]


def test_resolve_order_flattens_waves():
    order = DependencyResolver().resolve_order(services(web=["db"], db=[]))
    assert order == ["db", "web"]


def test_accepts_a_deployment_config(make_config):
    config = make_config({'services': {
        'db': {'image': 'postgres'},
        'web': {'image': 'nginx', 'depends_on': ['db']},
    }})
    assert DependencyResolver().resolve_waves(config) == [["db"], ["web"]]


def test_empty_input():
    assert DependencyResolver().resolve_waves({}) == []


def test_two_service_cycle_names_both():
    with pytest.raises(DependencyCycleError) as exc_info:
        DependencyResolver().resolve_waves(services(a=["b"], b=["a"]))
    assert exc_info.value.cycle == ["a", "b"]
    assert "a -> b -> a" in str(exc_info.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(DependencyCycleError) as exc_info:
        DependencyResolver().resolve_waves(services(a=["a"], b=[]))
    assert exc_info.value.cycle == ["a"]


def test_shortest_cycle_is_reported():
    graph = services(a=["b"], b=["c"], c=["a", "d"], d=["c"], e=["a"])
    with pytest.raises(DependencyCycleError) as exc_info:
        DependencyResolver().resolve_waves(graph)
    assert exc_info.value.cycle == ["c", "d"]


def test_waves_cover_every_service_once_and_respect_dependencies():
    rng = random.Random(7)
    names = [f"svc{i:02d}" for i in range(30)]
    graph = {}
    for index, name in enumerate(names):
        graph[name] = rng.sample(names[:index], k=min(index, rng.randint(0, 3)))
    waves = DependencyResolver().resolve_waves(services(**graph))

    placed = list(itertools.chain.from_iterable(waves))
    assert sorted(placed) == names
    position = {name: number for number, wave in enumerate(waves) for name in wave}
    for name, deps in graph.items():
        for dep in deps:
            assert position[dep] < position[name]
    for wave in waves:
        assert wave == sorted(wave)
