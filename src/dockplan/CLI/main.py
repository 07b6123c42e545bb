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
Command Line Interface for dockplan.
"""
import asyncio
import logging
import os
import time

import click
from pydantic import ValidationError as SettingsError

from ..BUILDERS.image_builder import describe_image
from ..config import OrchestratorSettings
from ..exceptions import DockplanError
from ..MANAGERS.docker_runtime import DockerRuntime
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import DeploymentOrchestrator
from ..PARSERS.compose_parser import ComposeParser
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..PARSERS.validation import ensure_valid
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..TRANSLATORS.health import effective_healthcheck, health_gate_deadline
from ..TRANSLATORS.resources import describe, to_host_resources


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    raise click.exceptions.Exit(1)


def _load(ctx):
    """Parses the compose file named on the command line, once per invocation."""
    if 'config' not in ctx.obj:
        path = ctx.obj['file']
        if not os.path.exists(path):
            _fail(f"{path} not found.")
        try:
            ctx.obj['config'] = ComposeParser(env_file=ctx.obj['env_file']).parse(path)
        except DockplanError as e:
            _fail(str(e))
    return ctx.obj['config']


def _orchestrator(ctx) -> DeploymentOrchestrator:
    """Creates an orchestrator bound to the local Docker engine."""
    return DeploymentOrchestrator(DockerRuntime(), ctx.obj['settings'])


def _run(orchestrator: DeploymentOrchestrator, work):
    """
    Runs ``work(orchestrator)`` in a new event loop and closes the engine
    connection before the loop ends.
    """
    async def main():
        try:
            return await work(orchestrator)
        finally:
            await orchestrator.caller.runtime.close()
    return asyncio.run(main())


def _build_args(items):
    args = {}
    for item in items:
        name, sep, value = item.partition('=')
        if not sep:
            _fail(f"build argument {item!r} must be NAME=VALUE")
        args[name] = value
    return args


def _report_failure(e: DockplanError) -> None:
    if e.report is not None and e.report.removed:
        click.echo(f"Rolled back {len(e.report.removed)} resource(s).", err=True)
    if e.rollback_error is not None:
        click.echo(f"Warning: {e.rollback_error}", err=True)
    _fail(str(e))


def _serve(ctx, result, lines, detach):
    """Prints the deployed containers, then waits for Ctrl+C and tears them down."""
    click.echo(f"{'SERVICE':15} {'CONTAINER':12}")
    click.echo("-" * 28)
    for name, container_id in result.items():
        click.echo(f"{name:15} {container_id[:12]:12}")
    for line in lines:
        click.echo(line)

    if detach:
        return
    click.echo("Running... Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
    try:
        _run(_orchestrator(ctx), lambda orchestrator: orchestrator.teardown(result))
    except DockplanError as e:
        _fail(str(e))
    click.echo("Services stopped.")


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option(
    '--env-file', default=None, type=click.Path(exists=True, dir_okay=False),
    help='Environment file used for interpolation',
)
@click.option('--project-name', '-p', default=None, help='Project name (default: DOCKPLAN_PROJECT_NAME)')
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default='WARNING',
)
@click.pass_context
def cli(ctx, file, env_file, project_name, log_level):
    """
    dockplan - Dockerfile and Compose parser and deployment orchestrator.

    Plans a Compose project into dependency waves and deploys it against the
    Docker engine with health gating and rollback.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['env_file'] = env_file
    try:
        if project_name:
            ctx.obj['settings'] = OrchestratorSettings(project_name=project_name)
        else:
            ctx.obj['settings'] = OrchestratorSettings()
    except SettingsError as e:
        _fail(f"invalid settings: {e}")


@cli.command()
@click.pass_context
def validate(ctx):
    """Check the compose file without touching the engine."""
    config = _load(ctx)
    try:
        ensure_valid(config, translate=True)
        waves = DependencyResolver().resolve_waves(config)
    except DockplanError as e:
        _fail(str(e))
    click.echo(f"{ctx.obj['file']} is valid: {len(config.services)} service(s) in {len(waves)} wave(s).")


@cli.command()
@click.pass_context
def plan(ctx):
    """Show the deployment waves and what each service translates to."""
    config = _load(ctx)
    project = ctx.obj['settings'].project_name
    try:
        ensure_valid(config, translate=True)
        waves = DependencyResolver().resolve_waves(config)
    except DockplanError as e:
        _fail(str(e))

    for index, wave in enumerate(waves):
        click.echo(f"Wave {index}:")
        for name in wave:
            service = config.services[name]
            click.echo(f"  {name:15} {describe_image(project, service)}")
            limits = describe(to_host_resources(service.resources))
            if limits:
                click.echo("  " + " " * 15 + " limits: " + ", ".join(f"{k}={v}" for k, v in limits.items()))
            healthcheck = effective_healthcheck(service)
            if healthcheck is not None and not healthcheck.disabled:
                click.echo("  " + " " * 15 + f" health gate: {health_gate_deadline(healthcheck):g}s")


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Leave services running and exit')
@click.option('--logs', 'show_logs', is_flag=True, help='Print service logs once deployed')
@click.option('--tail', default=None, type=int, help='Number of log lines per service')
@click.pass_context
def up(ctx, detach, show_logs, tail):
    """Deploy the services defined in the compose file."""
    config = _load(ctx)

    async def deploy(orchestrator):
        result = await orchestrator.deploy(config)
        lines = []
        if show_logs:
            collected = await LogAggregator(orchestrator).collect(result, tail=tail)
            lines = LogAggregator.format_lines(collected)
        return result, lines

    try:
        result, lines = _run(_orchestrator(ctx), deploy)
    except DockplanError as e:
        _report_failure(e)
    _serve(ctx, result, lines, detach)


@cli.command()
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--build-arg', 'build_args', multiple=True, help='NAME=VALUE build argument')
def dockerfile(path, build_args):
    """Parse a Dockerfile and print it in canonical form."""
    try:
        config = DockerfileParser(build_args=_build_args(build_args)).parse(path)
    except DockplanError as e:
        _fail(str(e))
    click.echo(config.to_dockerfile(), nl=False)


@cli.command(name='run-dockerfile')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--name', default='app', show_default=True, help='Service name of the container')
@click.option('--tag', '-t', default=None, help='Image tag (default: <project>_<name>)')
@click.option(
    '--context', default=None, type=click.Path(exists=True, file_okay=False),
    help='Build context directory (default: none)',
)
@click.option('--build-arg', 'build_args', multiple=True, help='NAME=VALUE build argument')
@click.option('--detach', '-d', is_flag=True, help='Leave the container running and exit')
@click.pass_context
def run_dockerfile(ctx, path, name, tag, context, build_args, detach):
    """Build a Dockerfile and run one container from the image."""
    args = _build_args(build_args)
    try:
        config = DockerfileParser(build_args=args).parse(path)
    except DockplanError as e:
        _fail(str(e))

    async def deploy(orchestrator):
        return await orchestrator.deploy_dockerfile(
            config, name=name, tag=tag, context=context, build_args=args,
        )

    try:
        result = _run(_orchestrator(ctx), deploy)
    except DockplanError as e:
        _report_failure(e)
    _serve(ctx, result, [], detach)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
