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
Parsers for Docker Compose YAML files.
"""
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pydantic
import yaml

from ..exceptions import ComposeError, DockerfileError, ValidationError
from ..MODELS.orchestration_config import DEFAULT_NETWORK, DeploymentConfig, Ipam, Network, Volume
from ..MODELS.service_definition import (
    HEALTHCHECK_MODES,
    BuildSpec,
    HealthCheck,
    Mount,
    MountType,
    PortBinding,
    ResourceLimits,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .dockerfile_parser import DockerfileParser
from .env_parser import EnvParser
from .validation import Issue, validate_references

logger = logging.getLogger(__name__)

_PORT_RANGE = re.compile(r'(\d+)(?:-(\d+))?')
_DEPENDENCY_CONDITIONS = ("service_started", "service_healthy", "service_completed_successfully")
_PROTOCOLS = ("tcp", "udp", "sctp")
_REMOTE_CONTEXT = re.compile(r'^(?:[a-z][a-z0-9+.-]*://|git@)', re.IGNORECASE)


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(
        self,
        context: Optional[Mapping[str, str]] = None,
        env_file: Optional[str] = None,
        load_dockerfiles: bool = True,
    ):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Environment variables for interpolation. Defaults to ``os.environ``.
        :param env_file: A ``.env`` file whose values fill in variables missing from the context.
        :param load_dockerfiles: Parse each service's Dockerfile when parsing from a path.
        """
        self.context = dict(os.environ) if context is None else dict(context)
        self.env_file = env_file
        self.load_dockerfiles = load_dockerfiles
        if env_file is not None:
            self.context = {**EnvParser.parse(env_file), **self.context}

    def parse(self, compose_path: str) -> DeploymentConfig:
        """
        Parses a compose file from a path.

        Relative paths (build contexts, bind mounts, env files) resolve against the
        directory of the file, whose ``.env`` is loaded unless an env file was given.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        """
        with open(compose_path, 'r', encoding='utf-8') as f:
            content = f.read()
        base_dir = os.path.dirname(os.path.abspath(compose_path))

        parser = self
        project_env = os.path.join(base_dir, ".env")
        if self.env_file is None and os.path.isfile(project_env):
            logger.debug("Loading project environment from %s", project_env)
            parser = ComposeParser(
                context=self.context, env_file=project_env, load_dockerfiles=self.load_dockerfiles
            )

        config = parser.parse_from_string(content, base_dir=base_dir)
        if self.load_dockerfiles:
            config = self._load_dockerfiles(config)
        return config

    def parse_from_string(self, content: str, base_dir: Optional[str] = None) -> DeploymentConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory relative paths resolve against.
        :return: Parsed configuration.
        :raises ComposeError: On a structural error, with the YAML key path.
        :raises InterpolationError: If a required variable is missing.
        :raises ValidationError: Listing every semantic violation.
        """
        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise ComposeError("", f"invalid YAML: {e}")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ComposeError("", "top-level document must be a mapping")

        data = self._interpolate(data, "")
        issues: List[Issue] = []

        services = {}
        for name, spec in self._mapping(data.get('services'), "services").items():
            services[str(name)] = self._parse_service(str(name), spec, base_dir, issues)

        networks = {}
        for name, spec in self._mapping(data.get('networks'), "networks").items():
            try:
                networks[str(name)] = self._parse_network(str(name), spec)
            except pydantic.ValidationError as e:
                raise self._model_error(f"networks.{name}", e)
        volumes = {}
        for name, spec in self._mapping(data.get('volumes'), "volumes").items():
            try:
                volumes[str(name)] = self._parse_volume(str(name), spec)
            except pydantic.ValidationError as e:
                raise self._model_error(f"volumes.{name}", e)

        if any(DEFAULT_NETWORK in service.networks for service in services.values()):
            networks.setdefault(DEFAULT_NETWORK, Network())

        config = DeploymentConfig(
            version=str(data.get('version') or ""),
            services=services,
            networks=networks,
            volumes=volumes,
        )
        issues.extend(validate_references(config))
        if issues:
            raise ValidationError(issues)
        logger.debug("Parsed compose config with %d service(s)", len(services))
        return config

    # Interpolation and structural helpers

    def _interpolate(self, node: Any, path: str) -> Any:
        """
        Interpolates every string value; mapping keys are left as they are.
        """
        if isinstance(node, str):
            return EnvironmentInterpolator.interpolate(node, self.context, path)
        if isinstance(node, dict):
            return {key: self._interpolate(value, self._join(path, key)) for key, value in node.items()}
        if isinstance(node, list):
            return [self._interpolate(value, f"{path}[{index}]") for index, value in enumerate(node)]
        return node

    @staticmethod
    def _join(path: str, key: Any) -> str:
        return f"{path}.{key}" if path else str(key)

    @staticmethod
    def _mapping(value: Any, path: str) -> Dict[Any, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ComposeError(path, "expected a mapping")
        return value

    @classmethod
    def _model_error(cls, path: str, error: pydantic.ValidationError) -> ComposeError:
        detail = error.errors()[0]
        location = ".".join(str(part) for part in detail["loc"])
        return ComposeError(cls._join(path, location), detail["msg"])

    @staticmethod
    def _scalar(value: Any, path: str) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        raise ComposeError(path, "expected a string or number")

    def _to_list(self, val: Any, path: str) -> Optional[List[str]]:
        """
        Helper to turn a command-like value into a list of strings.

        :param val: The value to convert. Strings are shell-split.
        :param path: YAML key path, for errors.
        :return: A list of strings, or ``None`` when unset.
        """
        if val is None:
            return None
        if isinstance(val, str):
            try:
                return shlex.split(val)
            except ValueError as e:
                raise ComposeError(path, f"cannot split command: {e}")
        if isinstance(val, list):
            return [self._scalar(item, f"{path}[{index}]") for index, item in enumerate(val)]
        raise ComposeError(path, "expected a string or a list")

    def _pairs(self, value: Any, path: str) -> Dict[str, Optional[str]]:
        """
        Reads ``{k: v}`` or ``["k=v", "k"]``; a bare key maps to ``None``.
        """
        if value is None:
            return {}
        if isinstance(value, dict):
            return {
                str(key): None if item is None else self._scalar(item, self._join(path, key))
                for key, item in value.items()
            }
        if isinstance(value, list):
            pairs: Dict[str, Optional[str]] = {}
            for index, item in enumerate(value):
                key, sep, item_value = self._scalar(item, f"{path}[{index}]").partition("=")
                pairs[key] = item_value if sep else None
            return pairs
        raise ComposeError(path, "expected a mapping or a list of KEY=VALUE strings")

    @staticmethod
    def _resolve_path(source: str, base_dir: Optional[str]) -> str:
        source = os.path.expanduser(source)
        if base_dir is None or os.path.isabs(source):
            return source
        return os.path.normpath(os.path.join(base_dir, source))

    # Services

    def _parse_service(
        self, name: str, spec: Any, base_dir: Optional[str], issues: List[Issue]
    ) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The raw service mapping.
        :return: A ServiceDefinition instance.
        """
        path = f"services.{name}"
        spec = self._mapping(spec, path)

        networks = self._parse_service_networks(spec.get('networks'), f"{path}.networks")
        try:
            return ServiceDefinition(
                name=name,
                image=self._scalar(spec['image'], f"{path}.image") if spec.get('image') is not None else None,
                build=self._parse_build(spec.get('build'), f"{path}.build", base_dir),
                command=self._to_list(spec.get('command'), f"{path}.command"),
                entrypoint=self._to_list(spec.get('entrypoint'), f"{path}.entrypoint"),
                working_dir=spec.get('working_dir'),
                user=self._scalar(spec['user'], f"{path}.user") if spec.get('user') is not None else None,
                environment=self._parse_environment(spec, path, base_dir, issues),
                ports=self._parse_ports(spec.get('ports'), f"{path}.ports"),
                networks=frozenset(networks or [DEFAULT_NETWORK]),
                volume_mounts=self._parse_mounts(spec.get('volumes'), f"{path}.volumes", base_dir),
                restart_policy=self._parse_restart(spec.get('restart'), f"{path}.restart"),
                healthcheck=self._parse_healthcheck(spec.get('healthcheck'), f"{path}.healthcheck", issues),
                depends_on=self._parse_depends_on(spec.get('depends_on'), f"{path}.depends_on"),
                resources=self._parse_resources(spec, path),
                labels={k: v or "" for k, v in self._pairs(spec.get('labels'), f"{path}.labels").items()},
            )
        except pydantic.ValidationError as e:
            raise self._model_error(path, e)

    def _parse_build(self, build: Any, path: str, base_dir: Optional[str]) -> Optional[BuildSpec]:
        if build is None:
            return None
        if isinstance(build, str):
            build = {'context': build}
        build = self._mapping(build, path)

        context = self._scalar(build.get('context', '.'), f"{path}.context")
        if not _REMOTE_CONTEXT.match(context):
            context = self._resolve_path(context, base_dir)
        args = {k: v if v is not None else self.context.get(k, "")
                for k, v in self._pairs(build.get('args'), f"{path}.args").items()}
        return BuildSpec(
            context=context,
            dockerfile=self._scalar(build.get('dockerfile', 'Dockerfile'), f"{path}.dockerfile"),
            args=args,
            target=build.get('target'),
        )

    def _parse_environment(
        self, spec: Dict[str, Any], path: str, base_dir: Optional[str], issues: List[Issue]
    ) -> Dict[str, str]:
        """
        ``env_file`` values first, then ``environment`` on top. A bare key takes its
        value from the interpolation context and is dropped when that has none.
        """
        environment: Dict[str, str] = {}
        env_files = spec.get('env_file')
        if isinstance(env_files, (str, dict)):
            env_files = [env_files]
        elif env_files is not None and not isinstance(env_files, list):
            raise ComposeError(f"{path}.env_file", "expected a path, a mapping or a list")
        for index, entry in enumerate(env_files or []):
            entry_path = f"{path}.env_file[{index}]"
            required = True
            if isinstance(entry, dict):
                required = bool(entry.get('required', True))
                entry = entry.get('path')
            if not isinstance(entry, str):
                raise ComposeError(entry_path, "expected a file path")
            file_path = self._resolve_path(entry, base_dir)
            if not os.path.isfile(file_path):
                if required:
                    issues.append((entry_path, f"env file {file_path} not found"))
                continue
            environment.update(EnvParser.parse(file_path))

        for key, value in self._pairs(spec.get('environment'), f"{path}.environment").items():
            if value is None:
                if key in self.context:
                    environment[key] = self.context[key]
                continue
            environment[key] = value
        return environment

    def _parse_ports(self, ports: Any, path: str) -> List[PortBinding]:
        if ports is None:
            return []
        if not isinstance(ports, list):
            raise ComposeError(path, "expected a list")
        bindings: List[PortBinding] = []
        for index, entry in enumerate(ports):
            entry_path = f"{path}[{index}]"
            if isinstance(entry, dict):
                bindings.extend(self._parse_long_port(entry, entry_path))
            elif isinstance(entry, (str, int)) and not isinstance(entry, bool):
                bindings.extend(self._parse_short_port(str(entry), entry_path))
            else:
                raise ComposeError(entry_path, "expected a port string or mapping")
        return bindings

    def _parse_short_port(self, text: str, path: str) -> List[PortBinding]:
        """
        ``[ip:][host:]container[/protocol]``, where host and container may be ranges.
        """
        body, _, protocol = text.partition("/")
        protocol = self._protocol(protocol or "tcp", path)

        host_ip = None
        if body.startswith("["):
            end = body.find("]")
            if end < 0 or body[end + 1:end + 2] != ":":
                raise ComposeError(path, f"invalid port {text!r}")
            host_ip, body = body[1:end], body[end + 2:]

        parts = body.split(":")
        if len(parts) == 1:
            host, container = "", parts[0]
        elif len(parts) == 2:
            host, container = parts
        elif len(parts) == 3 and host_ip is None:
            host_ip, host, container = parts
        else:
            raise ComposeError(path, f"invalid port {text!r}")

        containers = self._port_range(container, path)
        if not host:
            return [PortBinding(container=port, protocol=protocol, host_ip=host_ip or None) for port in containers]
        hosts = self._port_range(host, path)
        if len(hosts) == 1 and len(containers) == 1:
            pairs = [(hosts[0], containers[0])]
        elif len(hosts) == len(containers):
            pairs = list(zip(hosts, containers))
        else:
            raise ComposeError(path, f"host and container port ranges differ in size in {text!r}")
        return [
            PortBinding(container=c, host=h, protocol=protocol, host_ip=host_ip or None) for h, c in pairs
        ]

    def _parse_long_port(self, entry: Dict[str, Any], path: str) -> List[PortBinding]:
        if 'target' not in entry:
            raise ComposeError(path, "port mapping requires a target")
        target = self._port_range(self._scalar(entry['target'], f"{path}.target"), f"{path}.target")
        if len(target) != 1:
            raise ComposeError(f"{path}.target", "target must be a single port")
        protocol = self._protocol(str(entry.get('protocol', 'tcp')), f"{path}.protocol")
        host_ip = entry.get('host_ip')

        published = entry.get('published')
        if published is None or published == "":
            return [PortBinding(container=target[0], protocol=protocol, host_ip=host_ip)]
        hosts = self._port_range(self._scalar(published, f"{path}.published"), f"{path}.published")
        # A published range lets the engine pick one free port; the first is requested.
        return [PortBinding(container=target[0], host=hosts[0], protocol=protocol, host_ip=host_ip)]

    @staticmethod
    def _port_range(text: str, path: str) -> List[int]:
        match = _PORT_RANGE.fullmatch(text.strip())
        if not match:
            raise ComposeError(path, f"invalid port {text!r}")
        first = int(match.group(1))
        last = int(match.group(2) or first)
        if not 0 < first <= last <= 65535:
            raise ComposeError(path, f"port out of range in {text!r}")
        return list(range(first, last + 1))

    @staticmethod
    def _protocol(protocol: str, path: str) -> str:
        protocol = protocol.lower()
        if protocol not in _PROTOCOLS:
            raise ComposeError(path, f"unsupported protocol {protocol!r}")
        return protocol

    def _parse_mounts(self, volumes: Any, path: str, base_dir: Optional[str]) -> List[Mount]:
        if volumes is None:
            return []
        if not isinstance(volumes, list):
            raise ComposeError(path, "expected a list")
        mounts = []
        for index, entry in enumerate(volumes):
            entry_path = f"{path}[{index}]"
            if isinstance(entry, str):
                mounts.append(self._parse_short_mount(entry, entry_path, base_dir))
            elif isinstance(entry, dict):
                mounts.append(self._parse_long_mount(entry, entry_path, base_dir))
            else:
                raise ComposeError(entry_path, "expected a volume string or mapping")
        return mounts

    def _parse_short_mount(self, text: str, path: str, base_dir: Optional[str]) -> Mount:
        """
        ``target``, ``source:target`` or ``source:target:mode``.
        """
        parts = text.split(":")
        if len(parts) == 1:
            return Mount(target=parts[0], type=MountType.VOLUME)
        if len(parts) == 2:
            source, target, mode = parts[0], parts[1], "rw"
        elif len(parts) == 3:
            source, target, mode = parts
        else:
            raise ComposeError(path, f"invalid volume {text!r}")
        if not source or not target:
            raise ComposeError(path, f"invalid volume {text!r}")

        if self._is_host_path(source):
            return Mount(source=self._resolve_path(source, base_dir), target=target, mode=mode, type=MountType.BIND)
        return Mount(source=source, target=target, mode=mode, type=MountType.VOLUME)

    def _parse_long_mount(self, entry: Dict[str, Any], path: str, base_dir: Optional[str]) -> Mount:
        if 'target' not in entry:
            raise ComposeError(path, "volume mapping requires a target")
        try:
            mount_type = MountType(entry.get('type', 'volume'))
        except ValueError:
            raise ComposeError(f"{path}.type", f"unsupported mount type {entry.get('type')!r}")
        source = entry.get('source')
        if mount_type == MountType.BIND:
            if not source:
                raise ComposeError(f"{path}.source", "bind mounts require a source")
            source = self._resolve_path(str(source), base_dir)
        mode = "ro" if entry.get('read_only') else "rw"
        return Mount(source=source or None, target=str(entry['target']), mode=mode, type=mount_type)

    @staticmethod
    def _is_host_path(source: str) -> bool:
        return source.startswith(("/", ".", "~"))

    def _parse_service_networks(self, networks: Any, path: str) -> List[str]:
        if networks is None:
            return []
        if isinstance(networks, list):
            return [self._scalar(item, f"{path}[{index}]") for index, item in enumerate(networks)]
        if isinstance(networks, dict):
            return [str(name) for name in networks]
        raise ComposeError(path, "expected a list or a mapping")

    def _parse_depends_on(self, depends_on: Any, path: str) -> frozenset:
        if depends_on is None:
            return frozenset()
        if isinstance(depends_on, list):
            return frozenset(self._scalar(item, f"{path}[{index}]") for index, item in enumerate(depends_on))
        if isinstance(depends_on, dict):
            for name, options in depends_on.items():
                options = self._mapping(options, f"{path}.{name}")
                condition = options.get('condition', 'service_started')
                if condition not in _DEPENDENCY_CONDITIONS:
                    raise ComposeError(f"{path}.{name}.condition", f"unknown condition {condition!r}")
            return frozenset(str(name) for name in depends_on)
        raise ComposeError(path, "expected a list or a mapping")

    def _parse_restart(self, restart: Any, path: str) -> RestartPolicy:
        if restart is None or restart is False:
            return RestartPolicy()
        condition, _, retries = self._scalar(restart, path).partition(":")
        try:
            policy = RestartPolicyCondition(condition)
        except ValueError:
            raise ComposeError(path, f"unknown restart policy {restart!r}")
        if retries and (policy != RestartPolicyCondition.ON_FAILURE or not retries.isdecimal()):
            raise ComposeError(path, f"invalid restart policy {restart!r}")
        return RestartPolicy(condition=policy, max_retries=int(retries or 0))

    def _parse_healthcheck(self, healthcheck: Any, path: str, issues: List[Issue]) -> Optional[HealthCheck]:
        if healthcheck is None:
            return None
        healthcheck = self._mapping(healthcheck, path)
        if healthcheck.get('disable'):
            return HealthCheck(test=["NONE"])

        test = healthcheck.get('test')
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        elif isinstance(test, list) and test:
            test = [self._scalar(item, f"{path}.test[{index}]") for index, item in enumerate(test)]
        else:
            issues.append((f"{path}.test", "healthcheck requires a test"))
            return None
        if test[0] not in HEALTHCHECK_MODES:
            issues.append((f"{path}.test", f"test must start with one of {', '.join(HEALTHCHECK_MODES)}, got {test[0]!r}"))
            return None

        durations = {}
        for key in ('interval', 'timeout', 'start_period', 'start_interval'):
            if healthcheck.get(key) is not None:
                try:
                    durations[key] = parse_duration(healthcheck[key])
                except ValueError as e:
                    raise ComposeError(f"{path}.{key}", str(e))

        retries = healthcheck.get('retries')
        if retries is not None and (isinstance(retries, bool) or not isinstance(retries, int) or retries < 0):
            raise ComposeError(f"{path}.retries", "retries must be a non-negative integer")
        return HealthCheck(test=test, retries=retries, **durations)

    def _parse_resources(self, spec: Dict[str, Any], path: str) -> Optional[ResourceLimits]:
        """
        Merges the legacy top-level fields with ``deploy.resources``; the nested
        form wins field by field.
        """
        deploy = self._mapping(spec.get('deploy'), f"{path}.deploy")
        resources = self._mapping(deploy.get('resources'), f"{path}.deploy.resources")
        limits = self._mapping(resources.get('limits'), f"{path}.deploy.resources.limits")
        reservations = self._mapping(resources.get('reservations'), f"{path}.deploy.resources.reservations")

        def pick(nested: Any, legacy: Any) -> Any:
            return nested if nested is not None else legacy

        values = dict(
            cpu_limit=pick(limits.get('cpus'), spec.get('cpus')),
            memory_limit=pick(limits.get('memory'), spec.get('mem_limit')),
            memory_swap=spec.get('memswap_limit'),
            memory_reservation=pick(reservations.get('memory'), spec.get('mem_reservation')),
            cpu_shares=spec.get('cpu_shares'),
            cpuset_cpus=spec.get('cpuset'),
        )
        if all(value is None for value in values.values()):
            return None
        if values['cpuset_cpus'] is not None:
            values['cpuset_cpus'] = str(values['cpuset_cpus'])
        try:
            return ResourceLimits(**values)
        except pydantic.ValidationError as e:
            raise self._model_error(path, e)

    # Networks and volumes

    def _parse_network(self, name: str, spec: Any) -> Network:
        path = f"networks.{name}"
        spec = self._mapping(spec, path)
        ipam = None
        ipam_spec = self._mapping(spec.get('ipam'), f"{path}.ipam")
        configs = ipam_spec.get('config') or []
        if not isinstance(configs, list):
            raise ComposeError(f"{path}.ipam.config", "expected a list")
        if configs:
            if len(configs) > 1:
                logger.warning("Network %s declares %d IPAM configs, only the first is used", name, len(configs))
            first = self._mapping(configs[0], f"{path}.ipam.config[0]")
            if 'subnet' not in first:
                raise ComposeError(f"{path}.ipam.config[0]", "IPAM config requires a subnet")
            ipam = Ipam(
                subnet=str(first['subnet']),
                gateway=first.get('gateway'),
                ip_range=first.get('ip_range'),
            )
        return Network(
            driver=spec.get('driver') or "bridge",
            ipam=ipam,
            external=bool(spec.get('external', False)),
            labels={k: v or "" for k, v in self._pairs(spec.get('labels'), f"{path}.labels").items()},
        )

    def _parse_volume(self, name: str, spec: Any) -> Volume:
        path = f"volumes.{name}"
        spec = self._mapping(spec, path)
        driver_opts = self._mapping(spec.get('driver_opts'), f"{path}.driver_opts")
        return Volume(
            driver=spec.get('driver') or "local",
            driver_opts={str(k): self._scalar(v, f"{path}.driver_opts.{k}") for k, v in driver_opts.items()},
            external=bool(spec.get('external', False)),
            labels={k: v or "" for k, v in self._pairs(spec.get('labels'), f"{path}.labels").items()},
        )

    # Dockerfiles

    def _load_dockerfiles(self, config: DeploymentConfig) -> DeploymentConfig:
        """
        Attaches the parsed Dockerfile of every local build context that has one.
        """
        services = {}
        for name, service in config.services.items():
            build = service.build
            if build is None or _REMOTE_CONTEXT.match(build.context):
                services[name] = service
                continue
            dockerfile = os.path.join(build.context, build.dockerfile)
            if not os.path.isfile(dockerfile):
                logger.debug("No Dockerfile at %s for service %s", dockerfile, name)
                services[name] = service
                continue
            try:
                parsed = DockerfileParser(build_args=build.args).parse(dockerfile)
            except DockerfileError as e:
                raise ComposeError(f"services.{name}.build", f"{dockerfile}: {e}") from e
            if build.target is not None and parsed.stage(build.target) is None:
                raise ComposeError(f"services.{name}.build.target", f"no stage named {build.target!r} in {dockerfile}")
            services[name] = service.model_copy(update={"build": build.model_copy(update={"config": parsed})})
        return config.model_copy(update={"services": services})
