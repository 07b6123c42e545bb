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
Whole-config validation. Every check appends to one issue list so that all
violations are reported together.
"""
from typing import Dict, List, Tuple

from ..exceptions import InvalidIpamConfig, InvalidResourceLimit, ValidationError
from ..MODELS.orchestration_config import DeploymentConfig
from ..MODELS.service_definition import MountType
from ..TRANSLATORS.network import validate_ipam
from ..TRANSLATORS.resources import to_host_resources

Issue = Tuple[str, str]


def validate_references(config: DeploymentConfig) -> List[Issue]:
    """
    Checks what must hold once the whole file is read: image or build present,
    and every referenced service, network and volume declared.
    """
    issues: List[Issue] = []
    for name, service in config.services.items():
        path = f"services.{name}"
        build = service.build
        if not service.image and build is None:
            issues.append((path, "service must declare an image or a build section"))
        elif build is not None and build.inline and build.config is None:
            issues.append((f"{path}.build", "an inline build needs a parsed Dockerfile"))
        elif build is not None and not build.inline and build.context is None:
            issues.append((f"{path}.build", "build section must name a context"))
        for dependency in sorted(service.depends_on):
            if dependency not in config.services:
                issues.append((f"{path}.depends_on", f"depends on undefined service {dependency!r}"))
        for network in sorted(service.networks):
            if network not in config.networks:
                issues.append((f"{path}.networks", f"uses undefined network {network!r}"))
        for index, mount in enumerate(service.volume_mounts):
            if mount.type == MountType.VOLUME and mount.source and mount.source not in config.volumes:
                issues.append((f"{path}.volumes[{index}]", f"uses undefined volume {mount.source!r}"))
    return issues


def validate_translations(config: DeploymentConfig) -> List[Issue]:
    """
    Runs the translators over the config without touching a runtime: resource
    limits, IPAM blocks and published host ports.
    """
    issues: List[Issue] = []
    for name, network in config.networks.items():
        if network.ipam is not None and not network.external:
            try:
                validate_ipam(name, network.ipam)
            except InvalidIpamConfig as e:
                issues.append((f"networks.{name}.ipam", e.reason))

    published: Dict[Tuple[str, int, str], str] = {}
    for name, service in config.services.items():
        try:
            to_host_resources(service.resources)
        except InvalidResourceLimit as e:
            issues.append((f"services.{name}.resources", str(e)))

        for port in service.ports:
            if port.host is None:
                continue
            key = (port.host_ip or "0.0.0.0", port.host, port.protocol)
            owner = published.setdefault(key, name)
            if owner != name:
                issues.append((
                    f"services.{name}.ports",
                    f"host port {port.host}/{port.protocol} is already published by service {owner!r}",
                ))
    return issues


def validate_deployment(config: DeploymentConfig, translate: bool = False) -> List[Issue]:
    """
    Collects every issue of ``config``.

    :param translate: Also run the translator checks, as the orchestrator does.
    """
    issues = validate_references(config)
    if translate:
        issues.extend(validate_translations(config))
    return issues


def ensure_valid(config: DeploymentConfig, translate: bool = False) -> None:
    """
    :raises ValidationError: Listing every issue, if there is at least one.
    """
    issues = validate_deployment(config, translate=translate)
    if issues:
        raise ValidationError(issues)
