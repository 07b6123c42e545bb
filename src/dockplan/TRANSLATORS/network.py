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
Translation of declared networks and volumes into runtime specs.
"""
import ipaddress
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..exceptions import InvalidIpamConfig
from ..MODELS.orchestration_config import Ipam, Network, Volume

PROJECT_LABEL = "dockplan.project"
SERVICE_LABEL = "dockplan.service"


@dataclass(frozen=True)
class NetworkSpec:
    name: str
    driver: str = "bridge"
    ipam: Optional[Ipam] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VolumeSpec:
    name: str
    driver: str = "local"
    driver_opts: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


def scoped_name(project: str, name: str) -> str:
    """Engine-side name of a project resource."""
    return f"{project}_{name}"


def validate_ipam(network: str, ipam: Ipam) -> None:
    """
    Checks that the subnet is a well-formed CIDR and that gateway and
    ip_range lie within it.

    :raises InvalidIpamConfig: On any violation.
    """
    try:
        subnet = ipaddress.ip_network(ipam.subnet)
    except ValueError as e:
        raise InvalidIpamConfig(network, f"subnet {ipam.subnet!r} is not a valid CIDR: {e}")

    if ipam.gateway is not None:
        try:
            gateway = ipaddress.ip_address(ipam.gateway)
        except ValueError:
            raise InvalidIpamConfig(network, f"gateway {ipam.gateway!r} is not a valid IP address")
        if gateway.version != subnet.version or gateway not in subnet:
            raise InvalidIpamConfig(network, f"gateway {ipam.gateway} is outside subnet {ipam.subnet}")

    if ipam.ip_range is not None:
        try:
            ip_range = ipaddress.ip_network(ipam.ip_range)
        except ValueError as e:
            raise InvalidIpamConfig(network, f"ip_range {ipam.ip_range!r} is not a valid CIDR: {e}")
        if ip_range.version != subnet.version or not ip_range.subnet_of(subnet):
            raise InvalidIpamConfig(network, f"ip_range {ipam.ip_range} is outside subnet {ipam.subnet}")


def to_network_spec(project: str, name: str, network: Network) -> NetworkSpec:
    if network.ipam is not None:
        validate_ipam(name, network.ipam)
    labels = dict(network.labels)
    labels[PROJECT_LABEL] = project
    return NetworkSpec(
        name=scoped_name(project, name),
        driver=network.driver,
        ipam=network.ipam,
        labels=labels,
    )


def to_volume_spec(project: str, name: str, volume: Volume) -> VolumeSpec:
    labels = dict(volume.labels)
    labels[PROJECT_LABEL] = project
    return VolumeSpec(
        name=scoped_name(project, name),
        driver=volume.driver,
        driver_opts=dict(volume.driver_opts),
        labels=labels,
    )
