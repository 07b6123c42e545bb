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
Models for overall deployment configuration.
"""
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from .service_definition import ServiceDefinition

DEFAULT_NETWORK = "default"


class Ipam(BaseModel):
    """
    IP address management block of a network.
    """
    model_config = ConfigDict(frozen=True)

    subnet: str
    gateway: Optional[str] = None
    ip_range: Optional[str] = None


class Network(BaseModel):
    model_config = ConfigDict(frozen=True)

    driver: str = "bridge"
    ipam: Optional[Ipam] = None
    external: bool = False
    labels: Dict[str, str] = {}


class Volume(BaseModel):
    model_config = ConfigDict(frozen=True)

    driver: str = "local"
    driver_opts: Dict[str, str] = {}
    external: bool = False
    labels: Dict[str, str] = {}


class DeploymentConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.

    ``services`` keeps the declaration order of the file.
    """
    model_config = ConfigDict(frozen=True)

    version: str = ""
    services: Dict[str, ServiceDefinition] = {}
    networks: Dict[str, Network] = {}
    volumes: Dict[str, Volume] = {}
