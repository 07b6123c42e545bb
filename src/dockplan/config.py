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
Orchestrator settings, read from ``DOCKPLAN_*`` environment variables.
"""
import re

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_NAME = re.compile(r'[a-z0-9][a-z0-9_-]*')


class OrchestratorSettings(BaseSettings):
    """
    Tuning knobs of a deployment run. Timeouts are in seconds and apply to each
    runtime call individually.
    """

    model_config = SettingsConfigDict(env_prefix="DOCKPLAN_", extra="ignore")

    project_name: str = "dockplan"
    health_poll_interval: float = Field(default=1.0, gt=0)
    image_timeout: float = Field(default=600.0, gt=0)
    create_timeout: float = Field(default=60.0, gt=0)
    start_timeout: float = Field(default=60.0, gt=0)
    resource_timeout: float = Field(default=30.0, gt=0)
    remove_timeout: float = Field(default=30.0, gt=0)
    serialize_runtime_calls: bool = False
    network_retries: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=0.5, gt=0)

    @field_validator("project_name")
    @classmethod
    def _validate_project_name(cls, value: str) -> str:
        value = value.lower()
        if not _PROJECT_NAME.fullmatch(value):
            raise ValueError("project_name must contain only lowercase letters, digits, '-' and '_'")
        return value
