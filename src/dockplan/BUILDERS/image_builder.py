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
Resolution of service images: pulled when the service names an image, built
when it has a build section.
"""
import logging

from ..config import OrchestratorSettings
from ..MODELS.service_definition import ServiceDefinition
from ..MANAGERS.runtime import ImageSpec, RuntimeCaller

logger = logging.getLogger(__name__)


def image_spec(project: str, service: ServiceDefinition) -> ImageSpec:
    """
    Builds the image request of a service. A built image is tagged with the
    declared ``image`` when present, else ``<project>_<service>``.

    An inline build carries its parsed Dockerfile as text.

    :param project: Project name.
    :param service: The service definition.
    :return: An ImageSpec instance.
    """
    if service.build is None:
        return ImageSpec(reference=service.image)
    build = service.build
    content = None
    if build.inline and build.config is not None:
        content = build.config.to_dockerfile()
    return ImageSpec(
        reference=service.image or f"{project}_{service.name}",
        build_context=build.context,
        dockerfile=build.dockerfile,
        build_args=dict(build.args),
        target=build.target,
        dockerfile_content=content,
    )


def describe_image(project: str, service: ServiceDefinition) -> str:
    """One-line summary used by the ``plan`` command."""
    spec = image_spec(project, service)
    if not spec.is_build:
        return f"pull {spec.reference}"
    sources = [spec.build_context] if spec.build_context else []
    if spec.dockerfile_content is not None:
        sources.append("inline Dockerfile")
    config = service.build_context
    if config is not None:
        sources.append(f"{len(config.stages)} stage(s) from {config.base_image}")
    return f"build {spec.reference} ({', '.join(sources)})"


class ImageBuilder:
    """
    Turns a service definition into an image request and issues it.
    """
    def __init__(self, caller: RuntimeCaller, settings: OrchestratorSettings):
        """
        Initializes the ImageBuilder.

        :param caller: Runtime access shared with the orchestrator.
        :param settings: Project name and image timeout.
        """
        self.caller = caller
        self.settings = settings

    async def resolve(self, service: ServiceDefinition) -> str:
        """
        Pulls or builds the image of a service.

        :return: The image reference to create the container from.
        :raises RuntimeCallError: If the runtime fails or the call times out.
        """
        spec = image_spec(self.settings.project_name, service)
        if spec.is_build:
            config = service.build_context
            base = f" from {config.base_image}" if config is not None else ""
            logger.info("Building image %s for %s%s", spec.reference, service.name, base)
        else:
            logger.info("Ensuring image %s for %s", spec.reference, service.name)
        return await self.caller.call(
            "pull_or_build_image", service.name, self.settings.image_timeout, spec
        )
