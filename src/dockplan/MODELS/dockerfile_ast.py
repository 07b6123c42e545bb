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
Models for the Dockerfile Abstract Syntax Tree.

Every instruction is a frozen model tagged by ``kind``; ``Command`` is the closed
union of them. Each model renders itself back to a single instruction line.
"""
import json
import shlex
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..UTILS.durations import format_duration
from ..UTILS.string_interpolation import escape_build_variables


def _json(values: List[str]) -> str:
    # \u0024 decodes to a dollar without being read as a variable reference.
    return json.dumps(values).replace("$", "\\u0024")


def _render_command(keyword: str, command: Union[str, List[str]]) -> str:
    if isinstance(command, list):
        return f"{keyword} {_json(command)}"
    return f"{keyword} {command}"


def _render_paths(paths: List[str]) -> str:
    if any(shlex.quote(path) != path for path in paths):
        return _json(paths)
    return " ".join(paths)


def _render_pairs(pairs: Dict[str, str]) -> str:
    return " ".join(f"{shlex.quote(key)}={shlex.quote(value)}" for key, value in pairs.items())


class Instruction(BaseModel):
    """
    Base of every parsed Dockerfile instruction.
    """
    model_config = ConfigDict(frozen=True)

    def to_instruction(self) -> str:
        raise NotImplementedError


class SetBase(Instruction):
    """FROM: starts a build stage."""
    kind: Literal["from"] = "from"
    image: str
    alias: Optional[str] = None
    platform: Optional[str] = None

    def to_instruction(self) -> str:
        parts = ["FROM"]
        if self.platform:
            parts.append(f"--platform={self.platform}")
        parts.append(self.image)
        if self.alias:
            parts.extend(["AS", self.alias])
        return " ".join(parts)


class Run(Instruction):
    kind: Literal["run"] = "run"
    command: Union[str, List[str]]

    def to_instruction(self) -> str:
        return _render_command("RUN", self.command)


class Copy(Instruction):
    kind: Literal["copy"] = "copy"
    sources: List[str]
    dest: str
    owner: Optional[str] = None
    from_stage: Optional[str] = None
    chmod: Optional[str] = None
    link: bool = False

    @property
    def source(self) -> str:
        return self.sources[0]

    def to_instruction(self) -> str:
        parts = ["COPY"]
        if self.from_stage is not None:
            parts.append(f"--from={self.from_stage}")
        if self.owner is not None:
            parts.append(f"--chown={self.owner}")
        if self.chmod is not None:
            parts.append(f"--chmod={self.chmod}")
        if self.link:
            parts.append("--link")
        parts.append(_render_paths(self.sources + [self.dest]))
        return " ".join(parts)


class Add(Instruction):
    kind: Literal["add"] = "add"
    sources: List[str]
    dest: str
    owner: Optional[str] = None
    chmod: Optional[str] = None
    link: bool = False

    def to_instruction(self) -> str:
        parts = ["ADD"]
        if self.owner is not None:
            parts.append(f"--chown={self.owner}")
        if self.chmod is not None:
            parts.append(f"--chmod={self.chmod}")
        if self.link:
            parts.append("--link")
        parts.append(_render_paths(self.sources + [self.dest]))
        return " ".join(parts)


class SetEnv(Instruction):
    kind: Literal["env"] = "env"
    variables: Dict[str, str]

    def to_instruction(self) -> str:
        return f"ENV {_render_pairs(self.variables)}"


class Expose(Instruction):
    kind: Literal["expose"] = "expose"
    port: int
    protocol: Optional[str] = None

    def to_instruction(self) -> str:
        if self.protocol:
            return f"EXPOSE {self.port}/{self.protocol}"
        return f"EXPOSE {self.port}"


class DeclareVolume(Instruction):
    kind: Literal["volume"] = "volume"
    paths: List[str]

    def to_instruction(self) -> str:
        return f"VOLUME {_json(self.paths)}"


class SetCmd(Instruction):
    kind: Literal["cmd"] = "cmd"
    command: Union[str, List[str]]

    def to_instruction(self) -> str:
        return _render_command("CMD", self.command)


class SetEntrypoint(Instruction):
    kind: Literal["entrypoint"] = "entrypoint"
    command: Union[str, List[str]]

    def to_instruction(self) -> str:
        return _render_command("ENTRYPOINT", self.command)


class HealthCheckInstruction(Instruction):
    """
    HEALTHCHECK. ``test`` uses the engine form: ``["NONE"]``,
    ``["CMD", arg, ...]`` or ``["CMD-SHELL", command]``. Durations are nanoseconds.
    """
    kind: Literal["healthcheck"] = "healthcheck"
    test: List[str]
    interval: Optional[int] = None
    timeout: Optional[int] = None
    start_period: Optional[int] = None
    start_interval: Optional[int] = None
    retries: Optional[int] = None

    def to_instruction(self) -> str:
        if self.test[0] == "NONE":
            return "HEALTHCHECK NONE"
        parts = ["HEALTHCHECK"]
        for flag, value in (
            ("--interval", self.interval),
            ("--timeout", self.timeout),
            ("--start-period", self.start_period),
            ("--start-interval", self.start_interval),
        ):
            if value is not None:
                parts.append(f"{flag}={format_duration(value)}")
        if self.retries is not None:
            parts.append(f"--retries={self.retries}")
        if self.test[0] == "CMD-SHELL":
            parts.append(f"CMD {self.test[1]}")
        else:
            parts.append(f"CMD {_json(self.test[1:])}")
        return " ".join(parts)


class SetArg(Instruction):
    kind: Literal["arg"] = "arg"
    name: str
    default: Optional[str] = None

    def to_instruction(self) -> str:
        if self.default is None:
            return f"ARG {self.name}"
        return f"ARG {self.name}={shlex.quote(self.default)}"


class SetWorkdir(Instruction):
    kind: Literal["workdir"] = "workdir"
    path: str

    def to_instruction(self) -> str:
        return f"WORKDIR {self.path}"


class SetUser(Instruction):
    kind: Literal["user"] = "user"
    user: str
    group: Optional[str] = None

    def to_instruction(self) -> str:
        if self.group:
            return f"USER {self.user}:{self.group}"
        return f"USER {self.user}"


class SetLabel(Instruction):
    kind: Literal["label"] = "label"
    labels: Dict[str, str]

    def to_instruction(self) -> str:
        return f"LABEL {_render_pairs(self.labels)}"


class SetShell(Instruction):
    kind: Literal["shell"] = "shell"
    shell: List[str]

    def to_instruction(self) -> str:
        return f"SHELL {_json(self.shell)}"


class SetStopSignal(Instruction):
    kind: Literal["stopsignal"] = "stopsignal"
    signal: str

    def to_instruction(self) -> str:
        return f"STOPSIGNAL {self.signal}"


class SetMaintainer(Instruction):
    kind: Literal["maintainer"] = "maintainer"
    name: str

    def to_instruction(self) -> str:
        return f"MAINTAINER {self.name}"


class OnBuild(Instruction):
    """ONBUILD: a trigger instruction stored for downstream builds."""
    kind: Literal["onbuild"] = "onbuild"
    command: "Command"

    def to_instruction(self) -> str:
        return f"ONBUILD {self.command.to_instruction()}"


Command = Annotated[
    Union[
        Run,
        Copy,
        Add,
        SetEnv,
        Expose,
        DeclareVolume,
        SetCmd,
        SetEntrypoint,
        HealthCheckInstruction,
        SetArg,
        SetWorkdir,
        SetUser,
        SetLabel,
        SetShell,
        SetStopSignal,
        SetMaintainer,
        OnBuild,
    ],
    Field(discriminator="kind"),
]

OnBuild.model_rebuild()


class Stage(BaseModel):
    """
    One build stage: its FROM line and the instructions that follow it.
    """
    model_config = ConfigDict(frozen=True)

    base: SetBase
    commands: List[Command] = []

    @property
    def name(self) -> Optional[str]:
        return self.base.alias


class BuildConfig(BaseModel):
    """
    The complete parsed Dockerfile.
    """
    model_config = ConfigDict(frozen=True)

    stages: List[Stage]
    args: List[SetArg] = []

    @property
    def base_image(self) -> str:
        """Base image of the final stage, the one the built image derives from."""
        return self.stages[-1].base.image

    @property
    def commands(self) -> List[Command]:
        """All non-FROM instructions of every stage, in file order."""
        return [command for stage in self.stages for command in stage.commands]

    def stage(self, name: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.name is not None and stage.name.lower() == name.lower():
                return stage
        return None

    def to_dockerfile(self) -> str:
        """
        Renders the config back into Dockerfile text.

        Dollars left in parsed values are escaped so that parsing the text again
        does not expand them a second time. ONBUILD triggers are stored
        unsubstituted and render as they are.
        """
        lines = [_escaped(arg) for arg in self.args]
        for stage in self.stages:
            lines.append(_escaped(stage.base))
            lines.extend(_escaped(command) for command in stage.commands)
        return "\n".join(lines) + "\n"


def _escaped(instruction: Instruction) -> str:
    if isinstance(instruction, OnBuild):
        return instruction.to_instruction()
    return escape_build_variables(instruction.to_instruction())
