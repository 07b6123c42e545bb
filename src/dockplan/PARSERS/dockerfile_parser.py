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
Parser for Dockerfiles.
"""
import dataclasses
import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from ..exceptions import DockerfileError
from ..MODELS.dockerfile_ast import (
    Add,
    BuildConfig,
    Command,
    Copy,
    DeclareVolume,
    Expose,
    HealthCheckInstruction,
    OnBuild,
    Run,
    SetArg,
    SetBase,
    SetCmd,
    SetEntrypoint,
    SetEnv,
    SetLabel,
    SetMaintainer,
    SetShell,
    SetStopSignal,
    SetUser,
    SetWorkdir,
    Stage,
)
from ..UTILS.durations import parse_duration
from ..UTILS.line_joiner import LineJoiner
from ..UTILS.string_interpolation import substitute_build_variables

logger = logging.getLogger(__name__)

_INSTRUCTION = re.compile(r'([A-Za-z]+)(?:\s+(.*))?\Z', re.DOTALL)
_FLAG = re.compile(r'--([A-Za-z][A-Za-z0-9-]*)(?:=(\S*))?(?:\s+|\Z)')
_ARG_NAME = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_PORT = re.compile(r'(\d+)(?:-(\d+))?(?:/(tcp|udp|sctp))?', re.IGNORECASE)
_IMAGE_REFERENCE_CHARS = ("/", ":", "@")

ONBUILD_FORBIDDEN = ("ONBUILD", "FROM", "MAINTAINER")


@dataclass(frozen=True)
class ParseState:
    """
    Everything the parser knows after a given line. Each step returns a new state.

    ``global_args`` are ARGs declared before the first FROM; ``args`` and ``env``
    are the values visible in the current stage.
    """
    stages: Tuple[Stage, ...] = ()
    base: Optional[SetBase] = None
    commands: Tuple[Command, ...] = ()
    preamble: Tuple[SetArg, ...] = ()
    global_args: Mapping[str, str] = field(default_factory=dict)
    args: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def in_stage(self) -> bool:
        return self.base is not None

    @property
    def scope(self) -> Dict[str, str]:
        if not self.in_stage:
            return dict(self.global_args)
        return {**self.args, **self.env}

    def add(self, *commands: Command) -> "ParseState":
        return dataclasses.replace(self, commands=self.commands + commands)

    def close_stage(self) -> "ParseState":
        if self.base is None:
            return self
        stage = Stage(base=self.base, commands=list(self.commands))
        return dataclasses.replace(self, stages=self.stages + (stage,), base=None, commands=())

    def start_stage(self, base: SetBase) -> "ParseState":
        closed = self.close_stage()
        return dataclasses.replace(closed, base=base, args={}, env={})

    def declared_stage_names(self) -> List[str]:
        return [stage.name.lower() for stage in self.stages if stage.name]


class DockerfileParser:
    """
    Parses Dockerfile text into a ``BuildConfig``.
    """
    def __init__(self, build_args: Optional[Mapping[str, str]] = None):
        """
        :param build_args: Values overriding ARG defaults, as ``--build-arg`` would.
        """
        self.build_args = dict(build_args or {})
        self._handlers = {
            "FROM": self._parse_from,
            "RUN": self._parse_run,
            "CMD": self._parse_cmd,
            "ENTRYPOINT": self._parse_entrypoint,
            "COPY": self._parse_copy,
            "ADD": self._parse_add,
            "ENV": self._parse_env,
            "LABEL": self._parse_label,
            "EXPOSE": self._parse_expose,
            "VOLUME": self._parse_volume,
            "HEALTHCHECK": self._parse_healthcheck,
            "ARG": self._parse_arg,
            "WORKDIR": self._parse_workdir,
            "USER": self._parse_user,
            "SHELL": self._parse_shell,
            "STOPSIGNAL": self._parse_stopsignal,
            "MAINTAINER": self._parse_maintainer,
            "ONBUILD": self._parse_onbuild,
        }

    def parse(self, dockerfile_path: str) -> BuildConfig:
        """
        Parses a Dockerfile from a file path.

        :param dockerfile_path: Path to the Dockerfile.
        :return: The parsed build configuration.
        """
        with open(dockerfile_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> BuildConfig:
        """
        Parses a Dockerfile from a string content.

        :param content: Content of the Dockerfile.
        :return: The parsed build configuration.
        :raises DockerfileError: On the first invalid instruction, with its line number.
        """
        joiner = LineJoiner(content)
        state = ParseState()
        last_line = 0
        for line in joiner:
            last_line = line.number
            state = self._step(state, line.number, line.text, joiner.escape)

        if not state.in_stage:
            if last_line == 0:
                raise DockerfileError(1, "empty Dockerfile: no FROM instruction")
            raise DockerfileError(last_line, "no FROM instruction")

        state = state.close_stage()
        logger.debug("Parsed Dockerfile with %d stage(s)", len(state.stages))
        return BuildConfig(args=list(state.preamble), stages=list(state.stages))

    def _step(self, state: ParseState, line: int, text: str, escape: str) -> ParseState:
        keyword, arguments = self._split_instruction(line, text)
        if not state.in_stage and keyword not in ("FROM", "ARG"):
            raise DockerfileError(line, f"{keyword} instruction before the first FROM")

        if keyword != "ONBUILD":
            scope = dict(state.global_args) if keyword == "FROM" else state.scope
            arguments = substitute_build_variables(arguments, scope, escape)
        return self._handlers[keyword](state, line, arguments)

    def _split_instruction(self, line: int, text: str) -> Tuple[str, str]:
        match = _INSTRUCTION.match(text)
        if not match:
            raise DockerfileError(line, f"invalid instruction {text.split()[0]!r}")
        keyword = match.group(1).upper()
        if keyword not in self._handlers:
            raise DockerfileError(line, f"unknown instruction {match.group(1)}")
        arguments = (match.group(2) or "").strip()
        if not arguments:
            raise DockerfileError(line, f"{keyword} requires at least one argument")
        return keyword, arguments

    # Argument helpers

    @staticmethod
    def _json_array(line: int, text: str) -> Optional[List[str]]:
        """
        Returns the exec form of ``text``, or ``None`` when it is in shell form.
        """
        if not (text.startswith("[") and text.endswith("]")):
            return None
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise DockerfileError(line, f"malformed JSON array: {e.msg}")
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise DockerfileError(line, "JSON array must contain only strings")
        return value

    @staticmethod
    def _words(line: int, text: str) -> List[str]:
        try:
            return shlex.split(text)
        except ValueError as e:
            raise DockerfileError(line, f"unbalanced quotes: {e}")

    @staticmethod
    def _take_flags(line: int, keyword: str, text: str, allowed: Tuple[str, ...]) -> Tuple[Dict[str, Optional[str]], str]:
        """
        Peels leading ``--name[=value]`` flags off ``text``.
        """
        flags: Dict[str, Optional[str]] = {}
        position = 0
        while True:
            match = _FLAG.match(text, position)
            if not match:
                break
            name = match.group(1).lower()
            if name not in allowed:
                raise DockerfileError(line, f"unknown flag --{name} for {keyword}")
            if name in flags:
                raise DockerfileError(line, f"duplicate flag --{name} for {keyword}")
            flags[name] = match.group(2)
            position = match.end()
        return flags, text[position:].strip()

    @staticmethod
    def _reject_late_flags(line: int, keyword: str, positionals: List[str]) -> None:
        for token in positionals:
            if token.startswith("--"):
                raise DockerfileError(line, f"flag {token} must precede the positional arguments of {keyword}")

    def _pairs(self, line: int, keyword: str, text: str) -> Dict[str, str]:
        """
        Parses ``k=v k2=v2`` or the legacy single ``k v`` form of ENV and LABEL.
        """
        words = self._words(line, text)
        if not words:
            raise DockerfileError(line, f"{keyword} requires at least one argument")
        if "=" not in words[0]:
            parts = text.split(None, 1)
            if len(parts) < 2:
                raise DockerfileError(line, f"{keyword} {parts[0]} is missing a value")
            value = self._words(line, parts[1])
            return {self._words(line, parts[0])[0]: " ".join(value)}

        pairs = {}
        for word in words:
            key, sep, value = word.partition("=")
            if not sep or not key:
                raise DockerfileError(line, f"{keyword} expects key=value pairs, got {word!r}")
            pairs[key] = value
        return pairs

    # Instructions

    def _parse_from(self, state: ParseState, line: int, text: str) -> ParseState:
        flags, rest = self._take_flags(line, "FROM", text, ("platform",))
        words = rest.split()
        if len(words) == 1:
            image, alias = words[0], None
        elif len(words) == 3 and words[1].upper() == "AS":
            image, alias = words[0], words[2]
        else:
            raise DockerfileError(line, "FROM expects <image> [AS <name>]")

        if alias is not None:
            if alias.lower() in state.declared_stage_names() or (
                state.base is not None and state.base.alias and state.base.alias.lower() == alias.lower()
            ):
                raise DockerfileError(line, f"duplicate stage name {alias!r}")
        base = SetBase(image=image, alias=alias, platform=flags.get("platform"))
        logger.debug("Stage %d starts from %s", len(state.stages) + int(state.in_stage), image)
        return state.start_stage(base)

    def _parse_run(self, state: ParseState, line: int, text: str) -> ParseState:
        exec_form = self._json_array(line, text)
        return state.add(Run(command=exec_form if exec_form is not None else text))

    def _parse_cmd(self, state: ParseState, line: int, text: str) -> ParseState:
        exec_form = self._json_array(line, text)
        return state.add(SetCmd(command=exec_form if exec_form is not None else text))

    def _parse_entrypoint(self, state: ParseState, line: int, text: str) -> ParseState:
        exec_form = self._json_array(line, text)
        return state.add(SetEntrypoint(command=exec_form if exec_form is not None else text))

    def _copy_paths(self, line: int, keyword: str, rest: str) -> Tuple[List[str], str]:
        paths = self._json_array(line, rest)
        if paths is None:
            paths = self._words(line, rest)
            self._reject_late_flags(line, keyword, paths)
        if len(paths) < 2:
            raise DockerfileError(line, f"{keyword} requires at least two arguments: <src>... <dest>")
        return paths[:-1], paths[-1]

    @staticmethod
    def _flag_bool(line: int, name: str, value: Optional[str]) -> bool:
        if value is None or value.lower() == "true":
            return True
        if value.lower() == "false":
            return False
        raise DockerfileError(line, f"--{name} expects true or false, got {value!r}")

    def _parse_copy(self, state: ParseState, line: int, text: str) -> ParseState:
        flags, rest = self._take_flags(line, "COPY", text, ("from", "chown", "chmod", "link"))
        sources, dest = self._copy_paths(line, "COPY", rest)

        from_stage = flags.get("from")
        if "from" in flags:
            if not from_stage:
                raise DockerfileError(line, "--from requires a stage name, index or image")
            self._check_stage_reference(state, line, from_stage)

        return state.add(Copy(
            sources=sources,
            dest=dest,
            owner=flags.get("chown"),
            from_stage=from_stage,
            chmod=flags.get("chmod"),
            link=self._flag_bool(line, "link", flags["link"]) if "link" in flags else False,
        ))

    @staticmethod
    def _check_stage_reference(state: ParseState, line: int, reference: str) -> None:
        """
        A ``--from`` value must name an earlier stage, by alias or index, or an image.
        """
        if reference.isdecimal():
            if int(reference) < len(state.stages):
                return
            raise DockerfileError(line, f"COPY --from={reference} refers to a stage not declared before this line")
        if reference.lower() in state.declared_stage_names():
            return
        if any(char in reference for char in _IMAGE_REFERENCE_CHARS):
            return
        raise DockerfileError(line, f"COPY --from={reference} refers to a stage not declared before this line")

    def _parse_add(self, state: ParseState, line: int, text: str) -> ParseState:
        flags, rest = self._take_flags(line, "ADD", text, ("chown", "chmod", "link"))
        sources, dest = self._copy_paths(line, "ADD", rest)
        return state.add(Add(
            sources=sources,
            dest=dest,
            owner=flags.get("chown"),
            chmod=flags.get("chmod"),
            link=self._flag_bool(line, "link", flags["link"]) if "link" in flags else False,
        ))

    def _parse_env(self, state: ParseState, line: int, text: str) -> ParseState:
        variables = self._pairs(line, "ENV", text)
        state = state.add(SetEnv(variables=variables))
        return dataclasses.replace(state, env={**state.env, **variables})

    def _parse_label(self, state: ParseState, line: int, text: str) -> ParseState:
        return state.add(SetLabel(labels=self._pairs(line, "LABEL", text)))

    def _parse_expose(self, state: ParseState, line: int, text: str) -> ParseState:
        commands = []
        for token in text.split():
            match = _PORT.fullmatch(token)
            if not match:
                raise DockerfileError(line, f"invalid port {token!r}")
            first = int(match.group(1))
            last = int(match.group(2) or first)
            if last < first or last > 65535:
                raise DockerfileError(line, f"invalid port range {token!r}")
            protocol = match.group(3).lower() if match.group(3) else None
            commands.extend(Expose(port=port, protocol=protocol) for port in range(first, last + 1))
        return state.add(*commands)

    def _parse_volume(self, state: ParseState, line: int, text: str) -> ParseState:
        paths = self._json_array(line, text)
        if paths is None:
            paths = self._words(line, text)
        if not paths:
            raise DockerfileError(line, "VOLUME requires at least one path")
        return state.add(DeclareVolume(paths=paths))

    def _parse_healthcheck(self, state: ParseState, line: int, text: str) -> ParseState:
        return state.add(self._healthcheck(line, text))

    def _healthcheck(self, line: int, text: str) -> HealthCheckInstruction:
        flags, rest = self._take_flags(
            line, "HEALTHCHECK", text, ("interval", "timeout", "start-period", "start-interval", "retries")
        )
        parts = rest.split(None, 1)
        mode = parts[0].upper() if parts else ""
        command = parts[1].strip() if len(parts) > 1 else ""

        if mode == "NONE":
            if flags or command:
                raise DockerfileError(line, "HEALTHCHECK NONE takes no other arguments")
            return HealthCheckInstruction(test=["NONE"])
        if mode != "CMD":
            raise DockerfileError(line, "HEALTHCHECK expects CMD <command> or NONE")
        if not command:
            raise DockerfileError(line, "HEALTHCHECK CMD requires a command")

        exec_form = self._json_array(line, command)
        test = ["CMD"] + exec_form if exec_form is not None else ["CMD-SHELL", command]

        durations = {}
        for name in ("interval", "timeout", "start-period", "start-interval"):
            if name in flags:
                try:
                    durations[name.replace("-", "_")] = parse_duration(flags[name] or "")
                except ValueError as e:
                    raise DockerfileError(line, f"--{name}: {e}")
        retries = None
        if "retries" in flags:
            value = flags["retries"] or ""
            if not value.isdecimal():
                raise DockerfileError(line, f"--retries expects a non-negative integer, got {value!r}")
            retries = int(value)
        return HealthCheckInstruction(test=test, retries=retries, **durations)

    def _parse_arg(self, state: ParseState, line: int, text: str) -> ParseState:
        commands = []
        values = {}
        for word in self._words(line, text):
            name, sep, default = word.partition("=")
            if not _ARG_NAME.fullmatch(name):
                raise DockerfileError(line, f"invalid ARG name {name!r}")
            commands.append(SetArg(name=name, default=default if sep else None))

            if name in self.build_args:
                values[name] = self.build_args[name]
            elif sep:
                values[name] = default
            elif state.in_stage and name in state.global_args:
                values[name] = state.global_args[name]

        if not state.in_stage:
            # FROM lines see global ARGs through scope; stages only by redeclaring them.
            return dataclasses.replace(
                state,
                preamble=state.preamble + tuple(commands),
                global_args={**state.global_args, **values},
            )
        state = state.add(*commands)
        return dataclasses.replace(state, args={**state.args, **values})

    def _parse_workdir(self, state: ParseState, line: int, text: str) -> ParseState:
        return state.add(SetWorkdir(path=text))

    def _parse_user(self, state: ParseState, line: int, text: str) -> ParseState:
        if len(text.split()) != 1:
            raise DockerfileError(line, "USER expects <user>[:<group>]")
        user, sep, group = text.partition(":")
        if not user or (sep and not group):
            raise DockerfileError(line, "USER expects <user>[:<group>]")
        return state.add(SetUser(user=user, group=group or None))

    def _parse_shell(self, state: ParseState, line: int, text: str) -> ParseState:
        shell = self._json_array(line, text)
        if not shell:
            raise DockerfileError(line, "SHELL requires a non-empty JSON array")
        return state.add(SetShell(shell=shell))

    def _parse_stopsignal(self, state: ParseState, line: int, text: str) -> ParseState:
        return state.add(SetStopSignal(signal=text))

    def _parse_maintainer(self, state: ParseState, line: int, text: str) -> ParseState:
        return state.add(SetMaintainer(name=text))

    def _parse_onbuild(self, state: ParseState, line: int, text: str) -> ParseState:
        keyword, arguments = self._split_instruction(line, text)
        if keyword in ONBUILD_FORBIDDEN:
            raise DockerfileError(line, f"{keyword} is not allowed as an ONBUILD trigger")
        # Triggers run in downstream builds: parse them in an isolated stage.
        scratch = ParseState(base=state.base)
        trigger = self._handlers[keyword](scratch, line, arguments)
        return state.add(*(OnBuild(command=command) for command in trigger.commands))
