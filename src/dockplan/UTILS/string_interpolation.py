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
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Mapping, Optional

from ..exceptions import ComposeError, InterpolationError

logger = logging.getLogger(__name__)

_NAME = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_BRACED = re.compile(r'([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-?+])(.*))?\Z', re.DOTALL)


class EnvironmentInterpolator:
    """
    Compose-style interpolation of ``$VAR`` and ``${VAR...}`` references.

    Supported forms: ``${VAR}``, ``$VAR``, ``${VAR:-default}``, ``${VAR-default}``,
    ``${VAR:?error}``, ``${VAR?error}``, ``${VAR:+value}``, ``${VAR+value}`` and
    ``$$`` as a literal dollar. Defaults may themselves contain references.
    """
    @classmethod
    def interpolate(cls, template: str, context: Mapping[str, str], path: str = "") -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ``$VAR`` / ``${VAR}`` placeholders.
        :param context: The environment variables context.
        :param path: YAML key path of the value, used in error messages.
        :return: The interpolated string.
        :raises InterpolationError: If a ``?`` form names a missing variable.
        :raises ComposeError: If a ``${`` reference is malformed.
        """
        if "$" not in template:
            return template

        out = []
        i = 0
        length = len(template)
        while i < length:
            char = template[i]
            if char != "$":
                out.append(char)
                i += 1
                continue

            nxt = template[i + 1] if i + 1 < length else ""
            if nxt == "$":
                out.append("$")
                i += 2
            elif nxt == "{":
                end = cls._find_closing(template, i + 2)
                if end < 0:
                    raise ComposeError(path, f"invalid interpolation format for {template!r}")
                out.append(cls._expand(template[i + 2:end], template, context, path))
                i = end + 1
            else:
                match = _NAME.match(template, i + 1)
                if match:
                    out.append(cls._lookup(match.group(0), context, path))
                    i = match.end()
                else:
                    out.append("$")
                    i += 1
        return "".join(out)

    @staticmethod
    def _find_closing(text: str, start: int) -> int:
        depth = 1
        i = start
        while i < len(text):
            if text.startswith("${", i):
                depth += 1
                i += 2
                continue
            if text[i] == "}":
                depth -= 1
                if depth == 0:
                    return i
            i += 1
        return -1

    @classmethod
    def _expand(cls, body: str, template: str, context: Mapping[str, str], path: str) -> str:
        match = _BRACED.match(body)
        if not match:
            raise ComposeError(path, f"invalid interpolation format for {template!r}")
        name, modifier, argument = match.group(1), match.group(2), match.group(3) or ""

        value = context.get(name)
        is_set = value is not None
        is_filled = is_set and value != ""

        if modifier is None:
            return cls._lookup(name, context, path)
        if modifier in (":-", "-"):
            usable = is_filled if modifier == ":-" else is_set
            return value if usable else cls.interpolate(argument, context, path)
        if modifier in (":?", "?"):
            usable = is_filled if modifier == ":?" else is_set
            if usable:
                return value
            raise InterpolationError(name, cls.interpolate(argument, context, path), path)
        # ":+" / "+"
        usable = is_filled if modifier == ":+" else is_set
        return cls.interpolate(argument, context, path) if usable else ""

    @staticmethod
    def _lookup(name: str, context: Mapping[str, str], path: str) -> str:
        value = context.get(name)
        if value is None:
            logger.warning("Variable %s is not set, defaulting to a blank string (at %s)", name, path or "<root>")
            return ""
        return value


def substitute_build_variables(text: str, scope: Mapping[str, str], escape: str = "\\") -> str:
    """
    Dockerfile-style substitution of ``$NAME`` / ``${NAME}`` against ARG and ENV values.

    References to names missing from ``scope`` are left untouched, as are
    single-quoted segments. An escaped dollar yields a literal ``$``.
    ``${NAME:-word}`` and ``${NAME:+word}`` follow their shell meaning.

    :param text: Instruction argument text.
    :param scope: ARG/ENV values visible at this instruction.
    :param escape: The Dockerfile escape character.
    :return: The substituted text.
    """
    if "$" not in text:
        return text
    pattern = _build_pattern(escape)

    def replace(match: "re.Match[str]") -> str:
        braced: Optional[str] = match.group("braced")
        bare: Optional[str] = match.group("bare")
        if braced is None and bare is None:
            if match.group(0).startswith("'"):
                return match.group(0)
            return "$"

        name = braced or bare
        value = scope.get(name)
        modifier = match.group("modifier")
        if modifier == ":-":
            return value if value else match.group("word")
        if modifier == ":+":
            return match.group("word") if value else ""
        if value is None:
            return match.group(0)
        return value

    return pattern.sub(replace, text)


def escape_build_variables(text: str, escape: str = "\\") -> str:
    """
    Escapes every dollar ``substitute_build_variables`` would read, leaving
    single-quoted segments alone. Substituting the result under any scope
    gives ``text`` back.

    :param text: Instruction argument text.
    :param escape: The Dockerfile escape character.
    :return: The escaped text.
    """
    if "$" not in text:
        return text
    out = []
    i = 0
    while i < len(text):
        char = text[i]
        if char == "'":
            end = text.find("'", i + 1)
            if end >= 0:
                out.append(text[i:end + 1])
                i = end + 1
                continue
        elif char == "$":
            out.append(escape)
        out.append(char)
        i += 1
    return "".join(out)


_PATTERNS = {}


def _build_pattern(escape: str) -> "re.Pattern[str]":
    pattern = _PATTERNS.get(escape)
    if pattern is None:
        pattern = re.compile(
            r"'[^']*'"
            + "|" + re.escape(escape) + r"\$"
            + r"|\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<modifier>:[-+])(?P<word>[^}]*))?\}"
            + r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
        )
        _PATTERNS[escape] = pattern
    return pattern
