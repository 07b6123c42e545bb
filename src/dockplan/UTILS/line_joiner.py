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
Joins physical Dockerfile lines into logical instruction lines.
"""
import re
from typing import Iterator, List, NamedTuple, Optional, Tuple

from ..exceptions import InstructionSyntaxError

DEFAULT_ESCAPE = "\\"
SUPPORTED_ESCAPES = ("\\", "`")

_DIRECTIVE = re.compile(r'^#\s*([a-zA-Z][a-zA-Z0-9_-]*)\s*=\s*(\S*)\s*$')


class LogicalLine(NamedTuple):
    """
    One instruction after continuation joining.
    """
    number: int
    text: str


class LineJoiner:
    """
    Lazy, restartable sequence of logical lines.

    Each iteration re-reads the content from the start, so the same joiner can be
    consumed several times. Full-line comments and blank lines are dropped unless
    they sit inside a quoted argument that spans a continuation.
    """
    def __init__(self, content: str):
        """
        :param content: Raw Dockerfile text.
        """
        self.content = content.lstrip("\ufeff")
        self.escape = self._detect_escape(self.content)

    def __iter__(self) -> Iterator[LogicalLine]:
        return self._join()

    @staticmethod
    def _detect_escape(content: str) -> str:
        """
        Reads the ``# escape=`` parser directive from the top of the file.
        """
        escape = DEFAULT_ESCAPE
        for number, raw in enumerate(content.splitlines(), 1):
            match = _DIRECTIVE.match(raw.strip())
            if not match:
                break
            if match.group(1).lower() != "escape":
                continue
            value = match.group(2)
            if value not in SUPPORTED_ESCAPES:
                raise InstructionSyntaxError(number, f"invalid escape directive {value!r}")
            escape = value
        return escape

    def _join(self) -> Iterator[LogicalLine]:
        pieces: List[str] = []
        start: Optional[int] = None
        quote: Optional[str] = None

        for number, raw in enumerate(self.content.splitlines(), 1):
            stripped = raw.strip()
            if quote is None and (not stripped or stripped.startswith("#")):
                continue
            if start is None:
                start = number

            body, continued = self._split_continuation(stripped)
            quote = self._scan_quotes(body, quote)
            pieces.append(body)

            if continued:
                continue
            if quote is not None:
                raise InstructionSyntaxError(start, f"unterminated {quote} quote")

            yield LogicalLine(start, " ".join(piece for piece in pieces if piece))
            pieces = []
            start = None

        if start is not None:
            if quote is not None:
                raise InstructionSyntaxError(start, f"unterminated {quote} quote")
            raise InstructionSyntaxError(start, "dangling line continuation at end of input")

    def _split_continuation(self, line: str) -> Tuple[str, bool]:
        """
        Strips an unescaped trailing continuation marker.

        An odd run of trailing escape characters means the last one is a marker.
        """
        trailing = len(line) - len(line.rstrip(self.escape))
        if trailing % 2 == 1:
            return line[:-1].rstrip(), True
        return line, False

    def _scan_quotes(self, text: str, quote: Optional[str]) -> Optional[str]:
        """
        Returns the quote still open at the end of ``text``.
        """
        i = 0
        while i < len(text):
            char = text[i]
            if char == self.escape and quote != "'":
                i += 2
                continue
            if quote is not None:
                if char == quote:
                    quote = None
            elif char in ("'", '"'):
                quote = char
            i += 1
        return quote


def iter_logical_lines(content: str) -> Iterator[LogicalLine]:
    """
    Convenience wrapper yielding the logical lines of ``content``.
    """
    return iter(LineJoiner(content))
