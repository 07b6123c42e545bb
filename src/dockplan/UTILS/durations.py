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
Go-style duration strings ("1m30s", "500ms") to and from nanoseconds.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Union

NANOSECOND = 1
MICROSECOND = 1000 * NANOSECOND
MILLISECOND = 1000 * MICROSECOND
SECOND = 1000 * MILLISECOND
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE

_UNITS = {
    "ns": NANOSECOND,
    "us": MICROSECOND,
    "µs": MICROSECOND,
    "μs": MICROSECOND,
    "ms": MILLISECOND,
    "s": SECOND,
    "m": MINUTE,
    "h": HOUR,
}

_COMPONENT = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)')

_FORMAT_ORDER = (("h", HOUR), ("m", MINUTE), ("s", SECOND), ("ms", MILLISECOND), ("us", MICROSECOND), ("ns", NANOSECOND))


def parse_duration(value: Union[str, int, float]) -> int:
    """
    Converts a duration into nanoseconds.

    Plain numbers are read as seconds.

    :raises ValueError: If the duration is malformed or negative.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"negative duration {value!r}")
        return int(Decimal(str(value)) * SECOND)

    text = str(value).strip()
    if text == "0":
        return 0
    if not text:
        raise ValueError("empty duration")

    total = Decimal(0)
    position = 0
    for match in _COMPONENT.finditer(text):
        if match.start() != position:
            break
        try:
            amount = Decimal(match.group(1))
        except InvalidOperation:
            raise ValueError(f"invalid duration {text!r}")
        total += amount * _UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValueError(f"invalid duration {text!r}")
    return int(total)


def format_duration(nanoseconds: int) -> str:
    """
    Renders nanoseconds in the compact form ``parse_duration`` reads back.
    """
    if nanoseconds < 0:
        raise ValueError(f"negative duration {nanoseconds!r}")
    if nanoseconds == 0:
        return "0s"

    parts = []
    remainder = nanoseconds
    for suffix, size in _FORMAT_ORDER:
        amount, remainder = divmod(remainder, size)
        if amount:
            parts.append(f"{amount}{suffix}")
    return "".join(parts)


def to_seconds(nanoseconds: int) -> float:
    return nanoseconds / SECOND
