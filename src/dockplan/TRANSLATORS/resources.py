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
Translation of declared resource limits into engine-native numbers.
"""
import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from ..exceptions import InvalidResourceLimit
from ..MODELS.service_definition import ResourceLimits

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

_MULTIPLIERS = {"": 1, "k": KIB, "m": MIB, "g": GIB}
_BYTE_SIZE = re.compile(r'(\d+(?:\.\d+)?|\.\d+)([kmg]?)b?', re.IGNORECASE)
_CPUSET = re.compile(r'\d+(-\d+)?(,\d+(-\d+)?)*')

UNLIMITED_SWAP = -1
NANO_CPUS_PER_CPU = 1_000_000_000


@dataclass(frozen=True)
class HostResources:
    """
    Resource limits in the form the engine's host config takes them.
    """
    nano_cpus: Optional[int] = None
    memory: Optional[int] = None
    memory_swap: Optional[int] = None
    memory_reservation: Optional[int] = None
    cpu_shares: Optional[int] = None
    cpuset_cpus: Optional[str] = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.__dict__.values())


def parse_byte_size(value: Union[str, int]) -> int:
    """
    Converts ``"512m"``, ``"1G"``, ``"1.5g"``, ``"512mb"`` or a plain byte count into bytes.

    Suffixes are binary multiples and case-insensitive.

    :raises InvalidResourceLimit: On an unknown suffix, a fractional byte count
        or a value that is not strictly positive.
    """
    if isinstance(value, bool):
        raise InvalidResourceLimit(value, "expected a byte size")
    if isinstance(value, int):
        if value <= 0:
            raise InvalidResourceLimit(value, "must be greater than zero")
        return value

    text = str(value).strip()
    match = _BYTE_SIZE.fullmatch(text)
    if not match:
        if text.startswith("-"):
            raise InvalidResourceLimit(value, "must be greater than zero")
        raise InvalidResourceLimit(value, "unknown size or suffix (expected b, k, m or g)")

    try:
        amount = Decimal(match.group(1)) * _MULTIPLIERS[match.group(2).lower()]
    except InvalidOperation:
        raise InvalidResourceLimit(value, "not a number")
    if amount != amount.to_integral_value():
        raise InvalidResourceLimit(value, "does not resolve to a whole number of bytes")
    if amount <= 0:
        raise InvalidResourceLimit(value, "must be greater than zero")
    return int(amount)


def format_byte_size(size: int) -> str:
    """
    Renders a byte count with the largest suffix that divides it exactly.

    ``parse_byte_size(format_byte_size(n)) == n`` for every positive ``n``.
    """
    if size <= 0:
        raise InvalidResourceLimit(size, "must be greater than zero")
    for suffix, multiplier in (("g", GIB), ("m", MIB), ("k", KIB)):
        if size % multiplier == 0:
            return f"{size // multiplier}{suffix}"
    return f"{size}b"


def parse_cpu_fraction(value: Union[str, float, int]) -> float:
    """
    Converts a CPU count such as ``"0.5"`` or ``2`` into a float.

    Only positivity is checked; the host topology is unknown at this point.
    """
    if isinstance(value, bool):
        raise InvalidResourceLimit(value, "expected a number of CPUs")
    try:
        cpus = float(value)
    except (TypeError, ValueError):
        raise InvalidResourceLimit(value, "expected a number of CPUs")
    if math.isnan(cpus) or math.isinf(cpus) or cpus <= 0:
        raise InvalidResourceLimit(value, "must be a finite number greater than zero")
    return cpus


def _parse_swap(value: Any) -> int:
    if str(value).strip() == str(UNLIMITED_SWAP):
        return UNLIMITED_SWAP
    return parse_byte_size(value)


def to_host_resources(limits: Optional[ResourceLimits]) -> HostResources:
    """
    Translates declared limits into a ``HostResources``.

    :raises InvalidResourceLimit: If a value is malformed or the swap/reservation
        values are inconsistent with the memory limit.
    """
    if limits is None:
        return HostResources()

    nano_cpus = None
    if limits.cpu_limit is not None:
        nano_cpus = int(parse_cpu_fraction(limits.cpu_limit) * NANO_CPUS_PER_CPU)

    memory = parse_byte_size(limits.memory_limit) if limits.memory_limit is not None else None
    swap = _parse_swap(limits.memory_swap) if limits.memory_swap is not None else None
    reservation = (
        parse_byte_size(limits.memory_reservation) if limits.memory_reservation is not None else None
    )

    if swap is not None and swap != UNLIMITED_SWAP:
        if memory is None:
            raise InvalidResourceLimit(limits.memory_swap, "memory_swap requires a memory limit")
        if swap < memory:
            raise InvalidResourceLimit(
                limits.memory_swap, f"memory_swap must be at least the memory limit ({memory} bytes)"
            )
    if reservation is not None and memory is not None and reservation > memory:
        raise InvalidResourceLimit(
            limits.memory_reservation, f"memory_reservation must not exceed the memory limit ({memory} bytes)"
        )

    if limits.cpu_shares is not None and limits.cpu_shares < 0:
        raise InvalidResourceLimit(limits.cpu_shares, "cpu_shares must not be negative")
    if limits.cpuset_cpus is not None and not _CPUSET.fullmatch(limits.cpuset_cpus):
        raise InvalidResourceLimit(limits.cpuset_cpus, "expected a CPU list such as 0-3 or 0,1")

    return HostResources(
        nano_cpus=nano_cpus,
        memory=memory,
        memory_swap=swap,
        memory_reservation=reservation,
        cpu_shares=limits.cpu_shares,
        cpuset_cpus=limits.cpuset_cpus,
    )


def describe(resources: HostResources) -> Dict[str, str]:
    """Human readable rendering, used by the ``plan`` command."""
    out = {}
    if resources.nano_cpus is not None:
        out["cpus"] = f"{resources.nano_cpus / NANO_CPUS_PER_CPU:g}"
    for key in ("memory", "memory_reservation"):
        size = getattr(resources, key)
        if size is not None:
            out[key] = format_byte_size(size)
    if resources.memory_swap is not None:
        swap = resources.memory_swap
        out["memory_swap"] = "unlimited" if swap == UNLIMITED_SWAP else format_byte_size(swap)
    if resources.cpu_shares is not None:
        out["cpu_shares"] = str(resources.cpu_shares)
    if resources.cpuset_cpus is not None:
        out["cpuset_cpus"] = resources.cpuset_cpus
    return out
