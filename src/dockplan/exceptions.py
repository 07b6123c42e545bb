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
Exception hierarchy shared by the parsers, translators and the orchestrator.
"""
from typing import Any, List, Optional, Sequence, Tuple


class DockplanError(Exception):
    """Base class for every error raised by dockplan.

    Orchestration failures are raised with two extra attributes filled in
    once the rollback has run: ``report`` (a ``RollbackReport``) and
    ``rollback_error`` (a ``RollbackError`` when cleanup itself failed).
    """

    report: Optional[Any] = None
    rollback_error: Optional["RollbackError"] = None


class DockerfileError(DockplanError):
    """Error raised when a Dockerfile cannot be parsed."""

    def __init__(self, line: int, reason: str) -> None:
        """Initialize the error.

        Args:
            line: 1-based line number of the offending instruction
            reason: Reason for the failure
        """
        self.line = line
        self.reason = reason
        super().__init__(f"line {line}: {reason}")


class InstructionSyntaxError(DockerfileError):
    """Error raised by the line joiner on dangling continuations or unterminated quotes."""


class ComposeError(DockplanError):
    """Error raised when a compose document is malformed."""

    def __init__(self, path: str, reason: str) -> None:
        """Initialize the error.

        Args:
            path: Dotted YAML key path of the offending field
            reason: Reason for the failure
        """
        self.path = path
        self.reason = reason
        location = path or "<root>"
        super().__init__(f"{location}: {reason}")


class InterpolationError(DockplanError):
    """Error raised when a required ``${VAR:?message}`` variable is missing."""

    def __init__(self, var: str, message: str = "", path: str = "") -> None:
        self.var = var
        self.message = message
        self.path = path
        detail = message or f"required variable {var} is missing a value"
        where = f" (at {path})" if path else ""
        super().__init__(f"{detail}{where}")


class InvalidResourceLimit(DockplanError):
    """Error raised when a declared resource limit cannot be translated."""

    def __init__(self, value: Any, reason: str) -> None:
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid resource limit {value!r}: {reason}")


class InvalidIpamConfig(DockplanError):
    """Error raised when a network IPAM block is malformed or inconsistent."""

    def __init__(self, network: str, reason: str) -> None:
        self.network = network
        self.reason = reason
        super().__init__(f"Invalid IPAM configuration for network '{network}': {reason}")


class DependencyCycleError(DockplanError):
    """Error raised when services depend on each other in a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        """Initialize the error.

        Args:
            cycle: Service names forming the cycle, without repeating the first one
        """
        self.cycle = list(cycle)
        chain = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Circular dependency detected: {chain}")


class ValidationError(ComposeError):
    """Aggregate of every validation issue found in a deployment config."""

    def __init__(self, issues: Sequence[Tuple[str, str]]) -> None:
        """Initialize the error.

        Args:
            issues: ``(path, reason)`` pairs, in discovery order
        """
        self.issues: List[Tuple[str, str]] = list(issues)
        first_path = self.issues[0][0] if self.issues else ""
        summary = "; ".join(f"{path or '<root>'}: {reason}" for path, reason in self.issues)
        super().__init__(first_path, f"{len(self.issues)} validation issue(s): {summary}")


class ResourceConflictError(DockplanError):
    """Error raised when an existing network or volume does not match its declaration."""

    def __init__(self, kind: str, name: str, reason: str) -> None:
        self.kind = kind
        self.name = name
        self.reason = reason
        super().__init__(f"Existing {kind} '{name}' conflicts with its declaration: {reason}")


class HealthCheckTimeoutError(DockplanError):
    """Error raised when a service does not report healthy before its deadline."""

    def __init__(self, service: str, deadline: float, last_status: Optional[str] = None) -> None:
        self.service = service
        self.deadline = deadline
        self.last_status = last_status
        status = f" (last status: {last_status})" if last_status else ""
        super().__init__(
            f"Service '{service}' did not become healthy within {deadline:.3f}s{status}"
        )


class RuntimeCallError(DockplanError):
    """Wraps an error raised by the container runtime collaborator."""

    def __init__(self, operation: str, target: str, cause: BaseException) -> None:
        self.operation = operation
        self.target = target
        self.cause = cause
        super().__init__(f"Runtime call {operation}({target}) failed: {cause!r}")

    @property
    def timed_out(self) -> bool:
        """True when the call was abandoned, so its effect on the engine is unknown."""
        return isinstance(self.cause, TimeoutError)


class RollbackError(DockplanError):
    """Aggregate of the secondary failures that happened while rolling back."""

    def __init__(self, failures: Sequence[Any]) -> None:
        self.failures = list(failures)
        super().__init__(f"{len(self.failures)} resource(s) could not be removed during rollback")


class DeploymentCancelledError(DockplanError):
    """Error raised when a deployment is aborted through its cancellation token."""

    def __init__(self, wave: Optional[int] = None) -> None:
        self.wave = wave
        where = f" during wave {wave}" if wave is not None else ""
        super().__init__(f"Deployment cancelled{where}")
