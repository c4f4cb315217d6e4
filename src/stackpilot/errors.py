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
Error hierarchy for the lifecycle engine.

Discovery and configuration errors abort a run before any runtime command
is issued. Execution errors are recorded per service. Cycle errors are
always fatal.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class StackPilotError(Exception):
    """
    Base class for every error raised by the engine.
    """
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class DiscoveryError(StackPilotError):
    """The project tree could not be scanned."""


class ConfigurationError(StackPilotError):
    """
    A compose definition or persisted configuration violates the schema.

    :param field_path: Dotted location of the offending field, e.g.
        ``services.api.depends_on[0]``.
    """
    def __init__(self, message: str, field_path: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        if field_path:
            message = f"{field_path}: {message}"
        super().__init__(message, context)
        self.field_path = field_path


class DependencyCycleError(StackPilotError):
    """
    The declared dependencies form a cycle.

    ``cycle`` lists the members in traversal order with the first member
    repeated at the end, e.g. ``["api", "db", "api"]``.
    """
    def __init__(self, cycle: List[str]):
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            {"cycle": list(cycle)},
        )
        self.cycle = list(cycle)

    @property
    def members(self) -> List[str]:
        """Distinct services taking part in the cycle."""
        return list(dict.fromkeys(self.cycle))


class ExecutionFailureKind(str, Enum):
    """Why a runtime command failed."""

    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    SPAWN_FAILURE = "spawn_failure"


class ExecutionError(StackPilotError):
    """
    A runtime command timed out, exited non-zero or could not be spawned.
    """
    def __init__(self, message: str, kind: ExecutionFailureKind,
                 operation: Any = None, result: Any = None):
        super().__init__(message, {"kind": kind.value})
        self.kind = kind
        self.operation = operation
        self.result = result


class HealthCheckTimeoutError(StackPilotError):
    """A service did not become healthy within its stage wait budget."""
    def __init__(self, service: str, waited: float, reason: str = "timed out"):
        super().__init__(
            f"Service {service} did not become healthy ({reason} after {waited:.1f}s)",
            {"service": service, "waited": waited},
        )
        self.service = service
        self.waited = waited


class ScalingError(StackPilotError):
    """A scale request is outside the service's configured bounds."""


class InvalidTransitionError(StackPilotError):
    """A service runtime state was asked to make an illegal transition."""


class HookError(StackPilotError):
    """A lifecycle hook handler failed while hooks are strict."""
