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
Structured outcome of an orchestration run, consumed by the CLI or any other front end.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .runtime_state import ServiceRuntimeState, ServiceState

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2

# States that count as success for the operation that produced them.
START_SUCCESS_STATES = frozenset({ServiceState.HEALTHY})
STOP_SUCCESS_STATES = frozenset({ServiceState.STOPPED})


class RunVerdict(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass(frozen=True)
class OrchestrationEvent:
    """
    A progress notification emitted while a run is in flight.

    ``kind`` is one of ``stage_started``, ``stage_finished``, ``transition``,
    ``retry``, ``hook_failed`` or ``cancelled``.
    """
    kind: str
    service: Optional[str] = None
    state: Optional[ServiceState] = None
    message: str = ""
    stage: Optional[int] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )


@dataclass
class ServiceOutcome:
    """Final word on one service (or one replica) after a run."""

    name: str
    state: ServiceState
    error: Optional[str] = None
    error_type: Optional[str] = None
    elapsed: float = 0.0
    attempts: int = 0
    replica: Optional[int] = None
    skipped: bool = False
    # left mid-lifecycle (e.g. still awaiting health) when the run was cancelled
    cancelled: bool = False
    hook_failures: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.name if self.replica is None else f"{self.name}#{self.replica}"

    @classmethod
    def from_state(cls, runtime: ServiceRuntimeState, skipped: bool = False,
                   cancelled: bool = False) -> "ServiceOutcome":
        return cls(
            name=runtime.name,
            state=runtime.state,
            error=str(runtime.error) if runtime.error else None,
            error_type=type(runtime.error).__name__ if runtime.error else None,
            elapsed=round(runtime.elapsed, 3),
            attempts=runtime.attempts,
            replica=runtime.replica,
            skipped=skipped,
            cancelled=cancelled,
            hook_failures=list(runtime.hook_failures),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "replica": self.replica,
            "state": self.state.value,
            "error": self.error,
            "error_type": self.error_type,
            "elapsed": self.elapsed,
            "attempts": self.attempts,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "hook_failures": list(self.hook_failures),
        }


@dataclass
class RunResult:
    """
    Per-service outcomes plus an overall verdict.
    """
    operation: str
    outcomes: Dict[str, ServiceOutcome] = field(default_factory=dict)
    elapsed: float = 0.0
    cancelled: bool = False
    error: Optional[str] = None
    events: List[OrchestrationEvent] = field(default_factory=list)

    def add(self, outcome: ServiceOutcome) -> None:
        self.outcomes[outcome.key] = outcome

    def merge(self, other: "RunResult") -> None:
        """Folds a later run (e.g. the start half of a restart) into this one."""
        for outcome in other.outcomes.values():
            self.outcomes[outcome.key] = outcome
        self.elapsed += other.elapsed
        self.cancelled = self.cancelled or other.cancelled
        self.error = self.error or other.error
        self.events.extend(other.events)

    def _success_states(self):
        if self.operation == "stop":
            return STOP_SUCCESS_STATES
        if self.operation == "scale":
            return START_SUCCESS_STATES | STOP_SUCCESS_STATES
        return START_SUCCESS_STATES

    @property
    def succeeded(self) -> List[str]:
        ok = self._success_states()
        return [key for key, outcome in self.outcomes.items() if outcome.state in ok]

    @property
    def failed(self) -> List[str]:
        ok = self._success_states()
        return [key for key, outcome in self.outcomes.items() if outcome.state not in ok]

    @property
    def verdict(self) -> RunVerdict:
        if self.error is None and not self.failed:
            return RunVerdict.SUCCESS
        if self.succeeded:
            return RunVerdict.PARTIAL
        return RunVerdict.FAILURE

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.verdict == RunVerdict.SUCCESS else EXIT_FAILURE

    def state_of(self, name: str) -> ServiceState:
        return self.outcomes[name].state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "verdict": self.verdict.value,
            "exit_code": self.exit_code,
            "elapsed": round(self.elapsed, 3),
            "cancelled": self.cancelled,
            "error": self.error,
            "services": [outcome.to_dict() for outcome in self.outcomes.values()],
        }
