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
Per-run service state machine and health samples.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..errors import InvalidTransitionError


class ServiceState(str, Enum):
    """Lifecycle state of a service within one orchestration run."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


_TRANSITIONS: Dict[ServiceState, FrozenSet[ServiceState]] = {
    ServiceState.PENDING: frozenset({ServiceState.STARTING, ServiceState.STOPPING, ServiceState.FAILED}),
    ServiceState.STARTING: frozenset({ServiceState.RUNNING, ServiceState.FAILED}),
    ServiceState.RUNNING: frozenset({ServiceState.HEALTHY, ServiceState.UNHEALTHY, ServiceState.STOPPING}),
    ServiceState.HEALTHY: frozenset({ServiceState.STOPPING}),
    ServiceState.UNHEALTHY: frozenset({ServiceState.FAILED, ServiceState.STOPPING}),
    ServiceState.STOPPING: frozenset({ServiceState.STOPPED, ServiceState.FAILED}),
    ServiceState.STOPPED: frozenset(),
    ServiceState.FAILED: frozenset(),
}


class HealthVerdict(str, Enum):
    """Health status reported for a running service."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    NONE = "none"  # runtime has no probe for it


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ServiceRuntimeState:
    """
    State machine instance for one service during one run.
    Only the orchestrator mutates it.
    """
    name: str
    replica: Optional[int] = None
    state: ServiceState = ServiceState.PENDING
    attempts: int = 0
    error: Optional[Exception] = None
    hook_failures: List[str] = field(default_factory=list)
    history: List[Tuple[str, ServiceState]] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    def can_transition(self, target: ServiceState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: ServiceState) -> None:
        """
        Moves to ``target``.

        :raises InvalidTransitionError: If the move is not allowed from the current state.
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"{self.name}: cannot move from {self.state.value} to {target.value}"
            )
        self.state = target
        self.history.append((_utc_now(), target))
        if self.is_terminal or target in (ServiceState.HEALTHY, ServiceState.UNHEALTHY):
            self.finished_at = time.monotonic()

    @property
    def is_terminal(self) -> bool:
        return self.state in (ServiceState.STOPPED, ServiceState.FAILED)

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at


@dataclass(frozen=True)
class HealthSample:
    """
    One probe result. Only the latest sample per service is authoritative.
    """
    service: str
    verdict: HealthVerdict
    sequence: int
    timestamp: str = field(default_factory=_utc_now)
    cpu_percent: Optional[float] = None
    memory_bytes: Optional[int] = None
    detail: str = ""
