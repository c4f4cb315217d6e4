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
Runtime operations and their results.

Operations form a closed set of variants; the executor maps each one to a
command line and rejects anything else.
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union


@dataclass(frozen=True)
class StartOp:
    """Start a service."""
    service: str
    timeout: Optional[float] = None
    kind = "start"


@dataclass(frozen=True)
class StopOp:
    """
    Stop a service. With ``remove`` the containers are deleted after stopping.
    """
    service: str
    remove: bool = False
    grace_period: Optional[int] = None
    timeout: Optional[float] = None
    kind = "stop"


@dataclass(frozen=True)
class InspectOp:
    """Report container state and health for a service."""
    service: str
    timeout: Optional[float] = None
    kind = "inspect"


@dataclass(frozen=True)
class LogsOp:
    """Fetch logs. With ``follow`` the output streams to the terminal until interrupted."""
    service: str
    tail: Optional[int] = None
    since: Optional[str] = None
    timestamps: bool = False
    follow: bool = False
    timeout: Optional[float] = None
    kind = "logs"


@dataclass(frozen=True)
class ExecOp:
    """Run a command (or an interactive shell) inside a service container."""
    service: str
    command: Tuple[str, ...] = ("sh",)
    interactive: bool = False
    index: Optional[int] = None
    timeout: Optional[float] = None
    kind = "exec"


@dataclass(frozen=True)
class ScaleOp:
    """
    Bring a service to exactly ``replicas`` containers. Existing containers
    are kept; scaling down removes the newest first.
    """
    service: str
    replicas: int
    timeout: Optional[float] = None
    kind = "scale"


@dataclass(frozen=True)
class BuildOp:
    service: str
    no_cache: bool = False
    pull: bool = False
    timeout: Optional[float] = None
    kind = "build"


@dataclass(frozen=True)
class PullOp:
    """Pull the image of a service."""
    service: str
    timeout: Optional[float] = None
    kind = "pull"


RuntimeOperation = Union[StartOp, StopOp, InspectOp, LogsOp, ExecOp, ScaleOp, BuildOp, PullOp]


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of one runtime command invocation.
    """
    argv: Tuple[str, ...]
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return self.stdout or self.stderr

    def lines(self) -> List[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]
