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
The ordered stage plan handed from the planner to the orchestrator.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Tuple


class PlanOperation(str, Enum):
    START = "start"
    STOP = "stop"


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Stages run strictly in sequence; members of one stage may run concurrently.
    """
    operation: PlanOperation
    stages: Tuple[Tuple[str, ...], ...]

    def __iter__(self) -> Iterator[Tuple[str, ...]]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    @property
    def services(self) -> List[str]:
        """All services in plan order."""
        return [name for stage in self.stages for name in stage]

    def as_lists(self) -> List[List[str]]:
        return [list(stage) for stage in self.stages]
