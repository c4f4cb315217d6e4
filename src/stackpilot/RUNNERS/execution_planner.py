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
Dependency resolution for services to determine startup and shutdown stages.
"""
import logging
from typing import Iterable, List, Optional, Set, Union

from ..errors import ConfigurationError, DependencyCycleError
from ..MODELS.execution_plan import ExecutionPlan, PlanOperation
from ..MODELS.project_config import ProjectConfig

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


class DependencyGraph:
    """
    Services as integer nodes; ``deps[i]`` lists the nodes service ``i`` depends on.
    """
    def __init__(self, config: ProjectConfig):
        self.names: List[str] = list(config.services)
        self.index = {name: i for i, name in enumerate(self.names)}
        self.order_keys = [config.services[name].order_key for name in self.names]
        self.deps: List[List[int]] = []
        self.dependents: List[List[int]] = [[] for _ in self.names]

        for i, name in enumerate(self.names):
            edges = []
            for dep in config.services[name].depends_on:
                if dep not in self.index:
                    raise ConfigurationError(f"unknown service {dep!r}", field_path=f"services.{name}.depends_on")
                j = self.index[dep]
                edges.append(j)
                self.dependents[j].append(i)
            self.deps.append(edges)

    def find_cycle(self) -> Optional[List[str]]:
        """
        Depth-first search with white/gray/black coloring.

        :return: The first cycle found, as names with the first repeated at
            the end, or None if the graph is acyclic.
        """
        color = [WHITE] * len(self.names)
        for start in range(len(self.names)):
            if color[start] != WHITE:
                continue
            color[start] = GRAY
            stack = [(start, 0)]
            while stack:
                node, position = stack[-1]
                if position < len(self.deps[node]):
                    stack[-1] = (node, position + 1)
                    nxt = self.deps[node][position]
                    if color[nxt] == GRAY:
                        path = [n for n, _ in stack]
                        cycle = path[path.index(nxt):] + [nxt]
                        return [self.names[n] for n in cycle]
                    if color[nxt] == WHITE:
                        color[nxt] = GRAY
                        stack.append((nxt, 0))
                else:
                    color[node] = BLACK
                    stack.pop()
        return None

    def closure(self, roots: Iterable[int], follow_dependents: bool = False) -> Set[int]:
        """Nodes reachable from ``roots`` through dependencies (or dependents)."""
        edges = self.dependents if follow_dependents else self.deps
        seen: Set[int] = set()
        pending = list(roots)
        while pending:
            node = pending.pop()
            if node in seen:
                continue
            seen.add(node)
            pending.extend(edges[node])
        return seen

    def layers(self, members: Set[int]) -> List[List[int]]:
        """
        Repeatedly takes every member whose dependencies are already staged.
        Dependencies outside ``members`` count as satisfied.
        """
        staged: Set[int] = set()
        remaining = set(members)
        stages = []
        while remaining:
            ready = [
                node for node in remaining
                if all(dep in staged or dep not in members for dep in self.deps[node])
            ]
            if not ready:
                cycle = self.find_cycle() or [self.names[n] for n in sorted(remaining)]
                raise DependencyCycleError(cycle)
            ready.sort(key=lambda node: self.order_keys[node])
            stages.append(ready)
            staged.update(ready)
            remaining.difference_update(ready)
        return stages


class ExecutionPlanner:
    """
    Turns a ProjectConfig into an ExecutionPlan. Never talks to the runtime.
    """
    def plan(self,
             config: ProjectConfig,
             operation: Union[PlanOperation, str] = PlanOperation.START,
             targets: Optional[Iterable[str]] = None,
             include_related: bool = True) -> ExecutionPlan:
        """
        Computes the stage plan for an operation.

        :param config: The resolved project configuration.
        :param operation: ``start`` or ``stop``.
        :param targets: Restrict the plan to these services; a start plan
            pulls in their dependencies, a stop plan their dependents.
        :param include_related: With False, plan exactly ``targets``; dependencies
            outside the set are taken as already satisfied.
        :raises DependencyCycleError: If the dependencies contain a cycle.
        :raises ConfigurationError: On an unknown target.
        """
        operation = PlanOperation(operation)
        graph = DependencyGraph(config)

        cycle = graph.find_cycle()
        if cycle:
            raise DependencyCycleError(cycle)

        if targets is None:
            members = set(range(len(graph.names)))
        else:
            roots = []
            for name in targets:
                if name not in graph.index:
                    raise ConfigurationError(f"unknown service {name!r}", field_path="targets")
                roots.append(graph.index[name])
            if include_related:
                members = graph.closure(roots, follow_dependents=(operation == PlanOperation.STOP))
            else:
                members = set(roots)

        stages = [tuple(graph.names[n] for n in layer) for layer in graph.layers(members)]
        if operation == PlanOperation.STOP:
            stages.reverse()

        plan = ExecutionPlan(operation=operation, stages=tuple(stages))
        logger.debug("%s plan: %s", operation.value, " -> ".join(str(list(s)) for s in plan.stages))
        return plan
