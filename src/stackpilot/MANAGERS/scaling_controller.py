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
Replica scaling within configured bounds.
"""
import logging
import time

from ..errors import ScalingError
from ..MODELS.project_config import ProjectConfig
from ..MODELS.run_result import RunResult
from .service_orchestrator import ServiceOrchestrator

logger = logging.getLogger(__name__)


class ScalingController:
    """
    Adjusts the replica count of a single service through the orchestrator's
    single-service path. Dependents are left alone.
    """
    def __init__(self, config: ProjectConfig, orchestrator: ServiceOrchestrator):
        self.config = config
        self.orchestrator = orchestrator

    def validate(self, name: str, target: int) -> None:
        """
        :raises ScalingError: If the service is unknown or ``target`` is outside its bounds.
        """
        spec = self.config.services.get(name)
        if spec is None:
            raise ScalingError(f"Unknown service: {name}", {"service": name})
        if isinstance(target, bool) or not isinstance(target, int):
            raise ScalingError(f"Replica count for {name} must be an integer, got {target!r}",
                               {"service": name, "target": target})
        bounds = spec.scale
        if not bounds.allows(target):
            raise ScalingError(
                f"Cannot scale {name} to {target}: allowed range is [{bounds.min}, {bounds.max}]",
                {"service": name, "target": target, "min": bounds.min, "max": bounds.max},
            )

    def scale(self, name: str, target: int) -> RunResult:
        """
        Brings a service to ``target`` replicas, one replica at a time.
        New replicas are started in ascending order; excess replicas are
        stopped newest first. Stops at the first replica that fails.

        :raises ScalingError: Before any runtime command, if the request is invalid.
        """
        self.validate(name, target)
        self.orchestrator.reset_cancellation()

        began = time.monotonic()
        result = RunResult(operation="scale")
        current = self.orchestrator.replica_count(name)
        if current == target:
            logger.info("%s already runs %d replica(s)", name, target)
            return result

        logger.info("Scaling %s from %d to %d replica(s)", name, current, target)
        if target > current:
            steps = [(self.orchestrator.start_service, k) for k in range(current + 1, target + 1)]
        else:
            steps = [(self.orchestrator.stop_service, k) for k in range(current, target, -1)]

        for step, replica in steps:
            if self.orchestrator.cancelled:
                break
            outcome = step(name, replica=replica)
            result.merge(outcome)
            if outcome.failed:
                result.error = result.error or f"Scaling {name} stopped at replica {replica}"
                break

        result.elapsed = time.monotonic() - began
        return result
