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
Orchestration for multiple services, managing dependencies and health.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from ..errors import (
    ConfigurationError,
    ExecutionError,
    HealthCheckTimeoutError,
    HookError,
    StackPilotError,
)
from ..MODELS.execution_plan import ExecutionPlan, PlanOperation
from ..MODELS.operations import InspectOp, ScaleOp, StartOp, StopOp
from ..MODELS.project_config import ProjectConfig
from ..MODELS.run_result import OrchestrationEvent, RunResult, ServiceOutcome
from ..MODELS.runtime_state import HealthSample, HealthVerdict, ServiceRuntimeState, ServiceState
from ..RUNNERS.command_executor import CommandExecutor
from ..RUNNERS.execution_planner import ExecutionPlanner
from .health_monitor import HealthMonitor, parse_container_rows
from .hooks import HookPoint, HookRegistry

logger = logging.getLogger(__name__)

EventListener = Callable[[OrchestrationEvent], None]

_PASSING_VERDICTS = (HealthVerdict.HEALTHY, HealthVerdict.NONE)
# States a service can be left in when a run is cancelled between steps
_INTERRUPTED_STATES = (ServiceState.STARTING, ServiceState.RUNNING, ServiceState.STOPPING)


class ServiceOrchestrator:
    """
    Walks execution plans stage by stage, driving each service through its
    lifecycle via the command executor and gating stage advancement on
    health samples.

    One instance serves one project. Runs on the same instance must not overlap.
    """
    def __init__(self,
                 config: ProjectConfig,
                 executor: Optional[CommandExecutor] = None,
                 health_monitor: Optional[HealthMonitor] = None,
                 hooks: Optional[HookRegistry] = None,
                 on_event: Optional[EventListener] = None):
        """
        Initializes the orchestrator.

        :param config: Resolved configuration for all services.
        :param executor: Runs runtime commands. Built from the config when omitted.
        :param health_monitor: Source of health samples. Created on first use when omitted.
        :param hooks: Lifecycle hooks.
        :param on_event: Called with every event of every run.
        """
        self.config = config
        self.executor = executor or CommandExecutor.from_config(config)
        self.hooks = hooks or HookRegistry(strict=config.orchestration.strict_hooks)
        self.on_event = on_event
        self.planner = ExecutionPlanner()

        self._monitor = health_monitor
        self._monitor_lock = threading.Lock()
        self._events_lock = threading.Lock()
        self._replicas: Dict[str, int] = {}
        self._replicas_lock = threading.Lock()
        self._cancel_event = threading.Event()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def policy(self):
        return self.config.orchestration

    @property
    def monitor(self) -> HealthMonitor:
        with self._monitor_lock:
            if self._monitor is None:
                self._monitor = HealthMonitor(self.executor, interval=self.policy.health_poll_interval)
            return self._monitor

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self):
        """
        Requests cancellation of the current run. Operations already issued
        finish and are recorded; nothing new is issued.
        """
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    def reset_cancellation(self):
        self._cancel_event.clear()

    def close(self):
        """
        Stops the health monitor thread, if one was started.
        """
        if self._monitor is not None and self._monitor.running:
            self._monitor.stop()

    # Plan-level operations

    def up(self, targets: Optional[Iterable[str]] = None) -> RunResult:
        """
        Starts services stage by stage, dependencies first.

        :param targets: Limit the run to these services and their dependencies.
        :raises DependencyCycleError: If the dependencies contain a cycle.
        :raises ConfigurationError: On an unknown target.
        """
        self.reset_cancellation()
        plan = self.planner.plan(self.config, PlanOperation.START, targets)
        return self._run_start(plan)

    def down(self, targets: Optional[Iterable[str]] = None, remove: bool = False) -> RunResult:
        """
        Stops services in reverse dependency order. Every stage is attempted
        even when some services fail to stop.

        :param targets: Limit the run to these services and their dependents.
        :param remove: Remove the containers after stopping them.
        """
        self.reset_cancellation()
        plan = self.planner.plan(self.config, PlanOperation.STOP, targets)
        return self._run_stop(plan, remove=remove)

    def restart(self, targets: Optional[Iterable[str]] = None) -> RunResult:
        """
        Stops the targets with their dependents, then starts the same set again.
        """
        self.reset_cancellation()
        stop_plan = self.planner.plan(self.config, PlanOperation.STOP, targets)
        result = RunResult(operation="restart")
        result.merge(self._run_stop(stop_plan, remove=False))
        if not self.cancelled:
            start_plan = self.planner.plan(self.config, PlanOperation.START, stop_plan.services,
                                            include_related=False)
            result.merge(self._run_start(start_plan))
        return result

    def ps(self) -> Dict[str, HealthSample]:
        """
        Probes every service once.

        :return: Service names and their current health samples.
        """
        return {
            name: self.monitor.probe(name, spec.health_check)
            for name, spec in self.config.services.items()
        }

    # Single-service path, shared with the scaling controller

    def start_service(self, name: str, replica: Optional[int] = None) -> RunResult:
        """
        Starts one service, or brings it up to ``replica`` containers, and
        waits for it to become healthy. Dependencies are not considered.
        """
        self._require(name)
        result = RunResult(operation="start")
        began = time.monotonic()
        runtime = ServiceRuntimeState(name=name, replica=replica)
        self._start_one(runtime, result, replica=replica)
        if runtime.state == ServiceState.RUNNING:
            self._await_health([runtime], result)
        return self._finish(result, [runtime], began)

    def stop_service(self, name: str, replica: Optional[int] = None) -> RunResult:
        """
        Stops one service, or only its ``replica``-th (most recent) container.
        """
        self._require(name)
        result = RunResult(operation="stop")
        began = time.monotonic()
        runtime = ServiceRuntimeState(name=name, replica=replica)
        self._stop_one(runtime, result, replica=replica)
        return self._finish(result, [runtime], began)

    def replica_count(self, name: str) -> int:
        """
        Number of running containers for a service: the count this instance
        last set, or else what the runtime reports.
        """
        self._require(name)
        with self._replicas_lock:
            if name in self._replicas:
                return self._replicas[name]

        output = self.executor.execute(InspectOp(service=name)).stdout
        try:
            rows = parse_container_rows(output)
        except ValueError as e:
            raise StackPilotError(f"Cannot count replicas of {name}: {e}") from e
        count = sum(1 for row in rows if str(row.get("State", "running")).lower() == "running")
        self._set_replicas(name, count)
        return count

    # Run internals

    def _run_start(self, plan: ExecutionPlan) -> RunResult:
        result = RunResult(operation="start")
        began = time.monotonic()
        states = {name: ServiceRuntimeState(name=name) for name in plan.services}
        logger.info("Starting services in order: %s", " -> ".join(", ".join(s) for s in plan.stages))

        for index, stage in enumerate(plan):
            if self.cancelled:
                break
            self._emit(result, "stage_started", stage=index, message=", ".join(stage))
            self._run_stage(stage, lambda name: self._start_one(states[name], result, stage=index))
            self._await_health([states[n] for n in stage if states[n].state == ServiceState.RUNNING],
                               result, stage=index)
            self._emit(result, "stage_finished", stage=index, message=", ".join(stage))

            failed = [n for n in stage if states[n].state == ServiceState.FAILED]
            if failed and self.policy.fail_fast:
                result.error = f"Halted after stage {index + 1}: {', '.join(failed)} failed"
                logger.error(result.error)
                break

        return self._finish(result, [states[name] for name in plan.services], began)

    def _run_stop(self, plan: ExecutionPlan, remove: bool) -> RunResult:
        result = RunResult(operation="stop")
        began = time.monotonic()
        states = {name: ServiceRuntimeState(name=name) for name in plan.services}
        logger.info("Stopping services in order: %s", " -> ".join(", ".join(s) for s in plan.stages))

        for index, stage in enumerate(plan):
            if self.cancelled:
                break
            self._emit(result, "stage_started", stage=index, message=", ".join(stage))
            self._run_stage(stage, lambda name: self._stop_one(states[name], result, stage=index, remove=remove))
            self._emit(result, "stage_finished", stage=index, message=", ".join(stage))

        failed = [name for name in plan.services if states[name].state == ServiceState.FAILED]
        if failed:
            result.error = f"Failed to stop: {', '.join(failed)}"
        return self._finish(result, [states[name] for name in plan.services], began)

    def _run_stage(self, names, task: Callable[[str], None]) -> None:
        """
        Runs ``task`` for every stage member, at most ``max_concurrency`` at a time,
        and returns once all of them are done.
        """
        workers = max(1, min(self.policy.max_concurrency, len(names)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stackpilot") as pool:
            futures = {pool.submit(task, name): name for name in names}
            for future in as_completed(futures):
                future.result()

    def _start_one(self, runtime: ServiceRuntimeState, result: RunResult,
                   stage: Optional[int] = None, replica: Optional[int] = None) -> None:
        if self.cancelled:
            return
        name = runtime.name
        spec = self.config.services[name]

        if not self._run_hooks(HookPoint.BEFORE_SERVICE_START, runtime, result, stage, replica=replica):
            return

        self._transition(runtime, ServiceState.STARTING, result, stage)
        op = StartOp(service=name) if replica is None else ScaleOp(service=name, replicas=replica)
        try:
            self._retrying(runtime, result, stage)(self._attempt, runtime, op)
        except ExecutionError as e:
            self._fail(runtime, e, result, stage)
            return

        self._transition(runtime, ServiceState.RUNNING, result, stage)
        self._set_replicas(name, replica if replica is not None else spec.scale.default)
        self._run_hooks(HookPoint.AFTER_SERVICE_START, runtime, result, stage, replica=replica)

        if not spec.health_check.enabled:
            self._transition(runtime, ServiceState.HEALTHY, result, stage)
            return
        monitor = self.monitor
        monitor.watch(name, spec.health_check)
        if not monitor.running:
            monitor.start()

    def _stop_one(self, runtime: ServiceRuntimeState, result: RunResult, stage: Optional[int] = None,
                  remove: bool = False, replica: Optional[int] = None) -> None:
        if self.cancelled:
            return
        name = runtime.name

        if not self._run_hooks(HookPoint.BEFORE_SERVICE_STOP, runtime, result, stage, replica=replica):
            return

        self._transition(runtime, ServiceState.STOPPING, result, stage)
        if replica is None:
            op = StopOp(service=name, remove=remove, grace_period=self.policy.stop_timeout)
        else:
            op = ScaleOp(service=name, replicas=replica - 1)
        try:
            self._attempt(runtime, op)
        except ExecutionError as e:
            self._fail(runtime, e, result, stage)
            return

        self._transition(runtime, ServiceState.STOPPED, result, stage)
        remaining = 0 if replica is None else max(replica - 1, 0)
        self._set_replicas(name, remaining)
        if remaining == 0 and self._monitor is not None:
            self._monitor.unwatch(name)
        self._run_hooks(HookPoint.AFTER_SERVICE_STOP, runtime, result, stage, replica=replica)

    def _attempt(self, runtime: ServiceRuntimeState, op):
        runtime.attempts += 1
        return self.executor.execute(op)

    def _retrying(self, runtime: ServiceRuntimeState, result: RunResult, stage: Optional[int]) -> Retrying:
        def before_sleep(retry_state):
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning("[%s] start attempt %d failed (%s), retrying in %.1fs",
                           runtime.name, retry_state.attempt_number, error, delay)
            self._emit(result, "retry", runtime=runtime, stage=stage,
                       message=f"attempt {retry_state.attempt_number} failed: {error}")

        return Retrying(
            stop=stop_after_attempt(self.policy.start_retries + 1) | stop_when_event_set(self._cancel_event),
            wait=wait_exponential(multiplier=self.policy.backoff_initial, max=self.policy.backoff_max),
            retry=retry_if_exception_type(ExecutionError),
            sleep=self._cancel_event.wait,
            before_sleep=before_sleep,
            reraise=True,
        )

    def _await_health(self, runtimes: List[ServiceRuntimeState], result: RunResult,
                      stage: Optional[int] = None) -> None:
        """
        Waits until every member has a passing sample, is declared a laggard,
        or the stage budget runs out. Only samples newer than the last one
        seen count.
        """
        if not runtimes:
            return
        monitor = self.monitor
        budget = sum(self.config.services[r.name].health_check.wait_budget for r in runtimes)
        began = time.monotonic()
        deadline = began + budget
        waiting = {runtime.name: runtime for runtime in runtimes}
        seen = dict.fromkeys(waiting, 0)
        streaks = dict.fromkeys(waiting, 0)
        logger.info("Waiting up to %.1fs for %s to become healthy", budget, ", ".join(waiting))

        while waiting:
            for name, runtime in list(waiting.items()):
                sample = monitor.latest(name)
                if sample is None or sample.sequence <= seen[name]:
                    continue
                seen[name] = sample.sequence

                if sample.verdict in _PASSING_VERDICTS:
                    self._transition(runtime, ServiceState.HEALTHY, result, stage)
                    del waiting[name]
                elif sample.verdict == HealthVerdict.UNHEALTHY:
                    streaks[name] += 1
                    limit = max(self.config.services[name].health_check.retries, 1)
                    if streaks[name] >= limit:
                        reason = f"{streaks[name]} consecutive unhealthy probes"
                        self._laggard(runtime, time.monotonic() - began, reason, result, stage)
                        del waiting[name]
                else:
                    streaks[name] = 0

            if not waiting:
                break
            now = time.monotonic()
            if now >= deadline:
                for runtime in waiting.values():
                    self._laggard(runtime, now - began, "timed out", result, stage)
                break
            if self._cancel_event.wait(min(self.policy.health_poll_interval, deadline - now)):
                break

    def _laggard(self, runtime: ServiceRuntimeState, waited: float, reason: str,
                 result: RunResult, stage: Optional[int]) -> None:
        error = HealthCheckTimeoutError(runtime.name, waited, reason)
        runtime.error = error
        logger.warning(str(error))
        self._transition(runtime, ServiceState.UNHEALTHY, result, stage)
        self._notify_error(runtime, error, result, stage)
        if self.policy.fail_fast:
            self._transition(runtime, ServiceState.FAILED, result, stage)
            self.monitor.unwatch(runtime.name)

    def _fail(self, runtime: ServiceRuntimeState, error: Exception,
              result: RunResult, stage: Optional[int]) -> None:
        runtime.error = error
        logger.error("[%s] %s", runtime.name, error)
        self._transition(runtime, ServiceState.FAILED, result, stage)
        self._notify_error(runtime, error, result, stage)

    def _run_hooks(self, point: HookPoint, runtime: ServiceRuntimeState, result: RunResult,
                   stage: Optional[int], **context) -> bool:
        """
        :return: False if a strict before-hook failed the service.
        """
        strict = point in (HookPoint.BEFORE_SERVICE_START, HookPoint.BEFORE_SERVICE_STOP) and (
            self.policy.strict_hooks or self.hooks.strict
        )
        try:
            failures = self.hooks.invoke(point, runtime.name, strict=strict, **context)
        except HookError as e:
            runtime.hook_failures.append(str(e))
            self._emit(result, "hook_failed", runtime=runtime, stage=stage, message=str(e))
            self._fail(runtime, e, result, stage)
            return False
        for failure in failures:
            runtime.hook_failures.append(failure)
            self._emit(result, "hook_failed", runtime=runtime, stage=stage, message=failure)
        return True

    def _notify_error(self, runtime: ServiceRuntimeState, error: Exception,
                      result: RunResult, stage: Optional[int]) -> None:
        for failure in self.hooks.invoke(HookPoint.ON_ERROR, runtime.name, strict=False,
                                         error=error, replica=runtime.replica):
            runtime.hook_failures.append(failure)
            self._emit(result, "hook_failed", runtime=runtime, stage=stage, message=failure)

    def _transition(self, runtime: ServiceRuntimeState, state: ServiceState,
                    result: RunResult, stage: Optional[int]) -> None:
        runtime.transition(state)
        label = runtime.name if runtime.replica is None else f"{runtime.name}#{runtime.replica}"
        logger.info("[%s] %s", label, state.value)
        self._emit(result, "transition", runtime=runtime, state=state, stage=stage)

    def _emit(self, result: RunResult, kind: str, runtime: Optional[ServiceRuntimeState] = None,
              state: Optional[ServiceState] = None, stage: Optional[int] = None, message: str = "") -> None:
        event = OrchestrationEvent(
            kind=kind,
            service=runtime.name if runtime else None,
            state=state,
            message=message,
            stage=stage,
        )
        with self._events_lock:
            result.events.append(event)
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                logger.exception("Event listener failed on %s", kind)

    def _finish(self, result: RunResult, runtimes: List[ServiceRuntimeState], began: float) -> RunResult:
        cancelled = self.cancelled
        for runtime in runtimes:
            result.add(ServiceOutcome.from_state(
                runtime,
                skipped=runtime.state == ServiceState.PENDING,
                cancelled=cancelled and runtime.state in _INTERRUPTED_STATES,
            ))
        if cancelled:
            result.cancelled = True
            result.error = result.error or "Cancelled"
            self._emit(result, "cancelled", message="run cancelled")
        result.elapsed = time.monotonic() - began
        return result

    def _set_replicas(self, name: str, count: int) -> None:
        with self._replicas_lock:
            self._replicas[name] = count

    def _require(self, name: str) -> None:
        if name not in self.config.services:
            raise ConfigurationError(f"unknown service {name!r}", field_path="services")
