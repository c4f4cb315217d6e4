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
Health monitoring for running services.

A background thread probes every watched service through the runtime's
inspect operation and publishes the latest sample per service. Readers get
an immutable snapshot and never take a lock.
"""
import itertools
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from ..errors import ExecutionError
from ..MODELS.operations import InspectOp
from ..MODELS.runtime_state import HealthSample, HealthVerdict
from ..MODELS.service_spec import HealthCheckPolicy
from ..UTILS.durations import parse_size

logger = logging.getLogger(__name__)


@dataclass
class _Watch:
    policy: HealthCheckPolicy
    since: float
    last_probe: Optional[float] = None


def _row_verdict(row: Mapping[str, Any]) -> HealthVerdict:
    state = str(row.get("State", "")).lower()
    health = str(row.get("Health", "")).lower()
    status = str(row.get("Status", "")).lower()

    if state and state != "running":
        return HealthVerdict.UNHEALTHY
    if not health:
        # Older runtimes only report "Up 3 minutes (healthy)"
        for verdict in (HealthVerdict.UNHEALTHY, HealthVerdict.STARTING, HealthVerdict.HEALTHY):
            if f"({verdict.value}" in status:
                health = verdict.value
                break
    if not state and status and not status.startswith("up"):
        return HealthVerdict.UNHEALTHY

    if health == "unhealthy":
        return HealthVerdict.UNHEALTHY
    if health == "starting":
        return HealthVerdict.STARTING
    if health == "healthy":
        return HealthVerdict.HEALTHY
    return HealthVerdict.NONE


def parse_container_rows(output: str) -> List[Mapping[str, Any]]:
    """
    Reads ``ps --format json`` output, either one JSON array or one object per line.

    :raises ValueError: If the output is not JSON.
    """
    text = output.strip()
    if not text:
        return []
    try:
        if text.startswith("["):
            rows = json.loads(text)
        else:
            rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    except json.JSONDecodeError as e:
        raise ValueError(f"unreadable inspect output: {e}") from e
    return [row for row in rows if isinstance(row, dict)]


def parse_inspect_output(output: str) -> Tuple[HealthVerdict, Optional[float], Optional[int], str]:
    """
    Maps the runtime's JSON container listing to a verdict plus resource usage.

    :return: (verdict, cpu percent, memory bytes, detail)
    :raises ValueError: If the output is not JSON.
    """
    rows = parse_container_rows(output)
    if not rows:
        return HealthVerdict.UNHEALTHY, None, None, "no containers"

    verdicts = [_row_verdict(row) for row in rows]
    if HealthVerdict.UNHEALTHY in verdicts:
        verdict = HealthVerdict.UNHEALTHY
    elif HealthVerdict.STARTING in verdicts:
        verdict = HealthVerdict.STARTING
    elif HealthVerdict.HEALTHY in verdicts:
        verdict = HealthVerdict.HEALTHY
    else:
        verdict = HealthVerdict.NONE

    cpu = None
    memory = None
    for row in rows:
        cpu_text = str(row.get("CPUPerc", "")).strip().rstrip("%")
        if cpu_text:
            try:
                cpu = (cpu or 0.0) + float(cpu_text)
            except ValueError:
                pass
        used = parse_size(str(row.get("MemUsage", "")).split("/")[0])
        if used is not None:
            memory = (memory or 0) + used

    detail = ", ".join(f"{row.get('Name', '?')}={v.value}" for row, v in zip(rows, verdicts))
    return verdict, cpu, memory, detail


class HealthMonitor:
    """
    Monitors the health of watched services on a fixed tick.
    Each service is probed when its own health-check interval has elapsed.
    """

    def __init__(self, executor, interval: float = 2.0, history_size: int = 0):
        """
        Initializes the health monitor.

        :param executor: Runs the inspect operation.
        :param interval: Seconds between probe cycles.
        :param history_size: Samples kept per service besides the latest; 0 keeps none.
        """
        self.executor = executor
        self.interval = interval
        self.history_size = history_size
        self.running = False
        self.thread: Optional[threading.Thread] = None

        self._stop_event = threading.Event()
        self._watch_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._watched: Dict[str, _Watch] = {}
        self._latest: Mapping[str, HealthSample] = MappingProxyType({})
        self._history: Dict[str, Deque[HealthSample]] = {}
        self._sequence = itertools.count(1)

    def start(self):
        """
        Starts the health monitoring thread.
        """
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._monitor_loop, name="health-monitor", daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the health monitoring thread.
        """
        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=max(self.interval, 1.0) + 1.0)
            self.thread = None

    def watch(self, name: str, policy: HealthCheckPolicy) -> None:
        """Adds a service to the probe set; an existing watch is restarted."""
        with self._watch_lock:
            self._watched[name] = _Watch(policy=policy, since=time.monotonic())
        self._drop_sample(name)

    def unwatch(self, name: str) -> None:
        with self._watch_lock:
            self._watched.pop(name, None)
        self._drop_sample(name)

    def watched(self) -> List[str]:
        with self._watch_lock:
            return list(self._watched)

    def latest(self, name: str) -> Optional[HealthSample]:
        return self._latest.get(name)

    def snapshot(self) -> Mapping[str, HealthSample]:
        """The current sample map. Immutable; replaced wholesale on every publish."""
        return self._latest

    def history(self, name: str) -> List[HealthSample]:
        return list(self._history.get(name, ()))

    def probe_once(self, force: bool = True) -> Dict[str, HealthSample]:
        """
        Runs one probe cycle and publishes the results.

        :param force: Probe every watched service, even if its interval has not elapsed.
        """
        with self._cycle_lock:
            now = time.monotonic()
            with self._watch_lock:
                due = [
                    (name, watch) for name, watch in self._watched.items()
                    if force or watch.last_probe is None or now - watch.last_probe >= watch.policy.interval
                ]

            samples = {}
            for name, watch in due:
                watch.last_probe = now
                try:
                    sample = self.probe(name, watch.policy, in_start_period=(now - watch.since) < watch.policy.start_period)
                except Exception as e:
                    logger.exception("Health probe for %s crashed", name)
                    sample = HealthSample(service=name, verdict=HealthVerdict.UNHEALTHY,
                                          sequence=next(self._sequence), detail=str(e))
                samples[name] = sample

            if samples:
                self._publish(samples)
            return samples

    def probe(self, name: str, policy: Optional[HealthCheckPolicy] = None,
              in_start_period: bool = False) -> HealthSample:
        """
        Inspects one service without publishing the result.

        A failed or unreadable probe yields an unhealthy sample.
        """
        timeout = policy.timeout if policy else None
        try:
            result = self.executor.execute(InspectOp(service=name, timeout=timeout))
            verdict, cpu, memory, detail = parse_inspect_output(result.stdout)
        except (ExecutionError, ValueError) as e:
            verdict, cpu, memory, detail = HealthVerdict.UNHEALTHY, None, None, str(e)

        if in_start_period and verdict == HealthVerdict.UNHEALTHY:
            verdict = HealthVerdict.STARTING

        return HealthSample(
            service=name,
            verdict=verdict,
            sequence=next(self._sequence),
            cpu_percent=cpu,
            memory_bytes=memory,
            detail=detail,
        )

    def _publish(self, samples: Mapping[str, HealthSample]) -> None:
        with self._watch_lock:
            # A service unwatched while its probe was in flight stays dropped.
            samples = {name: s for name, s in samples.items() if name in self._watched}
        updated = dict(self._latest)
        updated.update(samples)
        self._latest = MappingProxyType(updated)

        if self.history_size:
            for name, sample in samples.items():
                self._history.setdefault(name, deque(maxlen=self.history_size)).append(sample)

        for name, sample in samples.items():
            logger.debug("Health %s: %s %s", name, sample.verdict.value, sample.detail)

    def _drop_sample(self, name: str) -> None:
        with self._cycle_lock:
            if name in self._latest:
                updated = dict(self._latest)
                del updated[name]
                self._latest = MappingProxyType(updated)
            self._history.pop(name, None)

    def _monitor_loop(self):
        """
        Internal loop that periodically probes the watched services.
        """
        while self.running:
            try:
                self.probe_once(force=False)
            except Exception:
                logger.exception("Health monitor cycle failed")
            if self._stop_event.wait(self.interval):
                break
