import json
import threading

import pytest

from stackpilot.errors import ExecutionError, ExecutionFailureKind
from stackpilot.MODELS.operations import CommandResult, InspectOp
from stackpilot.RESOLVERS.config_resolver import ConfigResolver


class FakeExecutor:
    """
    Stands in for the runtime. Records every operation and answers from
    scripted health verdicts, replica counts and failures.
    """
    def __init__(self, health=None, replicas=None, failures=None):
        self.health = dict(health or {})
        self.replicas = dict(replicas or {})
        # (kind, service) -> how many more calls fail
        self.failures = dict(failures or {})
        self.calls = []
        self.lock = threading.Lock()

    def execute(self, op):
        with self.lock:
            self.calls.append(op)
            key = (op.kind, op.service)
            failing = self.failures.get(key, 0) > 0
            if failing:
                self.failures[key] -= 1

        if failing:
            result = CommandResult(argv=(op.kind, op.service), exit_code=1, stderr="boom")
            raise ExecutionError(f"{op.kind} {op.service} exited with code 1",
                                 ExecutionFailureKind.NON_ZERO_EXIT, op, result)

        if isinstance(op, InspectOp):
            rows = [
                {
                    "Name": f"demo-{op.service}-{i}",
                    "Service": op.service,
                    "State": "running",
                    "Health": self.health.get(op.service, ""),
                }
                for i in range(1, self.replicas.get(op.service, 1) + 1)
            ]
            return CommandResult(argv=("ps", op.service), exit_code=0, stdout=json.dumps(rows))
        return CommandResult(argv=(op.kind, op.service), exit_code=0)

    def ops(self, kind=None, service=None):
        with self.lock:
            calls = list(self.calls)
        return [
            op for op in calls
            if (kind is None or op.kind == kind) and (service is None or op.service == service)
        ]


def _healthcheck(retries=3, interval="10ms", timeout="10s"):
    return {"test": ["CMD", "true"], "interval": interval, "timeout": timeout, "retries": retries}


def _make_config(services, persisted=None, **orchestration):
    """
    Resolves compose-style service mappings with fast orchestration timings.
    """
    persisted = dict(persisted or {})
    persisted.setdefault("project_name", "demo")
    policy = {"backoff_initial": 0, "health_poll_interval": 0.01}
    policy.update(persisted.get("orchestration") or {})
    policy.update(orchestration)
    persisted["orchestration"] = policy
    return ConfigResolver().resolve(services, persisted)


THREE_TIER = {
    "database": {"image": "postgres:16"},
    "api": {"image": "shop/api", "depends_on": ["database"]},
    "web": {"image": "shop/web", "depends_on": ["api"]},
}


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def fake_executor():
    """Factory for executors with scripted behaviour."""
    return FakeExecutor


@pytest.fixture
def make_config():
    return _make_config


@pytest.fixture
def healthcheck():
    return _healthcheck


@pytest.fixture
def three_tier():
    return _make_config(THREE_TIER)
