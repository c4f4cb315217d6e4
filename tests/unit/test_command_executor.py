import json
import shlex
import sys

import pytest

from stackpilot.errors import ConfigurationError, ExecutionError, ExecutionFailureKind
from stackpilot.MODELS.operations import BuildOp, ExecOp, InspectOp, LogsOp, PullOp, ScaleOp, StartOp, StopOp
from stackpilot.RUNNERS.command_executor import CommandExecutor

FAKE_RUNTIME = """
import json
import sys
import time

args = sys.argv[1:]
if "fail" in args:
    sys.stderr.write("boom\\n")
    sys.exit(3)
if "sleep" in args:
    time.sleep(10)
if "binary" in args:
    sys.stdout.buffer.write(b"caf\\xe9 \\xff\\n")
    sys.exit(0)
print(json.dumps(args))
"""


@pytest.fixture
def runtime(tmp_path):
    script = tmp_path / "fake_runtime.py"
    script.write_text(FAKE_RUNTIME)
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


def test_argv_per_operation():
    executor = CommandExecutor("shop", compose_file="/srv/shop/docker-compose.yml")
    base = ["docker", "compose", "-f", "/srv/shop/docker-compose.yml", "-p", "shop"]

    assert executor.build_argv(StartOp("api")) == base + ["up", "-d", "api"]
    assert executor.build_argv(StopOp("api")) == base + ["stop", "api"]
    assert executor.build_argv(StopOp("api", grace_period=5)) == base + ["stop", "-t", "5", "api"]
    assert executor.build_argv(StopOp("api", remove=True)) == base + ["rm", "-s", "-f", "api"]
    assert executor.build_argv(InspectOp("api")) == base + ["ps", "--all", "--format", "json", "api"]
    assert executor.build_argv(LogsOp("api", tail=50, since="10m", timestamps=True)) == base + [
        "logs", "--no-color", "--tail", "50", "--since", "10m", "--timestamps", "api"
    ]
    assert executor.build_argv(ExecOp("api", ("ls", "-la"))) == base + ["exec", "-T", "api", "ls", "-la"]
    assert executor.build_argv(ExecOp("api", interactive=True, index=2)) == base + ["exec", "--index", "2", "api", "sh"]
    assert executor.build_argv(ScaleOp("api", 4)) == base + ["up", "-d", "--no-recreate", "--scale", "api=4", "api"]
    assert executor.build_argv(LogsOp("api", follow=True)) == base + ["logs", "--no-color", "--follow", "api"]
    assert executor.build_argv(BuildOp("api")) == base + ["build", "api"]
    assert executor.build_argv(BuildOp("api", no_cache=True, pull=True)) == base + ["build", "--no-cache", "--pull", "api"]
    assert executor.build_argv(PullOp("api")) == base + ["pull", "api"]


def test_unknown_operation_is_a_type_error():
    with pytest.raises(TypeError):
        CommandExecutor("shop").build_argv(object())


def test_runtime_command_template():
    executor = CommandExecutor("shop", runtime_command="docker compose -p {{ project }}-prod --ansi never")
    assert executor.build_argv(PullOp("api")) == ["docker", "compose", "-p", "shop-prod", "--ansi", "never", "pull", "api"]


def test_runtime_command_template_errors():
    with pytest.raises(ConfigurationError):
        CommandExecutor("shop", runtime_command="docker {{ unknown_variable }}")
    with pytest.raises(ConfigurationError):
        CommandExecutor("shop", runtime_command="  ")


def test_from_config(three_tier):
    executor = CommandExecutor.from_config(three_tier)
    assert executor.project_name == "demo"
    assert executor.default_timeout == three_tier.orchestration.command_timeout
    assert executor.describe(StartOp("web"))[-3:] == ("up", "-d", "web")


def test_execute_success(runtime):
    result = CommandExecutor("shop", runtime_command=runtime).execute(StartOp("api"))
    assert result.success
    assert json.loads(result.stdout) == ["-p", "shop", "up", "-d", "api"]
    assert result.elapsed >= 0


def test_execute_non_zero_exit(runtime):
    executor = CommandExecutor("shop", runtime_command=runtime)
    with pytest.raises(ExecutionError) as exc:
        executor.execute(ExecOp("api", ("fail",)))
    assert exc.value.kind == ExecutionFailureKind.NON_ZERO_EXIT
    assert exc.value.result.exit_code == 3
    assert "boom" in exc.value.result.stderr
    assert "boom" in str(exc.value)


def test_execute_timeout(runtime):
    executor = CommandExecutor("shop", runtime_command=runtime)
    with pytest.raises(ExecutionError) as exc:
        executor.execute(ExecOp("api", ("sleep",), timeout=0.5))
    assert exc.value.kind == ExecutionFailureKind.TIMEOUT
    assert exc.value.result.exit_code is None


def test_execute_spawn_failure(tmp_path):
    executor = CommandExecutor("shop", runtime_command=str(tmp_path / "no-such-runtime"))
    with pytest.raises(ExecutionError) as exc:
        executor.execute(InspectOp("api"))
    assert exc.value.kind == ExecutionFailureKind.SPAWN_FAILURE
    assert exc.value.result is None


def test_execute_undecodable_output(runtime):
    result = CommandExecutor("shop", runtime_command=runtime).execute(ExecOp("api", ("binary",)))
    assert result.success
    assert result.stdout == "caf� �\n"
