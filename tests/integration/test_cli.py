import json
import os
import shlex
import shutil
import sys

import pytest
import yaml
from click.testing import CliRunner

from stackpilot.CLI.main import cli

FAKE_RUNTIME = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_runtime.py")

SHOP = {
    "services": {
        "database": {"image": "postgres:16"},
        "api": {
            "image": "shop/api",
            "depends_on": ["database"],
            "healthcheck": {"test": ["CMD", "true"], "interval": "10ms", "timeout": "5s", "retries": 2},
        },
        "web": {"image": "shop/web", "depends_on": ["api"], "ports": ["8080:80"]},
    }
}


def write_project(directory, compose, persisted=None):
    """
    Lays out a compose project whose runtime is the fake script copied into it.
    """
    script = directory / "fake_runtime.py"
    shutil.copy(FAKE_RUNTIME, script)
    (directory / "docker-compose.yml").write_text(yaml.safe_dump(compose))

    record = {
        "config_version": "1.0",
        "project_name": "shop",
        "runtime_command": f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}",
        "orchestration": {"backoff_initial": 0, "health_poll_interval": 0.01, "command_timeout": 30},
    }
    record.update(persisted or {})
    (directory / "stackpilot.config.json").write_text(json.dumps(record))
    return directory


def calls(directory):
    log = directory / "calls.log"
    return log.read_text().splitlines() if log.exists() else []


@pytest.fixture
def shop(tmp_path):
    return write_project(tmp_path, SHOP, {"services": {"api": {"scale": {"min": 1, "max": 3}}}})


def run(*args):
    return CliRunner().invoke(cli, list(args))


def test_cli_help():
    result = run("--help")
    assert result.exit_code == 0
    for command in ("up", "down", "scale", "plan", "discover", "build", "pull", "rebuild"):
        assert command in result.output


def test_discover(shop):
    (shop / "deploy").mkdir()
    (shop / "deploy" / "docker-compose.prod.yml").write_text("services: {}\n")

    result = run("--root", str(shop), "discover")
    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    # the main file at the top level ranks first
    assert lines[2].endswith(str(shop / "docker-compose.yml"))
    assert "prod" in lines[3]


def test_discover_nothing(tmp_path):
    result = run("--root", str(tmp_path), "discover")
    assert result.exit_code == 0
    assert "No project detected." in result.output


def test_plan(shop):
    result = run("--root", str(shop), "plan")
    assert result.exit_code == 0
    assert result.stdout.splitlines() == ["Stage 1: database", "Stage 2: api", "Stage 3: web"]

    result = run("--root", str(shop), "plan", "--stop", "api")
    assert result.stdout.splitlines() == ["Stage 1: web", "Stage 2: api"]


def test_plan_commands(shop):
    result = run("--root", str(shop), "plan", "--commands", "database")
    assert result.exit_code == 0
    assert "Stage 1: database" in result.output
    assert "-p shop up -d database" in result.output
    assert calls(shop) == []


def test_config_shows_resolved_settings(shop):
    result = run("--root", str(shop), "config")
    assert result.exit_code == 0
    data = yaml.safe_load(result.stdout)
    assert data["project_name"] == "shop"
    assert set(data["services"]) == {"database", "api", "web"}
    assert data["services"]["api"]["scale"]["max"] == 3
    assert data["services"]["api"]["health_check"]["enabled"] is True

    result = run("--root", str(shop), "config", "--json")
    assert json.loads(result.stdout)["services"]["web"]["depends_on"] == ["api"]


def test_config_save_creates_a_record(tmp_path):
    (tmp_path / "docker-compose.yml").write_text(yaml.safe_dump(SHOP))
    result = run("--root", str(tmp_path), "--project-name", "shop", "config", "--save")
    assert result.exit_code == 0

    record = json.loads((tmp_path / "stackpilot.config.json").read_text())
    assert record["config_version"] == "1.0"
    assert record["project_name"] == "shop"
    assert record["services"]["web"]["depends_on"] == ["api"]

    # the saved record resolves to the same configuration
    again = run("--root", str(tmp_path), "config", "--json")
    assert json.loads(again.stdout)["project_name"] == "shop"


def test_up_and_down(shop):
    result = run("--root", str(shop), "up", "--json")
    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["verdict"] == "success"
    assert {s["name"]: s["state"] for s in report["services"]} == {
        "database": "healthy", "api": "healthy", "web": "healthy",
    }

    log = calls(shop)
    starts = [line for line in log if line.startswith("up -d")]
    assert starts == ["up -d database", "up -d api", "up -d web"]
    probe = log.index("ps --all --format json api")
    assert log.index("up -d api") < probe < log.index("up -d web")

    result = run("--root", str(shop), "down", "--rm")
    assert result.exit_code == 0, result.output
    assert "stop: success" in result.output
    stops = [line for line in calls(shop) if line.startswith("rm")]
    assert stops == ["rm -s -f web", "rm -s -f api", "rm -s -f database"]


def test_scale_and_ps(shop):
    assert run("--root", str(shop), "up").exit_code == 0

    result = run("--root", str(shop), "scale", "api", "3")
    assert result.exit_code == 0, result.output
    assert "api#3" in result.output
    scaled = [line for line in calls(shop) if "--scale" in line]
    assert scaled == ["up -d --no-recreate --scale api=2 api", "up -d --no-recreate --scale api=3 api"]

    result = run("--root", str(shop), "ps")
    assert result.exit_code == 0
    rows = {line.split()[0]: line.split() for line in result.stdout.splitlines()[2:]}
    assert rows["api"][1:] == ["healthy", "4.5%", "30.0MiB"]
    assert rows["web"][1] == "healthy"


def test_scale_out_of_bounds(shop):
    result = run("--root", str(shop), "scale", "api", "5")
    assert result.exit_code == 2
    assert "allowed range is [1, 3]" in result.output
    assert calls(shop) == []


def test_failed_start_exits_non_zero(tmp_path):
    compose = {"services": {"broken": {"image": "nope"}, "web": {"image": "shop/web", "depends_on": ["broken"]}}}
    project = write_project(tmp_path, compose, {"orchestration": {"backoff_initial": 0, "start_retries": 1}})

    result = run("--root", str(project), "up")
    assert result.exit_code == 1
    assert "pull access denied" in result.output
    assert "skipped" in result.output
    assert calls(project).count("up -d broken") == 2
    assert "up -d web" not in calls(project)


def test_logs_and_exec(shop):
    result = run("--root", str(shop), "logs", "database", "--tail", "5")
    assert result.exit_code == 0
    assert "database  | ready" in result.output
    assert calls(shop) == ["logs --no-color --tail 5 database"]

    result = run("--root", str(shop), "exec", "-T", "api", "echo", "hello")
    assert result.exit_code == 0
    assert result.output.strip() == "echo hello"


def test_missing_project(tmp_path):
    result = run("--root", str(tmp_path), "up")
    assert result.exit_code == 2
    assert "No compose file found" in result.output


def test_dependency_cycle(tmp_path):
    compose = {"services": {"a": {"depends_on": ["b"]}, "b": {"depends_on": ["a"]}}}
    project = write_project(tmp_path, compose)

    result = run("--root", str(project), "up")
    assert result.exit_code == 2
    assert "Circular dependency" in result.output
    assert calls(project) == []


def test_unknown_service(shop):
    result = run("--root", str(shop), "logs", "cache")
    assert result.exit_code == 2
    assert "unknown service" in result.output


BUILDABLE = {
    "services": {
        "database": {"image": "postgres:16"},
        "api": {"build": "./api", "depends_on": ["database"]},
        "web": {"image": "shop/web", "depends_on": ["api"]},
    }
}


def test_build_and_pull(tmp_path):
    project = write_project(tmp_path, BUILDABLE)

    result = run("--root", str(project), "build")
    assert result.exit_code == 0, result.output
    assert "build api done" in result.stdout
    assert calls(project) == ["build api"]

    result = run("--root", str(project), "build", "--no-cache", "--pull", "web")
    assert result.exit_code == 0, result.output
    assert calls(project)[-1] == "build --no-cache --pull web"

    result = run("--root", str(project), "pull")
    assert result.exit_code == 0, result.output
    assert [line for line in calls(project) if line.startswith("pull")] == ["pull database", "pull web"]


def test_build_failure_exits_non_zero(tmp_path):
    compose = {"services": {"broken": {"build": "."}}}
    project = write_project(tmp_path, compose)

    result = run("--root", str(project), "build")
    assert result.exit_code == 1
    assert "failed to build broken" in result.output


def test_rebuild_builds_then_starts(tmp_path):
    project = write_project(tmp_path, BUILDABLE)

    result = run("--root", str(project), "rebuild", "api")
    assert result.exit_code == 0, result.output
    assert "start: success" in result.output
    issued = [line for line in calls(project) if not line.startswith("ps")]
    assert issued == ["build --no-cache api", "up -d database", "up -d api"]


def test_build_unknown_service(tmp_path):
    project = write_project(tmp_path, BUILDABLE)
    result = run("--root", str(project), "build", "cache")
    assert result.exit_code == 2
    assert calls(project) == []


def test_logs_follow(shop):
    result = run("--root", str(shop), "logs", "--follow", "database")
    assert result.exit_code == 0, result.output
    assert calls(shop) == ["logs --no-color --follow database"]
