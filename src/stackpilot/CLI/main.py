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
Command Line Interface for StackPilot.
"""
import functools
import json
import os
import sys
from concurrent.futures import ThreadPoolExecutor

import click
import yaml

from .. import __version__
from ..errors import (
    ConfigurationError,
    DependencyCycleError,
    DiscoveryError,
    ExecutionError,
    ScalingError,
    StackPilotError,
)
from ..MANAGERS.scaling_controller import ScalingController
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.compose_candidate import EnvironmentVariant
from ..MODELS.execution_plan import PlanOperation
from ..MODELS.operations import BuildOp, ExecOp, LogsOp, PullOp, StartOp, StopOp
from ..MODELS.run_result import EXIT_CONFIGURATION_ERROR, EXIT_FAILURE
from ..PARSERS.compose_parser import ComposeParser
from ..RESOLVERS.compose_file_resolver import ComposeFileResolver
from ..RESOLVERS.config_resolver import ConfigResolver
from ..RUNNERS.command_executor import CommandExecutor
from ..RUNNERS.execution_planner import ExecutionPlanner
from ..UTILS.logging_config import setup_logging

DEFAULT_CONFIG_FILES = ("stackpilot.config.json", "stackpilot.config.yml", "stackpilot.config.yaml")

_SETUP_ERRORS = (DiscoveryError, ConfigurationError, DependencyCycleError, ScalingError)


def guarded(fn):
    """
    Turns engine errors into a message on stderr and the matching exit code.
    """
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except _SETUP_ERRORS as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_CONFIGURATION_ERROR)
        except StackPilotError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_FAILURE)
    return wrapper


def _find_config_file(directory):
    for name in DEFAULT_CONFIG_FILES:
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            return path
    return None


def _read_persisted(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            # JSON is a subset of YAML
            return yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid configuration file {path}: {e}") from e


def _compose_file(ctx):
    obj = ctx.obj
    if obj.get("compose_file"):
        return os.path.abspath(obj["compose_file"])
    candidates = ComposeFileResolver().scan(obj["root"])
    variant = EnvironmentVariant(obj["variant"]) if obj.get("variant") else None
    selected = ComposeFileResolver.select(candidates, variant)
    if selected is None:
        wanted = f" for variant {variant.value}" if variant else ""
        raise DiscoveryError(f"No compose file found under {os.path.abspath(obj['root'])}{wanted}")
    return selected.path


def _load_config(ctx):
    """
    Discovers, parses and resolves the project once per invocation.
    """
    obj = ctx.obj
    if "config" in obj:
        return obj["config"]

    compose_file = _compose_file(ctx)
    definition = ComposeParser().parse(compose_file)

    config_path = obj.get("config_path") or _find_config_file(os.path.dirname(compose_file))
    persisted = _read_persisted(config_path) if config_path else None

    config = ConfigResolver().resolve(definition, persisted, project_name=obj.get("project_name"))
    obj["config"] = config
    obj["config_file"] = config_path
    return config


def _orchestrator(ctx, best_effort=False):
    config = _load_config(ctx)
    if best_effort:
        config = config.model_copy(
            update={"orchestration": config.orchestration.model_copy(update={"fail_fast": False})}
        )
    return ServiceOrchestrator(config)


def _run_cancellable(orchestrator, fn, *args, **kwargs):
    """
    Runs an orchestration off the main thread so Ctrl+C can request a clean cancel.
    """
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(fn, *args, **kwargs)
        try:
            return future.result()
        except KeyboardInterrupt:
            click.echo("\nCancelling... waiting for in-flight operations.", err=True)
            orchestrator.cancel()
            return future.result()
        finally:
            orchestrator.close()


def _report(result, as_json):
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(f"{'SERVICE':20} {'STATE':10} {'TIME':>8}  ERROR")
        click.echo("-" * 60)
        for key, outcome in result.outcomes.items():
            if outcome.skipped:
                state = "skipped"
            elif outcome.cancelled:
                state = "cancelled"
            else:
                state = outcome.state.value
            click.echo(f"{key:20} {state:10} {outcome.elapsed:7.1f}s  {outcome.error or ''}")
            for failure in outcome.hook_failures:
                click.echo(f"{'':20} hook: {failure}")
        click.echo(f"\n{result.operation}: {result.verdict.value} in {result.elapsed:.1f}s")
        if result.error:
            click.echo(result.error, err=True)
    sys.exit(result.exit_code)


@click.group()
@click.version_option(version=__version__, prog_name="stackpilot")
@click.option('--root', '-r', default='.', type=click.Path(file_okay=False), help='Project directory to scan')
@click.option('--file', '-f', 'compose_file', default=None, help='Compose file path (skips discovery)')
@click.option('--config', '-c', 'config_path', default=None,
              help='Project configuration file, JSON or YAML (default: stackpilot.config.json next to the compose file)')
@click.option('--variant', type=click.Choice([v.value for v in EnvironmentVariant if v != EnvironmentVariant.NONE]),
              default=None, help='Prefer compose files of this environment')
@click.option('--project-name', '-p', default=None, help='Project name when none is configured')
@click.option('--verbose', '-v', is_flag=True, help='Log progress.')
@click.option('--quiet', '-q', is_flag=True, help='Only log errors.')
@click.option('--debug', is_flag=True, help='Log everything, including runtime commands.')
@click.pass_context
def cli(ctx, root, compose_file, config_path, variant, project_name, verbose, quiet, debug):
    """
    StackPilot - dependency-aware lifecycle manager for compose projects.

    Starts services stage by stage, waits for health checks, and scales
    replicas within configured bounds.
    """
    ctx.ensure_object(dict)
    ctx.obj.update(
        root=root,
        compose_file=compose_file,
        config_path=config_path,
        variant=variant,
        project_name=project_name,
    )

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("STACKPILOT_LOG_LEVEL", "WARNING")
    setup_logging(level=level, log_file=os.environ.get("STACKPILOT_LOG_FILE"))


@cli.command()
@click.option('--max-depth', default=6, show_default=True, help='Directory levels to descend')
@click.pass_context
@guarded
def discover(ctx, max_depth):
    """List compose files found under the project root, best first."""
    candidates = ComposeFileResolver(max_depth=max_depth).scan(ctx.obj["root"])
    if not candidates:
        click.echo("No project detected.")
        return
    click.echo(f"{'#':3} {'VARIANT':8} {'DEPTH':5} {'MAIN':4}  PATH")
    click.echo("-" * 60)
    for rank, candidate in enumerate(candidates, 1):
        main_flag = "yes" if candidate.is_main else ""
        click.echo(f"{rank:<3} {candidate.variant.value:8} {candidate.depth:<5} {main_flag:4}  {candidate.path}")


@cli.command()
@click.option('--save', is_flag=True, help='Write the resolved settings to the project configuration file')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
@guarded
def config(ctx, save, as_json):
    """Show the resolved project configuration."""
    resolved = _load_config(ctx)
    data = resolved.model_dump(mode="json")
    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)

    if save:
        path = ctx.obj.get("config_file") or os.path.join(
            os.path.dirname(resolved.compose_file or os.path.abspath(ctx.obj["root"])),
            DEFAULT_CONFIG_FILES[0],
        )
        record = ConfigResolver.to_persisted(resolved).model_dump(mode="json", exclude_none=True)
        with open(path, "w", encoding="utf-8") as f:
            if path.endswith(".json"):
                json.dump(record, f, indent=2)
                f.write("\n")
            else:
                yaml.safe_dump(record, f, sort_keys=False)
        click.echo(f"Saved {path}", err=True)


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--stop', is_flag=True, help='Show the shutdown order instead')
@click.option('--commands', is_flag=True, help='Show the runtime command for each service')
@click.pass_context
@guarded
def plan(ctx, services, stop, commands):
    """Show the stage plan without running anything."""
    resolved = _load_config(ctx)
    operation = PlanOperation.STOP if stop else PlanOperation.START
    execution_plan = ExecutionPlanner().plan(resolved, operation, services or None)
    executor = CommandExecutor.from_config(resolved) if commands else None

    for index, stage in enumerate(execution_plan, 1):
        click.echo(f"Stage {index}: {', '.join(stage)}")
        if executor:
            for name in stage:
                op = StopOp(service=name) if stop else StartOp(service=name)
                click.echo(f"    {' '.join(executor.describe(op))}")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--best-effort', is_flag=True, help='Keep going past failed or unhealthy services')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
@guarded
def up(ctx, services, best_effort, as_json):
    """Start services and their dependencies, stage by stage."""
    orchestrator = _orchestrator(ctx, best_effort)
    result = _run_cancellable(orchestrator, orchestrator.up, services or None)
    _report(result, as_json)


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--remove', '--rm', is_flag=True, help='Remove containers after stopping')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
@guarded
def down(ctx, services, remove, as_json):
    """Stop services and everything that depends on them."""
    orchestrator = _orchestrator(ctx)
    result = _run_cancellable(orchestrator, orchestrator.down, services or None, remove=remove)
    _report(result, as_json)


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--best-effort', is_flag=True, help='Keep going past failed or unhealthy services')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
@guarded
def restart(ctx, services, best_effort, as_json):
    """Stop then start services together with their dependents."""
    orchestrator = _orchestrator(ctx, best_effort)
    result = _run_cancellable(orchestrator, orchestrator.restart, services or None)
    _report(result, as_json)


def _image_services(ctx, services, wanted):
    """
    Services to build or pull. Explicit names are taken as given, otherwise
    every service ``wanted`` accepts, in start order.
    """
    resolved = _load_config(ctx)
    for name in services:
        if name not in resolved.services:
            raise ConfigurationError(f"unknown service {name!r}", field_path="services")
    if services:
        return resolved, list(services)
    order = ExecutionPlanner().plan(resolved).services
    return resolved, [name for name in order if wanted(resolved.services[name])]


def _run_image_ops(resolved, ops, err=False):
    executor = CommandExecutor.from_config(resolved)
    for op in ops:
        click.echo(f"==> {op.kind} {op.service}", err=True)
        try:
            result = executor.execute(op)
        except ExecutionError as e:
            if e.result is not None and e.result.output:
                click.echo(e.result.output, nl=False, err=True)
            raise
        click.echo(result.stdout, nl=False, err=err)


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--no-cache', is_flag=True, help='Do not use the build cache')
@click.option('--pull', is_flag=True, help='Always pull newer base images')
@click.option('--timeout', type=float, default=None, help='Seconds to allow per service')
@click.pass_context
@guarded
def build(ctx, services, no_cache, pull, timeout):
    """Build images of services that have a build context."""
    resolved, names = _image_services(ctx, services, lambda spec: spec.build_context)
    _run_image_ops(resolved, [BuildOp(service=name, no_cache=no_cache, pull=pull, timeout=timeout) for name in names])


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--timeout', type=float, default=None, help='Seconds to allow per service')
@click.pass_context
@guarded
def pull(ctx, services, timeout):
    """Pull images of services that name one."""
    resolved, names = _image_services(ctx, services, lambda spec: spec.image)
    _run_image_ops(resolved, [PullOp(service=name, timeout=timeout) for name in names])


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--best-effort', is_flag=True, help='Keep going past failed or unhealthy services')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
@guarded
def rebuild(ctx, services, best_effort, as_json):
    """Build images without cache, then start the services."""
    resolved, names = _image_services(ctx, services, lambda spec: spec.build_context)
    _run_image_ops(resolved, [BuildOp(service=name, no_cache=True) for name in names], err=as_json)
    orchestrator = _orchestrator(ctx, best_effort)
    result = _run_cancellable(orchestrator, orchestrator.up, services or None)
    _report(result, as_json)


@cli.command()
@click.argument('service')
@click.argument('replicas', type=int)
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
@guarded
def scale(ctx, service, replicas, as_json):
    """Scale SERVICE to REPLICAS containers."""
    orchestrator = _orchestrator(ctx)
    controller = ScalingController(orchestrator.config, orchestrator)
    controller.validate(service, replicas)
    result = _run_cancellable(orchestrator, controller.scale, service, replicas)
    _report(result, as_json)


@cli.command()
@click.pass_context
@guarded
def ps(ctx):
    """List service status"""
    orchestrator = _orchestrator(ctx)
    status = orchestrator.ps()
    click.echo(f"{'SERVICE':15} {'STATUS':10} {'CPU':>7} {'MEMORY':>10}")
    click.echo("-" * 45)
    for name, sample in status.items():
        cpu = f"{sample.cpu_percent:.1f}%" if sample.cpu_percent is not None else "-"
        memory = f"{sample.memory_bytes / (1024 * 1024):.1f}MiB" if sample.memory_bytes is not None else "-"
        click.echo(f"{name:15} {sample.verdict.value:10} {cpu:>7} {memory:>10}")


@cli.command()
@click.argument('service')
@click.option('--tail', '-n', type=int, default=None, help='Number of lines from the end')
@click.option('--since', default=None, help='Only logs newer than this (e.g. 10m)')
@click.option('--timestamps', '-t', is_flag=True, help='Show timestamps')
@click.option('--follow', '-f', is_flag=True, help='Keep streaming new output until interrupted')
@click.pass_context
@guarded
def logs(ctx, service, tail, since, timestamps, follow):
    """Show logs of a service."""
    resolved = _load_config(ctx)
    if service not in resolved.services:
        raise ConfigurationError(f"unknown service {service!r}", field_path="services")
    executor = CommandExecutor.from_config(resolved)
    op = LogsOp(service=service, tail=tail, since=since, timestamps=timestamps, follow=follow,
                timeout=24 * 3600.0 if follow else None)
    result = executor.execute(op)
    if not follow:
        click.echo(result.stdout, nl=False)


@cli.command(name="exec", context_settings={"ignore_unknown_options": True})
@click.argument('service')
@click.argument('command', nargs=-1, type=click.UNPROCESSED)
@click.option('--no-tty', '-T', is_flag=True, help='Do not attach a terminal')
@click.option('--index', type=int, default=None, help='Container index when scaled')
@click.pass_context
@guarded
def exec_(ctx, service, command, no_tty, index):
    """Run COMMAND (default: a shell) inside a service container."""
    resolved = _load_config(ctx)
    if service not in resolved.services:
        raise ConfigurationError(f"unknown service {service!r}", field_path="services")
    interactive = not no_tty and sys.stdin.isatty()
    executor = CommandExecutor.from_config(resolved)
    op = ExecOp(service=service, command=tuple(command) or ("sh",), interactive=interactive, index=index,
                timeout=None if not interactive else 24 * 3600.0)
    try:
        result = executor.execute(op)
    except ExecutionError as e:
        if e.result is not None and e.result.output:
            click.echo(e.result.output, nl=False)
        raise
    if not interactive:
        click.echo(result.stdout, nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
