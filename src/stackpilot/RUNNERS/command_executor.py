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
Execution of container runtime commands with timeout and failure classification.
"""
import logging
import os
import shlex
import subprocess
import time
from typing import Dict, List, Optional, Tuple

from jinja2 import StrictUndefined, Template, TemplateError

from ..errors import ConfigurationError, ExecutionError, ExecutionFailureKind
from ..MODELS.operations import (
    BuildOp,
    CommandResult,
    ExecOp,
    InspectOp,
    LogsOp,
    PullOp,
    RuntimeOperation,
    ScaleOp,
    StartOp,
    StopOp,
)
from ..MODELS.project_config import DEFAULT_RUNTIME_COMMAND, ProjectConfig

logger = logging.getLogger(__name__)


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class CommandExecutor:
    """
    Runs exactly one runtime command per operation.

    Retries are the caller's business; this class only reports what happened.
    """
    def __init__(self,
                 project_name: str,
                 runtime_command: str = DEFAULT_RUNTIME_COMMAND,
                 compose_file: Optional[str] = None,
                 working_dir: Optional[str] = None,
                 default_timeout: float = 120.0,
                 env: Optional[Dict[str, str]] = None):
        """
        :param project_name: Passed to the runtime as ``-p``.
        :param runtime_command: Command template, rendered with jinja2. The
            variables ``project``, ``compose_file`` and ``working_dir`` are available.
        :param compose_file: Passed to the runtime as ``-f``.
        :param working_dir: Directory commands run in.
        :param default_timeout: Seconds allowed when an operation sets none.
        :param env: Environment for the runtime process. Defaults to the current one.
        """
        self.project_name = project_name
        self.compose_file = compose_file
        self.working_dir = working_dir
        self.default_timeout = default_timeout
        self.env = env
        self._base = self._render_base(runtime_command)

    @classmethod
    def from_config(cls, config: ProjectConfig, working_dir: Optional[str] = None,
                    env: Optional[Dict[str, str]] = None) -> "CommandExecutor":
        if working_dir is None and config.compose_file:
            working_dir = os.path.dirname(config.compose_file)
        return cls(
            project_name=config.project_name,
            runtime_command=config.defaults.runtime_command,
            compose_file=config.compose_file,
            working_dir=working_dir,
            default_timeout=config.orchestration.command_timeout,
            env=env,
        )

    def _render_base(self, runtime_command: str) -> List[str]:
        try:
            rendered = Template(runtime_command, undefined=StrictUndefined).render(
                project=self.project_name,
                compose_file=self.compose_file or "",
                working_dir=self.working_dir or "",
            )
            base = shlex.split(rendered)
        except (TemplateError, ValueError) as e:
            raise ConfigurationError(f"invalid runtime command template: {e}", field_path="runtime_command") from e
        if not base:
            raise ConfigurationError("must not be empty", field_path="runtime_command")

        if self.compose_file and not {"-f", "--file"} & set(base):
            base += ["-f", self.compose_file]
        if self.project_name and not {"-p", "--project-name"} & set(base):
            base += ["-p", self.project_name]
        return base

    def build_argv(self, op: RuntimeOperation) -> List[str]:
        """
        Maps an operation to its full command line.

        :raises TypeError: For anything outside the known operation variants.
        """
        return self._base + self._arguments(op)

    @staticmethod
    def _arguments(op: RuntimeOperation) -> List[str]:
        if isinstance(op, StartOp):
            return ["up", "-d", op.service]

        if isinstance(op, StopOp):
            if op.remove:
                return ["rm", "-s", "-f", op.service]
            args = ["stop"]
            if op.grace_period is not None:
                args += ["-t", str(op.grace_period)]
            return args + [op.service]

        if isinstance(op, InspectOp):
            return ["ps", "--all", "--format", "json", op.service]

        if isinstance(op, LogsOp):
            args = ["logs", "--no-color"]
            if op.tail is not None:
                args += ["--tail", str(op.tail)]
            if op.since:
                args += ["--since", op.since]
            if op.timestamps:
                args.append("--timestamps")
            if op.follow:
                args.append("--follow")
            return args + [op.service]

        if isinstance(op, ExecOp):
            args = ["exec"]
            if not op.interactive:
                args.append("-T")
            if op.index is not None:
                args += ["--index", str(op.index)]
            return args + [op.service] + list(op.command)

        if isinstance(op, ScaleOp):
            # Compose removes the newest containers first when scaling down.
            return ["up", "-d", "--no-recreate", "--scale", f"{op.service}={op.replicas}", op.service]

        if isinstance(op, BuildOp):
            args = ["build"]
            if op.no_cache:
                args.append("--no-cache")
            if op.pull:
                args.append("--pull")
            return args + [op.service]

        if isinstance(op, PullOp):
            return ["pull", op.service]

        raise TypeError(f"Unsupported runtime operation: {type(op).__name__}")

    def execute(self, op: RuntimeOperation) -> CommandResult:
        """
        Runs the operation once.

        :return: The result of a command that exited with status 0.
        :raises ExecutionError: On timeout, non-zero exit or spawn failure.
        """
        argv = self.build_argv(op)
        timeout = op.timeout if op.timeout is not None else self.default_timeout
        # Attached operations share the terminal instead of capturing output.
        attached = (isinstance(op, ExecOp) and op.interactive) or (isinstance(op, LogsOp) and op.follow)
        logger.debug("[%s] %s", op.service, " ".join(shlex.quote(a) for a in argv))

        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                cwd=self.working_dir,
                env=self.env,
                capture_output=not attached,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except subprocess.TimeoutExpired as e:
            result = CommandResult(
                argv=tuple(argv),
                exit_code=None,
                stdout=_text(e.stdout),
                stderr=_text(e.stderr),
                elapsed=time.monotonic() - started,
            )
            raise ExecutionError(
                f"{op.kind} {op.service} timed out after {timeout:g}s",
                ExecutionFailureKind.TIMEOUT, op, result,
            ) from e
        except OSError as e:
            raise ExecutionError(
                f"{op.kind} {op.service}: failed to spawn {argv[0]}: {e}",
                ExecutionFailureKind.SPAWN_FAILURE, op,
            ) from e

        result = CommandResult(
            argv=tuple(argv),
            exit_code=completed.returncode,
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
            elapsed=time.monotonic() - started,
        )
        if completed.returncode != 0:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise ExecutionError(
                f"{op.kind} {op.service} exited with code {completed.returncode}" + (f": {detail}" if detail else ""),
                ExecutionFailureKind.NON_ZERO_EXIT, op, result,
            )
        logger.debug("[%s] %s completed in %.2fs", op.service, op.kind, result.elapsed)
        return result

    def describe(self, op: RuntimeOperation) -> Tuple[str, ...]:
        """The command line an operation would run, for dry runs and logs."""
        return tuple(self.build_argv(op))
