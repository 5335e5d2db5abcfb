"""
Local container executor.

Tasks of kind `container_local` run a locally-scoped container:
    config:
      image: ghcr.io/acme/weather-download:1.4
      args: ["--date", "2024-01-01"]
      env: {API_BASE: https://...}

The ContainerRuntime protocol abstracts the container engine; the default
DockerCliRuntime shells out to `docker run --rm`.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence, runtime_checkable

from productflow.errors import DispatchError, TaskExecutionFailure, TaskTimeoutError
from productflow.handlers.base import RunContext, declared_assets
from productflow.schemas import Completion, TaskDescriptor

logger = logging.getLogger(__name__)

# `docker run` reserves 125 for errors of the docker daemon itself
DOCKER_DAEMON_ERROR = 125


@dataclass(frozen=True)
class ContainerResult:
    exit_status: int
    logs: str = ""


@runtime_checkable
class ContainerRuntime(Protocol):
    """
    Protocol for local container engines.

    run() blocks until the container exits and raises DispatchError if the
    engine is unreachable, subprocess.TimeoutExpired if `timeout` elapses.
    """

    def run(
        self,
        image: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ContainerResult:
        ...


class DockerCliRuntime:
    """ContainerRuntime backed by the docker CLI."""

    def __init__(self, docker_bin: str = "docker"):
        self.docker_bin = docker_bin

    def build_command(
        self,
        image: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
    ) -> list[str]:
        command = [self.docker_bin, "run", "--rm"]
        for key, value in sorted((env or {}).items()):
            command.extend(["-e", f"{key}={value}"])
        command.append(image)
        command.extend(str(a) for a in args)
        return command

    def run(
        self,
        image: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ContainerResult:
        command = self.build_command(image, args, env)
        logger.debug(f"Executing: {' '.join(command)}")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise DispatchError(image, f"container runtime unavailable: {e}", cause=e)

        if result.returncode == DOCKER_DAEMON_ERROR:
            raise DispatchError(image, f"docker daemon error: {result.stderr[:500]}")

        return ContainerResult(
            exit_status=result.returncode,
            logs=(result.stdout or "") + (result.stderr or ""),
        )


class LocalContainerExecutor:
    """
    Executor for container_local tasks.

    Args:
        runtime: ContainerRuntime (default: DockerCliRuntime)
        logs_dir: If set, container output is written to
                  <logs_dir>/<run_id>/<task_id>.<attempt>.log and that path
                  becomes the Completion's logs_ref
    """

    def __init__(self, runtime: Optional[ContainerRuntime] = None, logs_dir: Optional[Path] = None):
        self.runtime = runtime or DockerCliRuntime()
        self.logs_dir = logs_dir

    def execute(self, task: TaskDescriptor, context: RunContext) -> Completion:
        image = task.config.get("image")
        if not image:
            raise TaskExecutionFailure(task.id, "container_local task requires config.image")
        args = [str(a) for a in task.config.get("args", [])]
        env = {str(k): str(v) for k, v in dict(task.config.get("env", {})).items()}

        try:
            result = self.runtime.run(image, args, env=env, timeout=context.remaining())
        except subprocess.TimeoutExpired:
            raise TaskTimeoutError(task.id, task.timeout_seconds or 0.0)

        logs_ref = self._store_logs(task, context, result.logs) or f"container:{image}"
        if result.exit_status == 0:
            return Completion.success(declared_assets(task), logs_ref=logs_ref)

        tail = result.logs[-500:] if result.logs else ""
        return Completion.failure(
            f"container exited with status {result.exit_status}: {tail}".strip(),
            logs_ref=logs_ref,
        )

    def _store_logs(self, task: TaskDescriptor, context: RunContext, logs: str) -> Optional[str]:
        if self.logs_dir is None:
            return None
        path = Path(self.logs_dir) / context.run_id / f"{task.id}.{context.attempt}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(logs)
        return str(path)
