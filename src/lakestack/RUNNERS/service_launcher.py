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
Launchers that start a service by reference and hand back an opaque handle:
local processes, docker compose services, or services managed elsewhere.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import psutil

from ..errors import StartFailure
from ..MODELS.service_spec import LauncherKind, ServiceSpec
from ..MODELS.stack_config import StackConfig

logger = logging.getLogger(__name__)

LOG_DIR = os.path.join(".lakestack", "logs")


@dataclass
class ServiceHandle:
    """Opaque reference to a started service."""

    name: str
    kind: LauncherKind
    pid: Optional[int] = None
    log_path: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)


def get_full_command(entrypoint: List[str], command: List[str]) -> List[str]:
    """
    Combines entrypoint and command following compose rules:
    the entrypoint is the executable and the command becomes its arguments,
    otherwise the command is the executable plus arguments.
    """
    if entrypoint:
        return list(entrypoint) + list(command)
    return list(command)


def build_environment(spec: ServiceSpec, extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Process environment, overridden by launcher-wide variables, overridden by
    the service's own environment.
    """
    env = os.environ.copy()
    if extra_env:
        env.update(extra_env)
    env.update(spec.environment)
    return env


class ServiceLauncher(ABC):
    """Starts and stops services by reference."""

    @abstractmethod
    async def start(self, spec: ServiceSpec) -> ServiceHandle:
        """
        Starts a service.

        :raises StartFailure: If the service could not be launched.
        """

    @abstractmethod
    async def stop(self, handle: ServiceHandle) -> None:
        """Stops a previously started service."""


class ExternalLauncher(ServiceLauncher):
    """
    For services whose lifecycle is managed elsewhere: nothing is started,
    readiness is left entirely to the health check.
    """

    async def start(self, spec: ServiceSpec) -> ServiceHandle:
        logger.info("[%s] managed externally, not starting", spec.name)
        return ServiceHandle(name=spec.name, kind=LauncherKind.EXTERNAL)

    async def stop(self, handle: ServiceHandle) -> None:
        return None


class ProcessLauncher(ServiceLauncher):
    """
    Runs a service as a local process with stdout/stderr redirected to a log file.
    """

    def __init__(self,
                 base_dir: str = ".",
                 extra_env: Optional[Dict[str, str]] = None,
                 start_grace: float = 0.5,
                 stop_timeout: float = 10.0):
        """
        :param base_dir: Base directory for logs and relative working dirs.
        :param extra_env: Variables added to every launched process.
        :param start_grace: Seconds a process must survive to count as started.
        :param stop_timeout: Seconds to wait for termination before killing.
        """
        self.base_dir = base_dir
        self.extra_env = dict(extra_env or {})
        self.start_grace = start_grace
        self.stop_timeout = stop_timeout

    async def start(self, spec: ServiceSpec) -> ServiceHandle:
        command = get_full_command(spec.entrypoint, spec.command)
        if not command:
            raise StartFailure(spec.name, "no command specified")

        working_dir = None
        if spec.working_dir:
            working_dir = os.path.join(self.base_dir, spec.working_dir)
            os.makedirs(working_dir, exist_ok=True)

        log_path = os.path.join(self.base_dir, LOG_DIR, f"{spec.name}.log")
        os.makedirs(os.path.dirname(log_path), exist_ok=True)

        logger.info("[%s] Starting command: %s", spec.name, " ".join(command))
        with open(log_path, 'a') as log_handle:
            try:
                # exec, not shell: arguments are never re-parsed
                process = await asyncio.create_subprocess_exec(
                    *command,
                    env=build_environment(spec, self.extra_env),
                    cwd=working_dir,
                    stdout=log_handle,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as e:
                raise StartFailure(spec.name, str(e)) from e

        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=self.start_grace)
        except asyncio.TimeoutError:
            exit_code = None
        except asyncio.CancelledError:
            await kill_process(process)
            raise
        if exit_code:
            raise StartFailure(spec.name, f"exited with code {exit_code} (see {log_path})")

        return ServiceHandle(name=spec.name, kind=LauncherKind.PROCESS,
                             pid=process.pid, log_path=log_path, process=process)

    async def stop(self, handle: ServiceHandle) -> None:
        if handle.pid is None:
            return
        logger.info("[%s] Stopping process %d...", handle.name, handle.pid)
        await asyncio.to_thread(terminate_tree, handle.pid, self.stop_timeout)
        if handle.process is not None:
            await handle.process.wait()


def terminate_tree(pid: int, timeout: float) -> None:
    """
    Sends SIGTERM to a process and all its descendants, then SIGKILL to
    whatever is still alive after ``timeout`` seconds.
    """
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        logger.warning("Process %d did not terminate, killing...", proc.pid)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


async def kill_process(proc: asyncio.subprocess.Process) -> None:
    """
    Kills a subprocess together with its descendants (a ``CMD-SHELL`` shell's
    children included) and reaps it.
    """
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


class ComposeLauncher(ServiceLauncher):
    """
    Starts a single service of a docker compose project, without its
    dependencies (ordering is the controller's job).
    """

    def __init__(self, compose_file: str, project_dir: str = ".",
                 docker: str = "docker", timeout: float = 120.0):
        self.compose_file = compose_file
        self.project_dir = project_dir
        self.docker = docker
        self.timeout = timeout

    def _compose(self, *args: str) -> List[str]:
        return [self.docker, "compose", "-f", self.compose_file, *args]

    async def _run(self, name: str, argv: List[str]) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.project_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StartFailure(name, str(e)) from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await kill_process(proc)
            raise StartFailure(name, f"'{' '.join(argv)}' timed out after {self.timeout:.0f}s")
        except asyncio.CancelledError:
            await kill_process(proc)
            raise
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-500:]
            raise StartFailure(name, detail or f"exit code {proc.returncode}")
        return stdout.decode(errors="replace")

    async def start(self, spec: ServiceSpec) -> ServiceHandle:
        logger.info("[%s] docker compose up", spec.name)
        await self._run(spec.name, self._compose("up", "-d", "--no-deps", spec.name))
        return ServiceHandle(name=spec.name, kind=LauncherKind.COMPOSE)

    async def stop(self, handle: ServiceHandle) -> None:
        logger.info("[%s] docker compose stop", handle.name)
        await self._run(handle.name, self._compose("stop", handle.name))


class StackLauncher(ServiceLauncher):
    """
    Dispatches each service to the launcher matching its ``launcher`` kind.
    """

    def __init__(self, config: StackConfig, base_dir: Optional[str] = None):
        base_dir = base_dir or config.project_dir
        extra_env = {"LAKESTACK_NETWORK": config.network} if config.network else {}
        self.launchers: Dict[LauncherKind, ServiceLauncher] = {
            LauncherKind.EXTERNAL: ExternalLauncher(),
            LauncherKind.PROCESS: ProcessLauncher(base_dir, extra_env=extra_env),
        }
        if config.compose_file:
            self.launchers[LauncherKind.COMPOSE] = ComposeLauncher(
                config.compose_file, project_dir=base_dir, timeout=config.start_timeout
            )

    def _for(self, name: str, kind: LauncherKind) -> ServiceLauncher:
        if kind not in self.launchers:
            raise StartFailure(name, f"no launcher configured for '{kind.value}' services")
        return self.launchers[kind]

    async def start(self, spec: ServiceSpec) -> ServiceHandle:
        return await self._for(spec.name, spec.launcher).start(spec)

    async def stop(self, handle: ServiceHandle) -> None:
        await self._for(handle.name, handle.kind).stop(handle)
