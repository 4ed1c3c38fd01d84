"""
Sandbox runtime primitives.

The gateway runs either inside a Docker container (exec via the docker SDK)
or directly on this host ("local" mode, e.g. inside a Lima VM). Both expose
the same small surface: list/start/kill processes, read their logs, and run
one-shot commands. Nothing here decides whether the gateway is healthy;
callers probe the port themselves because process status can lag.
"""

import asyncio
import os
import shlex
from dataclasses import dataclass

import docker

PROC_LOG_DIR = "/tmp/sandbox-procs"


@dataclass
class ProcessInfo:
    pid: int
    command: str
    status: str  # running | exited


@dataclass
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


def parse_ps(output: str) -> list[ProcessInfo]:
    """Parse `ps -eo pid,stat,args` output."""
    processes = []
    for line in output.splitlines()[1:]:
        parts = line.strip().split(None, 2)
        if len(parts) < 3 or not parts[0].isdigit():
            continue
        pid, stat, args = parts
        status = "exited" if stat.startswith(("Z", "X")) else "running"
        processes.append(ProcessInfo(pid=int(pid), command=args, status=status))
    return processes


def background_script(command: str) -> str:
    """Shell snippet that detaches `command` and prints its pid.

    stdout/stderr land in PROC_LOG_DIR/<pid>.out and .err.
    """
    inner = f"exec {command} >{PROC_LOG_DIR}/$$.out 2>{PROC_LOG_DIR}/$$.err"
    return (
        f"mkdir -p {PROC_LOG_DIR}; "
        f"nohup sh -c {shlex.quote(inner)} >/dev/null 2>&1 & echo $!"
    )


class ShellSandbox:
    """Process primitives built on top of a subclass's exec()."""

    async def exec(self, argv: list[str], env: dict | None = None, timeout: float = 60) -> ExecResult:
        raise NotImplementedError

    async def list_processes(self) -> list[ProcessInfo]:
        result = await self.exec(["ps", "-eo", "pid,stat,args"])
        return parse_ps(result.stdout)

    async def start_process(self, command: str, env: dict[str, str]) -> ProcessInfo:
        result = await self.exec(["sh", "-c", background_script(command)], env=env, timeout=30)
        lines = result.stdout.strip().splitlines()
        pid = lines[-1].strip() if lines else ""
        if not pid.isdigit():
            raise RuntimeError(f"Could not start process: {result.output.strip() or 'no pid returned'}")
        return ProcessInfo(pid=int(pid), command=command, status="running")

    async def read_logs(self, pid: int, lines: int = 200) -> tuple[str, str]:
        out = await self.exec(["tail", "-n", str(lines), f"{PROC_LOG_DIR}/{pid}.out"])
        err = await self.exec(["tail", "-n", str(lines), f"{PROC_LOG_DIR}/{pid}.err"])
        return out.stdout, err.stdout

    async def kill_process(self, pid: int):
        await self.exec(["kill", str(pid)])


class DockerSandbox(ShellSandbox):
    """Sandbox backed by a running Docker container."""

    def __init__(self, container_name: str, client=None):
        self.container_name = container_name
        self._client = client

    def _exec_sync(self, argv: list[str], env: dict | None) -> ExecResult:
        client = self._client or docker.from_env()
        container = client.containers.get(self.container_name)
        exit_code, output = container.exec_run(argv, environment=env, demux=True)
        stdout, stderr = output if output else (None, None)
        return ExecResult(
            exit_code=exit_code if exit_code is not None else -1,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
        )

    async def exec(self, argv: list[str], env: dict | None = None, timeout: float = 60) -> ExecResult:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._exec_sync, argv, env), timeout)
        except asyncio.TimeoutError:
            return ExecResult(exit_code=-1, stdout="", stderr=f"Timeout after {timeout}s")
        except docker.errors.NotFound:
            return ExecResult(exit_code=-1, stdout="", stderr=f"Container {self.container_name} not found")
        except docker.errors.DockerException as e:
            return ExecResult(exit_code=-1, stdout="", stderr=str(e))


class LocalSandbox(ShellSandbox):
    """Sandbox on this host: commands run as plain subprocesses."""

    async def exec(self, argv: list[str], env: dict | None = None, timeout: float = 60) -> ExecResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                env={**os.environ, **env} if env else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return ExecResult(exit_code=-1, stdout="", stderr=str(e))
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ExecResult(exit_code=-1, stdout="", stderr=f"Timeout after {timeout}s")
        return ExecResult(
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


def create_sandbox(settings) -> ShellSandbox:
    """Pick the sandbox runtime for SANDBOX_MODE."""
    if settings.sandbox_mode == "local":
        return LocalSandbox()
    return DockerSandbox(settings.sandbox_container)
