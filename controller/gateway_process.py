"""
Gateway process supervisor.

Finds, starts and health-checks the clawdbot gateway inside the sandbox.
ensure_running() is single-flight: concurrent callers during a start share
one attempt instead of racing a second process onto the same port.

Liveness is always decided by a TCP probe of the gateway port. The
sandbox's process listing is only used to find a candidate process.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from audit import audit_log
from gateway_env import build_gateway_env
from sandbox import ProcessInfo

GATEWAY_SIGNATURES = ("clawdbot gateway", "start-moltbot.sh")
# CLI invocations also start with "clawdbot"; never mistake them for the server.
CLI_MARKERS = ("clawdbot devices", "clawdbot --version", "--url ws://")


class SpawnError(Exception):
    """The gateway process could not be created."""


class StartupTimeout(Exception):
    """The gateway did not accept connections before the startup timeout."""


@dataclass
class GatewayProcess:
    pid: int
    port: int
    status: str = "unknown"  # unknown | starting | running | exited
    started_at: Optional[datetime] = None


def is_gateway_command(command: str) -> bool:
    if any(marker in command for marker in CLI_MARKERS):
        return False
    return any(sig in command for sig in GATEWAY_SIGNATURES)


async def probe_port(host: str, port: int, timeout: float = 1.0) -> bool:
    """True if something accepts TCP connections on host:port."""
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def parse_json_output(output: str) -> Optional[dict]:
    """Extract the first JSON object from CLI output (which may carry log lines)."""
    start = output.find("{")
    end = output.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(output[start:end + 1])
    except json.JSONDecodeError:
        return None


class GatewaySupervisor:
    """Owns the one gateway process in the sandbox."""

    def __init__(
        self,
        sandbox,
        settings,
        before_start: Optional[Callable[[], Awaitable[None]]] = None,
        probe: Callable[[str, int], Awaitable[bool]] = probe_port,
    ):
        self.sandbox = sandbox
        self.settings = settings
        self.before_start = before_start
        self.probe = probe
        self.process: Optional[GatewayProcess] = None
        self._start_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        return self.settings.gateway_port

    async def find_existing(self) -> Optional[ProcessInfo]:
        """Return the gateway process if one is listed and not exited."""
        for proc in await self.sandbox.list_processes():
            if is_gateway_command(proc.command) and proc.status != "exited":
                return proc
        return None

    async def ensure_running(self) -> GatewayProcess:
        """
        Make sure the gateway is up, starting it if needed.

        Raises:
            SpawnError: the process could not be created
            StartupTimeout: the port never opened within the startup timeout
        """
        if self._start_task is None and self.process is not None and self.process.status == "running":
            if await self.is_ready():
                return self.process
            self.process.status = "unknown"

        if self._start_task is None:
            task = asyncio.create_task(self._ensure())
            task.add_done_callback(self._start_finished)
            self._start_task = task
        return await asyncio.shield(self._start_task)

    async def is_ready(self) -> bool:
        return await self.probe(self.settings.gateway_host, self.port)

    def _start_finished(self, task: asyncio.Task):
        if self._start_task is task:
            self._start_task = None
        if not task.cancelled() and task.exception() is not None:
            print(f"[supervisor] start attempt failed: {task.exception()}", flush=True)

    async def _ensure(self) -> GatewayProcess:
        existing = await self.find_existing()
        if existing is not None:
            if self.process is None or self.process.pid != existing.pid:
                self.process = GatewayProcess(pid=existing.pid, port=self.port, status="starting")
            await self._wait_for_port(self.process)
            return self.process

        if self.before_start is not None:
            await self.before_start()

        env = build_gateway_env(self.settings.environ)
        command = self.settings.launch_command
        print(f"[supervisor] starting gateway: {command}", flush=True)
        try:
            info = await self.sandbox.start_process(command, env)
        except (RuntimeError, OSError) as e:
            audit_log("gateway_spawn_error", {"error": str(e)})
            raise SpawnError(str(e)) from e

        self.process = GatewayProcess(
            pid=info.pid,
            port=self.port,
            status="starting",
            started_at=datetime.now(timezone.utc),
        )
        audit_log("gateway_started", {"pid": info.pid, "port": self.port})
        await self._wait_for_port(self.process)
        return self.process

    async def _wait_for_port(self, process: GatewayProcess):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.startup_timeout
        while True:
            if await self.probe(self.settings.gateway_host, self.port):
                process.status = "running"
                return
            if loop.time() >= deadline:
                break
            await asyncio.sleep(self.settings.poll_interval)

        stdout, stderr = await self.sandbox.read_logs(process.pid, lines=20)
        print(f"[supervisor] gateway pid {process.pid} not ready; stdout tail:\n{stdout}", flush=True)
        print(f"[supervisor] stderr tail:\n{stderr}", flush=True)
        audit_log("gateway_startup_timeout", {
            "pid": process.pid,
            "timeout_s": self.settings.startup_timeout,
        })
        raise StartupTimeout(
            f"Gateway did not open port {self.port} within {self.settings.startup_timeout:g}s"
        )

    def start_in_background(self) -> asyncio.Task:
        """Kick off ensure_running() without waiting for it."""
        task = asyncio.create_task(self._ensure_quietly())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _ensure_quietly(self):
        try:
            await self.ensure_running()
        except (SpawnError, StartupTimeout) as e:
            print(f"[supervisor] background start failed: {e}", flush=True)

    async def status(self) -> dict:
        """Report gateway state without starting anything."""
        existing = await self.find_existing()
        if existing is None:
            return {"status": "not_running", "processId": None}
        if await self.probe(self.settings.gateway_host, self.port):
            return {"status": "running", "processId": existing.pid}
        return {"status": "not_responding", "processId": existing.pid}

    async def restart(self) -> list[int]:
        """Kill every gateway process and start a fresh one in the background."""
        killed = []
        for proc in await self.sandbox.list_processes():
            if is_gateway_command(proc.command) and proc.status != "exited":
                await self.sandbox.kill_process(proc.pid)
                killed.append(proc.pid)
        if self.process is not None:
            self.process.status = "exited"
        self.process = None
        audit_log("gateway_restart", {"killed": killed})
        # Give the old process a moment to release the port.
        await asyncio.sleep(min(2.0, self.settings.poll_interval * 4))
        self.start_in_background()
        return killed

    # ------------------------------------------------------------
    # Gateway CLI (device pairing)
    # ------------------------------------------------------------

    async def run_cli(self, args: list[str], timeout: float = 20):
        argv = [self.settings.gateway_cli, *args, "--url", f"ws://localhost:{self.port}"]
        if self.settings.gateway_token:
            argv += ["--token", self.settings.gateway_token]
        return await self.sandbox.exec(argv, timeout=timeout)

    async def list_devices(self) -> dict:
        result = await self.run_cli(["devices", "list", "--json"])
        data = parse_json_output(result.stdout)
        if data is None:
            return {"pending": [], "paired": [], "error": "Failed to parse device list", "raw": result.output[:500]}
        return {"pending": data.get("pending", []), "paired": data.get("paired", [])}

    async def approve_device(self, request_id: str) -> tuple[bool, str]:
        # The CLI's exit code is unreliable; its output saying "approved" is the signal.
        result = await self.run_cli(["devices", "approve", request_id])
        output = result.output
        success = "approved" in output.lower()
        audit_log("device_approve", {"requestId": request_id, "success": success})
        return success, output
