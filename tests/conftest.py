"""Shared fixtures: an in-memory sandbox and settings wired to it."""

import asyncio
import re
import shlex

import pytest

import audit
from sandbox import ExecResult, ProcessInfo, ShellSandbox
from settings import load_settings

BASE_ENV = {
    "MOLTBOT_GATEWAY_TOKEN": "gw-token",
    "ANTHROPIC_API_KEY": "sk-ant-test",
    "R2_ACCESS_KEY_ID": "r2-key",
    "R2_SECRET_ACCESS_KEY": "r2-secret",
    "CF_ACCOUNT_ID": "acct123",
    "INTERNAL_API_TOKEN": "internal-token",
    "CDP_SECRET": "cdp-secret",
    "GATEWAY_STARTUP_TIMEOUT": "0.2",
    "GATEWAY_POLL_INTERVAL": "0.01",
}


class FakeSandbox(ShellSandbox):
    """
    In-memory sandbox. Understands the handful of commands the controller
    issues: ps-style process bookkeeping, /proc/mounts, s3fs, the sync and
    restore shell scripts, and the clawdbot CLI.
    """

    def __init__(self, mount_path="/data/moltbot"):
        self.mount_path = mount_path
        self.processes: dict[int, ProcessInfo] = {}
        self.files: dict[str, str] = {}
        self.commands: list[list[str]] = []
        self.mounted = False
        self.mount_works = True
        self.listening = False
        self.listen_on_start = True
        self.spawn_error = None
        self.spawn_count = 0
        self.cli_responses: dict[str, ExecResult] = {}
        self.script_gate: asyncio.Event | None = None
        self.script_failure: ExecResult | None = None
        self.script_entered = asyncio.Event()
        self._next_pid = 100
        self._clock = 0

    def _timestamp(self) -> str:
        self._clock += 1
        return f"2026-01-01T00:00:{self._clock:02d}+00:00"

    async def list_processes(self):
        return list(self.processes.values())

    async def start_process(self, command, env):
        # Yield once so concurrent callers can pile up.
        await asyncio.sleep(0)
        if self.spawn_error:
            raise RuntimeError(self.spawn_error)
        self.spawn_count += 1
        self._next_pid += 1
        info = ProcessInfo(pid=self._next_pid, command=command, status="running")
        self.processes[info.pid] = info
        self.last_env = env
        if self.listen_on_start:
            self.listening = True
        return info

    async def read_logs(self, pid, lines=200):
        return f"stdout of {pid}", f"stderr of {pid}"

    async def kill_process(self, pid):
        self.processes.pop(pid, None)
        self.listening = False

    async def exec(self, argv, env=None, timeout=60):
        self.commands.append(list(argv))
        if argv[:2] == ["cat", "/proc/mounts"]:
            lines = ["proc /proc proc rw 0 0"]
            if self.mounted:
                lines.append(f"s3fs {self.mount_path} fuse.s3fs rw,nosuid,nodev 0 0")
            return ExecResult(0, "\n".join(lines) + "\n", "")
        if argv[0] == "cat":
            if argv[1] in self.files:
                return ExecResult(0, self.files[argv[1]], "")
            return ExecResult(1, "", f"cat: {argv[1]}: No such file or directory")
        if argv[0] == "mkdir":
            return ExecResult(0, "", "")
        if argv[0] == "s3fs":
            if self.mount_works:
                self.mounted = True
                return ExecResult(0, "", "")
            return ExecResult(1, "", "s3fs: unable to access MOUNTPOINT")
        if argv[:2] == ["sh", "-c"]:
            return await self._script(argv[2])
        if argv[0] == "clawdbot":
            key = " ".join(argv[1:3])
            return self.cli_responses.get(key, ExecResult(1, "", f"unknown command {key}"))
        return ExecResult(0, "", "")

    async def _script(self, script):
        test = re.fullmatch(r"test -f (\S+) && echo yes", script)
        if test:
            path = shlex.split(test.group(1))[0]
            return ExecResult(0, "yes\n" if path in self.files else "", "")

        self.script_entered.set()
        if self.script_gate is not None:
            await self.script_gate.wait()
        if self.script_failure is not None:
            # rsync failed, so nothing after it in the && chain ran.
            return self.script_failure

        marker = re.search(r"date [^>]*> (\S+)", script)
        if marker:
            if self.mounted:
                self.files[shlex.split(marker.group(1))[0]] = self._timestamp() + "\n"
            return ExecResult(0, "", "")

        copy = re.search(r"cp (\S+) (\S+)$", script)
        if copy:
            src, dest = shlex.split(copy.group(1))[0], shlex.split(copy.group(2))[0]
            if src in self.files:
                self.files[dest] = self.files[src]
                return ExecResult(0, "", "")
            return ExecResult(1, "", f"cp: cannot stat '{src}'")
        return ExecResult(0, "", "")


@pytest.fixture(autouse=True)
def audit_path(tmp_path, monkeypatch):
    """Keep audit entries out of the real log."""
    path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(audit, "AUDIT_LOG", path)
    return path


@pytest.fixture
def env():
    return dict(BASE_ENV)


@pytest.fixture
def settings(env):
    return load_settings(env)


@pytest.fixture
def sandbox():
    return FakeSandbox()


@pytest.fixture
def probe(sandbox):
    async def _probe(host, port, timeout=1.0):
        return sandbox.listening

    return _probe
