"""
Durable storage: an R2 (S3-compatible) bucket mounted into the sandbox with
s3fs, plus backup (sync_out) and restore (restore_in) between the gateway's
state directory and the bucket.

Nothing the platform reports about these operations is trusted:
- mount state is re-read from /proc/mounts on every check, because s3fs can
  fail on a target that is already correctly mounted;
- a sync succeeded iff the .last-sync marker reads back as a timestamp,
  because exit codes can lag or lie.

The mount directory is external durable state. It is never removed, reset
or used as scratch space, whatever the mount outcome.
"""

import asyncio
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from audit import audit_log

MARKER_NAME = ".last-sync"
MARKER_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
RSYNC_EXCLUDES = ("*.lock", "*.log", "*.tmp")
SYNC_TIMEOUT = 300


class StorageError(Exception):
    def __init__(self, message: str, details: str = ""):
        self.details = details
        super().__init__(message)


class MountError(StorageError):
    """The bucket is not mounted and could not be mounted."""


class SyncError(StorageError):
    """A backup or restore did not leave a valid marker behind."""


class SyncInProgress(StorageError):
    """Another sync currently holds the storage lock."""


class MountStatus(str, Enum):
    MOUNTED = "mounted"
    ALREADY_MOUNTED = "already_mounted"


@dataclass
class SyncResult:
    timestamp: str


@dataclass
class RestoreResult:
    restored: bool
    timestamp: Optional[str] = None


def _rsync(src: str, dest: str, excludes: tuple[str, ...] = ()) -> str:
    # --no-times: s3fs cannot set mtimes, and a timestamp-preserving copy fails on every file.
    parts = ["rsync", "-r", "--no-times", "--delete"]
    parts += [f"--exclude={shlex.quote(pattern)}" for pattern in excludes]
    parts += [shlex.quote(src.rstrip("/") + "/"), shlex.quote(dest.rstrip("/") + "/")]
    return " ".join(parts)


class StorageManager:
    """Mounts the bucket and serialises every sync against it."""

    def __init__(self, sandbox, settings):
        self.sandbox = sandbox
        self.settings = settings
        self.warning: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def mount_path(self) -> str:
        return self.settings.mount_path.rstrip("/")

    @property
    def bucket_marker(self) -> str:
        return f"{self.mount_path}/{MARKER_NAME}"

    @property
    def local_marker(self) -> str:
        return f"{self.settings.state_dir.rstrip('/')}/{MARKER_NAME}"

    @property
    def syncing(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------
    # Mount
    # ------------------------------------------------------------

    async def is_mounted(self) -> bool:
        """Inspect the live mount table for an s3fs entry on the mount path."""
        result = await self.sandbox.exec(["cat", "/proc/mounts"])
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) < 3:
                continue
            source, target, fstype = fields[0], fields[1], fields[2]
            if target == self.mount_path and ("s3fs" in source or "s3fs" in fstype):
                return True
        return False

    async def mount(self) -> MountStatus:
        """
        Mount the bucket at the fixed mount path.

        Raises:
            MountError: storage is unconfigured, or the mount table still
                shows no s3fs entry after the attempt
        """
        if not self.settings.storage_configured:
            raise MountError("R2 storage is not configured")

        if await self.is_mounted():
            self.warning = None
            return MountStatus.ALREADY_MOUNTED

        s = self.settings
        await self.sandbox.exec(["mkdir", "-p", self.mount_path])
        result = await self.sandbox.exec(
            [
                "s3fs", s.r2_bucket, self.mount_path,
                "-o", f"url=https://{s.cf_account_id}.r2.cloudflarestorage.com",
                "-o", "use_path_request_style",
                "-o", "nomixupload",
            ],
            env={"AWSACCESSKEYID": s.r2_access_key_id, "AWSSECRETACCESSKEY": s.r2_secret_access_key},
            timeout=60,
        )

        # s3fs exit status is not evidence either way; only the mount table is.
        if await self.is_mounted():
            self.warning = None
            audit_log("storage_mounted", {"bucket": s.r2_bucket, "path": self.mount_path})
            return MountStatus.MOUNTED

        self.warning = "R2 storage is not mounted; gateway data will not persist across restarts"
        audit_log("storage_mount_error", {
            "bucket": s.r2_bucket,
            "path": self.mount_path,
            "exit_code": result.exit_code,
            "stderr": result.stderr[-500:],
        })
        raise MountError("Failed to mount R2 storage", details=result.stderr[-500:])

    async def _require_mount(self):
        if await self.is_mounted():
            return
        await self.mount()

    async def _read_marker(self, path: str) -> Optional[str]:
        result = await self.sandbox.exec(["cat", path])
        content = result.stdout.strip()
        if MARKER_RE.match(content):
            return content
        return None

    async def _file_exists(self, path: str) -> bool:
        result = await self.sandbox.exec(["sh", "-c", f"test -f {shlex.quote(path)} && echo yes"])
        return result.stdout.strip() == "yes"

    # ------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------

    def _try_acquire(self):
        # Busy is reported to the caller rather than queued.
        if self._lock.locked():
            raise SyncInProgress("sync in progress")

    async def sync_out(self) -> SyncResult:
        """
        Back up gateway state to the bucket.

        Raises:
            SyncInProgress: another sync or restore is running
            MountError: the bucket is not mounted
            SyncError: the copy did not produce a valid marker
        """
        self._try_acquire()
        async with self._lock:
            if not self.settings.storage_configured:
                raise SyncError("R2 storage is not configured")
            await self._require_mount()

            state_dir = self.settings.state_dir.rstrip("/")
            if not await self._file_exists(f"{state_dir}/clawdbot.json"):
                # An empty sandbox must never overwrite a good backup.
                raise SyncError("Sync aborted: source missing clawdbot.json")

            previous = await self._read_marker(self.bucket_marker)
            script = " && ".join([
                f"mkdir -p {shlex.quote(self.mount_path + '/clawdbot')} {shlex.quote(self.mount_path + '/skills')}",
                _rsync(state_dir, f"{self.mount_path}/clawdbot", RSYNC_EXCLUDES),
                f"(test ! -d {shlex.quote(self.settings.skills_dir)} || "
                + _rsync(self.settings.skills_dir, f"{self.mount_path}/skills") + ")",
                f"date -u -Ins > {shlex.quote(self.bucket_marker)}",
            ])
            result = await self.sandbox.exec(["sh", "-c", script], timeout=SYNC_TIMEOUT)

            timestamp = await self._read_marker(self.bucket_marker)
            # A marker left by an earlier sync is not evidence this one worked.
            if timestamp is None or (previous is not None and timestamp <= previous):
                audit_log("storage_sync_error", {"exit_code": result.exit_code, "stderr": result.stderr[-500:]})
                raise SyncError("Sync failed", details=result.stderr[-500:] or result.stdout[-500:])

            audit_log("storage_sync", {"timestamp": timestamp})
            return SyncResult(timestamp=timestamp)

    async def restore_in(self) -> RestoreResult:
        """
        Restore gateway state from the bucket if the backup is newer than
        what the sandbox already has. Runs before the gateway starts.
        """
        self._try_acquire()
        async with self._lock:
            await self._require_mount()

            remote = await self._read_marker(self.bucket_marker)
            if remote is None:
                print("[storage] no backup marker in bucket, nothing to restore", flush=True)
                return RestoreResult(restored=False)

            local = await self._read_marker(self.local_marker)
            # UTC ISO-8601 timestamps compare correctly as strings.
            if local is not None and local >= remote:
                print(f"[storage] local state ({local}) is current, skipping restore", flush=True)
                return RestoreResult(restored=False, timestamp=local)

            state_dir = self.settings.state_dir.rstrip("/")
            script = " && ".join([
                f"mkdir -p {shlex.quote(state_dir)} {shlex.quote(self.settings.skills_dir)}",
                _rsync(f"{self.mount_path}/clawdbot", state_dir, RSYNC_EXCLUDES),
                f"(test ! -d {shlex.quote(self.mount_path + '/skills')} || "
                + _rsync(f"{self.mount_path}/skills", self.settings.skills_dir) + ")",
                f"cp {shlex.quote(self.bucket_marker)} {shlex.quote(self.local_marker)}",
            ])
            result = await self.sandbox.exec(["sh", "-c", script], timeout=SYNC_TIMEOUT)

            timestamp = await self._read_marker(self.local_marker)
            if timestamp != remote:
                audit_log("storage_restore_error", {"exit_code": result.exit_code, "stderr": result.stderr[-500:]})
                raise SyncError("Restore failed", details=result.stderr[-500:])

            audit_log("storage_restore", {"timestamp": timestamp})
            return RestoreResult(restored=True, timestamp=timestamp)

    async def status(self) -> dict:
        configured = self.settings.storage_configured
        mounted = await self.is_mounted() if configured else False
        last_sync = await self._read_marker(self.bucket_marker) if mounted else None
        return {
            "configured": configured,
            "mounted": mounted,
            "syncing": self.syncing,
            "lastSync": last_sync,
            "bucket": self.settings.r2_bucket,
            "mountPath": self.mount_path,
            "warning": self.warning,
        }
