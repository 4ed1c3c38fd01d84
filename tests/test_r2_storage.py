"""Tests for R2 mount, backup and restore."""

import asyncio

import pytest

from r2_storage import (
    MountError,
    MountStatus,
    StorageManager,
    SyncError,
    SyncInProgress,
    _rsync,
)
from sandbox import ExecResult
from settings import load_settings

STATE_CONFIG = "/root/.clawdbot/clawdbot.json"
BUCKET_MARKER = "/data/moltbot/.last-sync"
LOCAL_MARKER = "/root/.clawdbot/.last-sync"


@pytest.fixture
def storage(sandbox, settings) -> StorageManager:
    return StorageManager(sandbox, settings)


def destructive(commands) -> list:
    return [c for c in commands if c[0] in ("rm", "rsync", "umount") or "rsync" in " ".join(c)]


class TestMount:
    @pytest.mark.asyncio
    async def test_mount_then_already_mounted(self, storage, sandbox):
        assert await storage.mount() == MountStatus.MOUNTED
        assert await storage.mount() == MountStatus.ALREADY_MOUNTED
        s3fs_calls = [c for c in sandbox.commands if c[0] == "s3fs"]
        assert len(s3fs_calls) == 1
        assert "url=https://acct123.r2.cloudflarestorage.com" in s3fs_calls[0]

    @pytest.mark.asyncio
    async def test_s3fs_failure_on_live_mount_is_success(self, storage, sandbox):
        # Mount table is the only evidence that counts.
        sandbox.mounted = True
        sandbox.mount_works = False
        assert await storage.mount() == MountStatus.ALREADY_MOUNTED

    @pytest.mark.asyncio
    async def test_failed_mount_is_not_destructive(self, storage, sandbox):
        sandbox.mount_works = False
        with pytest.raises(MountError):
            await storage.mount()
        assert storage.warning
        assert destructive(sandbox.commands) == []

    @pytest.mark.asyncio
    async def test_unconfigured(self, sandbox):
        storage = StorageManager(sandbox, load_settings({"MOLTBOT_GATEWAY_TOKEN": "t"}))
        with pytest.raises(MountError):
            await storage.mount()
        assert sandbox.commands == []


class TestSync:
    @pytest.mark.asyncio
    async def test_restore_then_sync_leaves_valid_marker(self, storage, sandbox):
        sandbox.files[STATE_CONFIG] = "{}"
        await storage.mount()
        restored = await storage.restore_in()
        assert restored.restored is False

        result = await storage.sync_out()
        assert result.timestamp.startswith("2026-01-01T")
        assert sandbox.files[BUCKET_MARKER].strip() == result.timestamp
        assert (await storage.status())["lastSync"] == result.timestamp
        assert await storage.mount() == MountStatus.ALREADY_MOUNTED

    @pytest.mark.asyncio
    async def test_sync_without_config_is_refused(self, storage, sandbox):
        await storage.mount()
        with pytest.raises(SyncError, match="clawdbot.json"):
            await storage.sync_out()
        assert destructive(sandbox.commands) == []

    @pytest.mark.asyncio
    async def test_sync_requires_mount(self, storage, sandbox):
        sandbox.files[STATE_CONFIG] = "{}"
        sandbox.mount_works = False
        with pytest.raises(MountError):
            await storage.sync_out()
        assert destructive(sandbox.commands) == []

    @pytest.mark.asyncio
    async def test_missing_marker_after_copy_is_failure(self, storage, sandbox):
        sandbox.files[STATE_CONFIG] = "{}"
        await storage.mount()
        # Bucket disappears mid-sync: the copy "succeeds" but no marker is written.
        sandbox.script_gate = asyncio.Event()
        task = asyncio.create_task(storage.sync_out())
        await sandbox.script_entered.wait()
        sandbox.mounted = False
        sandbox.script_gate.set()
        with pytest.raises(SyncError):
            await task

    @pytest.mark.asyncio
    async def test_concurrent_sync_rejected(self, storage, sandbox):
        sandbox.files[STATE_CONFIG] = "{}"
        await storage.mount()
        sandbox.script_gate = asyncio.Event()
        first = asyncio.create_task(storage.sync_out())
        await sandbox.script_entered.wait()

        assert storage.syncing
        with pytest.raises(SyncInProgress):
            await storage.sync_out()

        sandbox.script_gate.set()
        result = await first
        assert result.timestamp
        assert not storage.syncing

    @pytest.mark.asyncio
    async def test_failed_sync_after_good_one_is_failure(self, storage, sandbox):
        sandbox.files[STATE_CONFIG] = "{}"
        first = await storage.sync_out()

        sandbox.script_failure = ExecResult(23, "", "rsync: write failed")
        with pytest.raises(SyncError) as exc:
            await storage.sync_out()
        assert "rsync: write failed" in exc.value.details
        # The earlier backup marker is untouched.
        assert sandbox.files[BUCKET_MARKER].strip() == first.timestamp


class TestRestore:
    @pytest.mark.asyncio
    async def test_restores_newer_backup(self, storage, sandbox):
        sandbox.mounted = True
        sandbox.files[BUCKET_MARKER] = "2026-01-02T00:00:00+00:00\n"
        result = await storage.restore_in()
        assert result.restored is True
        assert result.timestamp == "2026-01-02T00:00:00+00:00"
        assert sandbox.files[LOCAL_MARKER] == sandbox.files[BUCKET_MARKER]

    @pytest.mark.asyncio
    async def test_skips_when_local_is_current(self, storage, sandbox):
        sandbox.mounted = True
        sandbox.files[BUCKET_MARKER] = "2026-01-02T00:00:00+00:00\n"
        sandbox.files[LOCAL_MARKER] = "2026-01-03T00:00:00+00:00\n"
        result = await storage.restore_in()
        assert result.restored is False
        assert destructive(sandbox.commands) == []

    @pytest.mark.asyncio
    async def test_garbage_marker_means_no_backup(self, storage, sandbox):
        sandbox.mounted = True
        sandbox.files[BUCKET_MARKER] = "not a timestamp"
        result = await storage.restore_in()
        assert result.restored is False

    @pytest.mark.asyncio
    async def test_failed_copy_with_older_local_marker_is_failure(self, storage, sandbox):
        sandbox.mounted = True
        sandbox.files[BUCKET_MARKER] = "2026-01-05T00:00:00+00:00\n"
        sandbox.files[LOCAL_MARKER] = "2026-01-01T00:00:00+00:00\n"
        sandbox.script_failure = ExecResult(23, "", "rsync: read failed")
        with pytest.raises(SyncError):
            await storage.restore_in()
        assert sandbox.files[LOCAL_MARKER] == "2026-01-01T00:00:00+00:00\n"


class TestRsyncCommand:
    def test_no_times_and_excludes(self):
        cmd = _rsync("/root/.clawdbot", "/data/moltbot/clawdbot", ("*.lock",))
        assert cmd.startswith("rsync -r --no-times --delete")
        assert "--exclude='*.lock'" in cmd
        assert cmd.endswith("/root/.clawdbot/ /data/moltbot/clawdbot/")
