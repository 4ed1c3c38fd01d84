"""
Moltworker Temporal Worker

Runs the scheduled storage backup: every tick asks the controller to sync
gateway state to R2. The controller owns the sync lock, so a tick that lands
while a backup is still running is simply skipped.

Env vars:
  TEMPORAL_HOST      - Temporal gRPC address (default: 127.0.0.1:7233)
  CONTROLLER_URL     - Controller base URL (default: http://127.0.0.1:8080)
  INTERNAL_API_TOKEN - Bearer token for the controller's /internal routes
"""

import asyncio
import os
from datetime import timedelta

from temporalio import activity, workflow
from temporalio.client import Client
from temporalio.common import RetryPolicy
from temporalio.worker import Worker

with workflow.unsafe.imports_passed_through():
    import httpx

TEMPORAL_HOST = os.environ.get("TEMPORAL_HOST", "127.0.0.1:7233")
CONTROLLER_URL = os.environ.get("CONTROLLER_URL", "http://127.0.0.1:8080")
INTERNAL_API_TOKEN = os.environ.get("INTERNAL_API_TOKEN", "")
TASK_QUEUE = "moltworker"
# Controller-side sync is capped at 300s; leave room for mount checks.
SYNC_REQUEST_TIMEOUT = 330


@activity.defn
async def trigger_storage_sync() -> str:
    """POST to the controller's internal sync route."""
    url = f"{CONTROLLER_URL.rstrip('/')}/internal/storage/sync"
    headers = {}
    if INTERNAL_API_TOKEN:
        headers["Authorization"] = f"Bearer {INTERNAL_API_TOKEN}"

    async with httpx.AsyncClient(timeout=SYNC_REQUEST_TIMEOUT) as client:
        resp = await client.post(url, headers=headers)
        if resp.status_code == 409:
            return "skipped: sync in progress"
        resp.raise_for_status()
        return resp.text


@workflow.defn
class StorageSyncWorkflow:
    """One backup tick. Failures are not retried; the next tick tries again."""

    @workflow.run
    async def run(self) -> str:
        result = await workflow.execute_activity(
            trigger_storage_sync,
            start_to_close_timeout=timedelta(seconds=SYNC_REQUEST_TIMEOUT + 30),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        workflow.logger.info(f"Storage sync: {result}")
        return result


async def main():
    client = await Client.connect(TEMPORAL_HOST)
    worker = Worker(
        client,
        task_queue=TASK_QUEUE,
        workflows=[StorageSyncWorkflow],
        activities=[trigger_storage_sync],
    )
    print(f"[temporal-worker] Starting on {TEMPORAL_HOST}, queue={TASK_QUEUE}")
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
