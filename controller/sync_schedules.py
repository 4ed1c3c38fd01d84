"""
One-time Temporal schedule setup for the R2 backup.

Run after deployment to create the storage sync schedule:
    python3 sync_schedules.py

Env vars:
  TEMPORAL_HOST - Temporal gRPC address (default: 127.0.0.1:7233)
"""

import asyncio
import os
from datetime import timedelta

from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleIntervalSpec,
    ScheduleOverlapPolicy,
    SchedulePolicy,
    ScheduleSpec,
)
from temporalio.service import RPCError

from sync_worker import TASK_QUEUE, StorageSyncWorkflow

TEMPORAL_HOST = os.environ.get("TEMPORAL_HOST", "127.0.0.1:7233")
SCHEDULE_ID = "moltworker-storage-sync"
SYNC_INTERVAL = timedelta(minutes=5)


def build_schedule() -> Schedule:
    return Schedule(
        action=ScheduleActionStartWorkflow(
            StorageSyncWorkflow.run,
            id="moltworker-storage-sync-run",
            task_queue=TASK_QUEUE,
        ),
        spec=ScheduleSpec(intervals=[ScheduleIntervalSpec(every=SYNC_INTERVAL)]),
        # A tick that lands on a running backup is dropped, not queued.
        policy=SchedulePolicy(overlap=ScheduleOverlapPolicy.SKIP),
    )


async def main():
    client = await Client.connect(TEMPORAL_HOST)

    try:
        handle = client.get_schedule_handle(SCHEDULE_ID)
        desc = await handle.describe()
        print(f"Schedule '{SCHEDULE_ID}' already exists (next run: {desc.info.next_action_times})")
        print(f"To delete and recreate: temporal schedule delete --schedule-id {SCHEDULE_ID}")
        return
    except RPCError:
        pass  # not created yet

    await client.create_schedule(SCHEDULE_ID, build_schedule())
    print(f"Schedule '{SCHEDULE_ID}' created (every {int(SYNC_INTERVAL.total_seconds() // 60)} minutes)")


if __name__ == "__main__":
    asyncio.run(main())
