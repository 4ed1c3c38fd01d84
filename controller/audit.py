"""
Audit log: append-only JSONL of controller events.

Every gateway start, sync result, auth rejection and device approval lands
here. Values pass through the scrub rules before they are written or printed.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from scrub import scrub_dict

AUDIT_LOG = Path(os.environ.get("AUDIT_LOG", "/srv/audit/audit.jsonl"))


def audit_log(event: str, details: dict):
    """Append an event to the audit log."""
    details = scrub_dict(details)
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **details,
    }
    try:
        AUDIT_LOG.parent.mkdir(parents=True, exist_ok=True)
        with open(AUDIT_LOG, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        print(f"[audit] write failed: {e}", flush=True)
    print(f"[audit] {event}: {details}", flush=True)


def read_audit_log(limit: int = 50, event: str | None = None) -> list[dict]:
    """Read audit entries, optionally filtered by event name. Returns newest first."""
    if not AUDIT_LOG.exists():
        return []

    entries = []
    with open(AUDIT_LOG) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event and entry.get("event") != event:
                continue
            entries.append(entry)

    entries.reverse()
    return entries[:limit]
