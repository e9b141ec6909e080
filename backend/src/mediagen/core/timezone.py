"""UTC timezone enforcement.

Sets TZ=UTC for the process and provides the naive-UTC clock used for every
persisted timestamp (the job and ledger tables store timezone-less UTC).
"""

import os
from datetime import datetime, timezone

os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
