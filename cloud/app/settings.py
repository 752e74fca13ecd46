from __future__ import annotations
import os

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ["REDIS_URL"]
CANCEL_LOCK_SECONDS = int(os.environ.get("CANCEL_LOCK_SECONDS", "30"))
