from __future__ import annotations

import redis.asyncio as redis
from .settings import REDIS_URL, CANCEL_LOCK_SECONDS

r = redis.from_url(REDIS_URL, decode_responses=True)

def group_lock_key(key: str) -> str:
    return f"meshci:group_lock:{key}"

async def acquire_group_lock(key: str, holder: str) -> bool:
    # SET NX EX: one registration per concurrency group at a time
    return bool(await r.set(group_lock_key(key), holder, nx=True, ex=CANCEL_LOCK_SECONDS))

async def release_group_lock(key: str, holder: str) -> None:
    if await r.get(group_lock_key(key)) == holder:
        await r.delete(group_lock_key(key))
