from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from .models import Base
from .settings import DATABASE_URL

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_models() -> None:
    # runs/job_states only; no extensions needed (run ids come from the client)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
