from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .db import SessionLocal, init_models
from .models import Run, JobState
from .redisq import acquire_group_lock, release_group_lock

app = FastAPI(title="meshci control plane")

TERMINAL = ("succeeded", "failed", "skipped", "cancelled")
JOB_STATUSES = ("pending", "running", *TERMINAL)

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    key: str
    run_id: str
    workflow: str = ""
    ref: str = ""
    jobs: list[str] = Field(default_factory=list)
    gates: list[str] = Field(default_factory=list)

class CreateRunResponse(BaseModel):
    run_id: str
    superseded: list[str]

class RunResponse(BaseModel):
    run_id: str
    key: str
    workflow: str
    ref: str
    status: str
    cancel_requested: bool
    superseded_by: str | None
    jobs: dict[str, str]
    created_at: datetime

class JobReport(BaseModel):
    status: str

class CompleteRequest(BaseModel):
    status: str
    jobs: dict[str, str] = Field(default_factory=dict)

class GateResponse(BaseModel):
    run_id: str
    gate: str | None
    status: str

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    await init_models()

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

async def _job_states(s, run_id: str) -> dict[str, str]:
    rows = await s.execute(sa.select(JobState).where(JobState.run_id == run_id))
    return {j.job_name: j.status for j in rows.scalars()}

# -------------------- Endpoints --------------------

@app.post("/runs", response_model=CreateRunResponse)
async def create_run(req: CreateRunRequest):
    holder = uuid.uuid4().hex
    # Serialise registrations per concurrency group so two racing runs
    # cannot both believe they are the newest.
    for _ in range(50):
        if await acquire_group_lock(req.key, holder):
            break
        await asyncio.sleep(0.1)
    else:
        raise HTTPException(status_code=409, detail=f"Concurrency group {req.key} is busy")

    try:
        async with SessionLocal() as s:
            async with s.begin():
                if await s.get(Run, req.run_id):
                    raise HTTPException(status_code=409, detail=f"Run {req.run_id} already registered")

                q = sa.select(Run).where(Run.key == req.key, Run.status.not_in(TERMINAL))
                superseded: list[str] = []
                for old in (await s.execute(q)).scalars():
                    old.cancel_requested = True
                    old.superseded_by = req.run_id
                    superseded.append(old.id)

                s.add(Run(
                    id=req.run_id,
                    key=req.key,
                    workflow=req.workflow,
                    ref=req.ref,
                    status="running",
                    gates=req.gates,
                ))
                await s.flush()
                for name in req.jobs:
                    s.add(JobState(run_id=req.run_id, job_name=name, status="pending"))
    finally:
        await release_group_lock(req.key, holder)

    return CreateRunResponse(run_id=req.run_id, superseded=superseded)

@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunResponse(
            run_id=run.id,
            key=run.key,
            workflow=run.workflow,
            ref=run.ref,
            status=run.status,
            cancel_requested=run.cancel_requested,
            superseded_by=run.superseded_by,
            jobs=await _job_states(s, run_id),
            created_at=run.created_at,
        )

@app.post("/runs/{run_id}/jobs/{job_name}")
async def report_job(run_id: str, job_name: str, req: JobReport):
    if req.status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {'|'.join(JOB_STATUSES)}")

    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")
            if run.status in TERMINAL:
                raise HTTPException(status_code=409, detail=f"Run already {run.status}")

            job = await s.get(JobState, (run_id, job_name))
            if job:
                job.status = req.status
                job.updated_at = now_utc()
            else:
                s.add(JobState(run_id=run_id, job_name=job_name, status=req.status))

    return {"ok": True, "cancel_requested": run.cancel_requested}

@app.post("/runs/{run_id}/complete")
async def complete(run_id: str, req: CompleteRequest):
    if req.status not in TERMINAL:
        raise HTTPException(status_code=400, detail=f"status must be one of {'|'.join(TERMINAL)}")

    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, run_id)
            if not run:
                raise HTTPException(status_code=404, detail="Run not found")

            for name, status in req.jobs.items():
                job = await s.get(JobState, (run_id, name))
                if job:
                    job.status = status
                    job.updated_at = now_utc()
                else:
                    s.add(JobState(run_id=run_id, job_name=name, status=status))
            run.status = req.status

    return {"ok": True}

@app.get("/runs/{run_id}/gate", response_model=GateResponse)
async def gate(run_id: str):
    """The merge signal: the first gate's status, or the run status without a gate."""
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")
        if not run.gates:
            return GateResponse(run_id=run_id, gate=None, status=run.status)

        name = run.gates[0]
        job = await s.get(JobState, (run_id, name))
        status = job.status if job else "pending"
        if run.cancel_requested and status not in TERMINAL:
            status = "cancelled"
        return GateResponse(run_id=run_id, gate=name, status=status)
