from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from datetime import datetime

class Base(DeclarativeBase):
    pass

class Run(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    key: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="")
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    cancel_requested: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, server_default=sa.false())
    superseded_by: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    gates: Mapped[list] = mapped_column(JSONB, nullable=False, server_default=sa.text("'[]'::jsonb"))
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False)

class JobState(Base):
    __tablename__ = "job_states"
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    job_name: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False)
