"""Ingest run ledger model."""

import time
import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


DEFAULT_SINCE_ID = 1_000_000_000


def new_sortable_id() -> str:
    """Sortable id: epoch millis in hex followed by random hex."""
    return f"{int(time.time() * 1000):013x}{uuid.uuid4().hex[:13]}"


class IngestRun(Base):
    """One ingestion attempt for one user."""

    __tablename__ = "ingest_runs"
    __table_args__ = (
        # At most one active (uncompleted) run per user.
        Index(
            "uq_ingest_runs_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("completed_at IS NULL"),
            sqlite_where=text("completed_at IS NULL"),
        ),
    )

    id = Column(String, primary_key=True, default=new_sortable_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True, index=True)
    status = Column(String, nullable=False, default="ok")
    cursor = Column(String, nullable=False, default="")
    since_id = Column(BigInteger, nullable=False, default=DEFAULT_SINCE_ID)
    fetched_count = Column(Integer, nullable=False, default=0)
    retried = Column(Integer, nullable=False, default=0)
    rate_limit_hits = Column(Integer, nullable=False, default=0)
    err_text = Column(Text, nullable=True)

    user = relationship("User", back_populates="ingest_runs")
