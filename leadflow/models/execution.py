"""
ExecutionRecord model — the append-only execution ledger.

One row per (rule-or-cadence step, lead) execution. Rows are never updated;
the "already executed recently" check reads them back.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, Index
from sqlalchemy.sql import func

from leadflow.database import Base


class ExecutionRecord(Base):
    __tablename__ = 'execution_records'
    __table_args__ = (
        Index('ix_execution_source_lead', 'source_type', 'source_id', 'lead_id', 'executed_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_type = Column(Text, nullable=False)  # rule / cadence
    source_id = Column(Integer, nullable=False)
    step_index = Column(Integer, nullable=True)  # cadence step position
    lead_id = Column(Integer, nullable=False, index=True)
    status = Column(Text, nullable=False)  # completed / partial / failed
    result = Column(JSON, default=dict)
    executed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
