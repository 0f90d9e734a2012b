"""
AutomationRun model — one row per orchestrator invocation (the master cron).
"""
from sqlalchemy import Column, Integer, Text, Float, DateTime, JSON
from sqlalchemy.sql import func

from leadflow.database import Base


class AutomationRun(Base):
    __tablename__ = 'automation_runs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(Text, nullable=False, default='master')
    status = Column(Text, nullable=False)  # success / partial / error
    results = Column(JSON, default=dict)
    errors = Column(JSON, nullable=True)
    skipped = Column(JSON, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), server_default=func.now())
