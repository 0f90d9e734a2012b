"""
AutomationRule model — trigger + ordered action list, scoped to a pipeline/stage.

trigger_config and actions are stored as JSON; leadflow.engine.actions and
leadflow.engine.triggers parse them into typed variants before use.
"""
from sqlalchemy import Column, Integer, Float, Text, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func

from leadflow.database import Base


class AutomationRule(Base):
    __tablename__ = 'automation_rules'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    trigger_type = Column(Text, nullable=False)
    trigger_config = Column(JSON, default=dict)
    time_of_day = Column(Text, nullable=True)  # "HH:MM", scheduled rules only
    actions = Column(JSON, default=list)
    pipeline_id = Column(Integer, ForeignKey('pipelines.id'), nullable=True)
    stage_id = Column(Integer, ForeignKey('stages.id'), nullable=True)
    dedupe_window_hours = Column(Float, nullable=False, default=24.0)
    is_active = Column(Boolean, nullable=False, default=True)
    run_count = Column(Integer, default=0)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
