"""
SLAConfig model — residency thresholds for a stage or a whole pipeline.

A stage-scoped config takes precedence over a pipeline-scoped one.
"""
from sqlalchemy import Column, Integer, Float, Boolean, ForeignKey

from leadflow.database import Base


class SLAConfig(Base):
    __tablename__ = 'sla_configs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, ForeignKey('pipelines.id'), nullable=True)
    stage_id = Column(Integer, ForeignKey('stages.id'), nullable=True)
    warning_hours = Column(Float, nullable=False)
    max_hours = Column(Float, nullable=False)
    critical_hours = Column(Float, nullable=False)
    business_hours_only = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
