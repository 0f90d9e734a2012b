"""
Cadence + CadenceStep models — day-offset outreach sequences tied to stage entry.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func

from leadflow.database import Base


class Cadence(Base):
    __tablename__ = 'cadences'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    channel = Column(Text, nullable=False, default='whatsapp')
    pipeline_id = Column(Integer, ForeignKey('pipelines.id'), nullable=True)
    stage_id = Column(Integer, ForeignKey('stages.id'), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CadenceStep(Base):
    __tablename__ = 'cadence_steps'

    id = Column(Integer, primary_key=True, autoincrement=True)
    cadence_id = Column(Integer, ForeignKey('cadences.id'), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    day_offset = Column(Integer, nullable=False)
    channel = Column(Text, nullable=True)  # falls back to the cadence channel
    message_template = Column(Text, nullable=False, default='')
