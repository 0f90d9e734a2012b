"""
Lead model — one row per sales opportunity moving through a pipeline.

won_at / lost_at are terminal markers: once either is set, no automation
touches the lead again.
"""
from sqlalchemy import Column, Integer, Float, Text, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func

from leadflow.database import Base


class Lead(Base):
    __tablename__ = 'leads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, default='')
    phone = Column(Text, default='')
    email = Column(Text, default='')
    pipeline_id = Column(Integer, ForeignKey('pipelines.id'), nullable=False, index=True)
    stage_id = Column(Integer, ForeignKey('stages.id'), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=True, index=True)
    assigned_to = Column(Integer, ForeignKey('agents.id'), nullable=True, index=True)
    temperature = Column(Text, nullable=False, default='cold')  # cold / warm / hot
    tags = Column(JSON, default=list)
    estimated_value = Column(Float, nullable=True)
    source = Column(Text, nullable=True)
    stage_entered_at = Column(DateTime(timezone=True), nullable=True)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    last_contact_at = Column(DateTime(timezone=True), nullable=True)
    first_contact_at = Column(DateTime(timezone=True), nullable=True)
    won_at = Column(DateTime(timezone=True), nullable=True)
    lost_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def is_terminal(self):
        return self.won_at is not None or self.lost_at is not None
