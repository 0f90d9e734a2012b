"""
HistoryEntry model — audit trail of everything that happened to a lead.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func

from leadflow.database import Base


class HistoryEntry(Base):
    __tablename__ = 'lead_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=False, index=True)
    action = Column(Text, nullable=False)  # stage_change / auto_assignment / temperature_change / ...
    title = Column(Text, default='')
    details = Column(JSON, nullable=True)
    from_stage_id = Column(Integer, nullable=True)
    to_stage_id = Column(Integer, nullable=True)
    performed_by = Column(Integer, nullable=True)  # NULL = system
    created_at = Column(DateTime(timezone=True), server_default=func.now())
