"""
Interaction model — a logged touchpoint with a lead (call, message, meeting).

Read by the temperature classifier; sentiment is tagged by agents or upstream
transcript analysis.
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey
from sqlalchemy.sql import func

from leadflow.database import Base


class Interaction(Base):
    __tablename__ = 'interactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=False, index=True)
    channel = Column(Text, default='whatsapp')
    sentiment = Column(Text, nullable=True)  # positive / neutral / negative
    summary = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
