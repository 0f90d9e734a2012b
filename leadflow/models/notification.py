"""
Notification model — in-app alert for an agent.

lead_id + type + created_at are what the SLA dedupe lookup reads.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, JSON, ForeignKey, Index
from sqlalchemy.sql import func

from leadflow.database import Base


class Notification(Base):
    __tablename__ = 'notifications'
    __table_args__ = (
        Index('ix_notification_lead_type', 'lead_id', 'type', 'created_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(Integer, ForeignKey('agents.id'), nullable=True, index=True)
    lead_id = Column(Integer, nullable=True)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, default='')
    extra = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
