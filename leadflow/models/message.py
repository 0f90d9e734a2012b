"""
MessageTemplate + DispatchMessage models.

dispatch_queue is the outbound dispatch collaborator's inbox: the engine only
inserts 'pending' rows; delivery happens downstream.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.sql import func

from leadflow.database import Base


class MessageTemplate(Base):
    __tablename__ = 'message_templates'

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    channel = Column(Text, nullable=False, default='whatsapp')
    content = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class DispatchMessage(Base):
    __tablename__ = 'dispatch_queue'
    __table_args__ = (
        Index('ix_dispatch_queue_status_scheduled', 'status', 'scheduled_for'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=False, index=True)
    phone = Column(Text, default='')
    channel = Column(Text, nullable=False, default='whatsapp')
    cadence_id = Column(Integer, nullable=True)
    step_index = Column(Integer, nullable=True)
    template_id = Column(Integer, nullable=True)
    content = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='pending')  # pending / ready / sent / failed
    error = Column(Text, nullable=True)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
