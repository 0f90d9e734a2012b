"""
Task model — follow-up work item for an agent on a lead.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func

from leadflow.database import Base


class Task(Base):
    __tablename__ = 'tasks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=False, index=True)
    assigned_to = Column(Integer, ForeignKey('agents.id'), nullable=True)
    title = Column(Text, nullable=False)
    description = Column(Text, default='')
    priority = Column(Text, default='medium')  # low / medium / high / urgent
    status = Column(Text, default='pending')   # pending / done / overdue
    due_at = Column(DateTime(timezone=True), nullable=True)
    reminded_at = Column(DateTime(timezone=True), nullable=True)
    escalated = Column(Boolean, default=False)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
