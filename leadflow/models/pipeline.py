"""
Pipeline + Stage models — a pipeline owns an ordered list of stages.
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey
from sqlalchemy.sql import func

from leadflow.database import Base


class Pipeline(Base):
    __tablename__ = 'pipelines'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    kind = Column(Text, nullable=False, default='sales')  # sales / closer / referral / post_sale
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Stage(Base):
    __tablename__ = 'stages'

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(Integer, ForeignKey('pipelines.id'), nullable=False, index=True)
    name = Column(Text, nullable=False)
    category = Column(Text, nullable=True)  # intake / qualification / proposal / negotiation / closing
    position = Column(Integer, nullable=False, default=0)
