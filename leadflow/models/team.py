"""
Team + Agent models — agents belong to one team and carry a role.
"""
from sqlalchemy import Column, Integer, Text, Boolean, ForeignKey

from leadflow.database import Base


class Team(Base):
    __tablename__ = 'teams'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, unique=True)


class Agent(Base):
    __tablename__ = 'agents'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    email = Column(Text, default='')
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=True, index=True)
    role = Column(Text, nullable=False, default='sdr')
    is_active = Column(Boolean, nullable=False, default=True)
