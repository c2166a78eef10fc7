from sqlalchemy import Column, String, DateTime

from .base import Base


class Agent(Base):
    __tablename__ = "agents"
    agent_id = Column(String, primary_key=True)
    host = Column(String, nullable=False, default="unknown")
    created_at = Column(DateTime, nullable=True)
    last_active_at = Column(DateTime, nullable=True)
