from sqlalchemy import Column, JSON, String
import uuid

from .base import Base


class Subscriber(Base):
    """Someone who receives push notifications for alerts, on every token they registered."""

    __tablename__ = "subscribers"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    tokens = Column(JSON, nullable=False, default=list)
