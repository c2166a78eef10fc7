from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
import uuid

from .base import Base


class Alert(Base):
    __tablename__ = "alerts"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id = Column(
        String,
        ForeignKey("devices.device_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    agent_id = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    message = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
