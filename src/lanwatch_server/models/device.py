from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String

from .base import Base


class Device(Base):
    __tablename__ = "devices"
    device_id = Column(String, primary_key=True)
    agent_id = Column(
        String,
        ForeignKey("agents.agent_id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    address = Column(String, nullable=True)
    hardware_address = Column(String, nullable=True)
    display_name = Column(String, nullable=True)

    status = Column(String, nullable=False, default="unknown")
    first_seen_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)
    latency_ms = Column(Float, nullable=True)

    # Written by the edge only.
    consecutive_failures = Column(Integer, nullable=False, default=0)
    observation_count = Column(Integer, nullable=False, default=0)

    # Bumped by every write; conditional updates compare against it.
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}
