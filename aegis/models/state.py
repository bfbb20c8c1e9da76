"""
Key-value state persisted across restarts (settings, stats, history, learner maps).
"""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON
from aegis.database import Base


class StateEntry(Base):
    """One opaque JSON document per key."""
    __tablename__ = "kv_state"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
