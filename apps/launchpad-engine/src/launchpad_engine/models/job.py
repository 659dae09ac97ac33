"""Queue entry model for persistent build requests."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from launchpad_engine.core.database import Base


class QueueEntry(Base):
    """Queue entry model - one delivery of one build request."""
    
    __tablename__ = "queue_entries"
    
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    queue: Mapped[str] = mapped_column(String(50), default="ios-build")
    
    # Request
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    
    # Delivery
    state: Mapped[str] = mapped_column(String(20), default="waiting", index=True)  # waiting, active, completed, failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1)
    worker_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    lock_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    return_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    
    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "queue": self.queue,
            "payload": self.payload,
            "state": self.state,
            "attempts": self.attempts,
            "workerId": self.worker_id,
            "failedReason": self.failed_reason,
            "returnValue": self.return_value,
            "createdAt": self.created_at.isoformat(),
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
