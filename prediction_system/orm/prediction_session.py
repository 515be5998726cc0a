"""
Prediction Session Database Models

One PredictionSession is one round of score predictions in a channel.
Entries are unique per (session, user) at the storage layer; that
constraint is what deflects racing duplicate submissions.
"""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Boolean, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from prediction_system.orm.base import Base


class SessionStatus(PyEnum):
    """Prediction session states."""
    OPEN = "open"
    CLOSED = "closed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class GameType(PyEnum):
    CS2 = "cs2"
    VALORANT = "valorant"
    OTHER = "other"


class PredictionSession(Base):
    __tablename__ = "prediction_sessions"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id"), nullable=False)

    title = Column(String(100), default="Prediction Session", nullable=False)
    description = Column(String(500), nullable=True)
    game_type = Column(String(20), default=GameType.CS2.value, nullable=False)

    status = Column(String(20), default=SessionStatus.OPEN.value, nullable=False)
    max_score = Column(Integer, nullable=False)

    opened_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    closed_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    opened_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    actual_result = Column(String(20), nullable=True)

    total_entries = Column(Integer, default=0, nullable=False)
    unique_users = Column(Integer, default=0, nullable=False)
    winners_count = Column(Integer, default=0, nullable=False)

    entries = relationship(
        "PredictionEntry",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PredictionEntry.id",
    )

    __table_args__ = (
        Index("idx_session_channel_status", "channel_id", "status"),
        Index("idx_session_opened_at", "opened_at"),
    )

    @property
    def status_enum(self) -> SessionStatus:
        return SessionStatus(self.status)

    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN.value

    def entry_for(self, user_id: int):
        for entry in self.entries:
            if entry.user_id == user_id:
                return entry
        return None

    def winners(self):
        return [entry for entry in self.entries if entry.is_winner]

    def to_dict(self, include_entries: bool = False):
        data = {
            "id": self.id,
            "channel_id": self.channel_id,
            "title": self.title,
            "description": self.description,
            "game_type": self.game_type,
            "status": self.status,
            "max_score": self.max_score,
            "opened_by_id": self.opened_by_id,
            "closed_by_id": self.closed_by_id,
            "resolved_by_id": self.resolved_by_id,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "actual_result": self.actual_result,
            "stats": {
                "total_entries": self.total_entries,
                "unique_users": self.unique_users,
                "winners": self.winners_count,
            },
        }
        if include_entries:
            data["entries"] = [entry.to_dict() for entry in self.entries]
        return data

    def __repr__(self):
        return f"<PredictionSession(id={self.id}, channel={self.channel_id}, status='{self.status}')>"


class PredictionEntry(Base):
    __tablename__ = "prediction_entries"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("prediction_sessions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    username = Column(String(50), nullable=False)
    prediction = Column(String(20), nullable=False)
    is_winner = Column(Boolean, default=False, nullable=False)
    submitted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    edited_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_entry_session_user"),
        Index("idx_entry_username", "username"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username,
            "prediction": self.prediction,
            "is_winner": self.is_winner,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "edited_at": self.edited_at.isoformat() if self.edited_at else None,
        }
