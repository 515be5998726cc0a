"""
Channel Database Models

A channel owns its settings and membership lists. It only points at its
current prediction session; sessions outlive the pointer as history.
"""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Boolean,
    CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship, validates

from prediction_system.orm.base import Base

CHANNEL_NAME_MIN_LENGTH = 3
CHANNEL_NAME_MAX_LENGTH = 30
MAX_SCORE_LIMIT = 50


class MembershipRole(PyEnum):
    """Elevated roles a principal can hold inside one channel."""
    ADMIN = "admin"
    MODERATOR = "moderator"


class Channel(Base):
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(CHANNEL_NAME_MAX_LENGTH), unique=True, index=True, nullable=False)
    display_name = Column(String(50), nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Weak pointer: no FK so history rows never cascade through the channel
    current_session_id = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Settings
    max_score = Column(Integer, default=13, nullable=False)
    max_predictions_per_user = Column(Integer, default=1, nullable=False)
    allow_edit_after_close = Column(Boolean, default=False, nullable=False)
    auto_close_after_minutes = Column(Integer, nullable=True)

    # Stats
    total_sessions = Column(Integer, default=0, nullable=False)
    total_predictions = Column(Integer, default=0, nullable=False)
    total_users = Column(Integer, default=0, nullable=False)
    last_activity = Column(DateTime, default=datetime.utcnow, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    owner = relationship("User", foreign_keys=[owner_id], lazy="selectin")
    memberships = relationship(
        "ChannelMembership",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ChannelMembership.id",
    )

    __table_args__ = (
        CheckConstraint(f"max_score >= 1 AND max_score <= {MAX_SCORE_LIMIT}", name="ck_channel_max_score"),
    )

    @validates("name")
    def validate_name(self, key, name):
        """Names are stored lowercase and must be 3-30 characters."""
        name = (name or "").strip().lower()
        if not CHANNEL_NAME_MIN_LENGTH <= len(name) <= CHANNEL_NAME_MAX_LENGTH:
            raise ValueError(
                f"Channel name must be {CHANNEL_NAME_MIN_LENGTH}-{CHANNEL_NAME_MAX_LENGTH} characters"
            )
        return name

    def members_with_role(self, role: MembershipRole):
        return [m for m in self.memberships if m.role == role.value]

    @property
    def admin_ids(self):
        return {m.user_id for m in self.members_with_role(MembershipRole.ADMIN)}

    @property
    def moderator_ids(self):
        return {m.user_id for m in self.members_with_role(MembershipRole.MODERATOR)}

    def settings_dict(self):
        return {
            "max_score": self.max_score,
            "max_predictions_per_user": self.max_predictions_per_user,
            "allow_edit_after_close": self.allow_edit_after_close,
            "auto_close_after_minutes": self.auto_close_after_minutes,
        }

    def stats_dict(self):
        return {
            "total_sessions": self.total_sessions,
            "total_predictions": self.total_predictions,
            "total_users": self.total_users,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }

    def __repr__(self):
        return f"<Channel(id={self.id}, name='{self.name}')>"


class ChannelMembership(Base):
    """Admin or moderator grant. Insertion order is the listing order."""
    __tablename__ = "channel_memberships"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(String(20), nullable=False)
    added_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    added_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", foreign_keys=[user_id], lazy="selectin")

    __table_args__ = (
        UniqueConstraint("channel_id", "user_id", "role", name="uq_channel_member_role"),
        Index("idx_membership_user", "user_id"),
    )

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "username": self.user.username if self.user else None,
            "role": self.role,
            "added_at": self.added_at.isoformat() if self.added_at else None,
            "added_by_id": self.added_by_id,
        }
