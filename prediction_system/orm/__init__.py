from .base import Base

# Core models
from .user import User, UserRole
from .channel import Channel, ChannelMembership, MembershipRole
from .prediction_session import PredictionSession, PredictionEntry, SessionStatus, GameType


__all__ = [
    "Base",
    "User",
    "UserRole",
    "Channel",
    "ChannelMembership",
    "MembershipRole",
    "PredictionSession",
    "PredictionEntry",
    "SessionStatus",
    "GameType",
]
