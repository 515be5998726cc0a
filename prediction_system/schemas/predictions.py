"""
prediction_system/schemas/predictions.py
Pydantic schemas for the JSON prediction API

All endpoints answer with the standard envelope:
{
    "success": bool,
    "message": str,
    "data": dict
}
"""
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from prediction_system.orm.channel import MAX_SCORE_LIMIT
from prediction_system.orm.prediction_session import GameType


# ================= REQUEST SCHEMAS =================

class SessionOpenRequest(BaseModel):
    """
    Used by: POST /api/channels/{name}/sessions
    """
    title: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    game_type: Optional[str] = Field(None, description="cs2 | valorant | other")

    @field_validator('game_type')
    @classmethod
    def validate_game_type(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        allowed = [g.value for g in GameType]
        if v.strip().lower() not in allowed:
            raise ValueError(f"game_type must be one of: {', '.join(allowed)}")
        return v.strip().lower()


class EntrySubmitRequest(BaseModel):
    """
    Used by: POST /api/channels/{name}/sessions/current/entries

    Omit username to submit for yourself; moderators may name another participant.
    """
    prediction: str = Field(..., min_length=1, max_length=20, description="Score pair, e.g. 13-9")
    username: Optional[str] = Field(None, max_length=50)

    class Config:
        json_schema_extra = {"example": {"prediction": "13-9"}}


class EntryEditRequest(BaseModel):
    """
    Used by: PUT /api/channels/{name}/sessions/current/entries

    Omit username to edit your own entry; moderators may name another participant.
    """
    prediction: str = Field(..., min_length=1, max_length=20)
    username: Optional[str] = Field(None, max_length=50)


class SessionResolveRequest(BaseModel):
    """
    Used by: POST /api/channels/{name}/sessions/current/resolve
    """
    actual_result: str = Field(..., min_length=1, max_length=20)

    @field_validator('actual_result')
    @classmethod
    def strip_result(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("actual_result cannot be empty")
        return v.strip()


class MemberRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=51)


class ChannelSettingsUpdate(BaseModel):
    """
    Used by: PATCH /api/channels/{name}/settings
    """
    max_score: Optional[int] = Field(None, ge=1, le=MAX_SCORE_LIMIT)
    allow_edit_after_close: Optional[bool] = None
    auto_close_after_minutes: Optional[int] = Field(None, ge=1, le=24 * 60)
