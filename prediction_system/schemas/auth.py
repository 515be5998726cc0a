"""
Authentication request schemas
"""
import re

from pydantic import BaseModel, EmailStr, Field, field_validator

USERNAME_PATTERN = re.compile(r"^[a-z0-9_]{3,50}$")


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip().lstrip('@').lower()
        if not USERNAME_PATTERN.match(v):
            raise ValueError("username may only contain letters, digits and underscores")
        return v


class RefreshRequest(BaseModel):
    refresh_token: str


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=51)
    password: str = Field(..., min_length=1, max_length=128)
