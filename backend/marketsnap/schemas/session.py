"""Session schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class SignInRequest(BaseModel):
    user_id: str = Field(min_length=1)
    id_token: str = Field(min_length=1)
    expires_at: datetime | None = None
    display_name: str | None = None
    avatar_ref: str | None = None


class SessionOut(BaseModel):
    user_id: str
    display_name: str | None = None
    avatar_ref: str | None = None
    cached_at: datetime


class SignOutResponse(BaseModel):
    signed_out: bool = True
    purged_items: int = 0
