"""Schemas for the social actions that trigger notifications."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.types import UtcDateTime


class FollowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    follower_id: int
    following_id: int
    created_at: UtcDateTime


class LikeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    post_id: int
    user_id: int
    created_at: UtcDateTime


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


class CommentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    post_id: int
    user_id: int
    content: str
    created_at: UtcDateTime
