"""Schemas describing users as seen by other participants."""

from pydantic import BaseModel, ConfigDict


class PublicUser(BaseModel):
    """Minimal public-facing user information."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    display_name: str
    avatar_url: str | None = None
