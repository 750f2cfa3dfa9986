from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime, timezone

from storyfeed.models.post import (
    TITLE_MAX_LENGTH,
    STORY_MAX_LENGTH,
    DISPLAY_NAME_MAX_LENGTH,
    LOCATION_MAX_LENGTH,
)

class PostCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    story: str = Field(..., min_length=1, max_length=STORY_MAX_LENGTH)
    location: str = Field("", max_length=LOCATION_MAX_LENGTH)
    author_display_name: str = Field(..., min_length=1, max_length=DISPLAY_NAME_MAX_LENGTH)

class PostOut(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    author_id: str
    author_display_name: str
    title: str
    story: str
    location: str = ""
    image_url: Optional[str] = None
    created_at: datetime
    likes: int = 0
    flagged: bool = False

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

class PostEnvelope(BaseModel):
    post: PostOut

class PostListResponse(BaseModel):
    posts: List[PostOut]

class LikeResponse(BaseModel):
    id: str
    likes: int

class FlagUpdate(BaseModel):
    flagged: bool

class FeedSnapshotOut(BaseModel):
    version: int
    posts: List[dict]
