from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from api.enums import VideoCounter
from api.errors import sanitize_error_message
from config import MAX_BULK_ITEMS, MAX_COMMENT_LENGTH, MAX_TAGS_PER_VIDEO


# ============ Identity ============


class ExternalProfile(BaseModel):
    """Profile received from the OAuth provider after a successful login."""

    external_id: str = Field(..., min_length=1, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    display_name: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = None
    email: Optional[str] = Field(default=None, max_length=255)

    @field_validator("external_id")
    @classmethod
    def strip_external_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("external_id cannot be blank")
        return v


class UserResponse(BaseModel):
    id: int
    external_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============ Tags ============


class TagResponse(BaseModel):
    """Response for a single tag."""

    id: int
    name: str
    usage_count: int = 0
    user_id: Optional[int] = None
    created_at: Optional[datetime] = None


class VideoTagInfo(BaseModel):
    """A tag as attached to one video."""

    id: int
    name: str
    usage_count: int = 0
    assigned_by: Optional[int] = None
    assigned_at: Optional[datetime] = None


class TagAssignRequest(BaseModel):
    """Request to attach tag names to a video."""

    tags: List[str] = Field(..., min_length=1, max_length=MAX_TAGS_PER_VIDEO)
    user_id: Optional[int] = None


class ItemError(BaseModel):
    """A single failed item within a batch."""

    item: str
    error: str


class TagAssignResponse(BaseModel):
    created: int
    assigned: int
    skipped: int
    errors: List[ItemError]
    status: str


class TagBulkDeleteRequest(BaseModel):
    tag_ids: List[int] = Field(..., min_length=1, max_length=MAX_BULK_ITEMS)


class TagDeleteResponse(BaseModel):
    deleted_count: int
    deleted_connections: int
    errors: List[ItemError]
    status: str


class TagReconcileRequest(BaseModel):
    """Recompute usage_count for the given tags, or for all tags when tag_ids is omitted."""

    tag_ids: Optional[List[int]] = Field(default=None, min_length=1, max_length=MAX_BULK_ITEMS)
    dry_run: bool = False


# ============ Videos ============


class VideoBulkDeleteRequest(BaseModel):
    """Request to delete multiple videos."""

    video_ids: List[int] = Field(..., min_length=1, max_length=MAX_BULK_ITEMS)


class VideoDeleteResponse(BaseModel):
    deleted_count: int
    updated_tags: int
    errors: List[ItemError]
    status: str


class VideoReconcileRequest(BaseModel):
    counter: VideoCounter = VideoCounter.VIEWS
    video_ids: Optional[List[int]] = Field(default=None, min_length=1, max_length=MAX_BULK_ITEMS)
    dry_run: bool = False

    @field_validator("counter", mode="before")
    @classmethod
    def accept_short_counter_names(cls, v):
        # "views" is accepted as shorthand for "views_count"
        if isinstance(v, str) and not v.endswith("_count"):
            return f"{v}_count"
        return v


# ============ Reconciliation ============


class CounterChange(BaseModel):
    id: int
    before: int
    after: int


class ReconcileResponse(BaseModel):
    counter: str
    checked: int
    updated_count: int
    dry_run: bool
    results: List[CounterChange]
    errors: List[ItemError]
    status: str


# ============ Users ============


class UserDeleteResponse(BaseModel):
    deleted_count: int
    deleted_videos: int
    errors: List[ItemError]
    status: str


# ============ Engagement ============


class UserActionRequest(BaseModel):
    """Body carrying the acting user for like/unlike."""

    user_id: int


class ViewRequest(BaseModel):
    user_id: Optional[int] = None


class CommentCreate(BaseModel):
    user_id: int
    content: str = Field(..., min_length=1, max_length=MAX_COMMENT_LENGTH)

    @field_validator("content")
    @classmethod
    def strip_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Comment cannot be blank")
        return v


def item_errors(errors: List[Dict[str, str]]) -> List[ItemError]:
    """Convert engine error dicts to ItemError models with client-safe messages."""
    converted = []
    for entry in errors:
        item = next((str(v) for k, v in entry.items() if k != "error"), "")
        message = sanitize_error_message(entry.get("error", ""), context=item) or ""
        converted.append(ItemError(item=item, error=message))
    return converted
