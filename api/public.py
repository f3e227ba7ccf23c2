"""
Public API - login materialization, tagging, likes, comments and views.
Runs on port 9000.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter

from api import engagement
from api.audit import AuditAction, log_audit
from api.cascade import delete_video_facts, delete_videos
from api.common import (
    MetricsMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    batch_response,
    check_health,
    configure_logging,
    get_real_ip,
    get_request_id,
    install_common_handlers,
)
from api.database import configure_database, create_tables, database, videos
from api.db_retry import fetch_one_with_retry
from api.exception_utils import handle_api_exceptions
from api.link_store import get_video_tags
from api.schemas import (
    CommentCreate,
    ExternalProfile,
    TagAssignRequest,
    TagAssignResponse,
    UserActionRequest,
    UserResponse,
    VideoDeleteResponse,
    VideoTagInfo,
    ViewRequest,
    item_errors,
)
from api.tag_assignment import assign_tags
from api.user_upsert import UserUpsertError, ensure_user
from config import (
    CORS_ALLOWED_ORIGINS,
    PUBLIC_PORT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_PUBLIC_DEFAULT,
    RATE_LIMIT_STORAGE_URL,
)

logger = logging.getLogger(__name__)

# Initialize rate limiter
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "GEOCLIPS_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    create_tables()
    await database.connect()
    await configure_database()
    yield
    await database.disconnect()


app = FastAPI(title="GeoClips", description="Geotagged video sharing API", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
install_common_handlers(app)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)

# If CORS_ALLOWED_ORIGINS is empty, allow same-origin only (no CORS headers)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS if CORS_ALLOWED_ORIGINS else [],
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),  # Only enable with explicit origins
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring and load balancers."""
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={"status": "healthy" if result["healthy"] else "unhealthy", "checks": result["checks"]},
    )


# ============ Identity ============


@app.post("/api/auth/users")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def upsert_user(request: Request, profile: ExternalProfile) -> UserResponse:
    """
    Create or refresh the local user for an external identity.

    Called by the login flow after the OAuth token exchange succeeds.
    """
    try:
        row = await ensure_user(profile.model_dump())
    except UserUpsertError as e:
        logger.error(f"User upsert failed: {e}")
        raise HTTPException(status_code=503, detail="Login is busy, please retry", headers={"Retry-After": "1"})
    return UserResponse(**{name: row[name] for name in UserResponse.model_fields})


# ============ Tags ============


@app.get("/api/videos/{video_id}/tags")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def list_video_tags(request: Request, video_id: int) -> List[VideoTagInfo]:
    video = await fetch_one_with_retry(sa.select(videos.c.id).where(videos.c.id == video_id))
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    return [VideoTagInfo(**row) for row in await get_video_tags(video_id)]


@app.post("/api/videos/{video_id}/tags")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
@handle_api_exceptions("assign_tags", "Failed to assign tags")
async def add_video_tags(request: Request, video_id: int, data: TagAssignRequest):
    """Attach tag names to a video; re-sending the same names is a no-op."""
    result = await assign_tags(video_id, data.tags, user_id=data.user_id)

    log_audit(
        AuditAction.TAG_ASSIGN,
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_ids=[video_id],
        actor_id=data.user_id,
        details={"tags": data.tags, **{k: v for k, v in result.to_dict().items() if k != "errors"}},
        success=not result.errors,
        request_id=get_request_id(request),
    )

    payload = TagAssignResponse(
        created=result.created,
        assigned=result.assigned,
        skipped=result.skipped,
        errors=item_errors(result.errors),
        status=result.status.value,
    )
    return batch_response(payload.model_dump(), result.status)


# ============ Likes, comments, views ============


@app.post("/api/videos/{video_id}/like")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def like(request: Request, video_id: int, data: UserActionRequest):
    return await engagement.like_video(video_id, data.user_id)


@app.delete("/api/videos/{video_id}/like")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def unlike(request: Request, video_id: int, user_id: int = Query(...)):
    return await engagement.unlike_video(video_id, user_id)


@app.post("/api/videos/{video_id}/comments", status_code=201)
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def create_comment(request: Request, video_id: int, data: CommentCreate):
    return await engagement.add_comment(video_id, data.user_id, data.content)


@app.delete("/api/comments/{comment_id}")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
@handle_api_exceptions("delete_comment", "Failed to delete comment")
async def remove_comment(request: Request, comment_id: int, user_id: Optional[int] = Query(None)):
    return await engagement.delete_comment(comment_id, user_id=user_id)


@app.post("/api/videos/{video_id}/view")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
async def view(request: Request, video_id: int, data: Optional[ViewRequest] = None):
    user_id = data.user_id if data else None
    return await engagement.record_view(video_id, user_id)


# ============ Owner delete ============


@app.delete("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_PUBLIC_DEFAULT)
@handle_api_exceptions("owner_delete_video", "Failed to delete video")
async def owner_delete_video(request: Request, video_id: int, user_id: int = Query(...)):
    """Delete a video on behalf of its owner, with tag and fact cleanup."""
    video = await fetch_one_with_retry(videos.select().where(videos.c.id == video_id))
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    if video["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="Only the owner can delete this video")

    await delete_video_facts([video_id])
    result = await delete_videos([video_id])

    log_audit(
        AuditAction.VIDEO_DELETE,
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_ids=[video_id],
        actor_id=user_id,
        details={"updated_tags": len(result.updated_tags)},
        success=not result.errors,
        request_id=get_request_id(request),
    )

    payload = VideoDeleteResponse(
        deleted_count=result.deleted_count,
        updated_tags=len(result.updated_tags),
        errors=item_errors(result.errors),
        status=result.status.value,
    )
    return batch_response(payload.model_dump(), result.status)


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=PUBLIC_PORT)
