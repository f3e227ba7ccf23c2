"""
Admin API - cascade deletes, counter reconciliation and metrics.
Runs on port 9001 (not exposed externally).
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter

from api.audit import AuditAction, log_audit
from api.cascade import delete_tags, delete_users, delete_video_facts, delete_videos, validate_ids
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
from api.database import configure_database, create_tables, database, tags, users, videos
from api.db_retry import fetch_all_with_retry, fetch_one_with_retry
from api.exception_utils import handle_api_exceptions
from api.metrics import get_metrics, init_app_info
from api.reconcile import reconcile_tag_counters, reconcile_video_counters
from api.schemas import (
    ReconcileResponse,
    TagBulkDeleteRequest,
    TagDeleteResponse,
    TagReconcileRequest,
    TagResponse,
    UserDeleteResponse,
    VideoBulkDeleteRequest,
    VideoDeleteResponse,
    VideoReconcileRequest,
    item_errors,
)
from config import (
    ADMIN_API_SECRET,
    ADMIN_CORS_ALLOWED_ORIGINS,
    ADMIN_PORT,
    RATE_LIMIT_ADMIN_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
)

logger = logging.getLogger(__name__)

# Initialize rate limiter for admin API
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)

# Security event logger for authentication events
security_logger = logging.getLogger("security.admin_auth")


class AdminAuthMiddleware:
    """
    Middleware to protect Admin API endpoints with a shared secret.

    When ADMIN_API_SECRET is configured, every /api/* request must carry a
    matching X-Admin-Secret header: 401 when missing, 403 when wrong.
    /health, /metrics and CORS preflight requests are always allowed.

    When ADMIN_API_SECRET is not configured (empty), all requests are allowed.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "")

        if not path.startswith("/api") or method == "OPTIONS" or not ADMIN_API_SECRET:
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        client_ip = client[0] if client else "unknown"
        headers = dict(scope.get("headers", []))
        admin_secret = headers.get(b"x-admin-secret", b"").decode("utf-8", errors="ignore")

        if not admin_secret:
            security_logger.warning(
                "Admin API auth failed: no credentials",
                extra={"event": "auth_failure", "reason": "no_credentials", "path": path, "client_ip": client_ip},
            )
            response = JSONResponse(status_code=401, content={"detail": "Authentication required"})
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(admin_secret, ADMIN_API_SECRET):
            security_logger.warning(
                "Admin API auth failed: invalid secret header",
                extra={"event": "auth_failure", "reason": "invalid_secret", "path": path, "client_ip": client_ip},
            )
            response = JSONResponse(status_code=403, content={"detail": "Invalid admin secret"})
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "GEOCLIPS_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    if not ADMIN_API_SECRET:
        logger.warning("GEOCLIPS_ADMIN_API_SECRET is not set; admin API is unauthenticated")
    create_tables()
    await database.connect()
    await configure_database()
    init_app_info()
    yield
    await database.disconnect()


app = FastAPI(title="GeoClips Admin", description="Consistency and cleanup API", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
install_common_handlers(app)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(AdminAuthMiddleware)

# Allow CORS for admin tooling (internal-only, not exposed externally)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ADMIN_CORS_ALLOWED_ORIGINS,
    allow_credentials=True if ADMIN_CORS_ALLOWED_ORIGINS != ["*"] else False,
    allow_methods=["*"],
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


@app.get("/metrics")
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


def _tag_delete_payload(result) -> dict:
    return TagDeleteResponse(
        deleted_count=result.deleted_count,
        deleted_connections=result.deleted_connections,
        errors=item_errors(result.errors),
        status=result.status.value,
    ).model_dump()


def _video_delete_payload(result) -> dict:
    return VideoDeleteResponse(
        deleted_count=result.deleted_count,
        updated_tags=len(result.updated_tags),
        errors=item_errors(result.errors),
        status=result.status.value,
    ).model_dump()


def _reconcile_payload(result) -> dict:
    return ReconcileResponse(
        counter=result.counter,
        checked=result.checked,
        updated_count=result.updated_count,
        dry_run=result.dry_run,
        results=result.results,
        errors=item_errors(result.errors),
        status=result.status.value,
    ).model_dump()


# ============ Tags ============


@app.get("/api/tags")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
async def list_tags(request: Request) -> List[TagResponse]:
    """List all tags, most used first."""
    rows = await fetch_all_with_retry(tags.select().order_by(tags.c.usage_count.desc(), tags.c.name))
    return [
        TagResponse(
            id=row["id"],
            name=row["name"],
            usage_count=row["usage_count"],
            user_id=row["user_id"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.delete("/api/tags/{tag_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("delete_tag", "Failed to delete tag")
async def delete_tag(request: Request, tag_id: int):
    """Delete a tag. Videos with this tag will have it removed."""
    existing = await fetch_one_with_retry(tags.select().where(tags.c.id == tag_id))
    if not existing:
        raise HTTPException(status_code=404, detail="Tag not found")

    result = await delete_tags([tag_id])

    log_audit(
        AuditAction.TAG_DELETE,
        client_ip=get_real_ip(request),
        resource_type="tag",
        resource_ids=[tag_id],
        details={"name": existing["name"], "deleted_connections": result.deleted_connections},
        success=not result.errors,
        request_id=get_request_id(request),
    )
    return batch_response(_tag_delete_payload(result), result.status)


@app.post("/api/tags/bulk/delete")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("bulk_delete_tags", "Failed to delete tags")
async def bulk_delete_tags(request: Request, data: TagBulkDeleteRequest):
    result = await delete_tags(data.tag_ids)

    log_audit(
        AuditAction.TAG_BULK_DELETE,
        client_ip=get_real_ip(request),
        resource_type="tag",
        resource_ids=data.tag_ids,
        details={
            "deleted_count": result.deleted_count,
            "deleted_connections": result.deleted_connections,
            "failed": len(result.errors),
        },
        success=not result.errors,
        request_id=get_request_id(request),
    )
    return batch_response(_tag_delete_payload(result), result.status)


@app.post("/api/tags/reconcile")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("reconcile_tags", "Failed to reconcile tag counters")
async def reconcile_tags(request: Request, data: TagReconcileRequest):
    """Recompute usage_count from video_tags for the given tags (or all tags)."""
    result = await reconcile_tag_counters(data.tag_ids, dry_run=data.dry_run)

    if not data.dry_run:
        log_audit(
            AuditAction.TAG_COUNTERS_RECONCILE,
            client_ip=get_real_ip(request),
            resource_type="tag",
            resource_ids=data.tag_ids,
            details={"checked": result.checked, "updated_count": result.updated_count},
            success=not result.errors,
            request_id=get_request_id(request),
        )
    return batch_response(_reconcile_payload(result), result.status)


# ============ Videos ============


@app.delete("/api/videos/{video_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("delete_video", "Failed to delete video")
async def delete_video(request: Request, video_id: int):
    """Delete a video with its likes, comments, views and tag links."""
    existing = await fetch_one_with_retry(videos.select().where(videos.c.id == video_id))
    if not existing:
        raise HTTPException(status_code=404, detail="Video not found")

    await delete_video_facts([video_id])
    result = await delete_videos([video_id])

    log_audit(
        AuditAction.VIDEO_DELETE,
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_ids=[video_id],
        details={"owner_id": existing["user_id"], "updated_tags": len(result.updated_tags)},
        success=not result.errors,
        request_id=get_request_id(request),
    )
    return batch_response(_video_delete_payload(result), result.status)


@app.post("/api/videos/bulk/delete")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("bulk_delete_videos", "Failed to delete videos")
async def bulk_delete_videos(request: Request, data: VideoBulkDeleteRequest):
    # Validate before any fact row is removed
    video_ids = validate_ids(data.video_ids, "video id")
    await delete_video_facts(video_ids)
    result = await delete_videos(video_ids)

    log_audit(
        AuditAction.VIDEO_BULK_DELETE,
        client_ip=get_real_ip(request),
        resource_type="video",
        resource_ids=video_ids,
        details={"deleted_count": result.deleted_count, "updated_tags": len(result.updated_tags)},
        success=not result.errors,
        request_id=get_request_id(request),
    )
    return batch_response(_video_delete_payload(result), result.status)


@app.post("/api/videos/reconcile")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("reconcile_videos", "Failed to reconcile video counters")
async def reconcile_videos(request: Request, data: VideoReconcileRequest):
    """Recompute one cached video counter from its fact table."""
    result = await reconcile_video_counters(data.counter, data.video_ids, dry_run=data.dry_run)

    if not data.dry_run:
        log_audit(
            AuditAction.VIDEO_COUNTERS_RECONCILE,
            client_ip=get_real_ip(request),
            resource_type="video",
            resource_ids=data.video_ids,
            details={"counter": result.counter, "checked": result.checked, "updated_count": result.updated_count},
            success=not result.errors,
            request_id=get_request_id(request),
        )
    return batch_response(_reconcile_payload(result), result.status)


# ============ Users ============


@app.delete("/api/users/{user_id}")
@limiter.limit(RATE_LIMIT_ADMIN_DEFAULT)
@handle_api_exceptions("delete_user", "Failed to delete user")
async def delete_user(request: Request, user_id: int):
    """Delete a user, their videos, and their likes, comments and views."""
    existing = await fetch_one_with_retry(users.select().where(users.c.id == user_id))
    if not existing:
        raise HTTPException(status_code=404, detail="User not found")

    result = await delete_users([user_id])

    log_audit(
        AuditAction.USER_DELETE,
        client_ip=get_real_ip(request),
        resource_type="user",
        resource_ids=[user_id],
        details={"external_id": existing["external_id"], "deleted_videos": result.deleted_videos},
        success=not result.errors,
        request_id=get_request_id(request),
    )
    payload = UserDeleteResponse(
        deleted_count=result.deleted_count,
        deleted_videos=result.deleted_videos,
        errors=item_errors(result.errors),
        status=result.status.value,
    ).model_dump()
    return batch_response(payload, result.status)


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=ADMIN_PORT)
