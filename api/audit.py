"""
Audit trail for destructive and corrective actions.

Cascade deletes, reconciliation runs and tag assignment batches each produce
one JSON line naming the action, the affected ids and the counters touched.
Lines go to a size-rotated file; if that file cannot be opened they go to
stderr instead.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from api.errors import truncate_string
from config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_ENABLED,
    AUDIT_LOG_LEVEL,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_PATH,
    ERROR_DETAIL_MAX_LENGTH,
)

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    VIDEO_DELETE = "video_delete"
    VIDEO_BULK_DELETE = "video_bulk_delete"
    VIDEO_COUNTERS_RECONCILE = "video_counters_reconcile"

    TAG_ASSIGN = "tag_assign"
    TAG_DELETE = "tag_delete"
    TAG_BULK_DELETE = "tag_bulk_delete"
    TAG_COUNTERS_RECONCILE = "tag_counters_reconcile"

    USER_DELETE = "user_delete"


def _audit_handler() -> logging.Handler:
    if not AUDIT_LOG_ENABLED:
        return logging.NullHandler()
    if not os.environ.get("GEOCLIPS_TEST_MODE"):
        try:
            AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass  # the handler below fails too and stderr takes over
    try:
        return RotatingFileHandler(
            AUDIT_LOG_PATH,
            maxBytes=AUDIT_LOG_MAX_BYTES,
            backupCount=AUDIT_LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as e:
        logger.warning(f"Audit log {AUDIT_LOG_PATH} unavailable ({e}), writing audit lines to stderr")
        return logging.StreamHandler()


class AuditLogger:
    """Writes audit entries to the dedicated `geoclips.audit` logger."""

    def __init__(self):
        self.logger = logging.getLogger("geoclips.audit")
        self.logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
        # Audit lines stay out of the application log
        self.logger.propagate = False

        if not self.logger.handlers:
            handler = _audit_handler()
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)

    def build_entry(
        self,
        action: AuditAction,
        client_ip: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_ids: Optional[list] = None,
        actor_id: Optional[int] = None,
        details: Optional[dict] = None,
        success: bool = True,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        """Assemble the JSON-serializable audit record, omitting empty fields."""
        optional = {
            "request_id": request_id,
            "client_ip": client_ip,
            "resource_type": resource_type,
            "resource_ids": list(resource_ids) if resource_ids else None,
            "details": details or None,
            "error": truncate_string(error, ERROR_DETAIL_MAX_LENGTH) if error else None,
        }
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.value,
            "success": success,
        }
        if actor_id is not None:
            entry["actor_id"] = actor_id
        entry.update((key, value) for key, value in optional.items() if value)
        return entry

    def log(self, action: AuditAction, **fields: Any):
        if not AUDIT_LOG_ENABLED:
            return
        entry = self.build_entry(action, **fields)
        try:
            line = json.dumps(entry, default=str)
        except (TypeError, ValueError) as e:
            # An unserializable detail must not fail the operation being audited
            logger.warning(f"Could not write audit entry for {action.value}: {e}")
            return
        self.logger.info(line)


audit_logger = AuditLogger()


def log_audit(action: AuditAction, **fields: Any):
    """
    Record one audit entry through the shared logger.

    Accepts the keyword fields of AuditLogger.build_entry, e.g.:

        log_audit(
            AuditAction.TAG_BULK_DELETE,
            client_ip=get_real_ip(request),
            resource_type="tag",
            resource_ids=tag_ids,
            details={"deleted_connections": 12},
            request_id=get_request_id(request),
        )
    """
    audit_logger.log(action, **fields)
