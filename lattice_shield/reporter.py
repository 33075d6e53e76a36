"""
Error classification, user-facing messages and persistent audit trails.

This module provides:
- ErrorRecord: A classified failure
- ReportOutcome: Structured result of reporting a failure
- AuditReporter: Capped error/activity/audit logs and admin notices

The reporter never raises: storage failures while writing a log are logged
and reflected in ``ReportOutcome.persisted``.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

import structlog
from cryptography.hazmat.primitives import hashes

from .config import ACTIVITY_LOG_CAP, AUDIT_LOG_CAP, ERROR_LOG_CAP
from .errors import (
    CryptoServiceError,
    EnvelopeDecodeError,
    ErrorCode,
    OperationFailedError,
    StorageError,
)
from .models import utcnow
from .repositories import ACTIVITY_LOG, AUDIT_LOG, ERROR_LOG, AuditLogRepository
from .storage import KeyValueStore

logger = structlog.get_logger(__name__)

USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.ENCRYPTION_FAILED: (
        "Unable to encrypt your data. Please try submitting the form again. "
        "If the problem persists, contact support."
    ),
    ErrorCode.DECRYPTION_FAILED: (
        "Unable to decrypt the requested data. This may be due to a key "
        "mismatch or corrupted data."
    ),
    ErrorCode.KEY_GENERATION_FAILED: (
        "Failed to generate encryption keys. Please check the encryption "
        "service connection and try again."
    ),
    ErrorCode.CONNECTION_FAILED: (
        "Unable to connect to the encryption service. Please check your "
        "internet connection and try again."
    ),
    ErrorCode.SERVICE_UNAVAILABLE: (
        "The encryption service is temporarily unavailable. Please try again "
        "in a few minutes."
    ),
    ErrorCode.INVALID_KEY: (
        "Invalid encryption key detected. Please regenerate your keys in the "
        "plugin settings."
    ),
    ErrorCode.RATE_LIMIT_EXCEEDED: "Too many requests. Please wait a moment before trying again.",
    ErrorCode.TIMEOUT: "The request timed out. Please try again with a smaller amount of data.",
    ErrorCode.INVALID_DATA: "Invalid data format detected. Please check your input and try again.",
    ErrorCode.PERMISSION_DENIED: "You do not have permission to perform this action.",
}

GENERIC_MESSAGE = (
    "An unexpected error occurred. Please try again or contact support if the "
    "problem persists."
)

RECENT_WINDOW = timedelta(hours=24)


def user_message(code: Optional[ErrorCode]) -> str:
    """Neutral, non-technical description of an error code."""
    if code is None:
        return GENERIC_MESSAGE
    return USER_MESSAGES.get(code, GENERIC_MESSAGE)


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass
class ErrorRecord:
    """A classified failure."""

    code: Optional[ErrorCode]
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    operation: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def retryable(self) -> bool:
        return self.code.retryable if self.code else False

    @property
    def critical(self) -> bool:
        return self.code.critical if self.code else False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "operation": self.operation,
            "message": self.message,
            "error_code": self.code.value if self.code else None,
            "retryable": self.retryable,
            "context": _jsonable(self.context),
        }


@dataclass
class ReportOutcome:
    """Structured result of reporting a failure."""

    message: str
    code: Optional[ErrorCode]
    can_retry: bool
    requires_admin_action: bool
    notice_id: Optional[str] = None
    persisted: bool = True
    success: bool = False


class AuditReporter:
    """
    Error and audit reporter backed by a KeyValueStore.

    Logs:
    - error log: last 100 ErrorRecords, oldest evicted
    - activity log: last 50 activity entries, oldest evicted
    - audit log: last 1000 audit events, newest first
    """

    def __init__(
        self,
        store: KeyValueStore,
        error_cap: int = ERROR_LOG_CAP,
        activity_cap: int = ACTIVITY_LOG_CAP,
        audit_cap: int = AUDIT_LOG_CAP,
    ) -> None:
        self._logs = AuditLogRepository(store)
        self._error_cap = error_cap
        self._activity_cap = activity_cap
        self._audit_cap = audit_cap

    @staticmethod
    def classify(
        raw_error: BaseException, context: Optional[Dict[str, Any]] = None
    ) -> ErrorRecord:
        """Map an exception to an ErrorRecord."""
        if isinstance(raw_error, (CryptoServiceError, OperationFailedError)):
            code = raw_error.code
        elif isinstance(raw_error, EnvelopeDecodeError):
            code = ErrorCode.INVALID_DATA
        else:
            code = ErrorCode.from_value(getattr(raw_error, "code", None))
        return ErrorRecord(
            code=code,
            message=str(raw_error) or type(raw_error).__name__,
            context=dict(context or {}),
        )

    async def report(self, operation: str, record: ErrorRecord) -> ReportOutcome:
        """
        Persist a failure and surface a notice for critical codes.

        Returns:
            ReportOutcome with the user-facing message and retry affordance
        """
        record.operation = operation
        message = user_message(record.code)
        outcome = ReportOutcome(
            message=message,
            code=record.code,
            can_retry=record.retryable,
            requires_admin_action=bool(record.code and record.code.requires_admin_action),
        )

        logger.error(
            "operation_failed",
            operation=operation,
            error=record.message,
            code=str(record.code) if record.code else None,
            context=_jsonable(record.context),
        )

        try:
            await self._logs.append(ERROR_LOG, record.to_dict(), self._error_cap)
            if record.critical:
                outcome.notice_id = await self._add_notice(message, record.code)
        except StorageError:
            logger.warning("error_log_write_failed", operation=operation, exc_info=True)
            outcome.persisted = False

        outcome.persisted = (
            await self.log_activity(
                f"{operation} failed: {record.message}", "error", record.context
            )
            and outcome.persisted
        )
        return outcome

    async def log_activity(
        self, message: str, level: str = "info", context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Append to the activity trail. Returns False if it could not be stored."""
        entry = {
            "timestamp": utcnow().isoformat(),
            "message": message,
            "level": level,
            "context": _jsonable(context or {}),
        }
        try:
            await self._logs.append(ACTIVITY_LOG, entry, self._activity_cap)
        except StorageError:
            logger.warning("activity_log_write_failed", message=message, exc_info=True)
            return False
        return True

    async def log_audit_event(
        self, event_type: str, data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Record an audit event (newest first). Returns False if it could not be stored."""
        entry = {
            "timestamp": utcnow().isoformat(),
            "event_type": event_type,
            "data": _jsonable(data or {}),
        }
        logger.info("audit_event", event_type=event_type, data=entry["data"])
        try:
            await self._logs.append(AUDIT_LOG, entry, self._audit_cap, newest_first=True)
        except StorageError:
            logger.warning("audit_log_write_failed", event_type=event_type, exc_info=True)
            return False
        return True

    async def audit_log(
        self, limit: int = 50, offset: int = 0, event_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Audit events newest first, optionally filtered by type."""
        entries = await self._filtered_audit(event_type)
        return entries[offset:offset + limit]

    async def audit_log_count(self, event_type: Optional[str] = None) -> int:
        return len(await self._filtered_audit(event_type))

    async def error_log(self) -> List[Dict[str, Any]]:
        return await self._logs.entries(ERROR_LOG)

    async def activity_log(self) -> List[Dict[str, Any]]:
        return await self._logs.entries(ACTIVITY_LOG)

    async def active_notices(self) -> List[Dict[str, Any]]:
        """Undismissed admin notices."""
        notices = await self._logs.notices()
        return [
            dict(notice, notice_id=notice_id)
            for notice_id, notice in notices.items()
            if not notice.get("dismissed")
        ]

    async def dismiss_notice(self, notice_id: str) -> bool:
        """Dismiss a notice. Returns False if it does not exist or the write failed."""
        try:
            notices = await self._logs.notices()
            if notice_id not in notices:
                return False
            notices[notice_id]["dismissed"] = True
            await self._logs.save_notices(notices)
        except StorageError:
            logger.warning("notice_dismiss_failed", notice_id=notice_id, exc_info=True)
            return False
        return True

    async def error_statistics(self) -> Dict[str, Any]:
        """Totals, recent count and most common code over the error log."""
        logs = await self._logs.entries(ERROR_LOG)
        threshold = utcnow() - RECENT_WINDOW
        recent = 0
        counts: Counter = Counter()
        for log in logs:
            try:
                if datetime.fromisoformat(log["timestamp"]) > threshold:
                    recent += 1
            except (KeyError, TypeError, ValueError):
                pass
            counts[log.get("error_code") or "unknown"] += 1
        return {
            "total_errors": len(logs),
            "recent_errors": recent,
            "error_types": dict(counts.most_common()),
            "most_common_error": counts.most_common(1)[0][0] if counts else None,
        }

    async def _filtered_audit(self, event_type: Optional[str]) -> List[Dict[str, Any]]:
        entries = await self._logs.entries(AUDIT_LOG)
        if event_type:
            entries = [e for e in entries if e.get("event_type") == event_type]
        return entries

    async def _add_notice(self, message: str, code: Optional[ErrorCode]) -> str:
        code_value = code.value if code else ""
        digest = hashes.Hash(hashes.SHA256())
        digest.update(f"{message}{code_value}".encode("utf-8"))
        notice_id = digest.finalize().hex()[:32]
        notices = await self._logs.notices()
        if notice_id not in notices:
            notices[notice_id] = {
                "message": message,
                "type": "error",
                "error_code": code.value if code else None,
                "timestamp": utcnow().isoformat(),
                "persistent": True,
                "dismissed": False,
            }
            await self._logs.save_notices(notices)
        return notice_id
