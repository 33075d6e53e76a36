"""Tests for error classification, logs and admin notices."""

from __future__ import annotations

from typing import Any, Optional

import pytest

from lattice_shield import (
    AuditReporter,
    CryptoServiceError,
    EnvelopeDecodeError,
    ErrorCode,
    InMemoryKeyValueStore,
    StorageError,
)
from lattice_shield.reporter import GENERIC_MESSAGE, ErrorRecord, user_message


class FailingStore(InMemoryKeyValueStore):
    """Store whose writes always fail."""

    async def set(self, name: str, value: Any) -> None:
        raise StorageError("disk full")

    async def compare_and_set(self, name: str, expected: Optional[Any], value: Any) -> bool:
        raise StorageError("disk full")


class TestClassification:
    def test_service_error_keeps_code(self):
        record = AuditReporter.classify(
            CryptoServiceError(ErrorCode.TIMEOUT, "slow"), {"field_id": "1"}
        )

        assert record.code is ErrorCode.TIMEOUT
        assert record.retryable
        assert record.message == "slow"
        assert record.context == {"field_id": "1"}

    def test_envelope_error_is_invalid_data(self):
        record = AuditReporter.classify(EnvelopeDecodeError("bad"))
        assert record.code is ErrorCode.INVALID_DATA
        assert not record.retryable

    def test_unknown_exception_has_no_code(self):
        record = AuditReporter.classify(RuntimeError())
        assert record.code is None
        assert record.message == "RuntimeError"

    @pytest.mark.parametrize("code", list(ErrorCode))
    def test_every_code_has_a_message(self, code):
        assert user_message(code) != GENERIC_MESSAGE

    def test_unknown_code_uses_generic_message(self):
        assert user_message(None) == GENERIC_MESSAGE

    def test_retryable_and_critical_sets(self):
        retryable = {c for c in ErrorCode if c.retryable}
        critical = {c for c in ErrorCode if c.critical}

        assert retryable == {
            ErrorCode.CONNECTION_FAILED,
            ErrorCode.SERVICE_UNAVAILABLE,
            ErrorCode.RATE_LIMIT_EXCEEDED,
            ErrorCode.TIMEOUT,
        }
        assert critical == {
            ErrorCode.KEY_GENERATION_FAILED,
            ErrorCode.INVALID_KEY,
            ErrorCode.SERVICE_UNAVAILABLE,
        }

    def test_code_parsing(self):
        assert ErrorCode.from_value(1005) is ErrorCode.INVALID_KEY
        assert ErrorCode.from_value("1008") is ErrorCode.TIMEOUT
        assert ErrorCode.from_value("invalid_data") is ErrorCode.INVALID_DATA
        assert ErrorCode.from_value(42) is None


class TestReport:
    async def test_report_persists_record(self, reporter):
        outcome = await reporter.report(
            "Data Encryption", ErrorRecord(ErrorCode.ENCRYPTION_FAILED, "boom", {"form_id": 7})
        )

        assert not outcome.success
        assert outcome.persisted
        assert outcome.message == user_message(ErrorCode.ENCRYPTION_FAILED)
        assert outcome.notice_id is None

        [logged] = await reporter.error_log()
        assert logged["operation"] == "Data Encryption"
        assert logged["error_code"] == 1001
        assert logged["context"] == {"form_id": 7}
        activity = await reporter.activity_log()
        assert activity[-1]["level"] == "error"

    async def test_critical_code_raises_notice_once(self, reporter):
        for _ in range(2):
            outcome = await reporter.report(
                "Key Generation", ErrorRecord(ErrorCode.KEY_GENERATION_FAILED, "down")
            )

        notices = await reporter.active_notices()
        assert len(notices) == 1
        assert notices[0]["notice_id"] == outcome.notice_id
        assert notices[0]["error_code"] == 1003

        assert await reporter.dismiss_notice(outcome.notice_id)
        assert await reporter.active_notices() == []
        assert not await reporter.dismiss_notice("missing")

    async def test_dismiss_notice_write_failure_returns_false(self, monkeypatch):
        store = InMemoryKeyValueStore()
        reporter = AuditReporter(store)
        outcome = await reporter.report(
            "Key Generation", ErrorRecord(ErrorCode.KEY_GENERATION_FAILED, "down")
        )
        assert len(outcome.notice_id) == 32

        async def failing_set(name: str, value: Any) -> None:
            raise StorageError("disk full")

        monkeypatch.setattr(store, "set", failing_set)

        assert not await reporter.dismiss_notice(outcome.notice_id)
        assert [n["notice_id"] for n in await reporter.active_notices()] == [outcome.notice_id]

    async def test_error_log_is_capped(self, kv_store):
        reporter = AuditReporter(kv_store, error_cap=3)
        for i in range(5):
            await reporter.report("Op", ErrorRecord(ErrorCode.TIMEOUT, f"error {i}"))

        messages = [e["message"] for e in await reporter.error_log()]
        assert messages == ["error 2", "error 3", "error 4"]

    async def test_storage_failure_is_not_raised(self):
        reporter = AuditReporter(FailingStore())

        outcome = await reporter.report(
            "Data Decryption", ErrorRecord(ErrorCode.INVALID_KEY, "bad key")
        )

        assert not outcome.persisted
        assert outcome.message == user_message(ErrorCode.INVALID_KEY)
        assert outcome.requires_admin_action
        assert not await reporter.log_audit_event("migration_started")

    async def test_error_statistics(self, reporter):
        await reporter.report("Op", ErrorRecord(ErrorCode.TIMEOUT, "a"))
        await reporter.report("Op", ErrorRecord(ErrorCode.TIMEOUT, "b"))
        await reporter.report("Op", ErrorRecord(ErrorCode.INVALID_DATA, "c"))

        stats = await reporter.error_statistics()
        assert stats["total_errors"] == 3
        assert stats["recent_errors"] == 3
        assert stats["most_common_error"] == 1008


class TestAuditLog:
    async def test_newest_first_with_filter_and_paging(self, reporter):
        for i in range(3):
            await reporter.log_audit_event("migration_progress", {"processed": i})
        await reporter.log_audit_event("migration_completed", {"migrated_entries": 3})

        entries = await reporter.audit_log()
        assert [e["event_type"] for e in entries] == [
            "migration_completed",
            "migration_progress",
            "migration_progress",
            "migration_progress",
        ]

        progress = await reporter.audit_log(limit=1, offset=1, event_type="migration_progress")
        assert progress[0]["data"] == {"processed": 1}
        assert await reporter.audit_log_count("migration_progress") == 3
        assert await reporter.audit_log_count() == 4

    async def test_audit_log_is_capped(self, kv_store):
        reporter = AuditReporter(kv_store, audit_cap=2)
        for i in range(4):
            await reporter.log_audit_event("e", {"i": i})

        assert [e["data"]["i"] for e in await reporter.audit_log()] == [3, 2]
