"""Tests for the audit logger and request body sanitization."""

import asyncio
from unittest.mock import patch

from habla.logging import REDACTION_MARKER, sanitize_body
from habla.service.audit import AuditLogger
from habla.storage.memory import MemoryStore
from habla.storage.models import LogRecord


class FailingStore:
    def __init__(self):
        self.calls = 0

    def append_log(self, record: LogRecord) -> LogRecord:
        self.calls += 1
        raise ConnectionError("log database unavailable")


class SlowStore(MemoryStore):
    def __init__(self, gate: asyncio.Event, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self._gate = gate
        self._loop = loop

    def append_log(self, record: LogRecord) -> LogRecord:
        asyncio.run_coroutine_threadsafe(self._gate.wait(), self._loop).result(timeout=5)
        return super().append_log(record)


class TestSanitizeBody:
    def test_sensitive_fields_are_redacted(self):
        assert sanitize_body({"password": "x", "note": "y"}) == {
            "password": REDACTION_MARKER,
            "note": "y",
        }

    def test_nested_objects_and_lists_are_redacted(self):
        body = {
            "user": {"token": "abc", "name": "Ana"},
            "cards": [{"creditCard": "4111", "label": "main"}],
            "apiKey": "k",
        }
        assert sanitize_body(body) == {
            "user": {"token": REDACTION_MARKER, "name": "Ana"},
            "cards": [{"creditCard": REDACTION_MARKER, "label": "main"}],
            "apiKey": REDACTION_MARKER,
        }

    def test_key_match_is_exact_and_case_sensitive(self):
        body = {"Password": "a", "api_key": "b", "secretNote": "c", "secret": "d"}
        assert sanitize_body(body) == {
            "Password": "a",
            "api_key": "b",
            "secretNote": "c",
            "secret": REDACTION_MARKER,
        }

    def test_original_body_is_not_mutated(self):
        body = {"password": "x"}
        sanitize_body(body)
        assert body == {"password": "x"}

    def test_non_container_bodies_pass_through(self):
        assert sanitize_body(None) is None
        assert sanitize_body("raw text") == "raw text"


class TestAuditLogger:
    async def test_http_event_is_persisted_sanitized(self):
        store = MemoryStore()
        audit = AuditLogger(store)
        await audit.start()

        audit.http(
            method="POST",
            path="/api/auth/login",
            status_code=200,
            response_time_ms=12,
            ip="10.0.0.1",
            user_agent="pytest",
            body={"password": "x", "note": "y"},
        )
        await audit.stop()

        [record] = store.list_logs(level="http")
        assert record.message == "POST /api/auth/login - 200"
        assert record.status_code == 200
        assert record.response_time_ms == 12
        assert record.metadata["body"] == {"password": "[REDACTED]", "note": "y"}
        assert record.metadata["query"] == {}

    async def test_store_outage_never_raises(self):
        store = FailingStore()
        audit = AuditLogger(store)
        await audit.start()

        with patch("habla.service.audit.logger") as mock_logger:
            audit.info("hello")
            audit.error("boom", exc=RuntimeError("bad"))
            await audit.flush()

            assert store.calls == 2
            events = [c[0][0] for c in mock_logger.error.call_args_list]
            assert events == ["audit_log_persist_failed", "audit_log_persist_failed"]
        await audit.stop()

    async def test_error_captures_exception_text_and_stack(self):
        store = MemoryStore()
        audit = AuditLogger(store)
        await audit.start()
        try:
            raise ValueError("broken widget")
        except ValueError as exc:
            audit.error("Widget failure", exc=exc, path="/api/widgets")
        await audit.stop()

        [record] = store.list_logs(level="error")
        assert record.error == "broken widget"
        assert "ValueError" in record.stack
        assert record.path == "/api/widgets"

    async def test_debug_is_persisted_only_when_enabled(self):
        store = MemoryStore()
        quiet = AuditLogger(store, debug_enabled=False)
        verbose = AuditLogger(store, debug_enabled=True)
        await quiet.start()
        await verbose.start()

        quiet.debug("hidden")
        verbose.debug("shown")
        await quiet.stop()
        await verbose.stop()

        assert [r.message for r in store.list_logs(level="debug")] == ["shown"]

    async def test_full_queue_drops_events(self):
        gate = asyncio.Event()
        store = SlowStore(gate, asyncio.get_running_loop())
        audit = AuditLogger(store, max_queue_size=1)
        await audit.start()

        with patch("habla.service.audit.logger") as mock_logger:
            audit.info("first")
            # Let the worker take "first" off the queue and block on the store
            await asyncio.sleep(0.05)
            audit.info("second")
            audit.info("third")

            assert audit.dropped == 1
            assert mock_logger.warning.call_args[0][0] == "audit_log_dropped"

        gate.set()
        await audit.stop()
        assert [r.message for r in store.list_logs()] == ["first", "second"]

    async def test_record_without_worker_writes_on_detached_task(self):
        store = MemoryStore()
        audit = AuditLogger(store)

        audit.warning("no lifespan")
        await audit.flush()

        assert [r.message for r in store.list_logs(level="warning")] == ["no lifespan"]
