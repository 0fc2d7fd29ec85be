from __future__ import annotations

import asyncio
import contextlib
import traceback
from typing import Any, Dict, Optional, Protocol, Set

from habla.logging import get_logger, sanitize_body
from habla.storage.models import LogRecord

logger = get_logger(__name__)


class LogStore(Protocol):
    def append_log(self, record: LogRecord) -> LogRecord: ...


class AuditLogger:
    """Persist request and application events to the store without blocking callers.

    Events go onto a bounded queue drained by a single background worker.
    Nothing here raises to the caller: a full queue drops the event and a
    failing store is reported on the structlog channel only.
    """

    def __init__(
        self,
        store: LogStore,
        *,
        max_queue_size: int = 1000,
        debug_enabled: bool = False,
    ) -> None:
        self.store = store
        self.max_queue_size = max_queue_size
        self.debug_enabled = debug_enabled
        self._queue: Optional[asyncio.Queue[LogRecord]] = None
        self._worker: Optional[asyncio.Task] = None
        self._detached: Set[asyncio.Task] = set()
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._worker = asyncio.create_task(self._drain(), name="audit-log-writer")
        logger.info("audit_logger_started", max_queue_size=self.max_queue_size)

    async def stop(self) -> None:
        """Flush pending events and stop the worker."""
        if not self.running:
            return
        await self.flush()
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        self._queue = None
        logger.info("audit_logger_stopped", dropped=self.dropped)

    async def flush(self) -> None:
        if self.running and self._queue is not None:
            await self._queue.join()
        if self._detached:
            await asyncio.gather(*list(self._detached), return_exceptions=True)

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            record = await self._queue.get()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()

    async def _write(self, record: LogRecord) -> None:
        try:
            await asyncio.to_thread(self.store.append_log, record)
        except Exception as exc:
            logger.error(
                "audit_log_persist_failed",
                level=record.level,
                log_message=record.message,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def record(self, record: LogRecord) -> None:
        """Queue ``record`` for persistence; never raises."""
        try:
            if self.running and self._queue is not None:
                self._queue.put_nowait(record)
                return
            # No worker (e.g. app started without lifespan): write on a detached task
            task = asyncio.get_running_loop().create_task(self._write(record))
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "audit_log_dropped",
                reason="queue_full",
                level=record.level,
                dropped=self.dropped,
            )
        except Exception as exc:
            logger.error("audit_log_enqueue_failed", error_type=type(exc).__name__, error=str(exc))

    # -- emitters ----------------------------------------------------------

    def info(self, message: str, **fields: Any) -> None:
        self.record(LogRecord(level="info", message=message, **fields))

    def warning(self, message: str, **fields: Any) -> None:
        self.record(LogRecord(level="warning", message=message, **fields))

    def error(self, message: str, exc: Optional[BaseException] = None, **fields: Any) -> None:
        if exc is not None:
            fields.setdefault("error", str(exc) or type(exc).__name__)
            fields.setdefault(
                "stack", "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            )
        self.record(LogRecord(level="error", message=message, **fields))

    def debug(self, message: str, **fields: Any) -> None:
        # Debug events are only persisted in development
        if self.debug_enabled:
            self.record(LogRecord(level="debug", message=message, **fields))

    def http(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        response_time_ms: int,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        query: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
    ) -> None:
        self.record(
            LogRecord(
                level="http",
                message=f"{method} {path} - {status_code}",
                method=method,
                path=path,
                status_code=status_code,
                response_time_ms=response_time_ms,
                ip=ip,
                user_agent=user_agent,
                user_id=user_id,
                metadata={
                    "query": query or {},
                    "params": params or {},
                    "body": sanitize_body(body),
                },
            )
        )
