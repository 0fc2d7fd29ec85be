from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from habla.logging import get_logger
from habla.storage.errors import ConstraintViolation
from habla.storage.models import (
    Conversation,
    LogRecord,
    Message,
    ProfileUpdate,
    User,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        language_level TEXT NOT NULL DEFAULT 'beginner'
            CHECK (language_level IN ('beginner', 'intermediate', 'advanced')),
        total_points INTEGER NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS conversation (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user (id),
        topic TEXT NOT NULL,
        difficulty TEXT NOT NULL DEFAULT 'beginner',
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'completed', 'paused')),
        duration_seconds INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS conversation_user_idx ON conversation (user_id, updated_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS message (
        id UUID PRIMARY KEY,
        conversation_id UUID NOT NULL REFERENCES conversation (id),
        seq INTEGER NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        message_type TEXT NOT NULL DEFAULT 'text',
        audio_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (conversation_id, seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGSERIAL PRIMARY KEY,
        level TEXT NOT NULL DEFAULT 'info'
            CHECK (level IN ('info', 'warning', 'error', 'debug', 'http')),
        message TEXT NOT NULL,
        method VARCHAR(10),
        path VARCHAR(500),
        status_code INTEGER,
        response_time_ms INTEGER,
        ip VARCHAR(45),
        user_agent VARCHAR(500),
        user_id UUID REFERENCES app_user (id),
        error TEXT,
        stack TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_level_idx ON audit_log (level)",
    "CREATE INDEX IF NOT EXISTS audit_log_created_idx ON audit_log (created_at)",
    "CREATE INDEX IF NOT EXISTS audit_log_user_idx ON audit_log (user_id)",
    "CREATE INDEX IF NOT EXISTS audit_log_status_idx ON audit_log (status_code)",
    "CREATE INDEX IF NOT EXISTS audit_log_path_idx ON audit_log (path)",
)

_UNIQUE_INDEX_FIELDS = {
    "app_user_email_key": "email",
    "app_user_username_key": "username",
}


def _violated_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    return _UNIQUE_INDEX_FIELDS.get(constraint, "email")


def _as_uuid(value: str) -> Optional[str]:
    """Return ``value`` as a canonical UUID string, or None when it is not one."""
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


class PostgresStore:
    """Postgres-backed store for users, conversations and the audit log."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 60.0,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        # Bounded pool; callers block up to ``timeout`` seconds for a connection
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", statements=len(SCHEMA_STATEMENTS))

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- users -----------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            language_level=row.get("language_level", "beginner"),
            total_points=row.get("total_points", 0),
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login=row.get("last_login"),
        )

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        language_level: str = "beginner",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, first_name, last_name, language_level)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email, password_hash, first_name, last_name, language_level),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _as_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_email_or_username(self, email: str, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE lower(email) = lower(%s) OR lower(username) = lower(%s)
                LIMIT 1
                """,
                (email, username),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, update: ProfileUpdate) -> Optional[User]:
        changes = update.changes()
        # Column names come from ProfileUpdate.COLUMNS, never from the request
        assignments = [f"{ProfileUpdate.COLUMNS[name]} = %s" for name in changes]
        assignments.append("updated_at = now()")
        params = [*changes.values(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} "
                    "WHERE id = %s AND is_active = TRUE RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s RETURNING *",
                (at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s",
                (is_active, user_id),
            )
            return cur.rowcount > 0

    # -- conversations ---------------------------------------------------

    @staticmethod
    def _conversation_from_row(row: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            topic=row["topic"],
            difficulty=row.get("difficulty", "beginner"),
            status=row.get("status", "active"),
            duration_seconds=row.get("duration_seconds", 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _message_from_row(row: Dict[str, Any]) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            seq=row["seq"],
            message_type=row.get("message_type", "text"),
            audio_url=row.get("audio_url"),
            created_at=row["created_at"],
        )

    def create_conversation(
        self, user_id: str, topic: str, *, difficulty: str = "beginner"
    ) -> Conversation:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO conversation (id, user_id, topic, difficulty)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, topic, difficulty),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return self._conversation_from_row(row)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        # Path ids are client supplied; a malformed one is simply not found
        if not _as_uuid(conversation_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversation WHERE id = %s", (conversation_id,)
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def list_conversations(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation
                WHERE user_id = %s AND (%s::text IS NULL OR status = %s)
                ORDER BY updated_at DESC
                LIMIT %s OFFSET %s
                """,
                (user_id, status, status, limit, offset),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def count_conversations(self, user_id: str, *, status: Optional[str] = None) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total FROM conversation
                WHERE user_id = %s AND (%s::text IS NULL OR status = %s)
                """,
                (user_id, status, status),
            ).fetchone()
        return int(row["total"]) if row else 0

    def update_conversation(
        self,
        conversation_id: str,
        *,
        status: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE conversation
                SET status = COALESCE(%s, status),
                    duration_seconds = COALESCE(%s, duration_seconds),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (status, duration_seconds, conversation_id),
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        message_type: str = "text",
        audio_url: Optional[str] = None,
    ) -> Message:
        try:
            with self._connect() as conn:
                # Row lock serializes seq allocation per conversation
                locked = conn.execute(
                    "SELECT id FROM conversation WHERE id = %s FOR UPDATE",
                    (conversation_id,),
                ).fetchone()
                if not locked:
                    raise ConstraintViolation(
                        "conversation does not exist", {"field": "conversation_id"}
                    )
                seq_row = conn.execute(
                    "SELECT COALESCE(MAX(seq) + 1, 0) AS next_seq FROM message WHERE conversation_id = %s",
                    (conversation_id,),
                ).fetchone()
                row = conn.execute(
                    """
                    INSERT INTO message (id, conversation_id, seq, role, content, message_type, audio_url)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        conversation_id,
                        seq_row["next_seq"],
                        role,
                        content,
                        message_type,
                        audio_url,
                    ),
                ).fetchone()
                conn.execute(
                    "UPDATE conversation SET updated_at = now() WHERE id = %s",
                    (conversation_id,),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation does not exist", {"field": "conversation_id"}
            )
        return self._message_from_row(row)

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message WHERE conversation_id = %s ORDER BY seq ASC",
                (conversation_id,),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]

    def message_summary(self, conversation_id: str) -> Tuple[int, Optional[str]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total,
                       (SELECT content FROM message WHERE conversation_id = %s ORDER BY seq DESC LIMIT 1) AS last_content
                FROM message WHERE conversation_id = %s
                """,
                (conversation_id, conversation_id),
            ).fetchone()
        if not row:
            return 0, None
        return int(row["total"]), row.get("last_content")

    # -- audit log -------------------------------------------------------

    @staticmethod
    def _log_from_row(row: Dict[str, Any]) -> LogRecord:
        return LogRecord(
            id=row["id"],
            level=row["level"],
            message=row["message"],
            method=row.get("method"),
            path=row.get("path"),
            status_code=row.get("status_code"),
            response_time_ms=row.get("response_time_ms"),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            error=row.get("error"),
            stack=row.get("stack"),
            metadata=row.get("metadata"),
            created_at=row["created_at"],
        )

    def append_log(self, record: LogRecord) -> LogRecord:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (
                    level, message, method, path, status_code, response_time_ms,
                    ip, user_agent, user_id, error, stack, metadata, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    record.level,
                    record.message,
                    record.method,
                    record.path,
                    record.status_code,
                    record.response_time_ms,
                    record.ip,
                    record.user_agent,
                    record.user_id,
                    record.error,
                    record.stack,
                    json.dumps(record.metadata, default=str) if record.metadata is not None else None,
                    record.created_at,
                ),
            ).fetchone()
        return self._log_from_row(row)

    def list_logs(self, *, level: Optional[str] = None, limit: int = 100) -> List[LogRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_log
                WHERE (%s::text IS NULL OR level = %s)
                ORDER BY id DESC
                LIMIT %s
                """,
                (level, level, limit),
            ).fetchall()
        return [self._log_from_row(row) for row in reversed(rows)]
