"""Async SQLite database connection, schema and repository implementation."""

import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from uuid import UUID, uuid4

import aiosqlite

from tally.capture.parsers import ParsedMessage
from tally.storage.models import (
    Chat,
    ChatImport,
    ChatSummary,
    DecisionStatus,
    DecisionThread,
    DecisionVersion,
    DecisionView,
    Message,
    Responsibility,
    ResponsibilityStatus,
)

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/tally.db")

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Conversations (the scope of everything else)
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    chat_key TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- One row per imported file per chat
CREATE TABLE IF NOT EXISTS chat_imports (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    file_name TEXT NOT NULL,
    file_sha256 TEXT NOT NULL,
    messages_parsed INTEGER NOT NULL DEFAULT 0,
    new_messages INTEGER NOT NULL DEFAULT 0,
    duplicates_skipped INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(chat_id, file_sha256)
);

-- Messages, deduplicated by fingerprint
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    fingerprint TEXT NOT NULL,
    sender TEXT NOT NULL,
    body TEXT NOT NULL,
    sent_at TEXT NOT NULL,
    line_no INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE(chat_id, fingerprint)
);

-- Which messages each import contained (new or already known)
CREATE TABLE IF NOT EXISTS import_messages (
    import_id TEXT NOT NULL REFERENCES chat_imports(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    PRIMARY KEY (import_id, message_id)
);

-- Decision topics
CREATE TABLE IF NOT EXISTS decision_threads (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    thread_key TEXT NOT NULL,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(chat_id, thread_key)
);

-- Immutable decision snapshots
CREATE TABLE IF NOT EXISTS decision_versions (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES decision_threads(id) ON DELETE CASCADE,
    version_no INTEGER NOT NULL CHECK (version_no >= 1),
    status TEXT NOT NULL CHECK (
        status IN ('open', 'final', 'tentative', 'superseded', 'conflicted')
    ),
    confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 100),
    title TEXT NOT NULL,
    outcome TEXT NOT NULL DEFAULT '',
    decided_at TEXT,
    is_latest INTEGER NOT NULL DEFAULT 1,  -- Boolean as integer
    needs_review INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(thread_id, version_no)
);

-- Evidence for decision versions
CREATE TABLE IF NOT EXISTS decision_evidence (
    decision_id TEXT NOT NULL REFERENCES decision_versions(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (decision_id, message_id)
);

-- Action items
CREATE TABLE IF NOT EXISTS responsibilities (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    owner TEXT NOT NULL,
    task_text TEXT NOT NULL,
    identity_key TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL CHECK (status IN ('open', 'overdue', 'completed')),
    due_date TEXT,
    source_message_id TEXT REFERENCES messages(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(chat_id, identity_key)
);

-- Evidence for responsibilities
CREATE TABLE IF NOT EXISTS responsibility_evidence (
    responsibility_id TEXT NOT NULL REFERENCES responsibilities(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (responsibility_id, message_id)
);

-- At most one latest version per thread
CREATE UNIQUE INDEX IF NOT EXISTS idx_decision_versions_latest
    ON decision_versions(thread_id) WHERE is_latest = 1;

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_messages_chat_sent_at ON messages(chat_id, sent_at);
CREATE INDEX IF NOT EXISTS idx_import_messages_message_id ON import_messages(message_id);
CREATE INDEX IF NOT EXISTS idx_decision_threads_chat_id ON decision_threads(chat_id);
CREATE INDEX IF NOT EXISTS idx_decision_versions_thread_id ON decision_versions(thread_id);
CREATE INDEX IF NOT EXISTS idx_decision_evidence_message_id ON decision_evidence(message_id);
CREATE INDEX IF NOT EXISTS idx_responsibilities_chat_id ON responsibilities(chat_id);
CREATE INDEX IF NOT EXISTS idx_responsibilities_status ON responsibilities(status);
"""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class Database:
    """Async SQLite database connection manager.

    Implements the chat, message, decision and responsibility repositories.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Initialize the database and apply schema."""
        # Ensure data directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self.connect() as db:
            await db.executescript(SCHEMA_SQL)
            await db.execute(
                """
                INSERT OR REPLACE INTO schema_version (version, applied_at)
                VALUES (?, ?)
                """,
                (SCHEMA_VERSION, _now()),
            )
            await db.commit()

    @asynccontextmanager
    async def connect(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Get a database connection."""
        db = await aiosqlite.connect(self.db_path)
        db.row_factory = aiosqlite.Row
        try:
            await db.execute("PRAGMA foreign_keys = ON")
            yield db
        finally:
            await db.close()

    # ============== Chats & imports ==============

    async def get_or_create_chat(self, name: str) -> Chat:
        """Find a chat by its normalized key, creating it on first sight."""
        chat_key = name.strip().lower()
        if not chat_key:
            raise ValueError("Chat name must not be empty")

        async with self.connect() as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO chats (id, chat_key, name, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (str(uuid4()), chat_key, name.strip(), _now()),
            )
            await db.commit()
            cursor = await db.execute("SELECT * FROM chats WHERE chat_key = ?", (chat_key,))
            row = await cursor.fetchone()

        if row is None:
            raise RuntimeError(f"Chat {chat_key!r} missing after insert")
        return self._row_to_chat(row)

    async def get_chat(self, chat_id: UUID) -> Chat | None:
        """Get a chat by ID."""
        async with self.connect() as db:
            cursor = await db.execute("SELECT * FROM chats WHERE id = ?", (str(chat_id),))
            row = await cursor.fetchone()
        return self._row_to_chat(row) if row else None

    async def list_chats(self) -> list[Chat]:
        """List all chats, newest first."""
        async with self.connect() as db:
            cursor = await db.execute("SELECT * FROM chats ORDER BY created_at DESC")
            rows = await cursor.fetchall()
        return [self._row_to_chat(row) for row in rows]

    async def get_or_create_import(
        self, chat_id: UUID, file_name: str, file_sha256: str
    ) -> ChatImport:
        """Find the import of this exact file into the chat, or record a new one."""
        async with self.connect() as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO chat_imports
                    (id, chat_id, file_name, file_sha256, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(uuid4()), str(chat_id), file_name, file_sha256, _now()),
            )
            await db.commit()
            cursor = await db.execute(
                "SELECT * FROM chat_imports WHERE chat_id = ? AND file_sha256 = ?",
                (str(chat_id), file_sha256),
            )
            row = await cursor.fetchone()

        if row is None:
            raise RuntimeError(f"Import of {file_name!r} missing after insert")
        return self._row_to_import(row)

    async def update_import_stats(
        self,
        import_id: UUID,
        *,
        messages_parsed: int,
        new_messages: int,
        duplicates_skipped: int,
    ) -> None:
        """Record the counts of the latest run of an import."""
        async with self.connect() as db:
            await db.execute(
                """
                UPDATE chat_imports
                SET messages_parsed = ?, new_messages = ?, duplicates_skipped = ?
                WHERE id = ?
                """,
                (messages_parsed, new_messages, duplicates_skipped, str(import_id)),
            )
            await db.commit()

    async def purge_chat(self, chat_id: UUID) -> bool:
        """Delete a chat and everything recorded under it."""
        async with self.connect() as db:
            cursor = await db.execute("DELETE FROM chats WHERE id = ?", (str(chat_id),))
            await db.commit()
            return cursor.rowcount > 0

    async def chat_summary(self, chat_id: UUID) -> ChatSummary | None:
        """Summarize a chat: latest import stats and record counts."""
        async with self.connect() as db:
            cursor = await db.execute("SELECT id FROM chats WHERE id = ?", (str(chat_id),))
            if await cursor.fetchone() is None:
                return None

            summary = ChatSummary(chat_id=chat_id)

            cursor = await db.execute(
                """
                SELECT * FROM chat_imports WHERE chat_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (str(chat_id),),
            )
            latest = await cursor.fetchone()
            if latest:
                chat_import = self._row_to_import(latest)
                summary.last_import_at = chat_import.created_at
                summary.messages_parsed_latest = chat_import.messages_parsed
                summary.new_messages_latest = chat_import.new_messages
                summary.duplicates_skipped_latest = chat_import.duplicates_skipped

            cursor = await db.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN sent_at > ? THEN 1 ELSE 0 END), 0) AS newer
                FROM messages WHERE chat_id = ?
                """,
                (latest["created_at"] if latest else "", str(chat_id)),
            )
            row = await cursor.fetchone()
            if row:
                summary.message_count = row["total"]
                summary.messages_since_last_import = row["newer"] if latest else 0

            cursor = await db.execute(
                """
                SELECT COUNT(*) AS n FROM decision_versions v
                JOIN decision_threads t ON v.thread_id = t.id
                WHERE t.chat_id = ? AND v.is_latest = 1
                """,
                (str(chat_id),),
            )
            row = await cursor.fetchone()
            summary.decision_count = row["n"] if row else 0

            cursor = await db.execute(
                """
                SELECT COUNT(*) AS n FROM responsibilities
                WHERE chat_id = ? AND status IN (?, ?)
                """,
                (
                    str(chat_id),
                    ResponsibilityStatus.OPEN.value,
                    ResponsibilityStatus.OVERDUE.value,
                ),
            )
            row = await cursor.fetchone()
            summary.open_responsibilities = row["n"] if row else 0

        return summary

    # ============== Messages ==============

    async def insert_messages(
        self, chat_id: UUID, messages: Sequence[ParsedMessage]
    ) -> int:
        """Insert messages not yet stored for the chat; return the number inserted."""
        if not messages:
            return 0

        now = _now()
        rows = [
            (
                str(uuid4()),
                str(chat_id),
                m.fingerprint,
                m.sender,
                m.body,
                m.sent_at.isoformat(),
                m.line_no,
                now,
            )
            for m in messages
        ]
        async with self.connect() as db:
            cursor = await db.executemany(
                """
                INSERT OR IGNORE INTO messages
                    (id, chat_id, fingerprint, sender, body, sent_at, line_no, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            await db.commit()
            return max(cursor.rowcount, 0)

    async def find_message_ids(
        self, chat_id: UUID, fingerprints: Sequence[str]
    ) -> dict[str, UUID]:
        """Map fingerprints to message IDs within a chat."""
        if not fingerprints:
            return {}

        unique = list(dict.fromkeys(fingerprints))
        async with self.connect() as db:
            cursor = await db.execute(
                f"""
                SELECT id, fingerprint FROM messages
                WHERE chat_id = ? AND fingerprint IN ({_placeholders(len(unique))})
                """,
                [str(chat_id), *unique],
            )
            rows = await cursor.fetchall()
        return {row["fingerprint"]: UUID(row["id"]) for row in rows}

    async def link_import_messages(
        self, import_id: UUID, message_ids: Sequence[UUID]
    ) -> int:
        """Link messages to an import; existing links are ignored."""
        if not message_ids:
            return 0
        async with self.connect() as db:
            cursor = await db.executemany(
                "INSERT OR IGNORE INTO import_messages (import_id, message_id) VALUES (?, ?)",
                [(str(import_id), str(mid)) for mid in message_ids],
            )
            await db.commit()
            return max(cursor.rowcount, 0)

    async def list_import_messages(self, import_id: UUID) -> list[Message]:
        """List the messages of an import in chronological order."""
        async with self.connect() as db:
            cursor = await db.execute(
                """
                SELECT m.* FROM messages m
                JOIN import_messages im ON im.message_id = m.id
                WHERE im.import_id = ?
                ORDER BY m.sent_at ASC, m.line_no ASC
                """,
                (str(import_id),),
            )
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def list_chat_messages(
        self, chat_id: UUID, *, limit: int = 500, offset: int = 0
    ) -> list[Message]:
        """List one page of a chat's messages in chronological order."""
        async with self.connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM messages WHERE chat_id = ?
                ORDER BY sent_at ASC, line_no ASC, id ASC
                LIMIT ? OFFSET ?
                """,
                (str(chat_id), limit, offset),
            )
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    # ============== Decisions ==============

    async def get_thread(self, chat_id: UUID, thread_key: str) -> DecisionThread | None:
        """Get a decision thread by its key within a chat."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM decision_threads WHERE chat_id = ? AND thread_key = ?",
                (str(chat_id), thread_key),
            )
            row = await cursor.fetchone()
        return self._row_to_thread(row) if row else None

    async def create_thread(self, thread: DecisionThread) -> bool:
        """Insert a thread unless the chat already has one with the same key."""
        async with self.connect() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO decision_threads
                    (id, chat_id, thread_key, title, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    str(thread.id),
                    str(thread.chat_id),
                    thread.thread_key,
                    thread.title,
                    thread.created_at.isoformat(),
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_latest_version(self, thread_id: UUID) -> DecisionVersion | None:
        """Get the version currently designated latest for a thread."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM decision_versions WHERE thread_id = ? AND is_latest = 1",
                (str(thread_id),),
            )
            row = await cursor.fetchone()
        return self._row_to_version(row) if row else None

    async def get_version(self, thread_id: UUID, version_no: int) -> DecisionVersion | None:
        """Get a specific version of a thread."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM decision_versions WHERE thread_id = ? AND version_no = ?",
                (str(thread_id), version_no),
            )
            row = await cursor.fetchone()
        return self._row_to_version(row) if row else None

    async def list_versions(self, thread_id: UUID) -> list[DecisionVersion]:
        """List every version of a thread, oldest first, with its evidence IDs."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM decision_versions WHERE thread_id = ? ORDER BY version_no ASC",
                (str(thread_id),),
            )
            versions = [self._row_to_version(row) for row in await cursor.fetchall()]
            for version in versions:
                cursor = await db.execute(
                    """
                    SELECT message_id FROM decision_evidence
                    WHERE decision_id = ? ORDER BY position ASC
                    """,
                    (str(version.id),),
                )
                version.evidence = [UUID(r["message_id"]) for r in await cursor.fetchall()]
        return versions

    async def insert_version(
        self, version: DecisionVersion, evidence: Sequence[UUID]
    ) -> bool:
        """Insert a decision version with its evidence in one transaction.

        The previous latest version of the thread is marked superseded.
        Returns False and writes nothing when (thread, version number) is
        already taken.
        """
        if not evidence:
            raise ValueError("A decision version requires at least one evidence message")

        async with self.connect() as db:
            try:
                await db.execute(
                    """
                    UPDATE decision_versions SET is_latest = 0, status = ?
                    WHERE thread_id = ? AND is_latest = 1 AND version_no < ?
                    """,
                    (
                        DecisionStatus.SUPERSEDED.value,
                        str(version.thread_id),
                        version.version_no,
                    ),
                )
                await db.execute(
                    """
                    INSERT INTO decision_versions
                        (id, thread_id, version_no, status, confidence, title, outcome,
                         decided_at, is_latest, needs_review, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        str(version.id),
                        str(version.thread_id),
                        version.version_no,
                        version.status.value,
                        version.confidence,
                        version.title,
                        version.outcome,
                        version.decided_at.isoformat() if version.decided_at else None,
                        1 if version.needs_review else 0,
                        version.created_at.isoformat(),
                    ),
                )
                await db.executemany(
                    """
                    INSERT OR IGNORE INTO decision_evidence (decision_id, message_id, position)
                    VALUES (?, ?, ?)
                    """,
                    [(str(version.id), str(mid), pos) for pos, mid in enumerate(evidence)],
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                await db.rollback()
                logger.debug(
                    f"Version {version.version_no} of thread {version.thread_id} "
                    f"already exists: {e}"
                )
                return False

        version.is_latest = True
        version.evidence = list(dict.fromkeys(evidence))
        return True

    async def link_decision_evidence(
        self, decision_id: UUID, message_ids: Sequence[UUID]
    ) -> int:
        """Attach evidence messages to a decision version."""
        return await self._link_evidence(
            "decision_evidence", "decision_id", decision_id, message_ids
        )

    async def get_decision_evidence(self, decision_id: UUID) -> list[Message]:
        """Get the evidence messages of a decision version, in order."""
        async with self.connect() as db:
            cursor = await db.execute(
                """
                SELECT m.* FROM messages m
                JOIN decision_evidence de ON de.message_id = m.id
                WHERE de.decision_id = ?
                ORDER BY de.position ASC, m.sent_at ASC
                """,
                (str(decision_id),),
            )
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def list_decisions(
        self,
        chat_id: UUID,
        *,
        include_history: bool = False,
        status: DecisionStatus | None = None,
        query: str | None = None,
        min_confidence: int = 0,
        max_confidence: int = 100,
        limit: int = 100,
    ) -> list[DecisionView]:
        """List decisions of a chat (latest version per thread by default)."""
        sql = """
            SELECT t.id AS t_id, t.chat_id AS t_chat_id, t.thread_key AS t_thread_key,
                   t.title AS t_title, t.created_at AS t_created_at, v.*
            FROM decision_versions v
            JOIN decision_threads t ON v.thread_id = t.id
            WHERE t.chat_id = ? AND v.confidence BETWEEN ? AND ?
        """
        params: list[object] = [str(chat_id), min_confidence, max_confidence]

        if not include_history:
            sql += " AND v.is_latest = 1"
        if status:
            sql += " AND v.status = ?"
            params.append(status.value)
        if query:
            sql += " AND (LOWER(v.title) LIKE ? OR LOWER(v.outcome) LIKE ?)"
            pattern = f"%{query.lower()}%"
            params.extend([pattern, pattern])

        sql += " ORDER BY v.created_at DESC, t.thread_key ASC, v.version_no DESC LIMIT ?"
        params.append(limit)

        async with self.connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            views = []
            for row in rows:
                version = self._row_to_version(row)
                cursor = await db.execute(
                    """
                    SELECT message_id FROM decision_evidence
                    WHERE decision_id = ? ORDER BY position ASC
                    """,
                    (str(version.id),),
                )
                version.evidence = [UUID(r["message_id"]) for r in await cursor.fetchall()]
                thread = DecisionThread(
                    id=UUID(row["t_id"]),
                    chat_id=UUID(row["t_chat_id"]),
                    thread_key=row["t_thread_key"],
                    title=row["t_title"],
                    created_at=datetime.fromisoformat(row["t_created_at"]),
                )
                views.append(DecisionView(thread=thread, version=version))
        return views

    # ============== Responsibilities ==============

    async def find_responsibility(
        self, chat_id: UUID, identity_key: str
    ) -> Responsibility | None:
        """Find a responsibility by its identity key within a chat."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM responsibilities WHERE chat_id = ? AND identity_key = ?",
                (str(chat_id), identity_key),
            )
            row = await cursor.fetchone()
        return self._row_to_responsibility(row) if row else None

    async def find_responsibility_by_source(
        self, chat_id: UUID, owner: str, source_message_id: UUID
    ) -> Responsibility | None:
        """Find the responsibility an owner was given by a particular message."""
        async with self.connect() as db:
            cursor = await db.execute(
                """
                SELECT * FROM responsibilities
                WHERE chat_id = ? AND source_message_id = ? AND LOWER(owner) = ?
                ORDER BY created_at ASC LIMIT 1
                """,
                (str(chat_id), str(source_message_id), owner.strip().lower()),
            )
            row = await cursor.fetchone()
        return self._row_to_responsibility(row) if row else None

    async def get_responsibility(self, responsibility_id: UUID) -> Responsibility | None:
        """Get a responsibility by ID with its evidence."""
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM responsibilities WHERE id = ?", (str(responsibility_id),)
            )
            row = await cursor.fetchone()
            if not row:
                return None
            responsibility = self._row_to_responsibility(row)
            cursor = await db.execute(
                """
                SELECT message_id FROM responsibility_evidence
                WHERE responsibility_id = ? ORDER BY position ASC
                """,
                (str(responsibility_id),),
            )
            responsibility.evidence = [UUID(r["message_id"]) for r in await cursor.fetchall()]
        return responsibility

    async def insert_responsibility(
        self, responsibility: Responsibility, evidence: Sequence[UUID]
    ) -> bool:
        """Insert a responsibility with its evidence unless its identity key exists."""
        if not evidence:
            raise ValueError("A responsibility requires at least one evidence message")

        async with self.connect() as db:
            try:
                await db.execute(
                    """
                    INSERT INTO responsibilities
                        (id, chat_id, owner, task_text, identity_key, description, status,
                         due_date, source_message_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(responsibility.id),
                        str(responsibility.chat_id),
                        responsibility.owner,
                        responsibility.task_text,
                        responsibility.identity_key,
                        responsibility.description,
                        responsibility.status.value,
                        responsibility.due_date.isoformat() if responsibility.due_date else None,
                        str(responsibility.source_message_id)
                        if responsibility.source_message_id
                        else None,
                        responsibility.created_at.isoformat(),
                        responsibility.updated_at.isoformat(),
                    ),
                )
                await db.executemany(
                    """
                    INSERT OR IGNORE INTO responsibility_evidence
                        (responsibility_id, message_id, position)
                    VALUES (?, ?, ?)
                    """,
                    [(str(responsibility.id), str(mid), pos) for pos, mid in enumerate(evidence)],
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                await db.rollback()
                logger.debug(
                    f"Responsibility {responsibility.identity_key!r} already exists: {e}"
                )
                return False

        responsibility.evidence = list(dict.fromkeys(evidence))
        return True

    async def update_responsibility(self, responsibility: Responsibility) -> None:
        """Update the mutable fields (status, due date, description) in place."""
        responsibility.updated_at = datetime.now(UTC)
        async with self.connect() as db:
            await db.execute(
                """
                UPDATE responsibilities
                SET status = ?, due_date = ?, description = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    responsibility.status.value,
                    responsibility.due_date.isoformat() if responsibility.due_date else None,
                    responsibility.description,
                    responsibility.updated_at.isoformat(),
                    str(responsibility.id),
                ),
            )
            await db.commit()

    async def complete_responsibility(self, responsibility_id: UUID) -> bool:
        """Mark a responsibility completed."""
        async with self.connect() as db:
            cursor = await db.execute(
                "UPDATE responsibilities SET status = ?, updated_at = ? WHERE id = ?",
                (ResponsibilityStatus.COMPLETED.value, _now(), str(responsibility_id)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def link_responsibility_evidence(
        self, responsibility_id: UUID, message_ids: Sequence[UUID]
    ) -> int:
        """Attach evidence messages to a responsibility."""
        return await self._link_evidence(
            "responsibility_evidence", "responsibility_id", responsibility_id, message_ids
        )

    async def list_responsibilities(
        self,
        chat_id: UUID,
        *,
        status: ResponsibilityStatus | None = None,
        owner: str | None = None,
        query: str | None = None,
        limit: int = 100,
    ) -> list[Responsibility]:
        """List responsibilities of a chat with optional filters."""
        sql = "SELECT * FROM responsibilities WHERE chat_id = ?"
        params: list[object] = [str(chat_id)]

        if status:
            sql += " AND status = ?"
            params.append(status.value)
        if owner:
            sql += " AND LOWER(owner) LIKE ?"
            params.append(f"%{owner.lower()}%")
        if query:
            sql += " AND (LOWER(task_text) LIKE ? OR LOWER(description) LIKE ?)"
            pattern = f"%{query.lower()}%"
            params.extend([pattern, pattern])

        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        async with self.connect() as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [self._row_to_responsibility(row) for row in rows]

    # ============== Helpers ==============

    async def _link_evidence(
        self, table: str, owner_column: str, owner_id: UUID, message_ids: Sequence[UUID]
    ) -> int:
        """Append evidence links after the existing ones, ignoring duplicates."""
        if not message_ids:
            return 0
        async with self.connect() as db:
            cursor = await db.execute(
                f"SELECT COALESCE(MAX(position), -1) AS pos FROM {table} WHERE {owner_column} = ?",
                (str(owner_id),),
            )
            row = await cursor.fetchone()
            start = (row["pos"] if row else -1) + 1
            cursor = await db.executemany(
                f"""
                INSERT OR IGNORE INTO {table} ({owner_column}, message_id, position)
                VALUES (?, ?, ?)
                """,
                [
                    (str(owner_id), str(mid), start + offset)
                    for offset, mid in enumerate(dict.fromkeys(message_ids))
                ],
            )
            await db.commit()
            return max(cursor.rowcount, 0)

    def _row_to_chat(self, row: aiosqlite.Row) -> Chat:
        """Convert a database row to a Chat."""
        return Chat(
            id=UUID(row["id"]),
            chat_key=row["chat_key"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_import(self, row: aiosqlite.Row) -> ChatImport:
        """Convert a database row to a ChatImport."""
        return ChatImport(
            id=UUID(row["id"]),
            chat_id=UUID(row["chat_id"]),
            file_name=row["file_name"],
            file_sha256=row["file_sha256"],
            messages_parsed=row["messages_parsed"],
            new_messages=row["new_messages"],
            duplicates_skipped=row["duplicates_skipped"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        """Convert a database row to a Message."""
        return Message(
            id=UUID(row["id"]),
            chat_id=UUID(row["chat_id"]),
            fingerprint=row["fingerprint"],
            sender=row["sender"],
            body=row["body"],
            sent_at=datetime.fromisoformat(row["sent_at"]),
            line_no=row["line_no"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_thread(self, row: aiosqlite.Row) -> DecisionThread:
        """Convert a database row to a DecisionThread."""
        return DecisionThread(
            id=UUID(row["id"]),
            chat_id=UUID(row["chat_id"]),
            thread_key=row["thread_key"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_version(self, row: aiosqlite.Row) -> DecisionVersion:
        """Convert a database row to a DecisionVersion."""
        return DecisionVersion(
            id=UUID(row["id"]),
            thread_id=UUID(row["thread_id"]),
            version_no=row["version_no"],
            status=DecisionStatus(row["status"]),
            confidence=row["confidence"],
            title=row["title"],
            outcome=row["outcome"],
            decided_at=datetime.fromisoformat(row["decided_at"]) if row["decided_at"] else None,
            is_latest=bool(row["is_latest"]),
            needs_review=bool(row["needs_review"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_responsibility(self, row: aiosqlite.Row) -> Responsibility:
        """Convert a database row to a Responsibility."""
        return Responsibility(
            id=UUID(row["id"]),
            chat_id=UUID(row["chat_id"]),
            owner=row["owner"],
            task_text=row["task_text"],
            identity_key=row["identity_key"],
            description=row["description"],
            status=ResponsibilityStatus(row["status"]),
            due_date=date.fromisoformat(row["due_date"]) if row["due_date"] else None,
            source_message_id=UUID(row["source_message_id"])
            if row["source_message_id"]
            else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


# Global database instance
_db: Database | None = None


def get_database(db_path: Path | None = None) -> Database:
    """Get or create the global database instance."""
    global _db
    if _db is None:
        _db = Database(db_path or DEFAULT_DB_PATH)
    return _db


def reset_database() -> None:
    """Reset the global database instance (useful for testing)."""
    global _db
    _db = None


async def init_database(db_path: Path | None = None) -> Database:
    """Initialize and return the database."""
    db = get_database(db_path)
    await db.initialize()
    return db
