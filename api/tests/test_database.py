"""Tests for the database storage layer."""

import tempfile
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest

from tally.capture import parse_chat
from tally.storage import (
    Chat,
    Database,
    DecisionStatus,
    DecisionThread,
    DecisionVersion,
    Responsibility,
    ResponsibilityStatus,
)

TRANSCRIPT = """\
13/03/2024, 09:16 - Alice: We decided to go with Supabase for the database
13/03/2024, 09:17 - Bob: I'll send the report by Friday
13/03/2024, 09:20 - Carol: Let's go with option B
"""


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        database = Database(db_path)
        await database.initialize()
        yield database


async def seed(db: Database) -> tuple[Chat, list[UUID]]:
    """Create a chat holding the sample transcript; return it and its message IDs."""
    chat = await db.get_or_create_chat("Team")
    parsed = parse_chat(TRANSCRIPT)
    await db.insert_messages(chat.id, parsed)
    ids = await db.find_message_ids(chat.id, [m.fingerprint for m in parsed])
    return chat, [ids[m.fingerprint] for m in parsed]


async def make_thread(db: Database, chat: Chat, key: str = "supabase") -> DecisionThread:
    thread = DecisionThread(chat_id=chat.id, thread_key=key, title="Supabase")
    assert await db.create_thread(thread)
    return thread


def make_version(thread: DecisionThread, version_no: int, title: str) -> DecisionVersion:
    return DecisionVersion(
        thread_id=thread.id,
        version_no=version_no,
        status=DecisionStatus.FINAL,
        confidence=80,
        title=title,
        outcome=f"Outcome {version_no}",
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    async def test_initialize_creates_tables(self, db: Database):
        """Test that initialization creates all required tables."""
        async with db.connect() as conn:
            cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row["name"] for row in await cursor.fetchall()}

        expected_tables = {
            "schema_version",
            "chats",
            "chat_imports",
            "messages",
            "import_messages",
            "decision_threads",
            "decision_versions",
            "decision_evidence",
            "responsibilities",
            "responsibility_evidence",
        }
        assert expected_tables.issubset(tables)

    async def test_initialize_creates_indexes(self, db: Database):
        """Test that initialization creates indexes."""
        async with db.connect() as conn:
            cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
            indexes = {row["name"] for row in await cursor.fetchall()}

        assert "idx_decision_versions_latest" in indexes
        assert "idx_messages_chat_sent_at" in indexes

    async def test_initialize_is_repeatable(self, db: Database):
        """Test that applying the schema twice is harmless."""
        await db.initialize()
        async with db.connect() as conn:
            cursor = await conn.execute("SELECT version FROM schema_version")
            rows = await cursor.fetchall()
        assert [row["version"] for row in rows] == [1]


class TestChats:
    """Tests for chats and imports."""

    async def test_get_or_create_chat_normalizes_key(self, db: Database):
        """Test that chat names are matched case-insensitively."""
        first = await db.get_or_create_chat("Family ")
        second = await db.get_or_create_chat("family")

        assert first.id == second.id
        assert first.chat_key == "family"
        assert first.name == "Family"

    async def test_empty_chat_name_rejected(self, db: Database):
        """Test that a blank chat name is an error."""
        with pytest.raises(ValueError):
            await db.get_or_create_chat("   ")

    async def test_missing_row_after_insert(self, db: Database, monkeypatch):
        """Test that a row vanishing after the insert is an error, not an assert."""
        cursor = AsyncMock()
        cursor.fetchone.return_value = None
        conn = AsyncMock()
        conn.execute.return_value = cursor

        @asynccontextmanager
        async def connect():
            yield conn

        monkeypatch.setattr(db, "connect", connect)

        with pytest.raises(RuntimeError, match="missing after insert"):
            await db.get_or_create_chat("Team")
        with pytest.raises(RuntimeError, match="missing after insert"):
            await db.get_or_create_import(uuid4(), "chat.txt", "abc")

    async def test_list_chats(self, db: Database):
        """Test listing chats."""
        await db.get_or_create_chat("One")
        await db.get_or_create_chat("Two")
        assert {c.name for c in await db.list_chats()} == {"One", "Two"}

    async def test_get_or_create_import_reuses_same_file(self, db: Database):
        """Test that the same file is recorded once per chat."""
        chat = await db.get_or_create_chat("Team")
        first = await db.get_or_create_import(chat.id, "chat.txt", "abc")
        second = await db.get_or_create_import(chat.id, "renamed.txt", "abc")
        other = await db.get_or_create_import(chat.id, "chat.txt", "def")

        assert first.id == second.id
        assert other.id != first.id

    async def test_update_import_stats(self, db: Database):
        """Test recording import counts."""
        chat = await db.get_or_create_chat("Team")
        chat_import = await db.get_or_create_import(chat.id, "chat.txt", "abc")
        await db.update_import_stats(
            chat_import.id, messages_parsed=3, new_messages=2, duplicates_skipped=1
        )
        again = await db.get_or_create_import(chat.id, "chat.txt", "abc")
        assert (again.messages_parsed, again.new_messages, again.duplicates_skipped) == (3, 2, 1)


class TestChatSummary:
    """Tests for the chat summary read model."""

    async def test_unknown_chat(self, db: Database):
        assert await db.chat_summary(uuid4()) is None

    async def test_chat_without_imports(self, db: Database):
        """Test that a chat never imported has empty counts."""
        chat = await db.get_or_create_chat("Team")

        summary = await db.chat_summary(chat.id)

        assert summary is not None
        assert summary.last_import_at is None
        assert summary.message_count == 0
        assert summary.decision_count == 0

    async def test_counts(self, db: Database):
        """Test the latest import stats and the record counts."""
        chat, ids = await seed(db)
        chat_import = await db.get_or_create_import(chat.id, "chat.txt", "abc")
        await db.update_import_stats(
            chat_import.id, messages_parsed=3, new_messages=3, duplicates_skipped=0
        )
        thread = await make_thread(db, chat)
        assert await db.insert_version(make_version(thread, 1, "Use Supabase"), [ids[0]])
        assert await db.insert_version(make_version(thread, 2, "Use Firebase"), [ids[2]])
        open_item = Responsibility(
            chat_id=chat.id,
            owner="Bob",
            task_text="Send the report",
            identity_key="bob|send the report",
            source_message_id=ids[1],
        )
        assert await db.insert_responsibility(open_item, [ids[1]])
        done = Responsibility(
            chat_id=chat.id,
            owner="Carol",
            task_text="Book the room",
            identity_key="carol|book the room",
            source_message_id=ids[2],
        )
        assert await db.insert_responsibility(done, [ids[2]])
        assert await db.complete_responsibility(done.id)

        summary = await db.chat_summary(chat.id)

        assert summary is not None
        assert summary.last_import_at == chat_import.created_at
        assert summary.messages_parsed_latest == 3
        assert summary.new_messages_latest == 3
        assert summary.duplicates_skipped_latest == 0
        assert summary.message_count == 3
        assert summary.messages_since_last_import == 0
        assert summary.decision_count == 1
        assert summary.open_responsibilities == 1

    async def test_messages_since_last_import(self, db: Database):
        """Test counting messages sent after the latest import."""
        chat, _ = await seed(db)
        await db.get_or_create_import(chat.id, "chat.txt", "abc")
        await db.insert_messages(chat.id, parse_chat("01/01/2099, 09:00 - Dan: See you all\n"))

        summary = await db.chat_summary(chat.id)

        assert summary is not None
        assert summary.message_count == 4
        assert summary.messages_since_last_import == 1


class TestMessages:
    """Tests for message storage."""

    async def test_insert_messages_deduplicates(self, db: Database):
        """Test that re-inserting known fingerprints is a no-op."""
        chat = await db.get_or_create_chat("Team")
        parsed = parse_chat(TRANSCRIPT)

        assert await db.insert_messages(chat.id, parsed) == 3
        assert await db.insert_messages(chat.id, parsed) == 0
        assert len(await db.list_chat_messages(chat.id)) == 3

    async def test_same_message_in_other_chat(self, db: Database):
        """Test that fingerprints are unique per chat only."""
        parsed = parse_chat(TRANSCRIPT)
        first = await db.get_or_create_chat("Team")
        second = await db.get_or_create_chat("Other")

        await db.insert_messages(first.id, parsed)
        assert await db.insert_messages(second.id, parsed) == 3

    async def test_insert_empty(self, db: Database):
        """Test inserting nothing."""
        chat = await db.get_or_create_chat("Team")
        assert await db.insert_messages(chat.id, []) == 0

    async def test_find_message_ids(self, db: Database):
        """Test fingerprint lookup, ignoring unknown fingerprints."""
        chat, ids = await seed(db)
        parsed = parse_chat(TRANSCRIPT)
        found = await db.find_message_ids(chat.id, [parsed[0].fingerprint, "unknown"])
        assert found == {parsed[0].fingerprint: ids[0]}

    async def test_list_chat_messages_paged(self, db: Database):
        """Test chronological paging."""
        chat, ids = await seed(db)
        first_page = await db.list_chat_messages(chat.id, limit=2)
        second_page = await db.list_chat_messages(chat.id, limit=2, offset=2)

        assert [m.id for m in first_page + second_page] == ids
        assert first_page[0].sender == "Alice"

    async def test_import_messages(self, db: Database):
        """Test linking messages to an import."""
        chat, ids = await seed(db)
        chat_import = await db.get_or_create_import(chat.id, "chat.txt", "abc")

        assert await db.link_import_messages(chat_import.id, ids) == 3
        assert await db.link_import_messages(chat_import.id, ids) == 0
        assert [m.id for m in await db.list_import_messages(chat_import.id)] == ids


class TestDecisionVersions:
    """Tests for decision threads and versions."""

    async def test_create_thread_once(self, db: Database):
        """Test that thread keys are unique per chat."""
        chat, _ = await seed(db)
        await make_thread(db, chat)
        duplicate = DecisionThread(chat_id=chat.id, thread_key="supabase", title="Again")

        assert not await db.create_thread(duplicate)
        stored = await db.get_thread(chat.id, "supabase")
        assert stored is not None
        assert stored.title == "Supabase"

    async def test_insert_version_with_evidence(self, db: Database):
        """Test inserting a first version."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        version = make_version(thread, 1, "Use Supabase")

        assert await db.insert_version(version, [ids[0], ids[2]])

        latest = await db.get_latest_version(thread.id)
        assert latest is not None
        assert latest.id == version.id
        assert latest.is_latest
        evidence = await db.get_decision_evidence(version.id)
        assert [m.id for m in evidence] == [ids[0], ids[2]]

    async def test_insert_version_supersedes_previous(self, db: Database):
        """Test that a new version takes over the latest flag."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        first = make_version(thread, 1, "Use Supabase")
        second = make_version(thread, 2, "Use Firebase")

        assert await db.insert_version(first, [ids[0]])
        assert await db.insert_version(second, [ids[1]])

        old = await db.get_version(thread.id, 1)
        assert old is not None
        assert not old.is_latest
        assert old.status == DecisionStatus.SUPERSEDED
        latest = await db.get_latest_version(thread.id)
        assert latest is not None
        assert latest.version_no == 2

    async def test_list_versions(self, db: Database):
        """Test listing a thread's versions oldest first with their evidence."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        assert await db.insert_version(make_version(thread, 1, "Use Supabase"), [ids[0]])
        assert await db.insert_version(make_version(thread, 2, "Use Firebase"), [ids[2], ids[1]])

        versions = await db.list_versions(thread.id)

        assert [v.version_no for v in versions] == [1, 2]
        assert [v.evidence for v in versions] == [[ids[0]], [ids[2], ids[1]]]
        assert [v.is_latest for v in versions] == [False, True]
        assert await db.list_versions(uuid4()) == []

    async def test_duplicate_version_rejected(self, db: Database):
        """Test that an existing version number is not overwritten."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        assert await db.insert_version(make_version(thread, 1, "Use Supabase"), [ids[0]])

        assert not await db.insert_version(make_version(thread, 1, "Other"), [ids[1]])

        latest = await db.get_latest_version(thread.id)
        assert latest is not None
        assert latest.title == "Use Supabase"
        assert latest.status == DecisionStatus.FINAL

    async def test_version_requires_evidence(self, db: Database):
        """Test that versions without evidence are refused."""
        chat, _ = await seed(db)
        thread = await make_thread(db, chat)
        with pytest.raises(ValueError, match="evidence"):
            await db.insert_version(make_version(thread, 1, "Use Supabase"), [])
        assert await db.get_latest_version(thread.id) is None

    async def test_link_decision_evidence_appends(self, db: Database):
        """Test appending evidence without duplicates."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        version = make_version(thread, 1, "Use Supabase")
        await db.insert_version(version, [ids[0]])

        assert await db.link_decision_evidence(version.id, [ids[0], ids[2]]) == 1
        evidence = await db.get_decision_evidence(version.id)
        assert [m.id for m in evidence] == [ids[0], ids[2]]

    async def test_list_decisions(self, db: Database):
        """Test listing latest versions and history."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        await db.insert_version(make_version(thread, 1, "Use Supabase"), [ids[0]])
        await db.insert_version(make_version(thread, 2, "Use Firebase"), [ids[1]])

        latest = await db.list_decisions(chat.id)
        assert [v.version.version_no for v in latest] == [2]
        assert latest[0].thread.thread_key == "supabase"
        assert latest[0].version.evidence == [ids[1]]

        history = await db.list_decisions(chat.id, include_history=True)
        assert sorted(v.version.version_no for v in history) == [1, 2]

    async def test_list_decisions_filters(self, db: Database):
        """Test status, text and confidence filters."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        await db.insert_version(make_version(thread, 1, "Use Supabase"), [ids[0]])

        assert len(await db.list_decisions(chat.id, query="supabase")) == 1
        assert await db.list_decisions(chat.id, query="firebase") == []
        assert await db.list_decisions(chat.id, status=DecisionStatus.TENTATIVE) == []
        assert await db.list_decisions(chat.id, min_confidence=90) == []


class TestResponsibilities:
    """Tests for responsibility storage."""

    def make_responsibility(self, chat: Chat, source: UUID) -> Responsibility:
        return Responsibility(
            chat_id=chat.id,
            owner="Bob",
            task_text="Send the report",
            identity_key="bob|send the report",
            source_message_id=source,
        )

    async def test_insert_and_find(self, db: Database):
        """Test inserting and finding by identity key."""
        chat, ids = await seed(db)
        record = self.make_responsibility(chat, ids[1])

        assert await db.insert_responsibility(record, [ids[1]])
        found = await db.find_responsibility(chat.id, "bob|send the report")
        assert found is not None
        assert found.id == record.id

        loaded = await db.get_responsibility(record.id)
        assert loaded is not None
        assert loaded.evidence == [ids[1]]

    async def test_find_by_source(self, db: Database):
        """Test finding a responsibility by owner and source message."""
        chat, ids = await seed(db)
        record = self.make_responsibility(chat, ids[1])
        assert await db.insert_responsibility(record, [ids[1]])

        found = await db.find_responsibility_by_source(chat.id, " BOB ", ids[1])
        assert found is not None
        assert found.id == record.id
        assert await db.find_responsibility_by_source(chat.id, "Carol", ids[1]) is None
        assert await db.find_responsibility_by_source(chat.id, "Bob", ids[0]) is None

    async def test_duplicate_identity_rejected(self, db: Database):
        """Test that the identity key is unique per chat."""
        chat, ids = await seed(db)
        assert await db.insert_responsibility(self.make_responsibility(chat, ids[1]), [ids[1]])
        assert not await db.insert_responsibility(
            self.make_responsibility(chat, ids[1]), [ids[1]]
        )

    async def test_requires_evidence(self, db: Database):
        """Test that responsibilities without evidence are refused."""
        chat, ids = await seed(db)
        with pytest.raises(ValueError):
            await db.insert_responsibility(self.make_responsibility(chat, ids[1]), [])

    async def test_update_and_complete(self, db: Database):
        """Test updating in place and completing."""
        chat, ids = await seed(db)
        record = self.make_responsibility(chat, ids[1])
        await db.insert_responsibility(record, [ids[1]])

        record.due_date = date(2024, 3, 15)
        record.description = "Quarterly numbers"
        await db.update_responsibility(record)
        assert await db.complete_responsibility(record.id)

        loaded = await db.get_responsibility(record.id)
        assert loaded is not None
        assert loaded.due_date == date(2024, 3, 15)
        assert loaded.description == "Quarterly numbers"
        assert loaded.status == ResponsibilityStatus.COMPLETED

    async def test_complete_unknown(self, db: Database):
        """Test completing a missing record."""
        assert not await db.complete_responsibility(uuid4())

    async def test_list_filters(self, db: Database):
        """Test owner, status and text filters."""
        chat, ids = await seed(db)
        await db.insert_responsibility(self.make_responsibility(chat, ids[1]), [ids[1]])

        assert len(await db.list_responsibilities(chat.id, owner="bo")) == 1
        assert await db.list_responsibilities(chat.id, owner="alice") == []
        assert len(await db.list_responsibilities(chat.id, query="report")) == 1
        assert await db.list_responsibilities(
            chat.id, status=ResponsibilityStatus.COMPLETED
        ) == []


class TestPurge:
    """Tests for deleting a chat."""

    async def test_purge_cascades(self, db: Database):
        """Test that purging a chat removes everything under it."""
        chat, ids = await seed(db)
        thread = await make_thread(db, chat)
        await db.insert_version(make_version(thread, 1, "Use Supabase"), [ids[0]])
        await db.insert_responsibility(
            Responsibility(
                chat_id=chat.id,
                owner="Bob",
                task_text="Send the report",
                identity_key="bob|send the report",
            ),
            [ids[1]],
        )

        assert await db.purge_chat(chat.id)

        assert await db.get_chat(chat.id) is None
        async with db.connect() as conn:
            for table in ("messages", "decision_threads", "decision_versions",
                          "decision_evidence", "responsibilities", "responsibility_evidence"):
                cursor = await conn.execute(f"SELECT COUNT(*) AS n FROM {table}")
                row = await cursor.fetchone()
                assert row is not None
                assert row["n"] == 0, table

    async def test_purge_unknown(self, db: Database):
        """Test purging a missing chat."""
        assert not await db.purge_chat(uuid4())
