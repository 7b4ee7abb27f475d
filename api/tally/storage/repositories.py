"""Narrow repository interfaces used by the processing core.

Each record family exposes only the insert-if-absent and lookup operations
the pipeline needs. ``Database`` implements all of them; tests can supply
an in-memory implementation instead.
"""

from collections.abc import Sequence
from typing import Protocol
from uuid import UUID

from tally.capture.parsers import ParsedMessage
from tally.storage.models import (
    Chat,
    ChatImport,
    DecisionThread,
    DecisionVersion,
    Message,
    Responsibility,
)


class ChatRepository(Protocol):
    """Chats and the imports made into them."""

    async def get_or_create_chat(self, name: str) -> Chat: ...

    async def get_chat(self, chat_id: UUID) -> Chat | None: ...

    async def get_or_create_import(
        self, chat_id: UUID, file_name: str, file_sha256: str
    ) -> ChatImport: ...

    async def update_import_stats(
        self,
        import_id: UUID,
        *,
        messages_parsed: int,
        new_messages: int,
        duplicates_skipped: int,
    ) -> None: ...


class MessageRepository(Protocol):
    """Messages, unique per chat by fingerprint."""

    async def insert_messages(
        self, chat_id: UUID, messages: Sequence[ParsedMessage]
    ) -> int:
        """Insert messages that are not stored yet; return how many were new."""
        ...

    async def find_message_ids(
        self, chat_id: UUID, fingerprints: Sequence[str]
    ) -> dict[str, UUID]:
        """Map the given fingerprints to stored message IDs (missing ones omitted)."""
        ...

    async def link_import_messages(
        self, import_id: UUID, message_ids: Sequence[UUID]
    ) -> int: ...

    async def list_import_messages(self, import_id: UUID) -> list[Message]: ...

    async def list_chat_messages(
        self, chat_id: UUID, *, limit: int = 500, offset: int = 0
    ) -> list[Message]: ...


class DecisionRepository(Protocol):
    """Decision threads, their versions and version evidence."""

    async def get_thread(self, chat_id: UUID, thread_key: str) -> DecisionThread | None: ...

    async def create_thread(self, thread: DecisionThread) -> bool:
        """Insert the thread unless (chat, thread key) exists; True if inserted."""
        ...

    async def get_latest_version(self, thread_id: UUID) -> DecisionVersion | None: ...

    async def get_version(
        self, thread_id: UUID, version_no: int
    ) -> DecisionVersion | None: ...

    async def list_versions(self, thread_id: UUID) -> list[DecisionVersion]:
        """All versions of a thread, oldest first, with their evidence."""
        ...

    async def insert_version(
        self, version: DecisionVersion, evidence: Sequence[UUID]
    ) -> bool:
        """Insert a version with its evidence and supersede the previous latest.

        Returns False, writing nothing, if (thread, version number) exists.
        """
        ...

    async def link_decision_evidence(
        self, decision_id: UUID, message_ids: Sequence[UUID]
    ) -> int:
        """Attach evidence; already linked pairs are ignored. Returns new links."""
        ...


class ResponsibilityRepository(Protocol):
    """Responsibilities and their evidence."""

    async def find_responsibility(
        self, chat_id: UUID, identity_key: str
    ) -> Responsibility | None: ...

    async def find_responsibility_by_source(
        self, chat_id: UUID, owner: str, source_message_id: UUID
    ) -> Responsibility | None:
        """Find the record an owner was given by one message, whatever its wording."""
        ...

    async def insert_responsibility(
        self, responsibility: Responsibility, evidence: Sequence[UUID]
    ) -> bool:
        """Insert unless (chat, identity key) exists; True if inserted."""
        ...

    async def update_responsibility(self, responsibility: Responsibility) -> None: ...

    async def link_responsibility_evidence(
        self, responsibility_id: UUID, message_ids: Sequence[UUID]
    ) -> int: ...


class Store(
    ChatRepository,
    MessageRepository,
    DecisionRepository,
    ResponsibilityRepository,
    Protocol,
):
    """Everything the ingestion and enrichment pipeline reads and writes."""
