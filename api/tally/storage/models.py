"""Data models for the Tally storage layer."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from uuid import UUID, uuid4

# Owner used when a responsibility has no identifiable person
UNASSIGNED = "unassigned"


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


class DecisionStatus(str, Enum):
    """Lifecycle state of a decision version."""

    OPEN = "open"
    FINAL = "final"
    TENTATIVE = "tentative"
    SUPERSEDED = "superseded"
    CONFLICTED = "conflicted"  # Needs manual review


class ResponsibilityStatus(str, Enum):
    """Lifecycle state of a responsibility."""

    OPEN = "open"
    OVERDUE = "overdue"
    COMPLETED = "completed"


@dataclass
class Chat:
    """A conversation; the ownership scope of every other record."""

    id: UUID = field(default_factory=uuid4)
    chat_key: str = ""
    name: str = ""
    created_at: datetime = field(default_factory=_utc_now)


@dataclass
class ChatImport:
    """One ingestion of a transcript file into a chat."""

    id: UUID = field(default_factory=uuid4)
    chat_id: UUID = field(default_factory=uuid4)
    file_name: str = ""
    file_sha256: str = ""
    messages_parsed: int = 0
    new_messages: int = 0
    duplicates_skipped: int = 0
    created_at: datetime = field(default_factory=_utc_now)


@dataclass
class Message:
    """A persisted chat message, unique per chat by fingerprint."""

    id: UUID = field(default_factory=uuid4)
    chat_id: UUID = field(default_factory=uuid4)
    fingerprint: str = ""
    sender: str = ""
    body: str = ""
    sent_at: datetime = field(default_factory=_utc_now)
    line_no: int | None = None
    created_at: datetime = field(default_factory=_utc_now)


@dataclass
class DecisionThread:
    """Durable grouping of all versions of one decision topic."""

    id: UUID = field(default_factory=uuid4)
    chat_id: UUID = field(default_factory=uuid4)
    thread_key: str = ""
    title: str = ""
    created_at: datetime = field(default_factory=_utc_now)


@dataclass
class DecisionVersion:
    """An immutable snapshot of a decision's state."""

    id: UUID = field(default_factory=uuid4)
    thread_id: UUID = field(default_factory=uuid4)
    version_no: int = 1
    status: DecisionStatus = DecisionStatus.OPEN
    confidence: int = 0  # 0 to 100
    title: str = ""
    outcome: str = ""
    decided_at: datetime | None = None
    is_latest: bool = True
    needs_review: bool = False
    created_at: datetime = field(default_factory=_utc_now)

    # Related data (populated when fetching)
    evidence: list[UUID] = field(default_factory=list)


@dataclass
class Responsibility:
    """An action item, deduplicated per chat by owner and task."""

    id: UUID = field(default_factory=uuid4)
    chat_id: UUID = field(default_factory=uuid4)
    owner: str = UNASSIGNED
    task_text: str = ""
    identity_key: str = ""  # normalized owner and task
    description: str = ""
    status: ResponsibilityStatus = ResponsibilityStatus.OPEN
    due_date: date | None = None
    source_message_id: UUID | None = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    # Related data (populated when fetching)
    evidence: list[UUID] = field(default_factory=list)


@dataclass
class DecisionView:
    """A decision version joined with its thread, for listings."""

    thread: DecisionThread
    version: DecisionVersion


@dataclass
class ChatSummary:
    """Counts describing a chat and its most recent import."""

    chat_id: UUID
    last_import_at: datetime | None = None
    messages_parsed_latest: int = 0
    new_messages_latest: int = 0
    duplicates_skipped_latest: int = 0
    message_count: int = 0
    messages_since_last_import: int = 0  # sent after the latest import was recorded
    decision_count: int = 0  # threads with a latest version
    open_responsibilities: int = 0  # open or overdue
