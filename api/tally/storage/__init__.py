"""Storage layer - SQLite records and repository interfaces."""

from tally.storage.database import Database, get_database, init_database, reset_database
from tally.storage.models import (
    UNASSIGNED,
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
from tally.storage.repositories import (
    ChatRepository,
    DecisionRepository,
    MessageRepository,
    ResponsibilityRepository,
)

__all__ = [
    # Database
    "Database",
    "get_database",
    "init_database",
    "reset_database",
    # Models
    "UNASSIGNED",
    "Chat",
    "ChatImport",
    "ChatSummary",
    "DecisionStatus",
    "DecisionThread",
    "DecisionVersion",
    "DecisionView",
    "Message",
    "Responsibility",
    "ResponsibilityStatus",
    # Repositories
    "ChatRepository",
    "DecisionRepository",
    "MessageRepository",
    "ResponsibilityRepository",
]
