"""In-memory candidate records produced by classification and inference."""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime

from tally.storage.models import UNASSIGNED, DecisionStatus

TITLE_MAX_LENGTH = 80
EXPLANATION_MAX_LENGTH = 200
THREAD_KEY_MAX_LENGTH = 64

ELLIPSIS = "…"


def slugify(text: str, max_length: int = THREAD_KEY_MAX_LENGTH) -> str:
    """Lower-case ``text`` and reduce it to ``[a-z0-9_]``.

    Example: "Use Supabase for the DB!" -> "use_supabase_for_the_db"
    """
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return slug[:max_length]


def normalize_text(text: str) -> str:
    """Case-fold and collapse whitespace; used for identity comparisons."""
    return re.sub(r"\s+", " ", text.strip().casefold())


def truncate(text: str, max_length: int) -> str:
    """Trim ``text`` and cut it to ``max_length`` characters with an ellipsis."""
    stripped = text.strip()
    if len(stripped) <= max_length:
        return stripped
    return stripped[: max_length - 1].rstrip() + ELLIPSIS


def stable_id(prefix: str, namespace: str, key: str) -> str:
    """Derive a short deterministic id such as ``dec_1a2b3c4d5e6f``."""
    digest = hashlib.sha256(f"{namespace}|{key}".encode()).hexdigest()
    return f"{prefix}_{digest[:12]}"


def decision_candidate_id(key: str) -> str:
    return stable_id("dec", "decision", key)


def responsibility_candidate_id(key: str) -> str:
    return stable_id("resp", "resp", key)


def _extend_unique(target: list[str], values: list[str]) -> None:
    for value in values:
        if value not in target:
            target.append(value)


@dataclass
class DecisionCandidate:
    """A decision proposal that has not been persisted.

    ``evidence`` holds message fingerprints in the order they were cited.
    """

    id: str
    title: str
    status: DecisionStatus
    confidence: int
    explanation: str = ""
    decided_at: datetime | None = None
    grouping_key: str | None = None  # provided by inference
    evidence: list[str] = field(default_factory=list)

    @property
    def thread_key(self) -> str:
        """Key of the thread this candidate belongs to."""
        return slugify(self.grouping_key or self.title)

    def add_evidence(self, fingerprints: list[str]) -> None:
        _extend_unique(self.evidence, fingerprints)


@dataclass
class ResponsibilityCandidate:
    """An action item proposal that has not been persisted."""

    id: str
    title: str
    owner: str = UNASSIGNED
    description: str = ""
    due_date: date | None = None
    evidence: list[str] = field(default_factory=list)

    @property
    def identity_key(self) -> str:
        """Owner and task, normalized; unique per chat once persisted."""
        return f"{normalize_text(self.owner)}|{normalize_text(self.title)}"

    def add_evidence(self, fingerprints: list[str]) -> None:
        _extend_unique(self.evidence, fingerprints)


@dataclass
class CandidateSet:
    """Decision and responsibility candidates for one message window."""

    decisions: list[DecisionCandidate] = field(default_factory=list)
    responsibilities: list[ResponsibilityCandidate] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.decisions) + len(self.responsibilities)
