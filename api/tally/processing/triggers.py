"""Trigger rule tables for deterministic classification.

Rules are plain data: the classifier walks each table in order and the first
matching rule wins. Extending the vocabulary means editing these tables, not
the classification algorithm.
"""

import re
from dataclasses import dataclass
from enum import Enum

from tally.storage.models import DecisionStatus

FINAL_CONFIDENCE = 80
TENTATIVE_CONFIDENCE = 60


class OwnerPolicy(str, Enum):
    """How the owner of a detected responsibility is chosen."""

    SENDER = "sender"  # the author commits themselves
    UNASSIGNED = "unassigned"


@dataclass(frozen=True)
class DecisionRule:
    """A pattern that marks a message as a decision of a given tier."""

    name: str
    pattern: re.Pattern[str]
    status: DecisionStatus
    confidence: int

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


@dataclass(frozen=True)
class ResponsibilityRule:
    """A pattern that marks a message as an action item.

    ``requires`` is an optional second pattern that must also match, used to
    gate noisy triggers.
    """

    name: str
    pattern: re.Pattern[str]
    owner: OwnerPolicy
    requires: re.Pattern[str] | None = None

    def matches(self, text: str) -> bool:
        if self.pattern.search(text) is None:
            return False
        return self.requires is None or self.requires.search(text) is not None


def phrase_pattern(*phrases: str) -> re.Pattern[str]:
    """Case-insensitive pattern matching any of the literal phrases."""
    return re.compile("|".join(re.escape(p) for p in phrases), re.IGNORECASE)


FINAL_PHRASES = ("final decision", "we decided")

TENTATIVE_PHRASES = (
    "let's go with",
    "we will go with",
    "we're going with",
    "we are going with",
    "the plan is",
)

# "option b", "Option C" - an explicit pick among lettered options
OPTION_SELECT_PATTERN = re.compile(r"\boption\s+[a-z]\b", re.IGNORECASE)

DECISION_RULES: tuple[DecisionRule, ...] = (
    DecisionRule(
        name="final_phrase",
        pattern=phrase_pattern(*FINAL_PHRASES),
        status=DecisionStatus.FINAL,
        confidence=FINAL_CONFIDENCE,
    ),
    DecisionRule(
        name="tentative_phrase",
        pattern=phrase_pattern(*TENTATIVE_PHRASES),
        status=DecisionStatus.TENTATIVE,
        confidence=TENTATIVE_CONFIDENCE,
    ),
    DecisionRule(
        name="option_select",
        pattern=OPTION_SELECT_PATTERN,
        status=DecisionStatus.TENTATIVE,
        confidence=TENTATIVE_CONFIDENCE,
    ),
)

ACTION_VERBS = (
    "send", "complete", "finish", "review", "update", "check", "fix", "write",
    "create", "add", "remove", "submit", "make", "do", "handle", "take", "get",
    "set", "ensure", "confirm", "prepare", "share", "upload", "schedule", "book",
    "arrange", "contact", "follow", "coordinate", "test", "deploy", "build", "run",
    "implement", "draft", "collect", "gather",
)  # fmt: skip

# "please" counts only when an action verb follows within three words,
# so "yes please" and "please let me know" stay conversational
PLEASE_ACTION_PATTERN = re.compile(
    rf"\bplease\s+(?:\w+\s+){{0,3}}(?:{'|'.join(ACTION_VERBS)})\b", re.IGNORECASE
)

SELF_COMMITMENT_PATTERN = re.compile(r"\b(?:i will|i'll)\b", re.IGNORECASE)
DELEGATION_PATTERN = re.compile(r"\b(?:can you|you will|need you to)\b", re.IGNORECASE)
COMMITMENT_PHRASES = ("handle this", "take care of")

DEADLINE_PATTERN = re.compile(r"\bdeadline\b", re.IGNORECASE)
DEADLINE_ACTION_PATTERN = re.compile(
    r"\b(?:by|before|until|submit|send|complete|finish|deliver)\b", re.IGNORECASE
)

RESPONSIBILITY_RULES: tuple[ResponsibilityRule, ...] = (
    ResponsibilityRule(
        name="self_commitment",
        pattern=SELF_COMMITMENT_PATTERN,
        owner=OwnerPolicy.SENDER,
    ),
    ResponsibilityRule(
        name="delegation",
        pattern=DELEGATION_PATTERN,
        owner=OwnerPolicy.UNASSIGNED,
    ),
    ResponsibilityRule(
        name="please_action",
        pattern=PLEASE_ACTION_PATTERN,
        owner=OwnerPolicy.UNASSIGNED,
    ),
    ResponsibilityRule(
        name="commitment_phrase",
        pattern=phrase_pattern(*COMMITMENT_PHRASES),
        owner=OwnerPolicy.UNASSIGNED,
    ),
    ResponsibilityRule(
        name="deadline",
        pattern=DEADLINE_PATTERN,
        owner=OwnerPolicy.UNASSIGNED,
        requires=DEADLINE_ACTION_PATTERN,
    ),
)
