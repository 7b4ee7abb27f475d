"""Deterministic classification of messages into candidate records."""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from tally.processing.candidates import (
    EXPLANATION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    CandidateSet,
    DecisionCandidate,
    ResponsibilityCandidate,
    decision_candidate_id,
    normalize_text,
    responsibility_candidate_id,
    truncate,
)
from tally.processing.triggers import (
    DECISION_RULES,
    RESPONSIBILITY_RULES,
    DecisionRule,
    OwnerPolicy,
    ResponsibilityRule,
)
from tally.storage.models import UNASSIGNED

logger = logging.getLogger(__name__)


class SourceMessage(Protocol):
    """What the classifier reads from a message (parsed or stored)."""

    sender: str
    body: str
    fingerprint: str
    sent_at: datetime


def _headline(body: str) -> str:
    """First non-empty line of a message body."""
    for line in body.split("\n"):
        if line.strip():
            return line.strip()
    return ""


def _match_text(body: str) -> str:
    # Typographic apostrophes are common in phone exports ("let’s")
    return body.replace("’", "'")


class TriggerClassifier:
    """Scan messages against ordered trigger tables.

    Each message is classified on its own; the only state kept across
    messages is the per-pass identity map that collapses candidates with the
    same normalized title.
    """

    def __init__(
        self,
        decision_rules: Sequence[DecisionRule] = DECISION_RULES,
        responsibility_rules: Sequence[ResponsibilityRule] = RESPONSIBILITY_RULES,
    ):
        self.decision_rules = tuple(decision_rules)
        self.responsibility_rules = tuple(responsibility_rules)

    def match_decision(self, text: str) -> DecisionRule | None:
        """Return the first decision rule matching ``text``."""
        text = _match_text(text)
        for rule in self.decision_rules:
            if rule.matches(text):
                return rule
        return None

    def match_responsibility(self, text: str) -> ResponsibilityRule | None:
        """Return the first responsibility rule matching ``text``."""
        text = _match_text(text)
        for rule in self.responsibility_rules:
            if rule.matches(text):
                return rule
        return None

    def classify(self, messages: Sequence[SourceMessage]) -> CandidateSet:
        """Produce decision and responsibility candidates from messages.

        Messages are processed in chronological order. Two messages that
        yield the same normalized title collapse into one candidate whose
        evidence lists both fingerprints, earliest first.
        """
        decisions: dict[str, DecisionCandidate] = {}
        responsibilities: dict[str, ResponsibilityCandidate] = {}

        for message in sorted(messages, key=lambda m: m.sent_at):
            headline = _headline(message.body)
            if not headline:
                continue

            title = truncate(headline, TITLE_MAX_LENGTH)
            key = normalize_text(title)

            decision_rule = self.match_decision(message.body)
            if decision_rule is not None:
                candidate_id = decision_candidate_id(key)
                existing = decisions.get(candidate_id)
                if existing is not None:
                    existing.add_evidence([message.fingerprint])
                else:
                    decisions[candidate_id] = DecisionCandidate(
                        id=candidate_id,
                        title=title,
                        status=decision_rule.status,
                        confidence=decision_rule.confidence,
                        explanation=truncate(
                            f'Decision based on: "{headline}"', EXPLANATION_MAX_LENGTH
                        ),
                        decided_at=message.sent_at,
                        evidence=[message.fingerprint],
                    )

            responsibility_rule = self.match_responsibility(message.body)
            if responsibility_rule is not None:
                candidate_id = responsibility_candidate_id(key)
                existing_resp = responsibilities.get(candidate_id)
                if existing_resp is not None:
                    existing_resp.add_evidence([message.fingerprint])
                else:
                    owner = (
                        message.sender
                        if responsibility_rule.owner == OwnerPolicy.SENDER
                        else UNASSIGNED
                    )
                    responsibilities[candidate_id] = ResponsibilityCandidate(
                        id=candidate_id,
                        title=title,
                        owner=owner,
                        evidence=[message.fingerprint],
                    )

        result = CandidateSet(
            decisions=list(decisions.values()),
            responsibilities=list(responsibilities.values()),
        )
        logger.info(
            f"Classified {len(messages)} messages: {len(result.decisions)} decisions, "
            f"{len(result.responsibilities)} responsibilities"
        )
        return result


# Global classifier instance
_classifier: TriggerClassifier | None = None


def get_classifier() -> TriggerClassifier:
    """Get or create the global classifier."""
    global _classifier
    if _classifier is None:
        _classifier = TriggerClassifier()
    return _classifier


def reset_classifier() -> None:
    """Reset the global classifier (useful for testing)."""
    global _classifier
    _classifier = None
