"""Merge inferred candidates into the deterministic baseline.

Matching is by shared evidence: an inferred candidate that cites a message a
deterministic candidate was built from enriches that candidate instead of
duplicating it. Deterministic candidates the inference missed are kept, and
inferred candidates with no overlap are appended. Two collapse passes then
remove duplicates by grouping key and by title similarity.

All functions here are pure: inputs are copied, never mutated.
"""

import logging
import re
from collections.abc import Sequence
from dataclasses import replace

from tally.processing.candidates import (
    CandidateSet,
    DecisionCandidate,
    ResponsibilityCandidate,
    decision_candidate_id,
    normalize_text,
    responsibility_candidate_id,
)
from tally.storage.models import UNASSIGNED

logger = logging.getLogger(__name__)

# Share of the smaller word set that must overlap for two titles to be one topic
SIMILARITY_THRESHOLD = 0.65

STOP_WORDS = frozenset(
    {
        "a", "about", "after", "agreed", "all", "also", "an", "and", "are", "as",
        "at", "be", "been", "before", "but", "by", "can", "chose", "decided",
        "decision", "do", "final", "for", "from", "go", "going", "has", "have",
        "i", "in", "into", "is", "it", "its", "let", "lets", "make", "of", "on",
        "or", "our", "plan", "s", "set", "should", "so", "that", "the", "their",
        "then", "this", "to", "use", "using", "was", "we", "were", "will", "with",
        "would", "you",
    }
)  # fmt: skip


def significant_words(title: str) -> frozenset[str]:
    """Lower-cased words of a title without stop words."""
    return frozenset(
        word for word in re.findall(r"[a-z0-9]+", title.lower()) if word not in STOP_WORDS
    )


def titles_similar(first: str, second: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """Whether two titles name the same topic.

    Titles without significant words never match anything.
    """
    a, b = significant_words(first), significant_words(second)
    if not a or not b:
        return False
    return len(a & b) / min(len(a), len(b)) >= threshold


def _copy_decision(candidate: DecisionCandidate) -> DecisionCandidate:
    return replace(candidate, evidence=list(candidate.evidence))


def _copy_responsibility(candidate: ResponsibilityCandidate) -> ResponsibilityCandidate:
    return replace(candidate, evidence=list(candidate.evidence))


def _absorb_decision(first: DecisionCandidate, second: DecisionCandidate) -> DecisionCandidate:
    """Collapse two decisions: the higher confidence wins, evidence unions."""
    winner, loser = (first, second) if first.confidence >= second.confidence else (second, first)
    winner.add_evidence(loser.evidence)
    return winner


def _collapse_by_grouping_key(candidates: list[DecisionCandidate]) -> list[DecisionCandidate]:
    slots: dict[str, int] = {}
    survivors: list[DecisionCandidate] = []
    for candidate in candidates:
        if not candidate.grouping_key:
            survivors.append(candidate)
            continue
        index = slots.get(candidate.grouping_key)
        if index is None:
            slots[candidate.grouping_key] = len(survivors)
            survivors.append(candidate)
        else:
            survivors[index] = _absorb_decision(survivors[index], candidate)
    return survivors


def _collapse_similar_titles(candidates: list[DecisionCandidate]) -> list[DecisionCandidate]:
    survivors: list[DecisionCandidate] = []
    for candidate in candidates:
        for index, survivor in enumerate(survivors):
            if titles_similar(survivor.title, candidate.title):
                survivors[index] = _absorb_decision(survivor, candidate)
                break
        else:
            survivors.append(candidate)
    return survivors


def merge_decisions(
    deterministic: Sequence[DecisionCandidate],
    external: Sequence[DecisionCandidate],
) -> list[DecisionCandidate]:
    """Merge inferred decision candidates into deterministic ones."""
    items: dict[str, DecisionCandidate] = {}
    for candidate in deterministic:
        if candidate.id in items:
            items[candidate.id].add_evidence(candidate.evidence)
        else:
            items[candidate.id] = _copy_decision(candidate)

    if not external:
        return list(items.values())

    # fingerprint -> id of the first candidate citing it
    owner_of: dict[str, str] = {}
    for item in items.values():
        for fingerprint in item.evidence:
            owner_of.setdefault(fingerprint, item.id)

    for inferred in external:
        matched_id = next((owner_of[fp] for fp in inferred.evidence if fp in owner_of), None)

        if matched_id is not None:
            target = items[matched_id]
            target.title = inferred.title
            target.status = inferred.status
            target.confidence = inferred.confidence
            target.explanation = inferred.explanation
            if inferred.decided_at is not None:
                target.decided_at = inferred.decided_at
            target.grouping_key = inferred.grouping_key
            target.add_evidence(inferred.evidence)
        else:
            new_id = decision_candidate_id(
                inferred.grouping_key or normalize_text(inferred.title)
            )
            if new_id in items:
                target = items[new_id]
                target.add_evidence(inferred.evidence)
            else:
                target = replace(inferred, id=new_id, evidence=list(inferred.evidence))
                items[new_id] = target

        for fingerprint in target.evidence:
            owner_of.setdefault(fingerprint, target.id)

    merged = _collapse_similar_titles(_collapse_by_grouping_key(list(items.values())))
    logger.debug(
        f"Merged {len(deterministic)} deterministic and {len(external)} inferred "
        f"decisions into {len(merged)}"
    )
    return merged


def merge_responsibilities(
    deterministic: Sequence[ResponsibilityCandidate],
    external: Sequence[ResponsibilityCandidate],
) -> list[ResponsibilityCandidate]:
    """Merge inferred responsibility candidates into deterministic ones."""
    items: dict[str, ResponsibilityCandidate] = {}
    for candidate in deterministic:
        if candidate.id in items:
            items[candidate.id].add_evidence(candidate.evidence)
        else:
            items[candidate.id] = _copy_responsibility(candidate)

    if not external:
        return list(items.values())

    owner_of: dict[str, str] = {}
    for item in items.values():
        for fingerprint in item.evidence:
            owner_of.setdefault(fingerprint, item.id)

    for inferred in external:
        if not inferred.evidence:
            continue
        matched_id = next((owner_of[fp] for fp in inferred.evidence if fp in owner_of), None)

        if matched_id is not None:
            target = items[matched_id]
            target.title = inferred.title
            # An unassigned inference does not erase an owner the rules found
            if inferred.owner != UNASSIGNED or target.owner == UNASSIGNED:
                target.owner = inferred.owner
            if inferred.due_date is not None:
                target.due_date = inferred.due_date
            target.description = inferred.description
            target.add_evidence(inferred.evidence)
        else:
            new_id = responsibility_candidate_id(inferred.evidence[0])
            if new_id in items:
                target = items[new_id]
                target.add_evidence(inferred.evidence)
            else:
                target = replace(inferred, id=new_id, evidence=list(inferred.evidence))
                items[new_id] = target

        for fingerprint in target.evidence:
            owner_of.setdefault(fingerprint, target.id)

    # Collapse by (owner, task); a candidate with a due date wins
    by_identity: dict[str, ResponsibilityCandidate] = {}
    for item in items.values():
        existing = by_identity.get(item.identity_key)
        if existing is None:
            by_identity[item.identity_key] = item
            continue
        if existing.due_date is None and item.due_date is not None:
            item.add_evidence(existing.evidence)
            by_identity[item.identity_key] = item
        else:
            existing.add_evidence(item.evidence)

    merged = list(by_identity.values())
    logger.debug(
        f"Merged {len(deterministic)} deterministic and {len(external)} inferred "
        f"responsibilities into {len(merged)}"
    )
    return merged


def merge_candidates(deterministic: CandidateSet, external: CandidateSet) -> CandidateSet:
    """Merge both candidate families."""
    return CandidateSet(
        decisions=merge_decisions(deterministic.decisions, external.decisions),
        responsibilities=merge_responsibilities(
            deterministic.responsibilities, external.responsibilities
        ),
    )
