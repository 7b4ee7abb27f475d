"""Thread, version and responsibility resolution against stored state.

The resolver decides for each candidate whether it opens a new thread,
appends the next version to an existing one, or restates what is already
stored. Every write is insert-if-absent, so running it again over the same
candidates converges to the same stored state.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from uuid import UUID

from tally.processing.candidates import (
    DecisionCandidate,
    ResponsibilityCandidate,
    normalize_text,
)
from tally.storage.models import (
    DecisionStatus,
    DecisionThread,
    DecisionVersion,
    Responsibility,
    ResponsibilityStatus,
)
from tally.storage.repositories import DecisionRepository, ResponsibilityRepository

logger = logging.getLogger(__name__)

_EARLIEST = datetime.min.replace(tzinfo=UTC)


class ResolutionAction(str, Enum):
    """What happened to a candidate."""

    CREATED = "created"  # new thread with version 1, or new responsibility
    VERSIONED = "versioned"  # next version appended to an existing thread
    UPDATED = "updated"  # responsibility changed in place
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"  # someone else already wrote the same row
    DROPPED = "dropped"  # no resolvable evidence


@dataclass
class Resolution:
    """Outcome of resolving one candidate."""

    action: ResolutionAction
    key: str
    record_id: UUID | None = None
    version_no: int | None = None
    evidence_added: int = 0

    @property
    def is_new(self) -> bool:
        return self.action in (ResolutionAction.CREATED, ResolutionAction.VERSIONED)


def _same_content(version: DecisionVersion, candidate: DecisionCandidate) -> bool:
    # Status is left out: superseded versions no longer carry their own
    return (
        normalize_text(version.title) == normalize_text(candidate.title)
        and normalize_text(version.outcome) == normalize_text(candidate.explanation)
    )


def _same_state(
    latest: DecisionVersion, candidate: DecisionCandidate, status: DecisionStatus
) -> bool:
    return latest.status == status and _same_content(latest, candidate)


def _is_stale(latest: DecisionVersion, candidate: DecisionCandidate) -> bool:
    """True if the candidate was decided before the current latest version."""
    if latest.decided_at is None or candidate.decided_at is None:
        return False
    return candidate.decided_at < latest.decided_at


def _rank(candidate: DecisionCandidate) -> tuple[int, datetime]:
    return candidate.confidence, candidate.decided_at or _EARLIEST


class ThreadResolver:
    """Persist decision candidates as threads and versions."""

    def __init__(self, decisions: DecisionRepository):
        self.decisions = decisions

    async def resolve_all(
        self,
        chat_id: UUID,
        items: Sequence[tuple[DecisionCandidate, list[UUID]]],
    ) -> list[Resolution]:
        """Resolve a pass of candidates, each paired with its evidence message IDs.

        Candidates of the same thread are ranked by confidence, then by
        decision time. If the two best cannot be told apart and state
        different outcomes, one conflicted version is written for review.
        """
        resolutions: list[Resolution] = []
        groups: dict[str, list[tuple[DecisionCandidate, list[UUID]]]] = {}

        for candidate, evidence in items:
            if not evidence:
                logger.debug(f"Dropping decision {candidate.title!r}: no resolvable evidence")
                resolutions.append(Resolution(ResolutionAction.DROPPED, candidate.thread_key))
                continue
            groups.setdefault(candidate.thread_key or candidate.id, []).append(
                (candidate, evidence)
            )

        for thread_key, group in groups.items():
            ranked = sorted(group, key=lambda pair: _rank(pair[0]), reverse=True)
            winner, winner_evidence = ranked[0]
            evidence = list(winner_evidence)
            for _, other in ranked[1:]:
                evidence.extend(mid for mid in other if mid not in evidence)

            conflicted = False
            if len(ranked) > 1:
                runner_up = ranked[1][0]
                conflicted = _rank(winner) == _rank(runner_up) and normalize_text(
                    winner.explanation or winner.title
                ) != normalize_text(runner_up.explanation or runner_up.title)
            if conflicted:
                logger.warning(
                    f"Conflicting decisions for thread {thread_key!r}; flagging for review"
                )

            resolutions.append(
                await self.resolve(
                    chat_id,
                    winner,
                    evidence,
                    thread_key=thread_key,
                    needs_review=conflicted,
                )
            )
        return resolutions

    async def resolve(
        self,
        chat_id: UUID,
        candidate: DecisionCandidate,
        evidence: list[UUID],
        *,
        thread_key: str | None = None,
        needs_review: bool = False,
    ) -> Resolution:
        """Resolve one candidate against its thread.

        Versions are numbered from the stored latest version, so a changed
        outcome always lands as the next version rather than colliding with
        version 1.
        """
        key = thread_key or candidate.thread_key or candidate.id
        if not evidence:
            return Resolution(ResolutionAction.DROPPED, key)

        thread = await self.decisions.get_thread(chat_id, key)
        if thread is None:
            created = await self.decisions.create_thread(
                DecisionThread(chat_id=chat_id, thread_key=key, title=candidate.title)
            )
            if not created:
                logger.debug(f"Thread {key!r} was created concurrently")
            thread = await self.decisions.get_thread(chat_id, key)
            if thread is None:
                raise RuntimeError(f"Thread {key!r} missing after insert")

        status = DecisionStatus.CONFLICTED if needs_review else candidate.status
        latest = await self.decisions.get_latest_version(thread.id)

        if latest is not None and _same_state(latest, candidate, status):
            added = await self.decisions.link_decision_evidence(latest.id, evidence)
            logger.debug(f"Thread {key!r} unchanged at version {latest.version_no}")
            return Resolution(
                ResolutionAction.UNCHANGED, key, latest.id, latest.version_no, added
            )

        if latest is not None:
            earlier = await self._earlier_sighting(thread.id, latest, candidate, evidence)
            if earlier is not None:
                return Resolution(ResolutionAction.UNCHANGED, key, earlier.id, earlier.version_no)

        version_no = latest.version_no + 1 if latest is not None else 1
        existing = await self.decisions.get_version(thread.id, version_no)
        if existing is not None:
            logger.debug(f"Thread {key!r} version {version_no} already exists")
            return Resolution(ResolutionAction.SKIPPED, key, existing.id, version_no)

        version = DecisionVersion(
            thread_id=thread.id,
            version_no=version_no,
            status=status,
            confidence=candidate.confidence,
            title=candidate.title,
            outcome=candidate.explanation,
            decided_at=candidate.decided_at,
            needs_review=needs_review,
        )
        if not await self.decisions.insert_version(version, evidence):
            existing = await self.decisions.get_version(thread.id, version_no)
            logger.debug(f"Thread {key!r} version {version_no} was written concurrently")
            return Resolution(
                ResolutionAction.SKIPPED,
                key,
                existing.id if existing else None,
                version_no,
            )

        action = ResolutionAction.CREATED if version_no == 1 else ResolutionAction.VERSIONED
        logger.debug(f"Thread {key!r}: wrote version {version_no} ({status.value})")
        return Resolution(action, key, version.id, version_no, len(evidence))

    async def _earlier_sighting(
        self,
        thread_id: UUID,
        latest: DecisionVersion,
        candidate: DecisionCandidate,
        evidence: list[UUID],
    ) -> DecisionVersion | None:
        """Find the stored version a stale or replayed candidate belongs to.

        A candidate decided before the latest version, or one restating an
        older version from messages already cited by it, must not become the
        latest again. A restatement backed by a new message still does.
        """
        if _is_stale(latest, candidate):
            logger.debug(
                f"Candidate {candidate.title!r} predates version {latest.version_no}; keeping it"
            )
            return latest

        for version in await self.decisions.list_versions(thread_id):
            if version.id == latest.id or not _same_content(version, candidate):
                continue
            if set(evidence) <= set(version.evidence):
                logger.debug(
                    f"Candidate {candidate.title!r} restates version {version.version_no}"
                )
                return version
        return None


class ResponsibilityResolver:
    """Persist responsibility candidates, deduplicated by owner and task."""

    def __init__(
        self,
        responsibilities: ResponsibilityRepository,
        today: Callable[[], date] | None = None,
    ):
        self.responsibilities = responsibilities
        self._today = today or (lambda: datetime.now(UTC).date())

    def _initial_status(self, due_date: date | None) -> ResponsibilityStatus:
        if due_date is not None and due_date < self._today():
            return ResponsibilityStatus.OVERDUE
        return ResponsibilityStatus.OPEN

    async def resolve(
        self,
        chat_id: UUID,
        candidate: ResponsibilityCandidate,
        evidence: list[UUID],
    ) -> Resolution:
        """Create the responsibility or update the stored one in place."""
        key = candidate.identity_key
        if not evidence:
            logger.debug(f"Dropping responsibility {candidate.title!r}: no resolvable evidence")
            return Resolution(ResolutionAction.DROPPED, key)

        existing = await self.responsibilities.find_responsibility(chat_id, key)
        if existing is None:
            # Enrichment may reword a task found by the rules; same owner and message
            existing = await self.responsibilities.find_responsibility_by_source(
                chat_id, candidate.owner, evidence[0]
            )
        if existing is None:
            record = Responsibility(
                chat_id=chat_id,
                owner=candidate.owner,
                task_text=candidate.title,
                identity_key=key,
                description=candidate.description,
                status=self._initial_status(candidate.due_date),
                due_date=candidate.due_date,
                source_message_id=evidence[0],
            )
            if await self.responsibilities.insert_responsibility(record, evidence):
                return Resolution(ResolutionAction.CREATED, key, record.id, None, len(evidence))

            existing = await self.responsibilities.find_responsibility(chat_id, key)
            if existing is None:
                raise RuntimeError(f"Responsibility {key!r} missing after insert")
            logger.debug(f"Responsibility {key!r} was created concurrently")

        changed = self._refresh(existing, candidate)
        if changed:
            await self.responsibilities.update_responsibility(existing)
        added = await self.responsibilities.link_responsibility_evidence(existing.id, evidence)
        action = ResolutionAction.UPDATED if changed else ResolutionAction.UNCHANGED
        return Resolution(action, key, existing.id, None, added)

    def _refresh(self, record: Responsibility, candidate: ResponsibilityCandidate) -> bool:
        """Apply what a re-sighting can change; completed items stay completed."""
        if record.status == ResponsibilityStatus.COMPLETED:
            return False

        changed = False
        if record.due_date is None and candidate.due_date is not None:
            record.due_date = candidate.due_date
            changed = True
        if not record.description and candidate.description:
            record.description = candidate.description
            changed = True

        status = (
            ResponsibilityStatus.OVERDUE
            if record.due_date is not None and record.due_date < self._today()
            else record.status
        )
        if status != record.status:
            record.status = status
            changed = True
        return changed

