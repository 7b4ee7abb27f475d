"""Ingestion and enrichment of chat transcripts.

Ingestion parses a transcript, stores new messages and runs deterministic
classification over the import. Enrichment re-runs classification over a
whole chat, folds in inferred candidates and persists the merged set.
Both return counts rather than failing on individual candidates.
"""

import hashlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

from tally.capture.parsers import parse_chat
from tally.processing.candidates import CandidateSet
from tally.processing.classifier import TriggerClassifier, get_classifier
from tally.processing.evidence import EvidenceLinker
from tally.processing.inference import (
    InferenceContext,
    InferenceService,
    get_inference_service,
)
from tally.processing.merge import merge_candidates
from tally.processing.resolver import (
    Resolution,
    ResolutionAction,
    ResponsibilityResolver,
    ThreadResolver,
)
from tally.storage.models import Message
from tally.storage.repositories import Store

logger = logging.getLogger(__name__)

# Reported when no inference provider supplied results
DETERMINISTIC_ONLY = "deterministic-only"

MESSAGE_PAGE_SIZE = 500


@dataclass
class PersistStats:
    """Counts from persisting one candidate set."""

    decisions_detected: int = 0
    decisions_new: int = 0
    responsibilities_detected: int = 0
    responsibilities_new: int = 0
    candidates_dropped: int = 0


@dataclass
class IngestResult:
    """Result of ingesting one transcript."""

    chat_id: UUID
    import_id: UUID
    messages_parsed: int
    new_messages: int
    duplicate_messages: int
    decisions_detected: int = 0
    decisions_new: int = 0
    responsibilities_detected: int = 0
    responsibilities_new: int = 0
    candidates_dropped: int = 0


@dataclass
class EnrichmentResult:
    """Result of enriching a chat with inferred candidates."""

    chat_id: UUID
    messages_analyzed: int
    decisions_detected: int = 0
    decisions_new: int = 0
    responsibilities_detected: int = 0
    responsibilities_new: int = 0
    candidates_dropped: int = 0
    inferred_items_dropped: int = 0
    provider: str | None = None

    @property
    def deterministic_only(self) -> bool:
        return self.provider is None

    @property
    def source(self) -> str:
        """Provider that supplied results, or the deterministic-only marker."""
        return self.provider or DETERMINISTIC_ONLY


def _count(resolutions: Sequence[Resolution], action: ResolutionAction) -> int:
    return sum(1 for r in resolutions if r.action == action)


class Pipeline:
    """Ingestion and enrichment boundaries over a store."""

    def __init__(
        self,
        store: Store,
        classifier: TriggerClassifier | None = None,
        inference: InferenceService | None = None,
    ):
        """Initialize the pipeline.

        Args:
            store: Repository implementation (usually the SQLite Database).
            classifier: Trigger classifier. Uses the global one if omitted.
            inference: Inference service used by enrichment. Created lazily.
        """
        self.store = store
        self.classifier = classifier or get_classifier()
        self._inference = inference
        self.linker = EvidenceLinker(store)
        self.threads = ThreadResolver(store)
        self.responsibilities = ResponsibilityResolver(store)

    @property
    def inference(self) -> InferenceService:
        if self._inference is None:
            self._inference = get_inference_service()
        return self._inference

    async def ingest_file(self, file_path: Path | str, *, chat_name: str) -> IngestResult:
        """Read a transcript file and ingest it."""
        path = Path(file_path)
        content = path.read_text(encoding="utf-8")
        return await self.ingest_transcript(content, chat_name=chat_name, file_name=path.name)

    async def ingest_transcript(
        self,
        content: str,
        *,
        chat_name: str,
        file_name: str = "chat.txt",
    ) -> IngestResult:
        """Ingest raw transcript text into a chat.

        Safe to repeat: known messages are recognised by fingerprint and
        already persisted records are left as they are.
        """
        file_sha256 = hashlib.sha256(content.encode("utf-8")).hexdigest()
        chat = await self.store.get_or_create_chat(chat_name)
        chat_import = await self.store.get_or_create_import(chat.id, file_name, file_sha256)

        parsed = parse_chat(content)
        new_messages = await self.store.insert_messages(chat.id, parsed)

        stored = await self.linker.resolve(chat.id, [m.fingerprint for m in parsed])
        await self.store.link_import_messages(chat_import.id, list(stored.values()))

        duplicates = len(parsed) - new_messages
        await self.store.update_import_stats(
            chat_import.id,
            messages_parsed=len(parsed),
            new_messages=new_messages,
            duplicates_skipped=duplicates,
        )
        logger.info(
            f"Parsed {len(parsed)} messages from {file_name}: "
            f"{new_messages} new, {duplicates} duplicates"
        )

        messages = await self.store.list_import_messages(chat_import.id)
        if not messages:
            messages = await self._all_chat_messages(chat.id)

        candidates = self.classifier.classify(messages)
        stats = await self._persist(chat.id, candidates)

        return IngestResult(
            chat_id=chat.id,
            import_id=chat_import.id,
            messages_parsed=len(parsed),
            new_messages=new_messages,
            duplicate_messages=duplicates,
            decisions_detected=stats.decisions_detected,
            decisions_new=stats.decisions_new,
            responsibilities_detected=stats.responsibilities_detected,
            responsibilities_new=stats.responsibilities_new,
            candidates_dropped=stats.candidates_dropped,
        )

    async def enrich_chat(
        self, chat_id: UUID, context: InferenceContext | None = None
    ) -> EnrichmentResult:
        """Merge inferred candidates for a whole chat into the deterministic set.

        Inference failures are not errors: without results the
        deterministic candidates are persisted alone.

        Raises:
            ValueError: If the chat does not exist.
        """
        chat = await self.store.get_chat(chat_id)
        if chat is None:
            raise ValueError(f"Unknown chat: {chat_id}")

        messages = await self._all_chat_messages(chat.id)
        deterministic = self.classifier.classify(messages)

        outcome = await self.inference.infer(messages, context or InferenceContext())
        if outcome.provider is None:
            logger.warning(f"No inference results for chat {chat.name!r}; deterministic only")

        merged = merge_candidates(deterministic, outcome.candidates)
        stats = await self._persist(chat.id, merged)

        result = EnrichmentResult(
            chat_id=chat.id,
            messages_analyzed=len(messages),
            decisions_detected=stats.decisions_detected,
            decisions_new=stats.decisions_new,
            responsibilities_detected=stats.responsibilities_detected,
            responsibilities_new=stats.responsibilities_new,
            candidates_dropped=stats.candidates_dropped,
            inferred_items_dropped=outcome.items_dropped,
            provider=outcome.provider,
        )
        logger.info(
            f"Enriched chat {chat.name!r} via {result.source}: "
            f"{result.decisions_new} new decision versions, "
            f"{result.responsibilities_new} new responsibilities"
        )
        return result

    async def _all_chat_messages(self, chat_id: UUID) -> list[Message]:
        messages: list[Message] = []
        offset = 0
        while True:
            page = await self.store.list_chat_messages(
                chat_id, limit=MESSAGE_PAGE_SIZE, offset=offset
            )
            messages.extend(page)
            if len(page) < MESSAGE_PAGE_SIZE:
                return messages
            offset += MESSAGE_PAGE_SIZE

    async def _persist(self, chat_id: UUID, candidates: CandidateSet) -> PersistStats:
        """Resolve evidence, then persist decisions and responsibilities."""
        fingerprints = [fp for c in candidates.decisions for fp in c.evidence]
        fingerprints += [fp for c in candidates.responsibilities for fp in c.evidence]
        resolved = await self.linker.resolve(chat_id, fingerprints)

        decision_resolutions = await self.threads.resolve_all(
            chat_id,
            [
                (candidate, self.linker.evidence_ids(candidate.evidence, resolved))
                for candidate in candidates.decisions
            ],
        )

        responsibility_resolutions = []
        for candidate in candidates.responsibilities:
            responsibility_resolutions.append(
                await self.responsibilities.resolve(
                    chat_id,
                    candidate,
                    self.linker.evidence_ids(candidate.evidence, resolved),
                )
            )

        stats = PersistStats(
            decisions_detected=len(candidates.decisions),
            decisions_new=sum(1 for r in decision_resolutions if r.is_new),
            responsibilities_detected=len(candidates.responsibilities),
            responsibilities_new=_count(responsibility_resolutions, ResolutionAction.CREATED),
            candidates_dropped=_count(decision_resolutions, ResolutionAction.DROPPED)
            + _count(responsibility_resolutions, ResolutionAction.DROPPED),
        )
        logger.info(
            f"Persisted {stats.decisions_new} decision versions and "
            f"{stats.responsibilities_new} responsibilities "
            f"({stats.candidates_dropped} dropped without evidence)"
        )
        return stats
