"""Candidate inference through an external language model.

Messages are sent in batches with short batch-local ids; the reply is
validated item by item and translated back to message fingerprints before
anything downstream sees it. Provider failures fall through a chain of
providers and finally to "no inferred candidates", never to an exception.
"""

import asyncio
import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from tally.capture.parsers import canonical_timestamp
from tally.config import Settings, get_settings
from tally.processing.candidates import (
    THREAD_KEY_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    CandidateSet,
    DecisionCandidate,
    ResponsibilityCandidate,
    decision_candidate_id,
    responsibility_candidate_id,
)
from tally.processing.classifier import SourceMessage
from tally.processing.llm import LLMProviderBase, RateLimitError, build_provider_chain
from tally.storage.models import UNASSIGNED, DecisionStatus

logger = logging.getLogger(__name__)

INFERRED_EXPLANATION_MAX_LENGTH = 300
ID_CONTEXT_KEY = "id_to_fingerprint"

_DUE_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

SYSTEM_PROMPT = """\
You extract decisions and action items (responsibilities) from group chat messages.

The input is a JSON array of messages. Each message has:
- id: a short message id such as "m000"
- sender: who sent it
- text: the message content
- ts: ISO 8601 timestamp

Return ONLY a JSON object with this structure, without Markdown or commentary:

{
  "decisions": [
    {
      "thread_key": "database_choice",
      "title": "Team agreed to use Supabase for the database",
      "status": "Final",
      "confidence": 85,
      "explanation": "After comparing Firebase and Supabase the team chose Supabase.",
      "decided_at": "2024-02-18T14:30:00.000Z",
      "evidence_hashes": ["m000", "m003"]
    }
  ],
  "responsibilities": [
    {
      "title": "Send the quarterly report",
      "owner": "Sender Name",
      "due": "2024-02-23",
      "description": "One or two sentences describing the task.",
      "evidence_hash": "m001"
    }
  ]
}

Cite messages ONLY by the id values given in the input.

Decisions:
- The title must state WHAT was decided as a standalone phrase (max 80 characters).
- Do not extract bare reactions or acknowledgements ("ok", "agreed", "👍") as decisions.
  A message that only confirms an earlier decision is extra evidence for that decision.
- Messages about the same topic share one thread_key: lowercase letters, digits and
  underscores, at most 64 characters.
- status is "Final" for definitive language and "Tentative" for proposals or direction.
- confidence is 0-100: 90+ explicit declaration, 70-89 strong, 50-69 moderate, below 50 weak.
- decided_at is the ts of the message that states the outcome.
- explanation: 1-3 sentences of context, max 300 characters.

Responsibilities:
- Only concrete action items for a person or with a deadline.
- owner is the exact sender name of someone committing themselves, the name of the
  person asked, or "unassigned".
- due is a YYYY-MM-DD date resolved relative to the message ts, or "".
- evidence_hash is the single most relevant message id.

If there is nothing to extract, return {"decisions": [], "responsibilities": []}."""

USER_PROMPT = "Messages:\n{messages}"


def _translate_id(value: str, info: ValidationInfo) -> str | None:
    mapping = (info.context or {}).get(ID_CONTEXT_KEY, {})
    return mapping.get(value.strip())


class InferredDecision(BaseModel):
    """A decision item as returned by a provider, sanitized field by field."""

    model_config = ConfigDict(extra="ignore")

    thread_key: str
    title: str
    status: DecisionStatus
    confidence: int
    explanation: str = ""
    decided_at: datetime
    evidence: list[str] = Field(validation_alias=AliasChoices("evidence_hashes", "evidence"))

    @field_validator("thread_key", mode="before")
    @classmethod
    def _slug_thread_key(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("thread_key must be a string")
        slug = re.sub(r"[^a-z0-9_]", "_", value.strip().lower()).strip("_")
        slug = slug[:THREAD_KEY_MAX_LENGTH]
        if not slug:
            raise ValueError("thread_key is empty")
        return slug

    @field_validator("title", mode="before")
    @classmethod
    def _cut_title(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("title must be a non-empty string")
        return value.strip()[:TITLE_MAX_LENGTH]

    @field_validator("status", mode="before")
    @classmethod
    def _closed_status(cls, value: Any) -> DecisionStatus:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "final":
                return DecisionStatus.FINAL
            if lowered == "tentative":
                return DecisionStatus.TENTATIVE
        raise ValueError("status must be Final or Tentative")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ValueError("confidence must be a number")
        if value != value:  # NaN
            raise ValueError("confidence must be a number")
        return max(0, min(100, round(value)))

    @field_validator("explanation", mode="before")
    @classmethod
    def _cut_explanation(cls, value: Any) -> str:
        if not isinstance(value, str):
            return ""
        return value.strip()[:INFERRED_EXPLANATION_MAX_LENGTH]

    @field_validator("decided_at", mode="before")
    @classmethod
    def _parse_decided_at(cls, value: Any) -> datetime:
        if not isinstance(value, str):
            raise ValueError("decided_at must be a string")
        parsed = datetime.fromisoformat(value.strip())
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @field_validator("evidence", mode="before")
    @classmethod
    def _translate_evidence(cls, value: Any, info: ValidationInfo) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("evidence_hashes must be a list")
        fingerprints: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            fingerprint = _translate_id(item, info)
            if fingerprint and fingerprint not in fingerprints:
                fingerprints.append(fingerprint)
        if not fingerprints:
            raise ValueError("no evidence refers to a message of the batch")
        return fingerprints

    def to_candidate(self) -> DecisionCandidate:
        return DecisionCandidate(
            id=decision_candidate_id(self.thread_key),
            title=self.title,
            status=self.status,
            confidence=self.confidence,
            explanation=self.explanation,
            decided_at=self.decided_at,
            grouping_key=self.thread_key,
            evidence=list(self.evidence),
        )


class InferredResponsibility(BaseModel):
    """A responsibility item as returned by a provider."""

    model_config = ConfigDict(extra="ignore")

    title: str
    owner: str = UNASSIGNED
    due_date: date | None = Field(
        default=None, validation_alias=AliasChoices("due", "due_date")
    )
    description: str = ""
    evidence: str = Field(validation_alias=AliasChoices("evidence_hash", "evidence"))

    @field_validator("title", mode="before")
    @classmethod
    def _cut_title(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("title must be a non-empty string")
        return value.strip()[:TITLE_MAX_LENGTH]

    @field_validator("owner", mode="before")
    @classmethod
    def _default_owner(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return UNASSIGNED
        return value.strip()

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_due(cls, value: Any) -> date | None:
        # Anything that is not a real YYYY-MM-DD date means "no due date"
        if not isinstance(value, str) or not _DUE_DATE_PATTERN.match(value.strip()):
            return None
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return None

    @field_validator("description", mode="before")
    @classmethod
    def _text_description(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("evidence", mode="before")
    @classmethod
    def _translate_evidence(cls, value: Any, info: ValidationInfo) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("evidence_hash must be a non-empty string")
        fingerprint = _translate_id(value, info)
        if fingerprint is None:
            raise ValueError(f"evidence {value!r} does not refer to a message of the batch")
        return fingerprint

    def to_candidate(self) -> ResponsibilityCandidate:
        return ResponsibilityCandidate(
            id=responsibility_candidate_id(self.evidence),
            title=self.title,
            owner=self.owner,
            description=self.description,
            due_date=self.due_date,
            evidence=[self.evidence],
        )


@dataclass
class PromptBatch:
    """A prompt plus the map from batch-local ids to fingerprints."""

    prompt: str
    id_to_fingerprint: dict[str, str]


@dataclass
class ValidatedBatch:
    """Candidates kept from one provider reply and how many items were dropped."""

    candidates: CandidateSet
    dropped: int = 0


@dataclass
class InferenceContext:
    """Per-request state of the provider fallback chain."""

    failed: set[str] = field(default_factory=set)
    provider: str | None = None  # first provider that succeeded

    def exhausted(self, providers: Sequence[LLMProviderBase]) -> bool:
        return all(p.name in self.failed for p in providers)


@dataclass
class InferenceOutcome:
    """Accumulated result of inference over all chunks of a request."""

    candidates: CandidateSet = field(default_factory=CandidateSet)
    provider: str | None = None
    chunks_total: int = 0
    chunks_succeeded: int = 0
    items_dropped: int = 0


def build_prompt(messages: Sequence[SourceMessage]) -> PromptBatch:
    """Serialize messages with ids m000, m001, ... for one request."""
    id_to_fingerprint: dict[str, str] = {}
    payload = []
    for index, message in enumerate(messages):
        batch_id = f"m{index:03d}"
        id_to_fingerprint[batch_id] = message.fingerprint
        payload.append(
            {
                "id": batch_id,
                "sender": message.sender,
                "text": message.body,
                "ts": canonical_timestamp(message.sent_at),
            }
        )
    return PromptBatch(
        prompt=USER_PROMPT.format(messages=json.dumps(payload, ensure_ascii=False)),
        id_to_fingerprint=id_to_fingerprint,
    )


def validate_response(raw: dict[str, Any], id_to_fingerprint: dict[str, str]) -> ValidatedBatch:
    """Validate a provider reply item by item.

    Malformed items are dropped individually; well-formed items are kept.
    """
    context = {ID_CONTEXT_KEY: id_to_fingerprint}
    batch = ValidatedBatch(candidates=CandidateSet())

    raw_decisions = raw.get("decisions")
    for item in raw_decisions if isinstance(raw_decisions, list) else []:
        try:
            decision = InferredDecision.model_validate(item, context=context)
        except ValidationError as e:
            logger.debug(f"Dropping inferred decision: {e.error_count()} invalid fields")
            batch.dropped += 1
            continue
        batch.candidates.decisions.append(decision.to_candidate())

    raw_responsibilities = raw.get("responsibilities")
    for item in raw_responsibilities if isinstance(raw_responsibilities, list) else []:
        try:
            responsibility = InferredResponsibility.model_validate(item, context=context)
        except ValidationError as e:
            logger.debug(f"Dropping inferred responsibility: {e.error_count()} invalid fields")
            batch.dropped += 1
            continue
        batch.candidates.responsibilities.append(responsibility.to_candidate())

    return batch


class InferenceService:
    """Run candidate inference over a provider fallback chain."""

    def __init__(
        self,
        providers: Sequence[LLMProviderBase] | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the service.

        Args:
            providers: Providers to try in order. Built from settings if omitted.
            settings: Timeouts, retry and chunking settings.
        """
        self.settings = settings or get_settings()
        self._providers = list(providers) if providers is not None else None

    @property
    def providers(self) -> list[LLMProviderBase]:
        if self._providers is None:
            self._providers = build_provider_chain(self.settings.llm_providers)
        return self._providers

    def chunk_messages(self, messages: Sequence[SourceMessage]) -> list[list[SourceMessage]]:
        """Split messages into chronological request chunks."""
        ordered = sorted(messages, key=lambda m: m.sent_at)
        if len(ordered) <= self.settings.single_call_threshold:
            return [ordered] if ordered else []
        size = self.settings.llm_chunk_size
        return [ordered[i : i + size] for i in range(0, len(ordered), size)]

    async def infer(
        self,
        messages: Sequence[SourceMessage],
        context: InferenceContext | None = None,
    ) -> InferenceOutcome:
        """Infer candidates for messages, chunk by chunk.

        Chunks run sequentially with a fixed delay between them. Once every
        provider has failed the remaining chunks are skipped.
        """
        context = context or InferenceContext()
        outcome = InferenceOutcome()
        chunks = self.chunk_messages(messages)
        outcome.chunks_total = len(chunks)

        if not self.providers:
            logger.info("No inference providers configured")
            return outcome

        for index, chunk in enumerate(chunks):
            if context.exhausted(self.providers):
                logger.warning(
                    f"All providers failed; skipping {len(chunks) - index} remaining chunk(s)"
                )
                break
            if index > 0 and self.settings.inter_chunk_delay > 0:
                await asyncio.sleep(self.settings.inter_chunk_delay)

            batch = build_prompt(chunk)
            validated = await self._call_with_fallback(batch, context)
            if validated is None:
                continue

            outcome.chunks_succeeded += 1
            outcome.items_dropped += validated.dropped
            outcome.candidates.decisions.extend(validated.candidates.decisions)
            outcome.candidates.responsibilities.extend(validated.candidates.responsibilities)
            logger.info(
                f"Chunk {index + 1}/{len(chunks)}: {len(validated.candidates.decisions)} "
                f"decisions, {len(validated.candidates.responsibilities)} responsibilities "
                f"via {context.provider}"
            )

        outcome.provider = context.provider
        return outcome

    async def _call_with_fallback(
        self, batch: PromptBatch, context: InferenceContext
    ) -> ValidatedBatch | None:
        """Try each provider not yet failed in this request, in order."""
        for provider in self.providers:
            if provider.name in context.failed:
                continue
            try:
                raw = await self._with_retry(provider, batch.prompt)
            except (ConnectionError, ValueError, TimeoutError) as e:
                logger.warning(f"Provider {provider.name} failed: {e}")
                context.failed.add(provider.name)
                continue
            except Exception as e:
                logger.error(f"Provider {provider.name} raised {type(e).__name__}: {e}")
                context.failed.add(provider.name)
                continue

            if context.provider is None:
                context.provider = provider.name
            return validate_response(raw, batch.id_to_fingerprint)

        return None

    async def _with_retry(self, provider: LLMProviderBase, prompt: str) -> dict[str, Any]:
        """Call a provider with a timeout, retrying only when rate limited."""
        attempts = max(1, self.settings.llm_max_attempts)
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(
                    provider.generate_json(
                        prompt, system_prompt=SYSTEM_PROMPT, temperature=0.1
                    ),
                    timeout=self.settings.llm_timeout,
                )
            except RateLimitError as e:
                if attempt + 1 >= attempts:
                    raise
                if e.retry_after is not None:
                    wait = e.retry_after + 0.5
                else:
                    wait = self.settings.llm_backoff_base * 2**attempt
                logger.warning(
                    f"{provider.name} rate limited (attempt {attempt + 1}/{attempts}), "
                    f"waiting {wait:.1f}s"
                )
                await asyncio.sleep(wait)
        raise RuntimeError("unreachable")


# Global service instance
_inference_service: InferenceService | None = None


def get_inference_service() -> InferenceService:
    """Get or create the global inference service."""
    global _inference_service
    if _inference_service is None:
        _inference_service = InferenceService()
    return _inference_service


def reset_inference_service() -> None:
    """Reset the global inference service (useful for testing)."""
    global _inference_service
    _inference_service = None
