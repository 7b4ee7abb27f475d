"""Processing pipeline - classification, inference, merging and resolution."""

from tally.processing.candidates import (
    CandidateSet,
    DecisionCandidate,
    ResponsibilityCandidate,
    slugify,
)
from tally.processing.classifier import (
    TriggerClassifier,
    get_classifier,
    reset_classifier,
)
from tally.processing.evidence import EvidenceLinker
from tally.processing.inference import (
    InferenceContext,
    InferenceOutcome,
    InferenceService,
    get_inference_service,
    reset_inference_service,
)
from tally.processing.llm import (
    LLMProvider,
    LLMProviderBase,
    OllamaLLMProvider,
    OpenAICompatibleProvider,
    RateLimitError,
    build_provider,
)
from tally.processing.merge import merge_candidates, merge_decisions, merge_responsibilities
from tally.processing.pipeline import (
    DETERMINISTIC_ONLY,
    EnrichmentResult,
    IngestResult,
    Pipeline,
)
from tally.processing.resolver import (
    Resolution,
    ResolutionAction,
    ResponsibilityResolver,
    ThreadResolver,
)

__all__ = [
    # Candidates
    "CandidateSet",
    "DecisionCandidate",
    "ResponsibilityCandidate",
    "slugify",
    # Classification
    "TriggerClassifier",
    "get_classifier",
    "reset_classifier",
    # Evidence
    "EvidenceLinker",
    # Inference
    "InferenceContext",
    "InferenceOutcome",
    "InferenceService",
    "get_inference_service",
    "reset_inference_service",
    # LLM
    "LLMProvider",
    "LLMProviderBase",
    "OllamaLLMProvider",
    "OpenAICompatibleProvider",
    "RateLimitError",
    "build_provider",
    # Merge
    "merge_candidates",
    "merge_decisions",
    "merge_responsibilities",
    # Pipeline
    "DETERMINISTIC_ONLY",
    "EnrichmentResult",
    "IngestResult",
    "Pipeline",
    # Resolution
    "Resolution",
    "ResolutionAction",
    "ResponsibilityResolver",
    "ThreadResolver",
]
