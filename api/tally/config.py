"""Runtime settings loaded from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DB_PATH = Path("data/tally.db")
DEFAULT_PROVIDERS = ["openrouter", "groq"]


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


@dataclass
class Settings:
    """Configuration for storage, logging and the inference collaborator."""

    db_path: Path = DEFAULT_DB_PATH
    log_level: str = "INFO"

    # Inference provider chain, tried in order
    llm_providers: list[str] = field(default_factory=lambda: DEFAULT_PROVIDERS.copy())
    llm_timeout: float = 120.0
    llm_max_attempts: int = 2
    llm_backoff_base: float = 8.0

    # Chunking of large chats
    single_call_threshold: int = 700
    llm_chunk_size: int = 200
    inter_chunk_delay: float = 3.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Environment variables:
            TALLY_DB_PATH: SQLite database file (default: data/tally.db)
            TALLY_LOG_LEVEL: Logging level for the CLI (default: INFO)
            TALLY_LLM_PROVIDERS: Comma-separated provider chain
                (default: openrouter,groq)
            TALLY_LLM_TIMEOUT: Seconds allowed per provider call
            TALLY_LLM_MAX_ATTEMPTS: Attempts per provider when rate limited
            TALLY_SINGLE_CALL_THRESHOLD: Chats at or below this size use one call
            TALLY_LLM_CHUNK_SIZE: Messages per chunk above the threshold
            TALLY_INTER_CHUNK_DELAY: Seconds to wait between chunks
        """
        providers_env = os.environ.get("TALLY_LLM_PROVIDERS")
        if providers_env is None:
            providers = DEFAULT_PROVIDERS.copy()
        else:
            providers = [p.strip().lower() for p in providers_env.split(",") if p.strip()]

        return cls(
            db_path=Path(os.environ.get("TALLY_DB_PATH", str(DEFAULT_DB_PATH))),
            log_level=os.environ.get("TALLY_LOG_LEVEL", "INFO").upper(),
            llm_providers=providers,
            llm_timeout=_env_float("TALLY_LLM_TIMEOUT", 120.0),
            llm_max_attempts=max(1, _env_int("TALLY_LLM_MAX_ATTEMPTS", 2)),
            single_call_threshold=_env_int("TALLY_SINGLE_CALL_THRESHOLD", 700),
            llm_chunk_size=max(1, _env_int("TALLY_LLM_CHUNK_SIZE", 200)),
            inter_chunk_delay=_env_float("TALLY_INTER_CHUNK_DELAY", 3.0),
        )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Reset the global settings (useful for testing)."""
    global _settings
    _settings = None
