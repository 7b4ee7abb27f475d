"""Resolution of evidence fingerprints to stored messages."""

import asyncio
import logging
from collections.abc import Sequence
from typing import TypeVar
from uuid import UUID

from tally.storage.repositories import MessageRepository

logger = logging.getLogger(__name__)

# Fingerprints per lookup query
CHUNK_SIZE = 500

T = TypeVar("T")


def chunked(items: Sequence[T], size: int = CHUNK_SIZE) -> list[list[T]]:
    """Split a sequence into lists of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class EvidenceLinker:
    """Map candidate fingerprints to message IDs within a chat."""

    def __init__(self, messages: MessageRepository, chunk_size: int = CHUNK_SIZE):
        self.messages = messages
        self.chunk_size = chunk_size

    async def resolve(self, chat_id: UUID, fingerprints: Sequence[str]) -> dict[str, UUID]:
        """Look up fingerprints in chunks; unknown fingerprints are omitted.

        Chunks are independent, so they are queried concurrently.
        """
        unique = list(dict.fromkeys(fingerprints))
        if not unique:
            return {}

        results = await asyncio.gather(
            *(
                self.messages.find_message_ids(chat_id, chunk)
                for chunk in chunked(unique, self.chunk_size)
            )
        )
        resolved: dict[str, UUID] = {}
        for partial in results:
            resolved.update(partial)

        missing = len(unique) - len(resolved)
        if missing:
            logger.debug(f"{missing} of {len(unique)} fingerprints not found in chat {chat_id}")
        return resolved

    @staticmethod
    def evidence_ids(fingerprints: Sequence[str], resolved: dict[str, UUID]) -> list[UUID]:
        """Message IDs for a candidate's evidence, in citation order."""
        ids: list[UUID] = []
        for fingerprint in fingerprints:
            message_id = resolved.get(fingerprint)
            if message_id is not None and message_id not in ids:
                ids.append(message_id)
        return ids
