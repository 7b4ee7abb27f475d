"""Tests for evidence fingerprint resolution."""

from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from tally.processing.evidence import EvidenceLinker, chunked


class TestChunked:
    """Tests for the chunking helper."""

    def test_even_split(self):
        assert chunked([1, 2, 3, 4], 2) == [[1, 2], [3, 4]]

    def test_remainder(self):
        assert chunked([1, 2, 3], 2) == [[1, 2], [3]]

    def test_empty(self):
        assert chunked([], 3) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunked([1], 0)


class TestEvidenceLinker:
    """Tests for the evidence linker."""

    async def test_resolve_in_chunks(self):
        """Test that lookups are split and results combined."""
        ids = {f"fp{i}": uuid4() for i in range(5)}

        async def find(chat_id, fingerprints):
            return {fp: ids[fp] for fp in fingerprints if fp in ids}

        repo = AsyncMock()
        repo.find_message_ids.side_effect = find
        linker = EvidenceLinker(repo, chunk_size=2)

        resolved = await linker.resolve(uuid4(), [*ids, "unknown"])

        assert resolved == ids
        assert repo.find_message_ids.await_count == 3

    async def test_duplicates_looked_up_once(self):
        """Test that repeated fingerprints are queried once."""
        repo = AsyncMock()
        repo.find_message_ids.return_value = {}
        await EvidenceLinker(repo).resolve(uuid4(), ["a", "a", "b"])

        _, fingerprints = repo.find_message_ids.await_args.args
        assert fingerprints == ["a", "b"]

    async def test_nothing_to_resolve(self):
        """Test that an empty request makes no query."""
        repo = AsyncMock()
        assert await EvidenceLinker(repo).resolve(uuid4(), []) == {}
        repo.find_message_ids.assert_not_called()

    def test_evidence_ids_order_and_drop(self):
        """Test that unresolved fingerprints are dropped and order kept."""
        first, second = uuid4(), uuid4()
        resolved = {"b": second, "a": first}

        ids = EvidenceLinker.evidence_ids(["b", "missing", "a", "b"], resolved)

        assert ids == [second, first]

    def test_evidence_ids_all_missing(self):
        """Test a candidate whose evidence resolves to nothing."""
        assert EvidenceLinker.evidence_ids(["x", "y"], {}) == []
