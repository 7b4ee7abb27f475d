"""Tests for merging inferred candidates into deterministic ones."""

from datetime import UTC, date, datetime

from tally.processing.candidates import (
    CandidateSet,
    DecisionCandidate,
    ResponsibilityCandidate,
    decision_candidate_id,
    responsibility_candidate_id,
)
from tally.processing.merge import (
    merge_candidates,
    merge_decisions,
    merge_responsibilities,
    significant_words,
    titles_similar,
)
from tally.storage.models import UNASSIGNED, DecisionStatus


def decision(
    id: str,
    title: str,
    evidence: list[str],
    *,
    status: DecisionStatus = DecisionStatus.TENTATIVE,
    confidence: int = 60,
    grouping_key: str | None = None,
) -> DecisionCandidate:
    return DecisionCandidate(
        id=id,
        title=title,
        status=status,
        confidence=confidence,
        explanation=f"About {title}",
        grouping_key=grouping_key,
        evidence=list(evidence),
    )


def responsibility(
    id: str,
    title: str,
    evidence: list[str],
    *,
    owner: str = UNASSIGNED,
    due_date: date | None = None,
) -> ResponsibilityCandidate:
    return ResponsibilityCandidate(
        id=id, title=title, owner=owner, due_date=due_date, evidence=list(evidence)
    )


class TestTitleSimilarity:
    """Tests for the fuzzy title comparison."""

    def test_stop_words_removed(self):
        """Test that filler words are ignored."""
        assert significant_words("We decided to use the Supabase database") == {
            "supabase",
            "database",
        }

    def test_similar_titles(self):
        """Test titles naming the same topic."""
        assert titles_similar("Use Supabase for the database", "Supabase chosen as database")

    def test_different_titles(self):
        """Test unrelated titles."""
        assert not titles_similar("Launch date set for March", "Use Supabase for database")

    def test_stop_words_only_never_match(self):
        """Test that empty word sets are not similar to anything."""
        assert not titles_similar("We decided", "We decided")
        assert not titles_similar("", "Supabase")


class TestMergeDecisions:
    """Tests for decision merging."""

    def test_empty_external_is_identity(self):
        """Test that merging nothing returns equal copies."""
        baseline = [decision("d1", "Use Postgres", ["fp1"]), decision("d2", "Ship Monday", ["fp2"])]
        merged = merge_decisions(baseline, [])

        assert merged == baseline
        assert all(m is not b for m, b in zip(merged, baseline, strict=True))

    def test_inputs_not_mutated(self):
        """Test that merging leaves its inputs alone."""
        baseline = [decision("d1", "Let's go with option B", ["fp1"])]
        inferred = [decision("x", "Vendor B picked", ["fp1", "fp2"], confidence=85)]
        merge_decisions(baseline, inferred)

        assert baseline[0].title == "Let's go with option B"
        assert baseline[0].evidence == ["fp1"]

    def test_option_b_with_reaction(self):
        """Test that an inferred decision enriches the rule-based one it shares evidence with."""
        baseline = [decision("d1", "Let's go with option B", ["fp1"])]
        inferred = [
            decision(
                "x",
                "Team picked vendor B",
                ["fp1", "fp2"],
                status=DecisionStatus.FINAL,
                confidence=85,
                grouping_key="vendor_choice",
            )
        ]
        merged = merge_decisions(baseline, inferred)

        assert len(merged) == 1
        result = merged[0]
        assert result.id == "d1"
        assert result.title == "Team picked vendor B"
        assert result.status == DecisionStatus.FINAL
        assert result.confidence == 85
        assert result.grouping_key == "vendor_choice"
        assert set(result.evidence) == {"fp1", "fp2"}

    def test_matched_evidence_is_superset(self):
        """Test that a merged candidate keeps evidence from both sides."""
        baseline = [decision("d1", "Pick Stripe", ["a", "b"])]
        inferred = [decision("x", "Stripe for payments", ["b", "c"])]
        merged = merge_decisions(baseline, inferred)
        assert {"a", "b", "c"} <= set(merged[0].evidence)

    def test_decided_at_kept_when_inferred_missing(self):
        """Test that only present timestamps overwrite."""
        when = datetime(2024, 3, 13, 9, 0, tzinfo=UTC)
        base = decision("d1", "Pick Stripe", ["a"])
        base.decided_at = when
        merged = merge_decisions([base], [decision("x", "Stripe for payments", ["a"])])
        assert merged[0].decided_at == when

    def test_unmatched_baseline_kept(self):
        """Test that candidates the inference missed survive."""
        baseline = [decision("d1", "Use Postgres", ["fp1"])]
        inferred = [decision("x", "Launch in May", ["fp9"], grouping_key="launch_date")]
        merged = merge_decisions(baseline, inferred)

        assert [m.title for m in merged] == ["Use Postgres", "Launch in May"]
        assert merged[1].id == decision_candidate_id("launch_date")

    def test_net_new_without_grouping_key(self):
        """Test ids of new candidates fall back to the normalized title."""
        merged = merge_decisions([], [decision("x", "Launch  in MAY", ["fp9"])])
        assert merged[0].id == decision_candidate_id("launch in may")

    def test_collapse_by_grouping_key(self):
        """Test that same-key candidates collapse to the most confident."""
        inferred = [
            decision("x", "Hosting on Vercel", ["fp1"], confidence=70, grouping_key="hosting"),
            decision("y", "Netlify instead", ["fp2"], confidence=90, grouping_key="hosting"),
        ]
        merged = merge_decisions([], inferred)

        assert len(merged) == 1
        assert merged[0].title == "Netlify instead"
        assert set(merged[0].evidence) == {"fp1", "fp2"}

    def test_collapse_similar_titles(self):
        """Test the fuzzy collapse across different keys."""
        inferred = [
            decision("x", "Use Supabase for the database", ["fp1"], grouping_key="db"),
            decision("y", "Supabase chosen as database", ["fp2"], grouping_key="database"),
        ]
        merged = merge_decisions([], inferred)
        assert len(merged) == 1
        assert set(merged[0].evidence) == {"fp1", "fp2"}


class TestMergeResponsibilities:
    """Tests for responsibility merging."""

    def test_empty_external_is_identity(self):
        """Test that merging nothing returns equal copies."""
        baseline = [responsibility("r1", "Send report", ["fp1"], owner="Bob")]
        merged = merge_responsibilities(baseline, [])
        assert merged == baseline
        assert merged[0] is not baseline[0]

    def test_matched_enrichment(self):
        """Test that inferred fields overwrite on shared evidence."""
        baseline = [responsibility("r1", "I'll send the report by Friday", ["fp1"], owner="Bob")]
        inferred = [
            responsibility("x", "Send the report", ["fp1"], owner="Bob", due_date=date(2024, 3, 15))
        ]
        merged = merge_responsibilities(baseline, inferred)

        assert len(merged) == 1
        assert merged[0].title == "Send the report"
        assert merged[0].due_date == date(2024, 3, 15)

    def test_unassigned_does_not_erase_owner(self):
        """Test that an unassigned inference keeps the found owner."""
        baseline = [responsibility("r1", "Send report", ["fp1"], owner="Bob")]
        inferred = [responsibility("x", "Send the report", ["fp1"])]
        merged = merge_responsibilities(baseline, inferred)
        assert merged[0].owner == "Bob"

    def test_due_date_not_cleared(self):
        """Test that a missing inferred due date keeps the existing one."""
        baseline = [
            responsibility("r1", "Send report", ["fp1"], owner="Bob", due_date=date(2024, 3, 15))
        ]
        merged = merge_responsibilities(baseline, [responsibility("x", "Send it", ["fp1"])])
        assert merged[0].due_date == date(2024, 3, 15)

    def test_net_new_id_from_evidence(self):
        """Test ids of unmatched inferred items."""
        merged = merge_responsibilities([], [responsibility("x", "Book venue", ["fp7", "fp8"])])
        assert merged[0].id == responsibility_candidate_id("fp7")

    def test_inferred_without_evidence_skipped(self):
        """Test that items citing nothing are not merged."""
        assert merge_responsibilities([], [responsibility("x", "Book venue", [])]) == []

    def test_collapse_by_owner_and_task_prefers_due_date(self):
        """Test that duplicates collapse to the one with a due date."""
        inferred = [
            responsibility("x", "Book venue", ["fp1"], owner="Ann"),
            responsibility("y", "book  VENUE", ["fp2"], owner="ann", due_date=date(2024, 4, 1)),
        ]
        merged = merge_responsibilities([], inferred)

        assert len(merged) == 1
        assert merged[0].due_date == date(2024, 4, 1)
        assert set(merged[0].evidence) == {"fp1", "fp2"}


class TestMergeCandidates:
    """Tests for merging whole candidate sets."""

    def test_merges_both_families(self):
        """Test that decisions and responsibilities merge independently."""
        deterministic = CandidateSet(
            decisions=[decision("d1", "Pick Stripe", ["a"])],
            responsibilities=[responsibility("r1", "Set up Stripe", ["b"], owner="Ann")],
        )
        external = CandidateSet(
            decisions=[decision("x", "Stripe for payments", ["a"], confidence=90)],
            responsibilities=[],
        )
        merged = merge_candidates(deterministic, external)

        assert len(merged.decisions) == 1
        assert merged.decisions[0].confidence == 90
        assert merged.responsibilities == deterministic.responsibilities
