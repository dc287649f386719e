"""Tests for merge_cluster, merge verification and the review queue."""
import pytest

from conftest import ScriptedLLM, axis, near
from memvault.cluster import Cluster
from memvault.merge import DRY_RUN_ID, build_merge_prompt, majority_type, merge_cluster
from memvault.store import Entry
from memvault.verify import ReviewQueue, verify_merge

MERGED = {
    "content": "Jim prefers pnpm and uses it in every repository",
    "subject": "Jim",
    "type": "lesson",
    "importance": 7,
    "expiry": "permanent",
    "tags": ["tooling"],
}


@pytest.fixture
def cluster(store, add_entry):
    ids = [
        add_entry("Jim prefers pnpm", axis(0), confirmations=2, tags=["js"]),
        add_entry("Jim uses pnpm everywhere", near(0, 1, 0.9), confirmations=1, recall_count=4),
        add_entry("pnpm is Jim's package manager", near(0, 2, 0.9), type="preference"),
    ]
    return Cluster(store.get_entries(ids))


@pytest.fixture
def queue(tmp_home):
    return ReviewQueue(tmp_home / "review-queue.json")


class TestVerifyMerge:
    def test_accepts_close_merge(self):
        assert verify_merge(axis(0), [near(0, 1, 0.9), near(0, 2, 0.9)]) == (True, None)

    def test_rejects_source_drift(self):
        accepted, reason = verify_merge(axis(0), [axis(0), near(0, 1, 0.6)])
        assert accepted is False
        assert "source drift" in reason

    def test_rejects_centroid_drift(self):
        accepted, reason = verify_merge(near(0, 3, 0.8), [near(0, 1, 0.85), near(0, 2, 0.85)])
        assert accepted is False
        assert "centroid drift" in reason


class TestReviewQueue:
    def test_add_list_clear(self, queue):
        assert queue.list() == []
        queue.add("merged", "Jim", "fact", ["a", "b"], ["x", "y"], "source drift below 0.65")
        (item,) = queue.list()
        assert item["source_ids"] == ["a", "b"]
        assert item["flagged_at"]
        assert len(queue) == 1
        assert queue.clear() == 1
        assert queue.list() == []

    def test_encrypted_queue(self, tmp_home_encrypted):
        queue = ReviewQueue(tmp_home_encrypted / "review-queue.json")
        queue.add("secret merge", "Jim", "fact", ["a"], ["x"], "reason")
        assert "secret merge" not in queue.path.read_text()
        assert queue.list()[0]["merged_content"] == "secret merge"


class TestPrompt:
    def test_oversized_content_is_truncated(self):
        entries = [Entry(id=str(i), type="fact", subject="s", content="word " * 2000) for i in range(6)]
        prompt = build_merge_prompt(entries)
        assert "Merge the following 6 entries" in prompt
        assert len(prompt) < 14000

    def test_majority_type_tie_breaks_on_confirmations(self):
        entries = [
            Entry(id="1", type="fact", confirmations=1),
            Entry(id="2", type="lesson", confirmations=5),
        ]
        assert majority_type(entries) == "lesson"
        assert majority_type(entries + [Entry(id="3", type="fact")]) == "fact"


class TestMergeCluster:
    def test_accepted_merge(self, store, embedder, cluster, queue):
        embedder.set(MERGED["content"], near(0, 1, 0.97))
        llm = ScriptedLLM({"merge_entries": MERGED})
        outcome = merge_cluster(store, cluster, llm, embedder, review_queue=queue)
        assert outcome.flagged is False
        merged = store.get_entry(outcome.merged_entry_id)
        assert merged.type == "fact"
        assert merged.merged_from == 3
        assert merged.confirmations == 3
        assert merged.recall_count == 4
        assert merged.consolidated_at
        assert set(merged.tags) >= {"js", "tooling"}
        assert store.count_active() == 1
        for source_id in cluster.ids:
            assert store.get_entry(source_id).superseded_by == merged.id
        assert len(store.get_entry_sources(merged.id)) == 3
        assert len([r for r in store.get_relations(merged.id) if r["relation_type"] == "supersedes"]) == 3
        assert len(queue) == 0

    def test_verify_failure_queues_and_commits_nothing(self, store, embedder, cluster, queue):
        embedder.set(MERGED["content"], axis(5))
        llm = ScriptedLLM({"merge_entries": MERGED})
        outcome = merge_cluster(store, cluster, llm, embedder, review_queue=queue)
        assert outcome.flagged is True
        assert outcome.merged_entry_id == ""
        assert store.count_entries() == 3
        assert store.count_active() == 3
        (item,) = queue.list()
        assert sorted(item["source_ids"]) == sorted(cluster.ids)
        assert item["merged_content"] == MERGED["content"]

    def test_missing_tool_call_flags(self, store, embedder, cluster, queue):
        outcome = merge_cluster(store, cluster, ScriptedLLM(), embedder, review_queue=queue)
        assert outcome.flagged is True
        assert store.count_active() == 3
        assert len(queue) == 0

    def test_dry_run(self, store, embedder, cluster, queue):
        embedder.set(MERGED["content"], near(0, 1, 0.97))
        outcome = merge_cluster(
            store, cluster, ScriptedLLM({"merge_entries": MERGED}), embedder, dry_run=True, review_queue=queue
        )
        assert outcome.merged_entry_id == DRY_RUN_ID
        assert store.count_entries() == 3

    def test_dry_run_failure_not_queued(self, store, embedder, cluster, queue):
        embedder.set(MERGED["content"], axis(5))
        outcome = merge_cluster(
            store, cluster, ScriptedLLM({"merge_entries": MERGED}), embedder, dry_run=True, review_queue=queue
        )
        assert outcome.flagged is True
        assert len(queue) == 0
