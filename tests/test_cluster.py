"""Tests for cluster building and validation."""
import logging

from conftest import ScriptedLLM, axis, days_ago, near
from memvault import cluster
from memvault.cluster import build_clusters, cluster_fingerprint, validate_cluster
from memvault.store import Entry


def _ids(clusters):
    return sorted(sorted(c.ids) for c in clusters)


class TestValidateCluster:
    def test_diameter_evicts_lower_support(self):
        a = Entry(id="a", embedding=near(0, 1, 0.88), confirmations=3)
        b = Entry(id="b", embedding=axis(0))
        c = Entry(id="c", embedding=near(0, 2, 0.88))
        kept = validate_cluster([a, b, c], max_size=8, diameter_floor=0.80)
        assert [e.id for e in kept] == ["a", "b"]

    def test_max_size_keeps_best_connected(self):
        members = [
            Entry(id="core1", embedding=axis(0)),
            Entry(id="core2", embedding=near(0, 1, 0.99)),
            Entry(id="core3", embedding=near(0, 2, 0.99)),
            Entry(id="edge", embedding=near(0, 3, 0.7)),
        ]
        kept = validate_cluster(members, max_size=3, diameter_floor=0.0)
        assert sorted(e.id for e in kept) == ["core1", "core2", "core3"]

    def test_tight_group_untouched(self):
        members = [Entry(id=str(i), embedding=near(0, i + 1, 0.99)) for i in range(3)]
        assert len(validate_cluster(members, max_size=8, diameter_floor=0.9)) == 3


class TestFingerprint:
    def test_order_independent(self):
        assert cluster_fingerprint(["b", "a"]) == cluster_fingerprint(["a", "b"])
        assert cluster_fingerprint(["a", "b"]) != cluster_fingerprint(["a", "c"])


class TestBuildClusters:
    def test_same_type_above_threshold(self, store, add_entry):
        a = add_entry("a", axis(0), subject="s1")
        b = add_entry("b", near(0, 1, 0.9), subject="s2")
        add_entry("far", axis(4), subject="s3")
        clusters, stats = build_clusters(store)
        assert _ids(clusters) == [sorted([a, b])]
        assert stats["candidates"] == 3
        assert clusters[0].used_loose_union is False

    def test_different_type_needs_same_subject(self, store, add_entry):
        add_entry("a", axis(0), subject="s1", type="fact")
        add_entry("b", near(0, 1, 0.85), subject="s2", type="decision")
        assert build_clusters(store)[0] == []

    def test_cross_type_same_subject_high_similarity(self, store, add_entry):
        a = add_entry("a", axis(0), type="fact")
        b = add_entry("b", near(0, 1, 0.9), type="decision")
        assert _ids(build_clusters(store)[0]) == [sorted([a, b])]

    def test_loose_band_same_subject(self, store, add_entry):
        a = add_entry("a", axis(0), type="fact")
        b = add_entry("b", near(0, 1, 0.7), type="lesson")
        clusters, _ = build_clusters(store)
        assert _ids(clusters) == [sorted([a, b])]
        assert clusters[0].used_loose_union is True

    def test_loose_band_llm_confirms(self, store, add_entry):
        a = add_entry("a", axis(0), subject="s1")
        b = add_entry("b", near(0, 1, 0.7), subject="s2")
        llm = ScriptedLLM({"batch_dedup_check": {"results": [{"pair": 1, "same": True}]}})
        clusters, stats = build_clusters(store, llm=llm)
        assert _ids(clusters) == [sorted([a, b])]
        assert stats["llm_dedup_calls"] == 1
        assert stats["llm_dedup_matches"] == 1

    def test_loose_band_llm_rejects(self, store, add_entry):
        add_entry("a", axis(0), subject="s1")
        add_entry("b", near(0, 1, 0.7), subject="s2")
        llm = ScriptedLLM({"batch_dedup_check": {"results": [{"pair": 1, "same": False}]}})
        assert build_clusters(store, llm=llm)[0] == []

    def test_loose_band_without_llm(self, store, add_entry):
        add_entry("a", axis(0), subject="s1")
        add_entry("b", near(0, 1, 0.7), subject="s2")
        assert build_clusters(store)[0] == []

    def test_type_filter(self, store, add_entry):
        add_entry("a", axis(0), subject="s1", type="fact")
        add_entry("b", near(0, 1, 0.9), subject="s2", type="fact")
        c = add_entry("c", axis(3), subject="s3", type="lesson")
        d = add_entry("d", near(3, 4, 0.9), subject="s4", type="lesson")
        assert _ids(build_clusters(store, type_filter="lesson")[0]) == [sorted([c, d])]

    def test_recently_consolidated_excluded(self, store, add_entry):
        add_entry("a", axis(0), merged_from=2, consolidated_at=days_ago(1))
        add_entry("b", near(0, 1, 0.9))
        assert build_clusters(store)[0] == []
        assert len(build_clusters(store, idempotency_days=0)[0]) == 1

    def test_old_consolidation_included(self, store, add_entry):
        add_entry("a", axis(0), merged_from=2, consolidated_at=days_ago(30))
        add_entry("b", near(0, 1, 0.9))
        assert len(build_clusters(store)[0]) == 1

    def test_entry_ids_restrict_pool(self, store, add_entry):
        a = add_entry("a", axis(0), subject="s1")
        add_entry("b", near(0, 1, 0.9), subject="s2")
        c = add_entry("c", near(0, 2, 0.9), subject="s3")
        assert _ids(build_clusters(store, entry_ids=[a, c])[0]) == [sorted([a, c])]

    def test_min_cluster(self, store, add_entry):
        add_entry("a", axis(0), subject="s1")
        add_entry("b", near(0, 1, 0.9), subject="s2")
        assert build_clusters(store, min_cluster=3)[0] == []

    def test_inactive_and_unembedded_ignored(self, store, add_entry):
        a = add_entry("a", axis(0), subject="s1")
        b = add_entry("b", near(0, 1, 0.9), subject="s2")
        add_entry("no vector", subject="s3")
        with store.transaction():
            store.mark_expired(b)
        clusters, stats = build_clusters(store)
        assert clusters == []
        assert stats["candidates"] == 1

    def test_large_pool_warns(self, store, add_entry, monkeypatch, caplog):
        a = add_entry("a", axis(0), subject="s1")
        b = add_entry("b", near(0, 1, 0.9), subject="s2")
        monkeypatch.setattr(cluster, "MAX_ACTIVE_EMBEDDED_ENTRIES", 1)
        with caplog.at_level(logging.WARNING, logger="memvault.cluster"):
            clusters, stats = build_clusters(store)
        assert stats["candidates"] == 2
        assert _ids(clusters) == [sorted([a, b])]
        assert any("exceed 1" in r.getMessage() for r in caplog.records)
