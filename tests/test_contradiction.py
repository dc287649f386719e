"""Tests for claim extraction, the subject index and conflict resolution."""
import pytest

from conftest import ScriptedLLM, axis
from memvault import contradiction
from memvault.contradiction import (
    SubjectIndex,
    attribute_overlap,
    classify_conflict,
    conflict_stats,
    conflicts_for_entry,
    detect_contradictions,
    extract_claim,
    pending_conflicts,
    resolve_conflict,
    resolve_conflict_log,
)
from memvault.dedup import store_entries

PNPM_CLAIM = {
    "no_claim": False,
    "subject_entity": "Jim",
    "subject_attribute": "Package Manager",
    "predicate": "prefers",
    "object": "bun",
    "confidence": 0.9,
}


def _conflict(relation, confidence=0.9):
    return {"classify_conflict": {"relation": relation, "confidence": confidence, "explanation": "scripted"}}


# ============================================================================
# Claims
# ============================================================================


class TestExtractClaim:
    def test_normalizes_fields(self):
        llm = ScriptedLLM({"extract_claim": PNPM_CLAIM})
        claim = extract_claim(llm, "Jim now prefers bun", "preference", "Jim")
        assert claim.subject_key == "jim/package_manager"
        assert claim.predicate == "prefers"
        assert claim.object == "bun"
        assert claim.to_fields()["claim_confidence"] == 0.9

    def test_user_aliases(self):
        llm = ScriptedLLM({"extract_claim": dict(PNPM_CLAIM, subject_entity="The User")})
        assert extract_claim(llm, "I prefer bun", "preference", "me").entity == "user"

    def test_no_claim_and_failures(self):
        assert extract_claim(ScriptedLLM({"extract_claim": {"no_claim": True}}), "x", "fact", "") is None
        assert extract_claim(ScriptedLLM({"extract_claim": RuntimeError("down")}), "x", "fact", "") is None
        assert extract_claim(ScriptedLLM(), "x", "fact", "") is None

    def test_entity_hints_reach_prompt(self):
        seen = {}

        def respond(system, user):
            seen["system"] = system
            return PNPM_CLAIM

        extract_claim(ScriptedLLM({"extract_claim": respond}), "x", "fact", "Jim", ["Jim", "acme"])
        assert "Known entities in the knowledge base: acme, jim" in seen["system"]


class TestSubjectIndex:
    def test_lookup_variants(self):
        idx = SubjectIndex()
        idx.add("jim/package_manager", "a")
        idx.add("jim/preferred_package_manager", "b")
        idx.add("ana/package_manager", "c")
        idx.add("jim/weight", "d")
        assert idx.lookup("jim/package_manager") == ["a"]
        assert idx.fuzzy_lookup("jim/package_manager") == ["a", "b"]
        assert idx.cross_entity_lookup("jim/package_manager") == ["c"]
        assert idx.entities() == ["ana", "jim"]

    def test_remove_drops_empty_keys(self):
        idx = SubjectIndex()
        idx.add("jim/weight", "a")
        idx.remove("jim/weight", "a")
        assert idx.stats() == {"keys": 0, "entries": 0}

    def test_rebuild_reads_active_entries(self, store, add_entry):
        a = add_entry("Jim weighs 200 lbs", subject_key="jim/weight")
        b = add_entry("Jim weighs 180 lbs", subject_key="jim/weight")
        with store.transaction():
            store.mark_superseded(a, b)
        idx = SubjectIndex()
        idx.ensure_initialized(store)
        assert idx.lookup("jim/weight") == [b]

    def test_attribute_overlap(self):
        assert attribute_overlap("salary", "salary_change") == 1.0
        assert attribute_overlap("weight", "height") == 0.0


# ============================================================================
# Judging
# ============================================================================


class TestClassifyConflict:
    def test_failure_reads_as_unrelated(self, store, add_entry):
        existing = store.get_entry(add_entry("Jim prefers pnpm"))
        result = classify_conflict(ScriptedLLM({"classify_conflict": {"relation": "maybe"}}), {"content": "x"}, existing)
        assert result == {"relation": "unrelated", "confidence": 0.0, "explanation": "LLM error"}

    def test_unrelated_pairs_dropped(self, store, add_entry):
        add_entry("Jim prefers pnpm", subject_key="jim/package_manager")
        llm = ScriptedLLM(_conflict("unrelated"))
        conflicts = detect_contradictions(
            store, {"content": "Jim prefers bun", "subject_key": "jim/package_manager"}, None, llm
        )
        assert conflicts == []
        assert llm.count("classify_conflict") == 1

    def test_embedding_candidates(self, store, add_entry):
        eid = add_entry("Jim's editor is vim", axis(0))
        llm = ScriptedLLM(_conflict("contradicts"))
        conflicts = detect_contradictions(store, {"content": "Jim's editor is emacs"}, axis(0), llm)
        assert [c["entry"].id for c in conflicts] == [eid]


# ============================================================================
# Resolution policy
# ============================================================================


class TestResolveConflict:
    def _resolve(self, store, add_entry, relation, confidence, new_importance=5, **existing_fields):
        existing = store.get_entry(add_entry("Jim prefers pnpm", axis(0), **existing_fields))
        new_id = add_entry("Jim now prefers bun", axis(1), importance=new_importance)
        conflict = {"entry": existing, "result": {"relation": relation, "confidence": confidence}}
        with store.transaction():
            resolution = resolve_conflict(store, new_id, {"importance": new_importance}, conflict)
        return resolution, store.get_entry(existing.id)

    def test_confident_supersedes_of_fact_is_applied(self, store, add_entry):
        resolution, old = self._resolve(store, add_entry, "supersedes", 0.9)
        assert resolution == "auto-superseded"
        assert old.status == "superseded"
        assert [r["relation_type"] for r in store.get_relations(old.id)] == ["supersedes"]

    def test_events_always_coexist(self, store, add_entry):
        resolution, old = self._resolve(store, add_entry, "supersedes", 0.99, type="event")
        assert resolution == "coexist"
        assert old.is_active
        assert pending_conflicts(store) == []

    def test_low_confidence_goes_to_review(self, store, add_entry):
        resolution, old = self._resolve(
            store, add_entry, "supersedes", 0.1, new_importance=2, type="decision", importance=9
        )
        assert resolution == "pending"
        assert old.is_active
        assert len(pending_conflicts(store)) == 1
        assert conflict_stats(store)["auto_resolved"] == 0

    def test_contradicts_goes_to_review(self, store, add_entry):
        resolution, old = self._resolve(store, add_entry, "contradicts", 0.95)
        assert resolution == "pending"
        assert old.is_active

    @pytest.mark.parametrize("entry_type", ["decision", "lesson"])
    def test_decisions_and_lessons_go_to_review(self, store, add_entry, entry_type):
        resolution, old = self._resolve(store, add_entry, "supersedes", 0.95, type=entry_type)
        assert resolution == "pending"
        assert old.is_active

    def test_more_important_target_blocks_supersession(self, store, add_entry):
        resolution, old = self._resolve(store, add_entry, "supersedes", 0.95, new_importance=3, importance=8)
        assert resolution == "pending"
        assert old.is_active
        assert store.get_relations(old.id) == []

    def test_threshold_is_configurable(self, store, add_entry):
        existing = store.get_entry(add_entry("Jim prefers pnpm", axis(0), type="preference"))
        new_id = add_entry("Jim now prefers bun", axis(1))
        conflict = {"entry": existing, "result": {"relation": "supersedes", "confidence": 0.9}}
        with store.transaction():
            resolution = resolve_conflict(store, new_id, {"importance": 5}, conflict, auto_supersede_threshold=0.95)
        assert resolution == "coexist"
        assert store.get_entry(existing.id).is_active

    def test_mid_confidence_coexists(self, store, add_entry):
        resolution, old = self._resolve(store, add_entry, "coexists", 0.8)
        assert resolution == "coexist"
        assert old.is_active
        stats = conflict_stats(store)
        assert (stats["total"], stats["pending"], stats["auto_resolved"]) == (1, 0, 1)

    def test_inactive_target_ignored(self, store, add_entry):
        resolution, old = self._resolve(store, add_entry, "supersedes", 0.9)
        again = resolve_conflict(
            store, "other", {"importance": 5}, {"entry": old, "result": {"relation": "supersedes", "confidence": 0.9}}
        )
        assert again is None
        assert conflict_stats(store)["total"] == 1


# ============================================================================
# Through store_entries
# ============================================================================


class TestOnlineContradictions:
    def _ingest(self, store, embedder, llm):
        embedder.set("Jim now prefers bun", axis(1))
        return store_entries(
            store,
            [{"content": "Jim now prefers bun", "subject": "Jim", "type": "preference"}],
            embedder,
            llm,
            contradiction=True,
        )

    def test_supersedes_is_applied(self, store, embedder, add_entry):
        old = add_entry("Jim prefers pnpm", axis(0), subject_key="jim/package_manager")
        llm = ScriptedLLM(dict({"extract_claim": PNPM_CLAIM}, **_conflict("supersedes")))
        result = self._ingest(store, embedder, llm)
        assert result["added"] == 1
        assert result["conflicts_logged"] == 1
        (new,) = store.active_entries()
        assert new.subject_key == "jim/package_manager"
        assert store.get_entry(old).superseded_by == new.id
        assert [r["relation_type"] for r in store.get_relations(old)] == ["supersedes"]
        assert conflict_stats(store)["auto_resolved"] == 1
        assert pending_conflicts(store) == []

    def test_contradicts_is_logged_pending(self, store, embedder, add_entry):
        old = add_entry("Jim prefers pnpm", axis(0), subject_key="jim/package_manager")
        llm = ScriptedLLM(dict({"extract_claim": PNPM_CLAIM}, **_conflict("contradicts", 0.7)))
        result = self._ingest(store, embedder, llm)
        assert result["conflicts_logged"] == 1
        assert store.count_active() == 2
        assert store.get_relations(old) == []
        (pending,) = pending_conflicts(store)
        assert pending["entry_b"] == old
        assert pending["confidence"] == 0.7
        assert pending["resolved_at"] is None

    def test_one_entry_resolves_several_conflicts(self, store, embedder, add_entry):
        first = add_entry("Jim prefers pnpm", axis(0), subject_key="jim/package_manager")
        second = add_entry("Jim prefers yarn", axis(2), subject_key="jim/package_manager")
        llm = ScriptedLLM(dict({"extract_claim": PNPM_CLAIM}, **_conflict("supersedes")))
        result = self._ingest(store, embedder, llm)
        assert result["conflicts_logged"] == 2
        assert result["relations_created"] == 2
        (new,) = store.active_entries()
        assert store.get_entry(first).superseded_by == new.id
        assert store.get_entry(second).superseded_by == new.id
        assert conflict_stats(store)["auto_resolved"] == 2

    def test_conflict_writes_roll_back_together(self, store, embedder, add_entry, monkeypatch):
        first = add_entry("Jim prefers pnpm", axis(0), subject_key="jim/package_manager")
        second = add_entry("Jim prefers yarn", axis(2), subject_key="jim/package_manager")
        real_log = contradiction.log_conflict
        logged = []

        def failing_second_log(*args):
            if logged:
                raise RuntimeError("disk full")
            logged.append(args)
            return real_log(*args)

        monkeypatch.setattr(contradiction, "log_conflict", failing_second_log)
        llm = ScriptedLLM(dict({"extract_claim": PNPM_CLAIM}, **_conflict("supersedes")))
        with pytest.raises(RuntimeError):
            self._ingest(store, embedder, llm)
        assert store.get_entry(first).is_active
        assert store.get_entry(second).is_active
        assert store.get_relations(first) == []
        assert store.get_relations(second) == []
        assert conflict_stats(store)["total"] == 0
        assert store.count_active() == 3

    def test_judge_failure_keeps_entry(self, store, embedder, add_entry):
        add_entry("Jim prefers pnpm", axis(0), subject_key="jim/package_manager")
        llm = ScriptedLLM({"extract_claim": PNPM_CLAIM, "classify_conflict": RuntimeError("down")})
        result = self._ingest(store, embedder, llm)
        assert result["added"] == 1
        assert result["conflicts_logged"] == 0
        assert store.count_active() == 2

    def test_not_run_without_flag(self, store, embedder, add_entry):
        add_entry("Jim prefers pnpm", axis(0), subject_key="jim/package_manager")
        llm = ScriptedLLM({"extract_claim": PNPM_CLAIM})
        embedder.set("Jim now prefers bun", axis(1))
        store_entries(store, [{"content": "Jim now prefers bun", "subject": "Jim"}], embedder, llm)
        assert llm.count("extract_claim") == 0


class TestConflictLog:
    def test_user_resolution(self, store, embedder, add_entry):
        old = add_entry("Jim prefers pnpm", axis(0), subject_key="jim/package_manager")
        llm = ScriptedLLM(dict({"extract_claim": PNPM_CLAIM}, **_conflict("contradicts")))
        embedder.set("Jim now prefers bun", axis(1))
        store_entries(store, [{"content": "Jim now prefers bun", "subject": "Jim"}], embedder, llm, contradiction=True)
        (pending,) = pending_conflicts(store)
        assert resolve_conflict_log(store, pending["id"], "keep-both") is True
        assert pending_conflicts(store) == []
        assert conflicts_for_entry(store, old)[0]["resolution"] == "keep-both"
        assert conflict_stats(store)["user_resolved"] == 1
        assert resolve_conflict_log(store, "missing", "keep-new") is False
