"""Tests for ingest-time dedup: hash skips, similarity gates and LLM decisions."""
import pytest

from conftest import ScriptedLLM, axis, near
from memvault.dedup import IngestSession, collapse_batch_duplicates, prepare_entry, store_entries
from memvault.store import EntryStatus

LONG = (
    "the release checklist requires running the full integration suite against staging "
    "then tagging the build and notifying the platform channel before noon"
)


def _decision(action, target_id=None, merged_content=None):
    return {
        "online_dedup_decision": {
            "action": action,
            "target_id": target_id,
            "merged_content": merged_content,
            "reasoning": "scripted",
        }
    }


def _ingest_rows(store):
    return store.execute("SELECT COUNT(*) FROM ingest_log").fetchone()[0]


# ============================================================================
# Input handling
# ============================================================================


class TestPrepareEntry:
    def test_defaults(self):
        data = prepare_entry({"content": "  Jim prefers pnpm  ", "tags": ["JS", "js"]}, "notes.jsonl")
        assert data["content"] == "Jim prefers pnpm"
        assert data["type"] == "fact"
        assert data["importance"] == 5
        assert data["expiry"] == "temporary"
        assert data["tags"] == ["js"]
        assert data["source_file"] == "notes.jsonl"

    @pytest.mark.parametrize(
        "raw",
        [
            {"content": "   "},
            {"content": "x", "type": "rumour"},
            {"content": "x", "expiry": "forever"},
            {"content": "x", "importance": 11},
        ],
    )
    def test_invalid_rejected(self, raw):
        with pytest.raises(ValueError):
            prepare_entry(raw, None)

    def test_invalid_threshold(self, store, embedder):
        with pytest.raises(ValueError):
            store_entries(store, [{"content": "x"}], embedder, dedup_threshold=1.5)


class TestCollapseBatch:
    def test_exact_duplicates_merge_metadata(self):
        out = collapse_batch_duplicates(
            [
                {"type": "fact", "subject": "Jim", "content": "Jim prefers pnpm.", "tags": ["js"], "importance": 4},
                {"type": "fact", "subject": "jim", "content": "jim prefers  PNPM", "tags": ["tools"], "importance": 8},
            ]
        )
        assert len(out) == 1
        assert out[0]["tags"] == ["js", "tools"]
        assert out[0]["importance"] == 8

    def test_near_duplicates_merge_within_subject(self):
        out = collapse_batch_duplicates(
            [
                {"type": "lesson", "subject": "release", "content": LONG},
                {"type": "lesson", "subject": "release", "content": LONG.replace("noon", "lunch")},
            ]
        )
        assert len(out) == 1

    def test_different_subject_or_type_kept(self):
        out = collapse_batch_duplicates(
            [
                {"type": "lesson", "subject": "release", "content": LONG},
                {"type": "lesson", "subject": "deploys", "content": LONG},
                {"type": "fact", "subject": "release", "content": LONG},
            ]
        )
        assert len(out) == 3

    def test_longer_context_wins(self):
        out = collapse_batch_duplicates(
            [
                {"type": "fact", "subject": "Jim", "content": "x y z", "source_context": "short"},
                {"type": "fact", "subject": "Jim", "content": "x y z", "source_context": "a much longer context"},
            ]
        )
        assert out[0]["source_context"] == "a much longer context"


# ============================================================================
# Hash skips
# ============================================================================


class TestHashSkip:
    def test_same_entry_twice_in_one_run(self, store, embedder, llm):
        result = store_entries(
            store,
            [{"content": "Jim prefers pnpm", "subject": "Jim"}, {"content": "Jim prefers pnpm", "subject": "Jim"}],
            embedder,
            llm,
        )
        assert result["added"] == 1
        assert result["skipped"] == 1
        assert embedder.calls == 1
        assert llm.count() == 0
        assert store.active_entries()[0].confirmations == 0

    def test_repeat_across_calls_with_session(self, store, embedder, llm):
        session = IngestSession()
        entry = {"content": "Jim prefers pnpm", "subject": "Jim"}
        store_entries(store, [entry], embedder, llm, session=session)
        calls = embedder.calls
        result = store_entries(store, [entry], embedder, llm, session=session)
        assert result["skipped"] == 1
        assert embedder.calls == calls
        assert session.embedding_calls == 1

    def test_identical_content_already_stored(self, store, embedder, llm, add_entry):
        eid = add_entry("Jim prefers pnpm")
        result = store_entries(store, [{"content": "Jim prefers pnpm", "subject": "Jim"}], embedder, llm)
        assert result["skipped"] == 1
        assert embedder.calls == 0
        assert store.get_entry(eid).confirmations == 0

    def test_replaying_a_batch_changes_nothing(self, store, embedder, llm):
        batch = [{"content": "Jim prefers pnpm", "subject": "Jim", "source_file": "session.jsonl"}]
        store_entries(store, batch, embedder, llm)
        (entry,) = store.active_entries()
        for _ in range(5):
            result = store_entries(store, batch, embedder, llm)
            assert result["skipped"] == 1
            assert result["added"] == 0
        replayed = store.get_entry(entry.id)
        assert replayed.confirmations == 0
        assert replayed.updated_at == entry.updated_at
        assert store.count_entries() == 1
        assert embedder.calls == 1

    def test_force_bypasses_dedup(self, store, embedder, llm, add_entry):
        add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim prefers pnpm", axis(0))
        result = store_entries(store, [{"content": "Jim prefers pnpm", "subject": "Jim"}], embedder, llm, force=True)
        assert result["added"] == 1
        assert store.count_active() == 2
        assert llm.count() == 0


# ============================================================================
# Similarity decisions
# ============================================================================


class TestDecisions:
    def test_below_threshold_adds_without_llm(self, store, embedder, llm, add_entry):
        add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim owns a kayak", near(0, 1, 0.5))
        result = store_entries(store, [{"content": "Jim owns a kayak", "subject": "Jim"}], embedder, llm)
        assert result["added"] == 1
        assert llm.count() == 0

    def test_near_exact_same_type_auto_skips(self, store, embedder, llm, add_entry):
        eid = add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim prefers pnpm!", near(0, 1, 0.99))
        result = store_entries(store, [{"content": "Jim prefers pnpm!", "subject": "Jim"}], embedder, llm)
        assert result["skipped"] == 1
        assert llm.count() == 0
        assert store.get_entry(eid).confirmations == 1

    def test_llm_skip_bumps_exactly_once(self, store, embedder, add_entry):
        eid = add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim really prefers pnpm", near(0, 1, 0.9))
        llm = ScriptedLLM(_decision("SKIP", eid))
        result = store_entries(store, [{"content": "Jim really prefers pnpm", "subject": "Jim"}], embedder, llm)
        assert result["skipped"] == 1
        assert result["llm_dedup_calls"] == 1
        assert store.get_entry(eid).confirmations == 1
        assert store.count_active() == 1

    def test_update_rewrites_target(self, store, embedder, add_entry):
        eid = add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim uses pnpm in every repo", near(0, 1, 0.9))
        merged = "Jim prefers pnpm and uses it in every repo"
        embedder.set(merged, near(0, 2, 0.95))
        llm = ScriptedLLM(_decision("UPDATE", eid, merged))
        result = store_entries(store, [{"content": "Jim uses pnpm in every repo", "subject": "Jim"}], embedder, llm)
        assert result["updated"] == 1
        e = store.get_entry(eid)
        assert e.content == merged
        assert e.confirmations == 1
        assert e.embedding == pytest.approx(near(0, 2, 0.95))
        assert store.count_active() == 1

    def test_supersede_creates_one_row_and_one_relation(self, store, embedder, add_entry):
        old = add_entry("Jim uses npm", axis(0))
        embedder.set("Jim switched from npm to pnpm", near(0, 1, 0.9))
        llm = ScriptedLLM(_decision("SUPERSEDE", old))
        result = store_entries(store, [{"content": "Jim switched from npm to pnpm", "subject": "Jim"}], embedder, llm)
        assert result["superseded"] == 1
        assert result["relations_created"] == 1
        assert store.count_entries() == 2
        (new,) = store.active_entries()
        old_entry = store.get_entry(old)
        assert old_entry.status == EntryStatus.SUPERSEDED.value
        assert old_entry.superseded_by == new.id
        rels = store.get_relations(old)
        assert len(rels) == 1
        assert (rels[0]["source_id"], rels[0]["relation_type"]) == (new.id, "supersedes")

    def test_llm_failure_defaults_to_add(self, store, embedder, add_entry):
        add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim likes pnpm", near(0, 1, 0.9))
        llm = ScriptedLLM({"online_dedup_decision": RuntimeError("provider down")})
        result = store_entries(store, [{"content": "Jim likes pnpm", "subject": "Jim"}], embedder, llm)
        assert result["added"] == 1
        assert store.count_active() == 2

    def test_invalid_target_defaults_to_add(self, store, embedder, add_entry):
        add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim likes pnpm", near(0, 1, 0.9))
        llm = ScriptedLLM(_decision("SKIP", "not-a-candidate"))
        result = store_entries(store, [{"content": "Jim likes pnpm", "subject": "Jim"}], embedder, llm)
        assert result["added"] == 1

    def test_no_llm_above_threshold_skips(self, store, embedder, add_entry):
        eid = add_entry("Jim prefers pnpm", axis(0))
        embedder.set("Jim likes pnpm", near(0, 1, 0.9))
        result = store_entries(store, [{"content": "Jim likes pnpm", "subject": "Jim"}], embedder, None)
        assert result["skipped"] == 1
        assert store.get_entry(eid).confirmations == 1

    def test_related_relation_across_types(self, store, embedder, add_entry):
        pref = add_entry("Jim prefers pnpm", axis(0), type="preference")
        embedder.set("Jim's repos all ship a pnpm lockfile", near(0, 1, 0.95))
        llm = ScriptedLLM(_decision("ADD"))
        result = store_entries(
            store, [{"content": "Jim's repos all ship a pnpm lockfile", "subject": "Jim"}], embedder, llm
        )
        assert result["added"] == 1
        assert result["relations_created"] == 1
        assert [r["relation_type"] for r in store.get_relations(pref)] == ["related"]


# ============================================================================
# Modes
# ============================================================================


class TestModes:
    def test_dry_run_writes_nothing(self, store, embedder, add_entry):
        old = add_entry("Jim uses npm", axis(0))
        embedder.set("Jim switched to pnpm", near(0, 1, 0.9))
        embedder.set("Jim owns a kayak", axis(3))
        llm = ScriptedLLM(_decision("SUPERSEDE", old))
        result = store_entries(
            store,
            [{"content": "Jim switched to pnpm", "subject": "Jim"}, {"content": "Jim owns a kayak", "subject": "Jim"}],
            embedder,
            llm,
            dry_run=True,
        )
        assert result["superseded"] == 1
        assert result["added"] == 1
        assert store.count_entries() == 1
        assert store.get_entry(old).is_active
        assert _ingest_rows(store) == 0

    def test_run_is_logged(self, store, embedder):
        store_entries(store, [{"content": "Jim owns a kayak"}], embedder, source_file="notes.jsonl")
        assert _ingest_rows(store) == 1

    def test_batch_mode_single_embedding_call(self, store, embedder):
        result = store_entries(
            store,
            [{"content": "alpha"}, {"content": "beta"}, {"content": "alpha"}],
            embedder,
            online_dedup=False,
        )
        assert result["added"] == 2
        assert result["skipped"] == 1
        assert embedder.calls == 1
        assert sorted(e.content for e in store.active_entries()) == ["alpha", "beta"]
        assert all(e.embedding is not None for e in store.active_entries())

    def test_source_file_distinguishes_hashes(self, store, embedder):
        session = IngestSession()
        store_entries(store, [{"content": "alpha"}], embedder, online_dedup=False, source_file="a", session=session)
        result = store_entries(
            store, [{"content": "alpha"}], embedder, online_dedup=False, source_file="b", session=session
        )
        assert result["added"] == 1
