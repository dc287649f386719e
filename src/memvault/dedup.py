"""
memvault dedup -- ingest-time duplicate handling (store_entries).

Each incoming entry goes through the cheapest check that can decide it:

  1. ingest hash already seen this run, or identical content already stored
     -> SKIP (no embedding, no LLM, nothing written)
  2. embed, fetch the nearest active entries
       best >= 0.98 with the same type  -> SKIP
       best <  dedup_threshold          -> ADD
  3. ask the LLM: ADD / SKIP / UPDATE / SUPERSEDE

force=True bypasses all of it. With online dedup, every entry commits in its
own transaction; without it the whole batch is one transaction. LLM calls
happen outside any open transaction.
"""

import logging
import re
import time as _time
from typing import Any, Dict, List, Optional, Sequence, Set

from memvault.contradiction import (
    DEFAULT_AUTO_SUPERSEDE_THRESHOLD,
    RESOLUTION_AUTO_SUPERSEDED,
    SubjectIndex,
    detect_contradictions,
    extract_claim,
    resolve_conflict,
)
from memvault.embeddings import EmbeddingCache
from memvault.fingerprint import content_hash, ingest_content_hash, normalize_subject
from memvault.llm import ONLINE_DEDUP_TOOL, call_tool, log_repairs, repair_dedup_decision
from memvault.lock import warn_if_locked
from memvault.store import ENTRY_TYPES, EXPIRY_TIERS, normalize_tags

logger = logging.getLogger("memvault.dedup")

DEFAULT_DEDUP_THRESHOLD = 0.85
DEFAULT_SIMILAR_LIMIT = 20
AUTO_SKIP_THRESHOLD = 0.98
RELATED_THRESHOLD = 0.92
BATCH_JACCARD_THRESHOLD = 0.85

ONLINE_DEDUP_SYSTEM_PROMPT = """You perform online knowledge deduplication.
Given one new entry and similar existing entries, return exactly one action:
- ADD: new knowledge not already captured.
- UPDATE: merge new detail into one existing entry.
- SKIP: already captured by existing knowledge.
- SUPERSEDE: the new entry makes one existing entry obsolete or incorrect.
When uncertain between ADD and SKIP, prefer SKIP.
Newer concrete information may justify UPDATE or SUPERSEDE.
For UPDATE, SKIP and SUPERSEDE set target_id to one existing id.
For UPDATE also provide merged_content.
Call online_dedup_decision with your final decision."""


class IngestSession:
    """Per-run state threaded through store_entries calls.

    seen maps ingest hashes to the id of the entry that absorbed them (None
    in dry runs). Reuse one session across calls of the same import.
    """

    def __init__(self, subject_index: Optional[SubjectIndex] = None):
        self.seen: Dict[str, Optional[str]] = {}
        self.embedding_cache = EmbeddingCache()
        self.subject_index = subject_index
        self.llm_calls = 0
        self.embedding_calls = 0

    def embed(self, embedder, texts: Sequence[str]) -> List[List[float]]:
        missing = [t for t in texts if t not in self.embedding_cache]
        if missing:
            self.embedding_calls += 1
        return self.embedding_cache.embed(embedder, texts)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def prepare_entry(raw: Dict[str, Any], source_file: Optional[str]) -> Dict[str, Any]:
    content = (raw.get("content") or "").strip()
    if not content:
        raise ValueError("entry content must not be empty")
    entry_type = (raw.get("type") or "fact").strip().lower()
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"unknown entry type: {raw.get('type')!r}")
    expiry = (raw.get("expiry") or "temporary").strip().lower()
    if expiry not in EXPIRY_TIERS:
        raise ValueError(f"unknown expiry tier: {raw.get('expiry')!r}")
    importance = int(raw.get("importance", 5))
    if not 1 <= importance <= 10:
        raise ValueError(f"importance must be 1-10, got {importance}")
    data = dict(raw)
    data.update(
        content=content,
        type=entry_type,
        expiry=expiry,
        importance=importance,
        subject=(raw.get("subject") or "").strip(),
        tags=normalize_tags(raw.get("tags")),
        source_file=raw.get("source_file") or source_file,
    )
    return data


# ---------------------------------------------------------------------------
# Batch collapse (before storing)
# ---------------------------------------------------------------------------


def _normalize_words(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^a-z0-9\s]", " ", (text or "").lower())).strip()


def _word_trigrams(text: str) -> Set[str]:
    tokens = _normalize_words(text).split()
    if len(tokens) < 3:
        return {" ".join(tokens)}
    return {" ".join(tokens[i : i + 3]) for i in range(len(tokens) - 2)}


def _trigram_jaccard(a: Set[str], b: Set[str]) -> float:
    union = len(a | b)
    return 1.0 if union == 0 else len(a & b) / union


def _merge_pair(kept: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(kept)
    merged["tags"] = sorted(set(normalize_tags(kept.get("tags"))) | set(normalize_tags(incoming.get("tags"))))
    merged["importance"] = max(int(kept.get("importance", 5)), int(incoming.get("importance", 5)))
    if len(incoming.get("source_context") or "") > len(kept.get("source_context") or ""):
        merged["source_context"] = incoming["source_context"]
    return merged


def collapse_batch_duplicates(entries: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Collapse duplicates inside one extracted batch before it is stored.

    Exact type|subject|content matches merge first, then entries sharing
    type|subject merge when their word-trigram Jaccard is >= 0.85.
    """
    exact: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        key = f"{entry.get('type')}|{_normalize_words(entry.get('subject'))}|{_normalize_words(entry.get('content'))}"
        exact[key] = _merge_pair(exact[key], entry) if key in exact else dict(entry)

    groups: Dict[str, List[Dict[str, Any]]] = {}
    for entry in exact.values():
        group = groups.setdefault(f"{entry.get('type')}|{_normalize_words(entry.get('subject'))}", [])
        grams = _word_trigrams(entry.get("content"))
        for i, candidate in enumerate(group):
            if _trigram_jaccard(_word_trigrams(candidate.get("content")), grams) >= BATCH_JACCARD_THRESHOLD:
                group[i] = _merge_pair(candidate, entry)
                break
        else:
            group.append(entry)
    return [entry for group in groups.values() for entry in group]


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


def _candidate_prompt(entry: Dict[str, Any], candidates) -> str:
    lines = [
        "NEW entry:",
        f"- type: {entry['type']}",
        f"- subject: {entry['subject']}",
        f"- content: {entry['content']}",
        f"- importance: {entry['importance']}",
        f"- tags: {', '.join(entry['tags']) or '(none)'}",
        "",
        "SIMILAR existing entries:",
    ]
    for i, (existing, similarity) in enumerate(candidates, 1):
        lines += [
            f"Candidate {i}:",
            f"- id: {existing.id}",
            f"- similarity: {similarity:.4f}",
            f"- type: {existing.type}",
            f"- subject: {existing.subject}",
            f"- content: {existing.content}",
            f"- created_at: {existing.created_at}",
            "",
        ]
    lines.append("Return only via online_dedup_decision.")
    return "\n".join(lines)


def decide(
    entry: Dict[str, Any],
    neighbours,
    llm: Any,
    dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
    session: Optional[IngestSession] = None,
    verbose: bool = False,
) -> Dict[str, Any]:
    """Choose ADD/SKIP/UPDATE/SUPERSEDE for an embedded entry.

    neighbours is the find_similar result, best first. Returns a dict with
    action, target (Entry or None), similarity, merged_content and reason.
    """
    decision = {"action": "ADD", "target": None, "similarity": 0.0, "merged_content": None, "reason": "new entry"}
    if not neighbours:
        return decision
    top, similarity = neighbours[0]
    decision["similarity"] = similarity

    if similarity >= AUTO_SKIP_THRESHOLD and top.type == entry["type"]:
        decision.update(action="SKIP", target=top, reason="near-exact semantic duplicate")
        return decision

    candidates = [(e, s) for e, s in neighbours if s >= dedup_threshold]
    if not candidates:
        decision["reason"] = "no similar entries above dedup threshold"
        return decision

    if llm is None:
        decision.update(action="SKIP", target=top, reason="above dedup threshold (no LLM configured)")
        return decision

    if session is not None:
        session.llm_calls += 1
    args = call_tool(llm, ONLINE_DEDUP_SYSTEM_PROMPT, _candidate_prompt(entry, candidates), ONLINE_DEDUP_TOOL)
    by_id = {e.id: (e, s) for e, s in candidates}
    parsed, warnings = repair_dedup_decision(args, list(by_id))
    log_repairs(ONLINE_DEDUP_TOOL["name"], warnings, verbose)
    if parsed is None or parsed["action"] == "ADD":
        decision["reason"] = "online dedup decided ADD" if parsed else "LLM decision missing, defaulting to ADD"
        return decision

    target, target_sim = by_id[parsed["target_id"]]
    decision.update(
        action=parsed["action"],
        target=target,
        similarity=target_sim,
        merged_content=parsed["merged_content"],
        reason=parsed["reasoning"] or f"online dedup decided {parsed['action']}",
    )
    return decision


# ---------------------------------------------------------------------------
# store_entries
# ---------------------------------------------------------------------------


def _new_result() -> Dict[str, Any]:
    return {
        "added": 0,
        "updated": 0,
        "skipped": 0,
        "superseded": 0,
        "llm_dedup_calls": 0,
        "relations_created": 0,
        "conflicts_logged": 0,
        "total_entries": 0,
        "duration_ms": 0,
    }


def store_entries(
    store,
    entries: Sequence[Dict[str, Any]],
    embedder,
    llm: Any = None,
    *,
    online_dedup: bool = True,
    dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
    similar_limit: int = DEFAULT_SIMILAR_LIMIT,
    force: bool = False,
    dry_run: bool = False,
    contradiction: bool = False,
    contradiction_llm: Any = None,
    auto_supersede_threshold: float = DEFAULT_AUTO_SUPERSEDE_THRESHOLD,
    source_file: Optional[str] = None,
    session: Optional[IngestSession] = None,
    verbose: bool = False,
) -> Dict[str, Any]:
    """Store extracted entries, deduplicating against the knowledge base.

    Errors propagate; entries committed before the failure stay committed.
    """
    if not 0.0 <= dedup_threshold <= 1.0:
        raise ValueError(f"dedup_threshold must be between 0 and 1, got {dedup_threshold}")
    if not 0.0 <= auto_supersede_threshold <= 1.0:
        raise ValueError(f"auto_supersede_threshold must be between 0 and 1, got {auto_supersede_threshold}")
    start = _time.monotonic()
    warn_if_locked()
    session = session or IngestSession()
    result = _new_result()
    llm_calls_before = session.llm_calls
    prepared = [prepare_entry(e, source_file) for e in entries]

    judge = (contradiction_llm or llm) if contradiction and not dry_run else None
    if judge is not None and session.subject_index is None:
        session.subject_index = SubjectIndex()

    if online_dedup or force:
        for data in prepared:
            _store_one(store, data, embedder, llm, judge, session, result,
                       online_dedup=online_dedup and not force, force=force,
                       dedup_threshold=dedup_threshold, similar_limit=similar_limit,
                       dry_run=dry_run, verbose=verbose,
                       auto_supersede_threshold=auto_supersede_threshold)
    else:
        _store_batch(store, prepared, embedder, session, result, dry_run=dry_run)

    result["llm_dedup_calls"] = session.llm_calls - llm_calls_before
    result["total_entries"] = store.count_active()
    result["duration_ms"] = int((_time.monotonic() - start) * 1000)
    if not dry_run:
        with store.transaction():
            store.log_ingest(source_file, result)
    logger.info(
        "store_entries: %d added, %d updated, %d skipped, %d superseded (%d LLM calls, %dms)%s",
        result["added"], result["updated"], result["skipped"], result["superseded"],
        result["llm_dedup_calls"], result["duration_ms"], " [dry run]" if dry_run else "",
    )
    return result


def _hash_skip(store, data: Dict[str, Any], session: IngestSession) -> Optional[str]:
    """Return a reason when data is an exact duplicate.

    Nothing is written, so replaying the same input leaves the store unchanged.
    """
    digest = data["_ingest_hash"]
    if digest in session.seen:
        return "duplicate within this ingest run"
    existing = store.find_by_content_hash(content_hash(data["content"]))
    if existing is None:
        return None
    session.seen[digest] = existing.id
    return "identical content already stored"


def _store_one(
    store,
    data: Dict[str, Any],
    embedder,
    llm: Any,
    judge: Any,
    session: IngestSession,
    result: Dict[str, Any],
    *,
    online_dedup: bool,
    force: bool,
    dedup_threshold: float,
    similar_limit: int,
    dry_run: bool,
    verbose: bool,
    auto_supersede_threshold: float = DEFAULT_AUTO_SUPERSEDE_THRESHOLD,
) -> None:
    data["_ingest_hash"] = ingest_content_hash(data["content"], data.get("source_file"))
    if not force:
        reason = _hash_skip(store, data, session)
        if reason:
            logger.debug("SKIP %r: %s", data["content"][:60], reason)
            result["skipped"] += 1
            return

    embedding = session.embed(embedder, [data["content"]])[0]
    neighbours = store.find_similar(embedding, limit=similar_limit) if online_dedup else []
    if online_dedup:
        decision = decide(data, neighbours, llm, dedup_threshold, session, verbose)
    else:
        decision = {"action": "ADD", "target": None, "similarity": 0.0, "merged_content": None, "reason": "force"}
    action, target = decision["action"], decision["target"]
    logger.debug("%s %r (%.3f): %s", action, data["content"][:60], decision["similarity"], decision["reason"])

    if action == "SKIP":
        if not dry_run:
            with store.transaction():
                store.bump_confirmations(target.id)
        session.seen[data["_ingest_hash"]] = None if dry_run else target.id
        result["skipped"] += 1
        return

    if action == "UPDATE":
        merged = decision["merged_content"]
        if not dry_run:
            merged_embedding = session.embed(embedder, [merged])[0]
            with store.transaction():
                store.update_content(target.id, merged, merged_embedding)
        session.seen[data["_ingest_hash"]] = None if dry_run else target.id
        result["updated"] += 1
        return

    claim = None
    if judge is not None and action == "ADD":
        hints = session.subject_index.entities() if session.subject_index else None
        claim = extract_claim(judge, data["content"], data["type"], data["subject"], hints, verbose)
        if claim is not None:
            data.update(claim.to_fields())

    if dry_run:
        session.seen[data["_ingest_hash"]] = None
        result["added" if action == "ADD" else "superseded"] += 1
        return

    record = {k: v for k, v in data.items() if not k.startswith("_")}
    with store.transaction():
        new_id = store.insert_entry(record, embedding)
        if action == "SUPERSEDE":
            store.mark_superseded(target.id, new_id)
            store.add_relation(new_id, target.id, "supersedes")
            result["relations_created"] += 1
        elif neighbours:
            related, similarity = neighbours[0]
            if (
                similarity >= RELATED_THRESHOLD
                and related.type != data["type"]
                and normalize_subject(related.subject) == normalize_subject(data["subject"])
            ):
                store.add_relation(new_id, related.id, "related")
                result["relations_created"] += 1
    session.seen[data["_ingest_hash"]] = new_id

    if session.subject_index is not None:
        if action == "SUPERSEDE":
            session.subject_index.remove(target.subject_key, target.id)
        session.subject_index.add(record.get("subject_key"), new_id)

    if action == "SUPERSEDE":
        result["superseded"] += 1
        return
    result["added"] += 1

    if judge is not None:
        _check_contradictions(store, new_id, record, embedding, judge, session, result, verbose,
                              auto_supersede_threshold)


def _check_contradictions(store, new_id, record, embedding, judge, session, result, verbose,
                          auto_supersede_threshold=DEFAULT_AUTO_SUPERSEDE_THRESHOLD) -> None:
    conflicts = detect_contradictions(
        store, record, embedding, judge, session.subject_index, exclude_ids={new_id}, verbose=verbose
    )
    if not conflicts:
        return
    with store.transaction():
        for conflict in conflicts:
            resolution = resolve_conflict(
                store, new_id, record, conflict, session.subject_index, auto_supersede_threshold
            )
            if resolution is None:
                continue
            result["conflicts_logged"] += 1
            if resolution == RESOLUTION_AUTO_SUPERSEDED:
                result["relations_created"] += 1
            logger.info(
                "Conflict %s: %s vs %s (%s, %.2f)",
                resolution, new_id, conflict["entry"].id,
                conflict["result"]["relation"], conflict["result"]["confidence"],
            )


def _store_batch(store, prepared, embedder, session: IngestSession, result: Dict[str, Any], dry_run: bool) -> None:
    """Dedup-disabled path: skip exact repeats, embed once, one transaction."""
    pending = []
    for data in prepared:
        data["_ingest_hash"] = ingest_content_hash(data["content"], data.get("source_file"))
        if data["_ingest_hash"] in session.seen:
            result["skipped"] += 1
            continue
        session.seen[data["_ingest_hash"]] = None
        pending.append(data)
    if not pending:
        return
    result["added"] += len(pending)
    if dry_run:
        return
    embeddings = session.embed(embedder, [d["content"] for d in pending])
    with store.transaction():
        for data, embedding in zip(pending, embeddings):
            record = {k: v for k, v in data.items() if not k.startswith("_")}
            session.seen[data["_ingest_hash"]] = store.insert_entry(record, embedding)
