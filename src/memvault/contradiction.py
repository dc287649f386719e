"""
memvault contradiction -- claim extraction, conflict judging and the conflict log.

Runs after an entry is ADDed (never for SKIP/UPDATE) when a contradiction
LLM is configured:

1. extract_claim turns the entry into entity/attribute/predicate/object
2. candidates come from the SubjectIndex (same subject key, then fuzzy and
   cross-entity matches), topped up with embedding neighbours >= 0.55
3. classify_conflict judges each pair: supersedes, contradicts, coexists
   or unrelated
4. resolve_conflict applies the outcome:
     events -> coexist, never mutated
     confident supersedes of a fact/preference that is no more important
       than the new entry -> candidate superseded, logged auto-superseded
     contradicts, low confidence, decision/lesson targets, or a confident
       supersedes blocked by importance -> nothing mutated, logged pending
     everything else -> logged coexist

A failing judge reads as "unrelated" with confidence 0, so the new entry
always stays stored.
"""

import logging
import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from memvault.llm import (
    CLAIM_TOOL,
    CONFLICT_TOOL,
    call_tool,
    log_repairs,
    repair_claim,
    repair_conflict,
)

logger = logging.getLogger("memvault.contradiction")

DEFAULT_SIMILARITY_THRESHOLD = 0.55
DEFAULT_MAX_CANDIDATES = 5
FUZZY_ATTRIBUTE_THRESHOLD = 0.6
_JUDGE_CONCURRENCY = 5

DEFAULT_AUTO_SUPERSEDE_THRESHOLD = 0.85
REVIEW_CONFIDENCE_CEILING = 0.75
AUTO_SUPERSEDE_TYPES = ("fact", "preference")
REVIEW_TYPES = ("decision", "lesson")

RESOLUTION_AUTO_SUPERSEDED = "auto-superseded"
RESOLUTION_PENDING = "pending"
RESOLUTION_COEXIST = "coexist"
USER_RESOLUTIONS = ("keep-new", "keep-old", "keep-both")

_ENTITY_ALIASES = {
    "the user": "user",
    "current user": "user",
    "the_user": "user",
    "current_user": "user",
    "i": "user",
    "me": "user",
    "myself": "user",
}


CLAIM_SYSTEM_PROMPT = """You extract structured claims from knowledge entries.
A claim captures the core assertion as: entity + attribute + predicate + object.

Rules:
- subject_entity: lowercase, a single root noun (alex, acme, paleo), never a phrase.
  If the entry is about Alex's pet, the entity is "alex" and the attribute is "pet".
- Use the "Entry subject" field as a hint for which entity the entry is about.
- subject_attribute: snake_case, the specific aspect (weight, package_manager).
- predicate: simple verb (is, prefers, uses, has, works_at, weighs, lives_in).
- object: the value (180 lbs, pnpm, paleo).
- confidence: 0-1, how well this single claim captures the entry.

A short, clear factual statement is always a claim. Set no_claim to true only
for entries with several unrelated facts, vague opinions with no specific
value, or fragments with no assertion.

Examples:
  "Alex prefers pnpm over npm" -> alex / package_manager / prefers / pnpm
  "Alex weighs 180 lbs after losing 50 lbs" -> alex / weight / weighs / 180 lbs
  "Discussed hiring, budget and the migration timeline" -> no_claim

Call extract_claim with your final answer."""

CONFLICT_SYSTEM_PROMPT = """You compare two knowledge entries to determine their relationship.

Classify as one of:
- "supersedes": the new entry updates or replaces the existing entry. Same topic,
  newer or more accurate information (weight 200 -> 180, editor vim -> neovim).
- "contradicts": the entries make conflicting claims that cannot both be true
  and it is unclear which is correct.
- "coexists": related topics where both can be true ("knows Rust" + "knows Go").
- "unrelated": different topics despite surface similarity.

Rules:
- Same specific attribute of the same entity with a different value is usually
  "supersedes" (newer wins).
- Skills, languages, tools, hobbies and values are additive: use "coexists".
- Single-valued attributes (weight, location, preferred editor, diet) use "supersedes".
- Prefer "supersedes" over "contradicts" when one entry is clearly newer.
- Prefer "coexists" over "contradicts" when both could be valid.

Call classify_conflict with your assessment."""


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


class Claim:
    """Structured assertion extracted from one entry."""

    __slots__ = ("entity", "attribute", "predicate", "object", "confidence")

    def __init__(self, entity: str, attribute: str, predicate: str, object: str, confidence: float):
        self.entity = entity
        self.attribute = attribute
        self.predicate = predicate
        self.object = object
        self.confidence = confidence

    @property
    def subject_key(self) -> str:
        return f"{self.entity}/{self.attribute}"

    def to_fields(self) -> Dict[str, Any]:
        """Entry columns carrying this claim."""
        return {
            "subject_entity": self.entity,
            "subject_attribute": self.attribute,
            "subject_key": self.subject_key,
            "claim_predicate": self.predicate,
            "claim_object": self.object,
            "claim_confidence": self.confidence,
        }

    def __repr__(self) -> str:
        return f"Claim({self.subject_key} {self.predicate} {self.object!r} @{self.confidence:.2f})"


def normalize_entity(value: str) -> str:
    entity = re.sub(r"\s+", " ", value.strip().lower().replace("/", "-"))
    return _ENTITY_ALIASES.get(entity, entity)


def normalize_attribute(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.strip().lower()).strip("_")


def normalize_predicate(value: str) -> str:
    return re.sub(r"\s+", "_", value.strip().lower())


def _claim_prompt(entity_hints: Optional[Iterable[str]]) -> str:
    hints = sorted({normalize_entity(h) for h in (entity_hints or ()) if h and h.strip()})
    if not hints:
        return CLAIM_SYSTEM_PROMPT
    return (
        CLAIM_SYSTEM_PROMPT
        + "\n\nKnown entities in the knowledge base: "
        + ", ".join(hints)
        + "\nUse one of these entities if the entry is about any of them."
    )


def extract_claim(
    llm: Any,
    content: str,
    entry_type: str,
    subject: str,
    entity_hints: Optional[Iterable[str]] = None,
    verbose: bool = False,
) -> Optional[Claim]:
    """Ask the LLM for one structured claim. None on no_claim or any failure."""
    user_prompt = f"Entry type: {entry_type}\nEntry subject: {subject}\nEntry content: {content}"
    args = call_tool(llm, _claim_prompt(entity_hints), user_prompt, CLAIM_TOOL)
    parsed, warnings = repair_claim(args)
    log_repairs(CLAIM_TOOL["name"], warnings, verbose)
    if parsed is None:
        return None
    entity = normalize_entity(parsed["subject_entity"])
    attribute = normalize_attribute(parsed["subject_attribute"])
    predicate = normalize_predicate(parsed["predicate"])
    if not entity or not attribute or not predicate:
        return None
    return Claim(entity, attribute, predicate, parsed["object"], parsed["confidence"])


# ---------------------------------------------------------------------------
# Subject index
# ---------------------------------------------------------------------------


def parse_subject_key(subject_key: str) -> Optional[tuple]:
    entity, sep, attribute = (subject_key or "").strip().lower().partition("/")
    entity, attribute = entity.strip(), attribute.strip()
    if not sep or not entity or not attribute:
        return None
    return entity, attribute


def _attribute_tokens(attribute: str) -> Set[str]:
    tokens = set()
    for token in attribute.split("_"):
        token = token.strip().lower()
        if token in ("", "change", "changes", "ownership"):
            continue
        if token.endswith("ary") and len(token) > 3:
            token = token[:-3]
        tokens.add(token)
    return tokens


def attribute_overlap(a: str, b: str) -> float:
    """Jaccard overlap of snake_case attribute tokens."""
    ta, tb = _attribute_tokens(a), _attribute_tokens(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


class SubjectIndex:
    """In-memory subject_key -> active entry ids, kept in sync by the write path."""

    def __init__(self):
        self._index: Dict[str, Set[str]] = {}
        self.initialized = False

    def rebuild(self, store) -> None:
        index: Dict[str, Set[str]] = {}
        rows = store.execute(
            "SELECT id, subject_key FROM entries WHERE subject_key IS NOT NULL AND status = 'active'"
        ).fetchall()
        for entry_id, key in rows:
            if entry_id and key:
                index.setdefault(key, set()).add(entry_id)
        self._index = index
        self.initialized = True

    def ensure_initialized(self, store) -> None:
        if not self.initialized:
            self.rebuild(store)

    def lookup(self, subject_key: str) -> List[str]:
        return sorted(self._index.get(subject_key, ()))

    def fuzzy_lookup(self, subject_key: str, threshold: float = FUZZY_ATTRIBUTE_THRESHOLD) -> List[str]:
        """Same entity, attribute tokens overlapping at or above threshold."""
        parsed = parse_subject_key(subject_key)
        if parsed is None:
            return []
        matches: Set[str] = set()
        for key, ids in self._index.items():
            indexed = parse_subject_key(key)
            if indexed is None or indexed[0] != parsed[0]:
                continue
            if attribute_overlap(parsed[1], indexed[1]) >= threshold:
                matches.update(ids)
        return sorted(matches)

    def cross_entity_lookup(self, subject_key: str) -> List[str]:
        """Same attribute on a different entity."""
        parsed = parse_subject_key(subject_key)
        if parsed is None:
            return []
        matches: Set[str] = set()
        for key, ids in self._index.items():
            indexed = parse_subject_key(key)
            if indexed is None or indexed[1] != parsed[1] or indexed[0] == parsed[0]:
                continue
            matches.update(ids)
        return sorted(matches)

    def entities(self) -> List[str]:
        found = {parse_subject_key(k) for k in self._index}
        return sorted({p[0] for p in found if p})

    def add(self, subject_key: Optional[str], entry_id: str) -> None:
        if subject_key:
            self._index.setdefault(subject_key, set()).add(entry_id)

    def remove(self, subject_key: Optional[str], entry_id: str) -> None:
        ids = self._index.get(subject_key or "")
        if ids is None:
            return
        ids.discard(entry_id)
        if not ids:
            del self._index[subject_key]

    def stats(self) -> Dict[str, int]:
        return {"keys": len(self._index), "entries": sum(len(ids) for ids in self._index.values())}

    def clear(self) -> None:
        self._index.clear()
        self.initialized = False


# ---------------------------------------------------------------------------
# Judge
# ---------------------------------------------------------------------------


def _llm_error_result() -> Dict[str, Any]:
    return {"relation": "unrelated", "confidence": 0.0, "explanation": "LLM error"}


def classify_conflict(llm: Any, new_entry: Dict[str, Any], existing, verbose: bool = False) -> Dict[str, Any]:
    """Judge how new_entry relates to an existing Entry."""
    user_prompt = (
        f"EXISTING entry (stored {existing.created_at}):\n"
        f"Type: {existing.type}\nSubject: {existing.subject}\nContent: {existing.content}\n\n"
        f"NEW entry:\nType: {new_entry.get('type')}\nSubject: {new_entry.get('subject')}\n"
        f"Content: {new_entry.get('content')}"
    )
    args = call_tool(llm, CONFLICT_SYSTEM_PROMPT, user_prompt, CONFLICT_TOOL)
    parsed, warnings = repair_conflict(args)
    log_repairs(CONFLICT_TOOL["name"], warnings, verbose)
    if parsed is None:
        logger.warning("Contradiction judge returned no usable answer for %s", existing.id)
        return _llm_error_result()
    return parsed


def find_conflict_candidates(
    store,
    new_entry: Dict[str, Any],
    embedding: Optional[Sequence[float]],
    subject_index: Optional[SubjectIndex] = None,
    exclude_ids: Optional[Iterable[str]] = None,
    max_candidates: int = DEFAULT_MAX_CANDIDATES,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> List:
    """Active entries worth judging against new_entry, newest subject matches first."""
    max_candidates = max(1, max_candidates)
    exclude = set(exclude_ids or ())
    seen: Set[str] = set(exclude)
    candidates = []

    def take(entries) -> None:
        for e in sorted(entries, key=lambda e: e.created, reverse=True):
            if len(candidates) >= max_candidates:
                return
            if e.id not in seen:
                seen.add(e.id)
                candidates.append(e)

    subject_key = (new_entry.get("subject_key") or "").strip()
    if subject_key:
        if subject_index is not None:
            subject_index.ensure_initialized(store)
            ids = subject_index.lookup(subject_key) or subject_index.fuzzy_lookup(subject_key)
            take(store.get_entries(ids, active_only=True))
            if len(candidates) < max_candidates:
                take(store.get_entries(subject_index.cross_entity_lookup(subject_key), active_only=True))
        else:
            take(store.entries_by_subject_key(subject_key))

    if embedding and len(candidates) < max_candidates:
        for entry, similarity in store.find_similar(embedding, limit=max_candidates, exclude_ids=seen):
            if similarity >= similarity_threshold and len(candidates) < max_candidates:
                seen.add(entry.id)
                candidates.append(entry)
    return candidates


def detect_contradictions(
    store,
    new_entry: Dict[str, Any],
    embedding: Optional[Sequence[float]],
    llm: Any,
    subject_index: Optional[SubjectIndex] = None,
    exclude_ids: Optional[Iterable[str]] = None,
    max_candidates: int = DEFAULT_MAX_CANDIDATES,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    verbose: bool = False,
) -> List[Dict[str, Any]]:
    """Judge new_entry against its candidates; unrelated pairs are dropped.

    Returns dicts with the candidate ``entry`` and the judge ``result``.
    """
    candidates = find_conflict_candidates(
        store, new_entry, embedding, subject_index, exclude_ids, max_candidates, similarity_threshold
    )
    if not candidates:
        return []
    workers = min(_JUDGE_CONCURRENCY, len(candidates))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="conflict-judge") as pool:
        results = list(pool.map(lambda e: classify_conflict(llm, new_entry, e, verbose), candidates))
    return [
        {"entry": entry, "result": result}
        for entry, result in zip(candidates, results)
        if result["relation"] != "unrelated"
    ]


def resolve_conflict(
    store,
    new_entry_id: str,
    new_entry: Dict[str, Any],
    conflict: Dict[str, Any],
    subject_index: Optional[SubjectIndex] = None,
    auto_supersede_threshold: float = DEFAULT_AUTO_SUPERSEDE_THRESHOLD,
) -> Optional[str]:
    """Apply one detected conflict. Returns the logged resolution, or None.

    events       -> coexist, never mutated
    supersedes   -> auto-superseded only above auto_supersede_threshold, for a
                    fact/preference target no more important than the new entry
    contradicts, confidence <= 0.75, decision/lesson targets, or a confident
    supersession blocked by importance -> pending
    anything else -> coexist

    Callers own the transaction.
    """
    existing = conflict["entry"]
    result = conflict["result"]
    relation = result["relation"]
    confidence = result["confidence"]

    current = store.get_entry(existing.id)
    if current is None or not current.is_active:
        return None

    if current.type == "event":
        resolution = RESOLUTION_COEXIST
    else:
        temporal = current.type in AUTO_SUPERSEDE_TYPES
        confident = relation == "supersedes" and confidence > auto_supersede_threshold and temporal
        new_importance = int(new_entry.get("importance", 5))
        if confident and new_importance >= current.importance:
            store.mark_superseded(current.id, new_entry_id)
            store.add_relation(new_entry_id, current.id, "supersedes")
            if subject_index is not None:
                subject_index.remove(current.subject_key, current.id)
            resolution = RESOLUTION_AUTO_SUPERSEDED
        elif (
            relation == "contradicts"
            or confidence <= REVIEW_CONFIDENCE_CEILING
            or current.type in REVIEW_TYPES
            or confident
        ):
            resolution = RESOLUTION_PENDING
        else:
            resolution = RESOLUTION_COEXIST

    log_conflict(store, new_entry_id, current.id, relation, confidence, resolution)
    return resolution


# ---------------------------------------------------------------------------
# Conflict log
# ---------------------------------------------------------------------------


def log_conflict(store, entry_a: str, entry_b: str, relation: str, confidence: float, resolution: str) -> str:
    conflict_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc).isoformat()
    resolved_at = None if resolution == RESOLUTION_PENDING else now
    store.execute(
        """INSERT INTO conflict_log (id, entry_a, entry_b, relation, confidence, resolution, resolved_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (conflict_id, entry_a, entry_b, relation, confidence, resolution, resolved_at, now),
    )
    return conflict_id


def _conflict_row(row) -> Dict[str, Any]:
    keys = ("id", "entry_a", "entry_b", "relation", "confidence", "resolution", "resolved_at", "created_at")
    return dict(zip(keys, row))


def pending_conflicts(store) -> List[Dict[str, Any]]:
    rows = store.execute(
        """SELECT id, entry_a, entry_b, relation, confidence, resolution, resolved_at, created_at
           FROM conflict_log WHERE resolution = 'pending' ORDER BY created_at"""
    ).fetchall()
    return [_conflict_row(r) for r in rows]


def conflicts_for_entry(store, entry_id: str) -> List[Dict[str, Any]]:
    rows = store.execute(
        """SELECT id, entry_a, entry_b, relation, confidence, resolution, resolved_at, created_at
           FROM conflict_log WHERE entry_a = ? OR entry_b = ? ORDER BY created_at""",
        (entry_id, entry_id),
    ).fetchall()
    return [_conflict_row(r) for r in rows]


def resolve_conflict_log(store, conflict_id: str, resolution: str) -> bool:
    """Record a user decision on a pending conflict. False when no row matched."""
    if resolution not in USER_RESOLUTIONS:
        raise ValueError(f"resolution must be one of {USER_RESOLUTIONS}, got {resolution!r}")
    cur = store.execute(
        "UPDATE conflict_log SET resolution = ?, resolved_at = ? WHERE id = ?",
        (resolution, datetime.now(timezone.utc).isoformat(), conflict_id),
    )
    return bool(cur.rowcount)


def conflict_stats(store) -> Dict[str, int]:
    row = store.execute(
        """SELECT COUNT(*),
                  SUM(CASE WHEN resolution = 'pending' THEN 1 ELSE 0 END),
                  SUM(CASE WHEN resolution IN ('auto-superseded', 'coexist') THEN 1 ELSE 0 END),
                  SUM(CASE WHEN resolution IN ('keep-new', 'keep-old', 'keep-both') THEN 1 ELSE 0 END)
           FROM conflict_log"""
    ).fetchone()
    total, pending, auto, user = (v or 0 for v in row)
    return {"total": total, "pending": pending, "auto_resolved": auto, "user_resolved": user}
