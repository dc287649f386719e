"""
memvault cluster -- groups of active entries that encode overlapping knowledge.

build_clusters links two entries when

  - same type and cosine >= sim_threshold
  - same normalized subject and cosine >= 0.89 (any type)
  - cosine in the loose band [loose_threshold, sim_threshold) and either the
    subjects match or an LLM batch check says they are the same knowledge

then partitions by union-find root and validates each group: oversized
groups keep their best-connected members, and the member with less support
on the worst pair is evicted until every pair clears the diameter floor.
"""

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from memvault.fingerprint import UnionFind, cosine_similarity, normalize_subject
from memvault.llm import BATCH_DEDUP_TOOL, call_tool, log_repairs, repair_batch_dedup
from memvault.store import parse_dt

logger = logging.getLogger("memvault.cluster")

DEFAULT_SIMILARITY_THRESHOLD = 0.82
DEFAULT_LOOSE_THRESHOLD = 0.65
CROSS_TYPE_SUBJECT_THRESHOLD = 0.89
DEFAULT_MIN_CLUSTER = 2
DEFAULT_MAX_CLUSTER_SIZE = 12
DEFAULT_IDEMPOTENCY_DAYS = 7
DEFAULT_NEIGHBOUR_LIMIT = 20
DIAMETER_MARGIN = 0.02
MAX_ACTIVE_EMBEDDED_ENTRIES = 20000
LLM_BATCH_SIZE = 10
LLM_CONCURRENCY = 5
_KNN_BLOCK_ROWS = 512

BATCH_DEDUP_SYSTEM_PROMPT = """You are a deduplication assistant for knowledge entries.
For each numbered pair, decide if both entries express the same knowledge.
Call batch_dedup_check once with your results."""


def cluster_fingerprint(entry_ids: Sequence[str]) -> str:
    """Order-independent identity of a cluster's membership."""
    return hashlib.sha256("|".join(sorted(entry_ids)).encode("utf-8")).hexdigest()


class Cluster:
    """Validated group of active entries; in-memory only."""

    __slots__ = ("entries", "used_loose_union")

    def __init__(self, entries: List, used_loose_union: bool = False):
        self.entries = entries
        self.used_loose_union = used_loose_union

    @property
    def ids(self) -> List[str]:
        return [e.id for e in self.entries]

    @property
    def fingerprint(self) -> str:
        return cluster_fingerprint(self.ids)

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"Cluster(size={len(self.entries)}, ids={self.ids})"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_cluster(group: Sequence, max_size: int, diameter_floor: float) -> List:
    """Trim a group to at most max_size members whose pairwise cosine is >= diameter_floor."""
    current = list(group)
    if len(current) > max_size:
        def avg_sim(entry) -> float:
            others = [o for o in current if o.id != entry.id]
            return sum(cosine_similarity(entry.embedding, o.embedding) for o in others) / len(others)

        scored = sorted(current, key=avg_sim, reverse=True)
        current = scored[:max_size]

    for _ in range(len(current)):
        if len(current) < 2:
            break
        worst_sim = 1.0
        worst_id = None
        for i in range(len(current)):
            for j in range(i + 1, len(current)):
                sim = cosine_similarity(current[i].embedding, current[j].embedding)
                if sim < worst_sim:
                    worst_sim = sim
                    a, b = current[i], current[j]
                    worst_id = a.id if a.support <= b.support else b.id
        if worst_sim >= diameter_floor or worst_id is None:
            break
        current = [e for e in current if e.id != worst_id]
    return current


# ---------------------------------------------------------------------------
# Candidate pool
# ---------------------------------------------------------------------------


def _recently_consolidated(entry, idempotency_days: float, now: datetime) -> bool:
    if entry.merged_from <= 0 or not entry.consolidated_at:
        return False
    consolidated = parse_dt(entry.consolidated_at)
    if consolidated is None:
        return False
    age_days = (now - consolidated).total_seconds() / 86400.0
    return 0 <= age_days < idempotency_days


def candidate_pool(
    store,
    type_filter: Optional[str] = None,
    idempotency_days: float = DEFAULT_IDEMPOTENCY_DAYS,
    entry_ids: Optional[Sequence[str]] = None,
) -> List:
    """Active embedded entries eligible for clustering."""
    now = datetime.now(timezone.utc)
    entries = store.active_entries(types=[type_filter] if type_filter else None, embedded_only=True)
    if entry_ids is not None:
        wanted = set(entry_ids)
        entries = [e for e in entries if e.id in wanted]
    return [e for e in entries if not _recently_consolidated(e, idempotency_days, now)]


def _nearest_neighbours(vectors: np.ndarray, limit: int) -> List[List[Tuple[int, float]]]:
    """Top-`limit` cosine neighbours of every row (self excluded), computed in row blocks."""
    n = len(vectors)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    unit = np.divide(vectors, norms, out=np.zeros_like(vectors), where=norms > 0)
    k = min(limit, n - 1)
    out: List[List[Tuple[int, float]]] = []
    for start in range(0, n, _KNN_BLOCK_ROWS):
        block = unit[start : start + _KNN_BLOCK_ROWS] @ unit.T
        for offset, row in enumerate(block):
            i = start + offset
            row[i] = -np.inf
            if k <= 0:
                out.append([])
                continue
            top = np.argpartition(-row, k - 1)[:k]
            top = top[np.argsort(-row[top])]
            out.append([(int(j), float(row[j])) for j in top])
    return out


# ---------------------------------------------------------------------------
# LLM loose-band check
# ---------------------------------------------------------------------------


def _check_pair_batch(llm: Any, pairs: List[Tuple[Any, Any]], verbose: bool) -> Dict[int, bool]:
    blocks = []
    for i, (a, b) in enumerate(pairs, 1):
        blocks.append(f"Pair {i}:\n  Entry A: {a.content}\n  Entry B: {b.content}")
    args = call_tool(llm, BATCH_DEDUP_SYSTEM_PROMPT, "\n\n".join(blocks), BATCH_DEDUP_TOOL)
    parsed, warnings = repair_batch_dedup(args, len(pairs))
    log_repairs(BATCH_DEDUP_TOOL["name"], warnings, verbose)
    if parsed is None:
        return {i: False for i in range(len(pairs))}
    return parsed["verdicts"]


def llm_same_knowledge(llm: Any, pairs: List[Tuple[Any, Any]], verbose: bool = False) -> Tuple[List[bool], int]:
    """Judge pairs in batches of 10, 5 batches in flight. Returns (verdicts, calls)."""
    batches = [pairs[i : i + LLM_BATCH_SIZE] for i in range(0, len(pairs), LLM_BATCH_SIZE)]
    if not batches:
        return [], 0
    with ThreadPoolExecutor(max_workers=LLM_CONCURRENCY, thread_name_prefix="cluster-dedup") as pool:
        results = list(pool.map(lambda batch: _check_pair_batch(llm, batch, verbose), batches))
    verdicts: List[bool] = []
    for batch, result in zip(batches, results):
        verdicts.extend(result.get(i, False) for i in range(len(batch)))
    return verdicts, len(batches)


# ---------------------------------------------------------------------------
# build_clusters
# ---------------------------------------------------------------------------


def build_clusters(
    store,
    *,
    sim_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    loose_threshold: float = DEFAULT_LOOSE_THRESHOLD,
    min_cluster: int = DEFAULT_MIN_CLUSTER,
    max_cluster_size: int = DEFAULT_MAX_CLUSTER_SIZE,
    type_filter: Optional[str] = None,
    idempotency_days: float = DEFAULT_IDEMPOTENCY_DAYS,
    neighbour_limit: int = DEFAULT_NEIGHBOUR_LIMIT,
    entry_ids: Optional[Sequence[str]] = None,
    llm: Any = None,
    verbose: bool = False,
) -> Tuple[List[Cluster], Dict[str, int]]:
    """Find merge candidates among active embedded entries.

    Returns (clusters, stats) with stats keys candidates, llm_dedup_calls and
    llm_dedup_matches.
    """
    neighbour_limit = max(2, neighbour_limit)
    min_cluster = max(2, min_cluster)
    stats = {"candidates": 0, "llm_dedup_calls": 0, "llm_dedup_matches": 0}

    candidates = candidate_pool(store, type_filter, idempotency_days, entry_ids)
    dim = store.embedding_dim
    candidates = [e for e in candidates if e.embedding and len(e.embedding) == dim]
    stats["candidates"] = len(candidates)
    if len(candidates) > MAX_ACTIVE_EMBEDDED_ENTRIES:
        logger.warning(
            "%d active embedded entries exceed %d; clustering may be slow",
            len(candidates), MAX_ACTIVE_EMBEDDED_ENTRIES,
        )
    if len(candidates) < min_cluster:
        return [], stats

    vectors = np.asarray([e.embedding for e in candidates], dtype=np.float32)
    subjects = [normalize_subject(e.subject) for e in candidates]
    uf = UnionFind(len(candidates))
    loose_pairs: Set[Tuple[int, int]] = set()
    llm_queue: List[Tuple[int, int]] = []
    seen_pairs: Set[Tuple[int, int]] = set()

    for i, neighbours in enumerate(_nearest_neighbours(vectors, neighbour_limit)):
        for j, similarity in neighbours:
            pair = (min(i, j), max(i, j))
            if pair in seen_pairs:
                continue
            seen_pairs.add(pair)
            same_type = candidates[i].type == candidates[j].type
            same_subject = subjects[i] == subjects[j]
            if (same_type and similarity >= sim_threshold) or (
                same_subject and similarity >= CROSS_TYPE_SUBJECT_THRESHOLD
            ):
                uf.union(i, j)
                continue
            if not loose_threshold <= similarity < sim_threshold:
                continue
            if same_subject:
                loose_pairs.add(pair)
                uf.union(i, j)
            elif llm is not None:
                llm_queue.append(pair)

    if llm_queue:
        verdicts, calls = llm_same_knowledge(
            llm, [(candidates[i], candidates[j]) for i, j in llm_queue], verbose
        )
        stats["llm_dedup_calls"] = calls
        for (i, j), same in zip(llm_queue, verdicts):
            if same:
                stats["llm_dedup_matches"] += 1
                loose_pairs.add((i, j))
                uf.union(i, j)
        logger.info("LLM checked %d loose pairs (%d matched, %d calls)",
                    len(llm_queue), stats["llm_dedup_matches"], calls)

    tight_floor = max(0.0, sim_threshold - DIAMETER_MARGIN)
    loose_floor = max(0.0, min(sim_threshold, loose_threshold) - DIAMETER_MARGIN)
    clusters: List[Cluster] = []
    for members in uf.groups().values():
        if len(members) < min_cluster:
            continue
        member_set = set(members)
        used_loose = any(a in member_set and b in member_set for a, b in loose_pairs)
        validated = validate_cluster(
            [candidates[i] for i in sorted(members)],
            max_cluster_size,
            loose_floor if used_loose else tight_floor,
        )
        if len(validated) >= min_cluster:
            clusters.append(Cluster(validated, used_loose))

    if verbose:
        logger.info(
            "candidates=%d clusters=%d sim=%.2f loose=%.2f neighbours=%d llm_calls=%d",
            len(candidates), len(clusters), sim_threshold, loose_threshold,
            neighbour_limit, stats["llm_dedup_calls"],
        )
    return clusters, stats
