"""
memvault orchestrator -- full consolidation run with batch limits and resume.

run_consolidation:
  rules    consolidate_rules (backup, expire, near-exact merge, orphan cleanup)
  phase 1  per type: cluster at sim (0.82), max size 8, merge each cluster
  phase 2  only without a type filter: all types at max(sim, 0.88), max size 6
  phase 3  re-cluster the canonical entries created by this run with
           idempotency_days=0; skipped when none were created or the batch
           cap was hit

Every processed cluster is recorded by fingerprint in
$MEMVAULT_HOME/consolidation-checkpoint.json. A later run against the same
database with the same options skips those fingerprints. Reaching the batch
cap stops mid-phase and leaves the checkpoint in place (progress.partial).
A clean run deletes the checkpoint, then rebuilds the vector index and
checkpoints the WAL exactly once.
"""

import hashlib
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from memvault.cluster import DEFAULT_IDEMPOTENCY_DAYS, DEFAULT_MIN_CLUSTER, build_clusters
from memvault.crypto import atomic_write_json, memvault_home, read_json
from memvault.lock import consolidation_lock
from memvault.merge import DRY_RUN_ID, merge_cluster
from memvault.rules import consolidate_rules
from memvault.store import ENTRY_TYPES
from memvault.verify import ReviewQueue

logger = logging.getLogger("memvault.orchestrator")

CHECKPOINT_FILENAME = "consolidation-checkpoint.json"

PHASE1_TYPES = ENTRY_TYPES
PHASE1_SIM_THRESHOLD = 0.82
PHASE2_SIM_THRESHOLD = 0.88
PHASE1_MAX_CLUSTER_SIZE = 8
PHASE2_MAX_CLUSTER_SIZE = 6

_STAT_KEYS = (
    "entries",
    "clusters_found",
    "skipped_by_resume",
    "skipped_stale",
    "clusters_processed",
    "clusters_merged",
    "merges_flagged",
    "llm_calls",
    "entries_consolidated_from",
    "canonical_entries_created",
)


def checkpoint_path() -> Path:
    return memvault_home() / CHECKPOINT_FILENAME


def _hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def db_path_signature(db_path) -> str:
    return _hash(str(Path(db_path).resolve()))


def options_signature(options: Dict[str, Any]) -> str:
    """Stable hash of the options that change which clusters a run sees."""
    relevant = {
        "dry_run": bool(options.get("dry_run")),
        "rules_only": bool(options.get("rules_only")),
        "min_cluster": options.get("min_cluster", DEFAULT_MIN_CLUSTER),
        "sim_threshold": options.get("sim_threshold", PHASE1_SIM_THRESHOLD),
        "max_cluster_size": options.get("max_cluster_size"),
        "type": (options.get("type_filter") or "").strip() or None,
        "idempotency_days": options.get("idempotency_days"),
    }
    return _hash(json.dumps(relevant, sort_keys=True))


def empty_stats() -> Dict[str, int]:
    return {key: 0 for key in _STAT_KEYS}


def _accumulate(target: Dict[str, int], source: Dict[str, int]) -> None:
    for key in _STAT_KEYS:
        target[key] += source.get(key, 0)


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------


class Checkpoint:
    """Resume state: the fingerprints of every cluster already processed."""

    __slots__ = (
        "phase", "type_index", "cluster_index", "started_at",
        "db_path_signature", "options_signature", "phase1", "phase2", "plan",
    )

    def __init__(self, db_sig: str, opts_sig: str):
        self.phase = 0
        self.type_index = 0
        self.cluster_index = 0
        self.started_at = datetime.now(timezone.utc).isoformat()
        self.db_path_signature = db_sig
        self.options_signature = opts_sig
        self.phase1: Dict[str, Set[str]] = {}
        self.phase2: Set[str] = set()
        self.plan: Dict[str, Any] = {}

    def processed_for(self, phase: int, type_name: str) -> Set[str]:
        if phase == 1:
            return self.phase1.setdefault(type_name, set())
        return self.phase2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "type_index": self.type_index,
            "cluster_index": self.cluster_index,
            "started_at": self.started_at,
            "db_path_signature": self.db_path_signature,
            "options_signature": self.options_signature,
            "processed": {
                "phase1": {t: sorted(fps) for t, fps in self.phase1.items()},
                "phase2": sorted(self.phase2),
            },
            "plan": self.plan,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        cp = cls(data.get("db_path_signature", ""), data.get("options_signature", ""))
        cp.phase = int(data.get("phase", 0))
        cp.type_index = int(data.get("type_index", 0))
        cp.cluster_index = int(data.get("cluster_index", 0))
        cp.started_at = data.get("started_at") or cp.started_at
        processed = data.get("processed") or {}
        cp.phase1 = {t: set(fps) for t, fps in (processed.get("phase1") or {}).items()}
        cp.phase2 = set(processed.get("phase2") or [])
        cp.plan = data.get("plan") or {}
        return cp


def load_checkpoint(path: Optional[Path] = None) -> Optional[Checkpoint]:
    """Read the checkpoint; None when missing or unreadable."""
    path = Path(path) if path else checkpoint_path()
    try:
        data = read_json(path)
    except ValueError as e:
        logger.warning("Ignoring unreadable consolidation checkpoint %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        return None
    return Checkpoint.from_dict(data)


def save_checkpoint(checkpoint: Checkpoint, path: Optional[Path] = None) -> None:
    atomic_write_json(Path(path) if path else checkpoint_path(), checkpoint.to_dict())


def clear_checkpoint(path: Optional[Path] = None) -> None:
    path = Path(path) if path else checkpoint_path()
    try:
        path.unlink()
    except FileNotFoundError:
        pass


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


class _Run:
    """Mutable state shared by the phases of one run."""

    def __init__(self, store, llm, embedder, checkpoint: Checkpoint, cp_path: Optional[Path],
                 batch_limit: Optional[int], dry_run: bool, verbose: bool,
                 review_queue: Optional[ReviewQueue], should_stop: Callable[[], bool]):
        self.store = store
        self.llm = llm
        self.embedder = embedder
        self.checkpoint = checkpoint
        self.checkpoint_path = cp_path
        self.batch_limit = batch_limit
        self.dry_run = dry_run
        self.verbose = verbose
        self.review_queue = review_queue
        self.should_stop = should_stop
        self.batch_reached = False
        self.processed_in_run = 0
        self.canonical_ids: List[str] = []

    def persist(self) -> None:
        if not self.dry_run:
            save_checkpoint(self.checkpoint, self.checkpoint_path)

    def process(self, clusters, phase: int, type_name: str, type_index: int,
                processed: Optional[Set[str]]) -> Dict[str, int]:
        """Merge every cluster not yet in `processed`, honouring the batch cap."""
        stats = empty_stats()
        stats["clusters_found"] = len(clusters)
        pending = []
        for index, cluster in enumerate(clusters):
            fingerprint = cluster.fingerprint
            if processed is not None and fingerprint in processed:
                stats["skipped_by_resume"] += 1
                continue
            pending.append((index, cluster, fingerprint))

        for index, cluster, fingerprint in pending:
            if self.should_stop():
                self.batch_reached = True
                break
            if self.batch_limit and self.processed_in_run >= self.batch_limit:
                self.batch_reached = True
                break

            if len(self.store.get_entries(cluster.ids, active_only=True)) < len(cluster):
                stats["skipped_stale"] += 1
                if processed is not None:
                    processed.add(fingerprint)
                continue

            outcome = merge_cluster(
                self.store, cluster, self.llm, self.embedder,
                dry_run=self.dry_run, review_queue=self.review_queue, verbose=self.verbose,
            )
            stats["clusters_processed"] += 1
            stats["llm_calls"] += 1
            self.processed_in_run += 1
            if outcome.flagged:
                stats["merges_flagged"] += 1
            else:
                stats["clusters_merged"] += 1
                stats["entries_consolidated_from"] += len(cluster)
                stats["canonical_entries_created"] += 1
                if outcome.merged_entry_id and outcome.merged_entry_id != DRY_RUN_ID:
                    self.canonical_ids.append(outcome.merged_entry_id)
            if self.verbose:
                logger.info("Phase %d %s cluster %d/%d: %r", phase, type_name, index + 1,
                            len(clusters), outcome)

            if processed is not None:
                processed.add(fingerprint)
                self.checkpoint.phase = phase
                self.checkpoint.type_index = type_index
                self.checkpoint.cluster_index = index + 1
                self.persist()
        return stats


def _finalize(store) -> None:
    try:
        store.rebuild_vector_index()
    except (RuntimeError, sqlite3.Error) as e:
        logger.warning("Vector index rebuild failed: %s", e)
    try:
        store.wal_checkpoint("TRUNCATE")
    except sqlite3.Error as e:
        logger.warning("WAL checkpoint failed: %s", e)


def run_consolidation(
    store,
    llm: Any = None,
    embedder: Any = None,
    *,
    dry_run: bool = False,
    rules_only: bool = False,
    type_filter: Optional[str] = None,
    sim_threshold: Optional[float] = None,
    min_cluster: int = DEFAULT_MIN_CLUSTER,
    max_cluster_size: Optional[int] = None,
    idempotency_days: Optional[float] = None,
    batch: Optional[int] = None,
    resume: bool = True,
    verbose: bool = False,
    skip_backup: bool = False,
    checkpoint_file: Optional[Path] = None,
    review_queue: Optional[ReviewQueue] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> Dict[str, Any]:
    """Run rules plus clustered merges and return the orchestrator report.

    llm and embedder are required unless rules_only. Holds the consolidation
    lock for the whole run (ConsolidationLockedError when another process has
    it). Dry runs write nothing, including the checkpoint.
    """
    if not rules_only and (llm is None or embedder is None):
        raise ValueError("an LLM client and an embedder are required unless rules_only=True")
    if sim_threshold is not None and not 0.0 <= sim_threshold <= 1.0:
        raise ValueError(f"sim_threshold must be within [0, 1], got {sim_threshold}")

    with consolidation_lock():
        return _run_locked(
            store, llm, embedder,
            dry_run=dry_run, rules_only=rules_only, type_filter=type_filter,
            sim_threshold=sim_threshold, min_cluster=min_cluster,
            max_cluster_size=max_cluster_size, idempotency_days=idempotency_days,
            batch=batch, resume=resume, verbose=verbose, skip_backup=skip_backup,
            checkpoint_file=checkpoint_file, review_queue=review_queue,
            should_stop=should_stop or (lambda: False),
        )


def _run_locked(store, llm, embedder, *, dry_run, rules_only, type_filter, sim_threshold,
                min_cluster, max_cluster_size, idempotency_days, batch, resume, verbose,
                skip_backup, checkpoint_file, review_queue, should_stop) -> Dict[str, Any]:
    type_filter = (type_filter or "").strip() or None
    phase1_threshold = sim_threshold if sim_threshold is not None else PHASE1_SIM_THRESHOLD
    phase2_threshold = max(phase1_threshold, PHASE2_SIM_THRESHOLD)
    phase1_max = max_cluster_size or PHASE1_MAX_CLUSTER_SIZE
    phase2_max = max_cluster_size or PHASE2_MAX_CLUSTER_SIZE
    idempotency = DEFAULT_IDEMPOTENCY_DAYS if idempotency_days is None else idempotency_days
    batch_limit = int(batch) if batch and batch > 0 else None
    phase1_types = [type_filter] if type_filter else list(PHASE1_TYPES)

    db_sig = db_path_signature(store.db_path)
    opts_sig = options_signature({
        "dry_run": dry_run, "rules_only": rules_only, "min_cluster": min_cluster,
        "sim_threshold": phase1_threshold, "max_cluster_size": max_cluster_size,
        "type_filter": type_filter, "idempotency_days": idempotency_days,
    })

    checkpoint = Checkpoint(db_sig, opts_sig)
    resumed = False
    if not dry_run:
        if not resume:
            clear_checkpoint(checkpoint_file)
        else:
            existing = load_checkpoint(checkpoint_file)
            if existing is not None:
                if existing.db_path_signature == db_sig and existing.options_signature == opts_sig:
                    checkpoint = existing
                    resumed = True
                    logger.info("Resuming from checkpoint (phase %d, type index %d, cluster %d)",
                                existing.phase, existing.type_index, existing.cluster_index)
                else:
                    clear_checkpoint(checkpoint_file)
                    logger.warning(
                        "Existing checkpoint does not match current database/options, starting fresh"
                    )

    report: Dict[str, Any] = {
        "rules": {},
        "entries_before": 0,
        "entries_after_rules": 0,
        "entries_after": 0,
        "estimate": {"total_clusters": 0, "estimated_llm_calls": 0, "phase1_by_type": [], "phase2_clusters": 0},
        "phase1": {"totals": empty_stats(), "types": []},
        "phase2": None,
        "phase3": None,
        "progress": {
            "resumed": resumed,
            "checkpoint_path": str(checkpoint_file or checkpoint_path()),
            "partial": False,
            "batch_limit": batch_limit,
            "processed_clusters": 0,
            "remaining_clusters": 0,
            "resume_from": (
                {"phase": checkpoint.phase, "type_index": checkpoint.type_index,
                 "cluster_index": checkpoint.cluster_index} if resumed else None
            ),
        },
        "summary": {
            "total_llm_calls": 0,
            "total_flagged": 0,
            "total_canonical_entries_created": 0,
            "total_entries_consolidated_from": 0,
        },
    }
    run = _Run(store, llm, embedder, checkpoint, checkpoint_file, batch_limit, dry_run, verbose,
               review_queue, should_stop)

    logger.info("Rules-based cleanup%s...", " [dry run]" if dry_run else "")
    rules_stats = consolidate_rules(
        store, dry_run=dry_run, verbose=verbose, rebuild_index=False, skip_backup=skip_backup,
    )
    report["rules"] = rules_stats
    report["entries_before"] = rules_stats["entries_before"]
    report["entries_after_rules"] = rules_stats["entries_after"]

    if not rules_only and not should_stop():
        _run_phases(run, report, phase1_types, type_filter, phase1_threshold, phase2_threshold,
                    phase1_max, phase2_max, min_cluster, idempotency)
    elif not rules_only:
        run.batch_reached = True

    if not run.batch_reached and not dry_run:
        clear_checkpoint(checkpoint_file)
        _finalize(store)
    elif run.batch_reached:
        run.checkpoint.phase = max(run.checkpoint.phase, 1)
        run.persist()

    _summarize(report, run)
    report["entries_after"] = (
        report["entries_after_rules"] if dry_run else store.count_active()
    )
    logger.info(
        "Consolidation %s: %d -> %d active, %d clusters processed, %d merged, %d flagged",
        "partial" if run.batch_reached else "complete",
        report["entries_before"], report["entries_after"],
        report["progress"]["processed_clusters"],
        report["summary"]["total_canonical_entries_created"],
        report["summary"]["total_flagged"],
    )
    return report


def _run_phases(run: _Run, report: Dict[str, Any], phase1_types: List[str], type_filter: Optional[str],
                phase1_threshold: float, phase2_threshold: float, phase1_max: int, phase2_max: int,
                min_cluster: int, idempotency: float) -> None:
    store = run.store
    plan = []
    for type_name in phase1_types:
        clusters, _ = build_clusters(
            store, sim_threshold=phase1_threshold, min_cluster=min_cluster,
            max_cluster_size=phase1_max, type_filter=type_name,
            idempotency_days=idempotency, verbose=run.verbose,
        )
        entries = len(store.active_entries(types=[type_name], embedded_only=True))
        plan.append((type_name, entries, clusters))

    run_phase2 = type_filter is None
    phase2_clusters = []
    phase2_entries = 0
    if run_phase2:
        phase2_clusters, _ = build_clusters(
            store, sim_threshold=phase2_threshold, min_cluster=min_cluster,
            max_cluster_size=phase2_max, idempotency_days=idempotency, verbose=run.verbose,
        )
        phase2_entries = store.count_active_embedded()

    estimate = report["estimate"]
    estimate["phase1_by_type"] = [
        {"type": t, "entries": n, "clusters": len(c)} for t, n, c in plan
    ]
    estimate["phase2_clusters"] = len(phase2_clusters)
    estimate["total_clusters"] = sum(len(c) for _, _, c in plan) + len(phase2_clusters)
    estimate["estimated_llm_calls"] = estimate["total_clusters"]
    run.checkpoint.plan = {
        "phase1": {t: [c.fingerprint for c in cs] for t, _, cs in plan},
        "phase2": [c.fingerprint for c in phase2_clusters],
        "total_clusters": estimate["total_clusters"],
    }
    run.persist()
    logger.info("Found %d clusters across %d type(s), estimated %d LLM calls",
                estimate["total_clusters"], len(plan), estimate["estimated_llm_calls"])

    phase1 = report["phase1"]
    for type_index, (type_name, entries, clusters) in enumerate(plan):
        logger.info("Phase 1: consolidating %s entries (%d entries, %d clusters)",
                    type_name, entries, len(clusters))
        stats = run.process(clusters, 1, type_name, type_index,
                            run.checkpoint.processed_for(1, type_name))
        stats["entries"] = entries
        phase1["types"].append(dict(stats, type=type_name))
        _accumulate(phase1["totals"], stats)
        if run.batch_reached:
            return

    if run_phase2:
        logger.info("Phase 2: cross-type catch-all (%d entries, %d clusters)",
                    phase2_entries, len(phase2_clusters))
        stats = run.process(phase2_clusters, 2, "all", 0, run.checkpoint.processed_for(2, "all"))
        stats["entries"] = phase2_entries
        report["phase2"] = stats
        if run.batch_reached:
            return

    if not run.canonical_ids:
        return
    new_ids = list(run.canonical_ids)
    clusters, _ = build_clusters(
        store, sim_threshold=phase1_threshold, min_cluster=min_cluster,
        max_cluster_size=phase1_max, idempotency_days=0, entry_ids=new_ids, verbose=run.verbose,
    )
    logger.info("Phase 3: post-merge dedup (%d new canonical entries, %d clusters)",
                len(new_ids), len(clusters))
    stats = run.process(clusters, 3, "canonical", 0, None)
    stats["entries"] = len(new_ids)
    report["phase3"] = stats


def _summarize(report: Dict[str, Any], run: _Run) -> None:
    phases = [report["phase1"]["totals"]] + [
        report[key] for key in ("phase2", "phase3") if report[key] is not None
    ]
    summary = report["summary"]
    summary["total_llm_calls"] = sum(p["llm_calls"] for p in phases)
    summary["total_flagged"] = sum(p["merges_flagged"] for p in phases)
    summary["total_canonical_entries_created"] = sum(p["canonical_entries_created"] for p in phases)
    summary["total_entries_consolidated_from"] = sum(p["entries_consolidated_from"] for p in phases)

    progress = report["progress"]
    progress["partial"] = run.batch_reached
    progress["processed_clusters"] = sum(p["clusters_processed"] for p in phases)
    planned = [report["phase1"]["totals"]] + ([report["phase2"]] if report["phase2"] else [])
    progress["remaining_clusters"] = max(
        report["estimate"]["total_clusters"]
        - sum(p["skipped_by_resume"] for p in planned)
        - sum(p["skipped_stale"] for p in planned)
        - sum(p["clusters_processed"] for p in planned),
        0,
    )
