"""
memvault rules -- deterministic consolidation pass (no LLM).

consolidate_rules:
  1. TRUNCATE-checkpoint the WAL and back the database up
     (<db>.pre-consolidate-<timestamp>, newest 3 kept)
  2. expire temporary entries whose recency score fell below 0.05
  3. merge near-exact duplicates (cosine > 0.95, same type and subject) into
     the entry with the most support
  4. delete non-supersedes relations that touch inactive entries
  5. rebuild the vector index (best effort)

Steps 2-4 run in one transaction. Afterwards
entries_after == entries_before - expired_count - merged_count.
"""

import logging
import math
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from memvault.cluster import validate_cluster
from memvault.fingerprint import UnionFind, similarity_matrix, normalize_subject
from memvault.store import EntryStatus

logger = logging.getLogger("memvault.rules")

EXPIRE_THRESHOLD = 0.05
MERGE_SIMILARITY_THRESHOLD = 0.95
DIAMETER_FLOOR = MERGE_SIMILARITY_THRESHOLD - 0.02
MAX_CLUSTER_SIZE = 12
MAX_ACTIVE_EMBEDDED_ENTRIES = 20000
BACKUPS_TO_KEEP = 3

HALF_LIFE_DAYS = {
    "core": math.inf,
    "permanent": 365.0,
    "temporary": 30.0,
}
DEFAULT_HALF_LIFE_DAYS = 30.0


class BackupError(RuntimeError):
    """The pre-consolidation backup could not be made safely."""


def recency(days_old: float, expiry: str) -> float:
    """Power-law decay in (0, 1]; 1.0 at day 0 and for core entries.

    Equals 0.9 after one half-life and 0.05 after about 1700 half-lives.
    """
    half_life = HALF_LIFE_DAYS.get(expiry, DEFAULT_HALF_LIFE_DAYS)
    if math.isinf(half_life) or days_old <= 0:
        return 1.0
    return (1.0 + (19.0 / 81.0) * days_old / half_life) ** -0.5


def _preview(text: str, max_length: int = 80) -> str:
    collapsed = " ".join((text or "").split())
    return collapsed if len(collapsed) <= max_length else collapsed[: max_length - 3] + "..."


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------


def backup_database(store, backup_path: Optional[Path] = None) -> Path:
    """Checkpoint the WAL then copy the database. Raises BackupError."""
    if backup_path is None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        backup_path = store.db_path.parent / f"{store.db_path.name}.pre-consolidate-{stamp}"
    try:
        store.wal_checkpoint("TRUNCATE")
    except sqlite3.Error as e:
        raise BackupError(
            f"Cannot create safe backup: WAL checkpoint failed ({e}). "
            "Close other processes using the database and retry."
        ) from e
    store.backup_to(backup_path)
    logger.info("Backup written to %s", backup_path)
    return Path(backup_path)


def prune_backups(db_path: Path, keep: int = BACKUPS_TO_KEEP) -> List[Path]:
    """Delete all but the newest `keep` pre-consolidate backups of db_path."""
    db_path = Path(db_path)
    prefix = f"{db_path.name}.pre-consolidate-"
    backups = sorted((p for p in db_path.parent.iterdir() if p.name.startswith(prefix)), reverse=True)
    removed = []
    for old in backups[keep:]:
        try:
            old.unlink()
            removed.append(old)
        except OSError as e:
            logger.warning("Could not remove old backup %s: %s", old, e)
    return removed


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def _expire(store, now: datetime, dry_run: bool, verbose: bool) -> Set[str]:
    expired: Set[str] = set()
    for entry in store.active_entries():
        if entry.expiry != "temporary":
            continue
        days_old = (now - entry.created).total_seconds() / 86400.0
        score = recency(days_old, entry.expiry)
        if score >= EXPIRE_THRESHOLD:
            continue
        expired.add(entry.id)
        if verbose:
            logger.info("[expire] id=%s score=%.4f content=%r", entry.id, score, _preview(entry.content))
        if not dry_run:
            store.mark_expired(entry.id)
    return expired


def _keeper_rank(entry):
    return (entry.support, entry.created)


def _merge_near_exact(store, skip_ids: Set[str], dry_run: bool, verbose: bool) -> int:
    embedded = store.count_active_embedded()
    if embedded > MAX_ACTIVE_EMBEDDED_ENTRIES:
        logger.warning(
            "Skipped near-exact merge: %d active embedded entries exceed %d",
            embedded, MAX_ACTIVE_EMBEDDED_ENTRIES,
        )
        return 0

    dim = store.embedding_dim
    groups: Dict[tuple, List] = {}
    for entry in store.active_entries(embedded_only=True):
        if entry.id in skip_ids or len(entry.embedding) != dim:
            continue
        groups.setdefault((entry.type, normalize_subject(entry.subject)), []).append(entry)

    merged_count = 0
    for members in groups.values():
        if len(members) < 2:
            continue
        sims = similarity_matrix([e.embedding for e in members])
        uf = UnionFind(len(members))
        for i in range(len(members)):
            for j in range(i + 1, len(members)):
                if sims[i, j] > MERGE_SIMILARITY_THRESHOLD:
                    uf.union(i, j)
        for idx in uf.groups().values():
            if len(idx) < 2:
                continue
            validated = validate_cluster([members[i] for i in idx], MAX_CLUSTER_SIZE, DIAMETER_FLOOR)
            if len(validated) < 2:
                continue
            ranked = sorted(validated, key=_keeper_rank, reverse=True)
            keeper, sources = ranked[0], ranked[1:]
            merged_count += len(sources)
            if verbose:
                logger.info("[merge] keeper=%s sources=%s subject=%r", keeper.id,
                            ",".join(s.id for s in sources), _preview(keeper.subject, 40))
            if dry_run:
                continue
            for source in sources:
                store.add_entry_source(keeper.id, source)
                store.mark_superseded(source.id, keeper.id)
                store.add_relation(keeper.id, source.id, "supersedes")
                store.copy_tags(source.id, keeper.id)
            oldest = min(ranked, key=lambda e: e.created)
            store.update_entry_fields(
                keeper.id,
                merged_from=len(sources),
                consolidated_at=datetime.now(timezone.utc).isoformat(),
                confirmations=sum(e.confirmations for e in ranked),
                importance=max(e.importance for e in ranked),
                created_at=oldest.created_at,
            )
    return merged_count


def _count_orphaned_relations(store, extra_inactive: Set[str]) -> int:
    rows = store.execute(
        """SELECT r.source_id, r.target_id,
                  (SELECT status FROM entries WHERE id = r.source_id),
                  (SELECT status FROM entries WHERE id = r.target_id)
           FROM relations r WHERE r.relation_type <> 'supersedes'"""
    ).fetchall()
    count = 0
    for source_id, target_id, source_status, target_status in rows:
        if (
            source_status != EntryStatus.ACTIVE.value
            or target_status != EntryStatus.ACTIVE.value
            or source_id in extra_inactive
            or target_id in extra_inactive
        ):
            count += 1
    return count


# ---------------------------------------------------------------------------
# consolidate_rules
# ---------------------------------------------------------------------------


def consolidate_rules(
    store,
    *,
    dry_run: bool = False,
    verbose: bool = False,
    rebuild_index: bool = True,
    skip_backup: bool = False,
    backup_path: Optional[Path] = None,
    skip_orphan_cleanup: bool = False,
) -> Dict[str, Any]:
    """Run the rule-based consolidation pass and return its stats.

    Raises BackupError when the WAL cannot be checkpointed before the backup
    (dry runs only log what they would back up).
    """
    backup = ""
    if not skip_backup:
        if dry_run:
            if verbose:
                logger.info("[backup] dry run: would checkpoint WAL and back up %s", store.db_path)
        else:
            backup = str(backup_database(store, backup_path))
    elif backup_path:
        backup = str(backup_path)

    entries_before = store.count_active()
    now = datetime.now(timezone.utc)

    if dry_run:
        expired = _expire(store, now, True, verbose)
        merged_count = _merge_near_exact(store, expired, True, verbose)
        orphaned = 0 if skip_orphan_cleanup else _count_orphaned_relations(store, expired)
    else:
        with store.transaction():
            expired = _expire(store, now, False, verbose)
            merged_count = _merge_near_exact(store, expired, False, verbose)
            orphaned = 0 if skip_orphan_cleanup else store.delete_orphaned_relations()

    if not dry_run and rebuild_index:
        try:
            store.rebuild_vector_index()
        except (RuntimeError, sqlite3.Error) as e:
            logger.warning("Vector index rebuild failed: %s", e)

    if not skip_backup and not dry_run:
        for old in prune_backups(store.db_path):
            if verbose:
                logger.info("[backup] removed old backup %s", old.name)

    if dry_run:
        entries_after = entries_before - len(expired) - merged_count
    else:
        entries_after = store.count_active()

    stats = {
        "entries_before": entries_before,
        "entries_after": entries_after,
        "expired_count": len(expired),
        "merged_count": merged_count,
        "orphaned_relations_cleaned": orphaned,
        "backup_path": backup,
    }
    logger.info(
        "Rules: %d -> %d active (%d expired, %d merged, %d orphaned relations)%s",
        entries_before, entries_after, len(expired), merged_count, orphaned,
        " [dry run]" if dry_run else "",
    )
    return stats
