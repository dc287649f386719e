"""
memvault bulk -- large imports with the FTS triggers and vector index detached.

begin_bulk stamps the "writing" flag, then drops the FTS sync triggers and
the vector index. finish_bulk rebuilds FTS (+ triggers), moves the flag to
"rebuilding_vector", rebuilds the vector index and clears the flag.

A crash leaves the flag behind. check_and_recover replays whatever rebuild
step is missing; it is idempotent and only bulk-aware entry points call it.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from memvault.dedup import prepare_entry
from memvault.fingerprint import minhash_jaccard, minhash_signature, norm_content_hash, signature_to_bytes
from memvault.store import BULK_PHASE_REBUILDING_VECTOR, BULK_PHASE_WRITING

logger = logging.getLogger("memvault.bulk")

DEFAULT_MINHASH_THRESHOLD = 0.65
DEFAULT_BATCH_SIZE = 500


def begin_bulk(store) -> None:
    with store.transaction():
        store.set_bulk_meta(BULK_PHASE_WRITING)
        store.drop_fts_triggers()
        store.drop_vector_index()
    logger.info("Bulk mode on: FTS triggers and vector index dropped")


def _rebuild_vector(store) -> None:
    store.set_bulk_meta(BULK_PHASE_REBUILDING_VECTOR)
    store.rebuild_vector_index()
    store.set_bulk_meta(None)


def finish_bulk(store) -> None:
    """Restore FTS and the vector index. Errors propagate with the flag still set."""
    store.rebuild_fts()
    _rebuild_vector(store)
    logger.info("Bulk mode off: FTS and vector index rebuilt")


def check_and_recover(store) -> Optional[str]:
    """Finish an interrupted bulk import. Returns the phase recovered from, or None."""
    meta = store.get_bulk_meta()
    if meta is None:
        return None
    phase = meta["phase"]
    logger.warning("Recovering interrupted bulk import (phase %s, started %s)", phase, meta["started_at"])
    if phase == BULK_PHASE_WRITING:
        finish_bulk(store)
    else:
        _rebuild_vector(store)
    return phase


def bulk_ingest(
    store,
    entries: Sequence[Dict[str, Any]],
    embedder,
    *,
    minhash_threshold: float = DEFAULT_MINHASH_THRESHOLD,
    batch_size: int = DEFAULT_BATCH_SIZE,
    source_file: Optional[str] = None,
) -> Dict[str, Any]:
    """Import many entries without per-row index maintenance.

    Rows whose normalized content matches, or whose MinHash Jaccard estimate
    reaches minhash_threshold against, an active entry or an earlier row of
    this import are skipped. Each batch commits on its own.
    """
    if not 0.0 <= minhash_threshold <= 1.0:
        raise ValueError(f"minhash_threshold must be within [0, 1], got {minhash_threshold}")
    batch_size = max(1, int(batch_size))
    start = time.monotonic()
    prepared = [prepare_entry(e, source_file) for e in entries]
    result = {"added": 0, "skipped": 0, "batches": 0, "total_entries": len(prepared), "duration_ms": 0}

    check_and_recover(store)
    begin_bulk(store)

    seen_hashes = set()
    seen_signatures: List = []
    for offset in range(0, len(prepared), batch_size):
        pending = []
        for data in prepared[offset : offset + batch_size]:
            norm_hash = norm_content_hash(data["content"])
            signature = minhash_signature(data["content"])
            if norm_hash in seen_hashes or any(
                minhash_jaccard(signature, other) >= minhash_threshold for other in seen_signatures
            ) or store.find_duplicate_bulk(norm_hash, signature, minhash_threshold):
                result["skipped"] += 1
                continue
            seen_hashes.add(norm_hash)
            seen_signatures.append(signature)
            data["norm_content_hash"] = norm_hash
            data["minhash_sig"] = signature_to_bytes(signature)
            pending.append(data)
        if not pending:
            continue

        embeddings = embedder.embed([d["content"] for d in pending])
        with store.transaction():
            for data, embedding in zip(pending, embeddings):
                store.insert_entry(data, embedding)
        result["added"] += len(pending)
        result["batches"] += 1
        logger.debug("Bulk batch %d committed (%d rows)", result["batches"], len(pending))

    finish_bulk(store)
    result["duration_ms"] = int((time.monotonic() - start) * 1000)
    store.log_ingest(source_file, result)
    logger.info("Bulk ingest: %d added, %d skipped in %d batches",
                result["added"], result["skipped"], result["batches"])
    return result
