"""
memvault merge -- synthesize one canonical entry from a validated cluster.

merge_cluster:
  1. prompt the LLM with every member, truncating content to fit the budget
  2. repair the merge_entries call; force the cluster's majority type
  3. embed the merged content and verify it against the sources
  4. flagged -> review queue, nothing written
     accepted -> one transaction: merged entry, provenance rows,
     supersession, tag copies and supersedes relations
"""

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from memvault.llm import MERGE_TOOL, call_tool, log_repairs, repair_merge
from memvault.store import ENTRY_TYPES, normalize_tags
from memvault.verify import ReviewQueue, verify_merge

logger = logging.getLogger("memvault.merge")

DRY_RUN_ID = "DRY_RUN"

MAX_TOTAL_TOKENS = 4096
RESERVED_OVERHEAD_TOKENS = 1024
PAYLOAD_TOKEN_BUDGET = MAX_TOTAL_TOKENS - RESERVED_OVERHEAD_TOKENS
CHARS_PER_TOKEN = 4
PAYLOAD_CHAR_BUDGET = PAYLOAD_TOKEN_BUDGET * CHARS_PER_TOKEN
_CONTENT_LIMITS = (None, 800, 400)

MERGE_SYSTEM_PROMPT = """You are a knowledge consolidation engine.
Merge the provided related entries into one canonical entry.
Only include information explicitly stated in the source entries. Do not infer or add details.
Prefer preserving temporal changes in the merged narrative.
Call merge_entries with your final merged result."""


class MergeOutcome:
    """Result of one merge attempt."""

    __slots__ = ("merged_entry_id", "source_ids", "flagged", "flag_reason")

    def __init__(self, merged_entry_id: str, source_ids: List[str], flagged: bool = False,
                 flag_reason: Optional[str] = None):
        self.merged_entry_id = merged_entry_id
        self.source_ids = source_ids
        self.flagged = flagged
        self.flag_reason = flag_reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merged_entry_id": self.merged_entry_id,
            "source_ids": self.source_ids,
            "flagged": self.flagged,
            "flag_reason": self.flag_reason,
        }

    def __repr__(self) -> str:
        if self.flagged:
            return f"MergeOutcome(flagged={self.flag_reason!r}, sources={len(self.source_ids)})"
        return f"MergeOutcome(merged={self.merged_entry_id!r}, sources={len(self.source_ids)})"


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def estimate_tokens(chars: int) -> int:
    return -(-chars // CHARS_PER_TOKEN)


def _truncate(text: str, limit: Optional[int]) -> str:
    text = " ".join(text.split())
    return text if limit is None or len(text) <= limit else text[:limit]


def format_cluster_entries(entries, content_limit: Optional[int] = None) -> str:
    ordered = sorted(entries, key=lambda e: (e.created, e.id))
    blocks = []
    for i, e in enumerate(ordered, 1):
        blocks.append(
            f"Entry {i}:\n- id: {e.id}\n- type: {e.type}\n- subject: {e.subject}\n"
            f"- importance: {e.importance}\n- confirmations: {e.confirmations}\n"
            f"- created_at: {e.created_at}\n- content: {_truncate(e.content, content_limit)}"
        )
    return "\n\n".join(blocks)


def build_merge_prompt(entries) -> str:
    """User prompt for the merge call, shrunk until the payload fits the token budget."""
    for limit in _CONTENT_LIMITS:
        payload = format_cluster_entries(entries, limit)
        if estimate_tokens(len(payload)) <= PAYLOAD_TOKEN_BUDGET:
            break
    else:
        payload = payload.encode("utf-8")[:PAYLOAD_CHAR_BUDGET].decode("utf-8", errors="ignore")
    return (
        f"Merge the following {len(entries)} entries into a single canonical entry.\n\n"
        f"{payload}\n\nReturn your answer by calling merge_entries."
    )


def majority_type(entries) -> str:
    """Most common type; ties go to the type with more total confirmations."""
    counts: Counter = Counter()
    support: Counter = Counter()
    for e in entries:
        if e.type in ENTRY_TYPES:
            counts[e.type] += 1
            support[e.type] += e.confirmations
    if not counts:
        return "fact"
    return max(counts, key=lambda t: (counts[t], support[t]))


# ---------------------------------------------------------------------------
# merge_cluster
# ---------------------------------------------------------------------------


def merge_cluster(
    store,
    cluster,
    llm: Any,
    embedder,
    *,
    dry_run: bool = False,
    review_queue: Optional[ReviewQueue] = None,
    verbose: bool = False,
) -> MergeOutcome:
    """Merge a validated cluster into one canonical entry.

    Database errors inside the write transaction roll everything back and
    propagate.
    """
    entries = list(cluster.entries)
    source_ids = [e.id for e in entries]
    if len(entries) < 2:
        return MergeOutcome("", source_ids, True, "cluster too small")

    args = call_tool(llm, MERGE_SYSTEM_PROMPT, build_merge_prompt(entries), MERGE_TOOL)
    merged, warnings = repair_merge(args)
    log_repairs(MERGE_TOOL["name"], warnings, verbose)
    if merged is None:
        return MergeOutcome("", source_ids, True, "merge tool call missing or invalid")

    dominant = majority_type(entries)
    if merged["type"] != dominant:
        if verbose:
            logger.info("Merge type %s overridden by majority type %s", merged["type"], dominant)
        merged["type"] = dominant

    merged_embedding = embedder.embed([merged["content"]])[0]
    accepted, reason = verify_merge(merged_embedding, [e.embedding for e in entries])
    if not accepted:
        if not dry_run:
            (review_queue or ReviewQueue()).add(
                merged["content"], merged["subject"], merged["type"],
                source_ids, [e.content for e in entries], reason,
            )
        return MergeOutcome("", source_ids, True, reason)

    if dry_run:
        return MergeOutcome(DRY_RUN_ID, source_ids)

    tags = normalize_tags([t for e in entries for t in e.tags] + merged["tags"])
    record = {
        "type": merged["type"],
        "subject": merged["subject"],
        "content": merged["content"],
        "importance": merged["importance"],
        "expiry": merged["expiry"],
        "tags": tags,
        "source_context": "consolidate-merge",
        "confirmations": sum(e.confirmations for e in entries),
        "recall_count": sum(e.recall_count for e in entries),
        "merged_from": len(entries),
        "consolidated_at": datetime.now(timezone.utc).isoformat(),
    }
    with store.transaction():
        merged_id = store.insert_entry(record, merged_embedding)
        for source in entries:
            store.add_entry_source(merged_id, source)
            store.mark_superseded(source.id, merged_id)
            store.copy_tags(source.id, merged_id)
            store.add_relation(merged_id, source.id, "supersedes")

    if verbose:
        logger.info("Merged %s from %s", merged_id, ",".join(source_ids))
    return MergeOutcome(merged_id, source_ids)
