"""
memvault verify -- fidelity check for merged entries and the review queue.

A merge is accepted only when the merged embedding stays close to every
source (cosine >= 0.65) and to the source centroid (cosine >= 0.75).
Rejected merges are appended to $MEMVAULT_HOME/review-queue.json instead of
being applied.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from memvault.crypto import atomic_write_json, memvault_home, read_json
from memvault.fingerprint import average_embedding, cosine_similarity

logger = logging.getLogger("memvault.verify")

SOURCE_SIMILARITY_FLOOR = 0.65
CENTROID_SIMILARITY_FLOOR = 0.75
REVIEW_QUEUE_FILENAME = "review-queue.json"


def verify_merge(
    merged_embedding: Sequence[float],
    source_embeddings: Sequence[Sequence[float]],
) -> Tuple[bool, Optional[str]]:
    """Returns (accepted, flag_reason)."""
    for source in source_embeddings:
        if cosine_similarity(merged_embedding, source) < SOURCE_SIMILARITY_FLOOR:
            return False, f"source drift below {SOURCE_SIMILARITY_FLOOR}"
    centroid = average_embedding(source_embeddings)
    if cosine_similarity(merged_embedding, centroid) < CENTROID_SIMILARITY_FLOOR:
        return False, f"centroid drift below {CENTROID_SIMILARITY_FLOOR}"
    return True, None


class ReviewQueue:
    """Durable list of merges that failed verification.

    Every write replaces the file through a temp file + rename.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else memvault_home() / REVIEW_QUEUE_FILENAME

    def list(self) -> List[Dict[str, Any]]:
        try:
            items = read_json(self.path)
        except ValueError as e:
            logger.warning("Unreadable review queue %s: %s", self.path, e)
            raise
        return items if isinstance(items, list) else []

    def add(
        self,
        merged_content: str,
        merged_subject: str,
        merged_type: str,
        source_ids: Sequence[str],
        source_contents: Sequence[str],
        flag_reason: str,
    ) -> Dict[str, Any]:
        item = {
            "merged_content": merged_content,
            "merged_subject": merged_subject,
            "merged_type": merged_type,
            "source_ids": list(source_ids),
            "source_contents": list(source_contents),
            "flag_reason": flag_reason,
            "flagged_at": datetime.now(timezone.utc).isoformat(),
        }
        atomic_write_json(self.path, self.list() + [item])
        logger.info("Merge of %d entries queued for review: %s", len(item["source_ids"]), flag_reason)
        return item

    def clear(self) -> int:
        count = len(self.list())
        atomic_write_json(self.path, [])
        return count

    def __len__(self) -> int:
        return len(self.list())
