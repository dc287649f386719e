"""memvault -- persistent knowledge store for AI-agent memories.

Direct Python API::

    from memvault import KnowledgeStore, LocalEmbedder, store_entries, run_consolidation
    store = KnowledgeStore()
    store_entries(store, [{"type": "preference", "subject": "Jim",
                           "content": "Jim prefers pnpm"}], LocalEmbedder())
    report = run_consolidation(store, llm, LocalEmbedder())

LLM clients are duck-typed: any object with
``call_tool(system_prompt, user_prompt, tool) -> dict | None``.
"""

__version__ = "0.1.0"

from memvault.store import Entry, EntryStatus, KnowledgeStore
from memvault.embeddings import EmbeddingClient, EmbeddingError, LocalEmbedder
from memvault.dedup import IngestSession, collapse_batch_duplicates, store_entries
from memvault.contradiction import SubjectIndex, detect_contradictions, extract_claim
from memvault.cluster import Cluster, build_clusters
from memvault.merge import MergeOutcome, merge_cluster
from memvault.verify import ReviewQueue, verify_merge
from memvault.rules import BackupError, consolidate_rules
from memvault.orchestrator import run_consolidation
from memvault.bulk import bulk_ingest, check_and_recover
from memvault.lock import ConsolidationLockedError

__all__ = [
    "KnowledgeStore",
    "Entry",
    "EntryStatus",
    # Embeddings
    "LocalEmbedder",
    "EmbeddingClient",
    "EmbeddingError",
    # Ingest
    "IngestSession",
    "store_entries",
    "collapse_batch_duplicates",
    "bulk_ingest",
    "check_and_recover",
    # Contradictions
    "SubjectIndex",
    "extract_claim",
    "detect_contradictions",
    # Consolidation
    "Cluster",
    "build_clusters",
    "MergeOutcome",
    "merge_cluster",
    "ReviewQueue",
    "verify_merge",
    "consolidate_rules",
    "run_consolidation",
    "BackupError",
    "ConsolidationLockedError",
]
