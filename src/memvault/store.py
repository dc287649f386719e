"""
memvault store -- SQLite knowledge store with sqlite-vec for vector search.

One database file holds entries, tags, typed relations, merge provenance
(entry_sources), the conflict audit log, ingest bookkeeping and the bulk-ingest
meta flag. Full-text search is an FTS5 external-content table kept in sync by
triggers; the vector index is a vec0 virtual table rebuilt from the float32
blobs stored on each entry.

Entries are never hard-deleted. Each one carries a status:
  active      -> visible to every active-entry view and clustering pool
  superseded  -> superseded_by points at the newer entry
  expired     -> decayed out by the rules runner

Usage:
    store = KnowledgeStore()
    with store.transaction():
        entry_id = store.insert_entry({"type": "fact", "subject": "Jim",
                                       "content": "Jim prefers pnpm"}, embedding)
    matches = store.find_similar(embedding, limit=5)
"""

import logging
import os
import sqlite3
import struct
import threading
import time as _time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from memvault.fingerprint import (
    content_hash,
    cosine_similarity,
    minhash_jaccard,
    minhash_signature,
    norm_content_hash,
    signature_from_bytes,
    signature_to_bytes,
)

logger = logging.getLogger("memvault.store")

SCHEMA_VERSION = 1
EMBEDDING_DIM = 384

ENTRY_TYPES = ("fact", "decision", "preference", "lesson", "event", "todo", "relationship")
EXPIRY_TIERS = ("core", "permanent", "temporary")
RELATION_TYPES = ("supersedes", "related", "contradicts")

BULK_PHASE_WRITING = "writing"
BULK_PHASE_REBUILDING_VECTOR = "rebuilding_vector"

# ---------------------------------------------------------------------------
# SQLite retry -- WAL + busy_timeout handle most contention with a second
# process; this retries BEGIN/COMMIT with exponential backoff before failing.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: Optional[bytes]) -> Optional[List[float]]:
    if not data:
        return None
    return list(struct.unpack(f"{len(data) // 4}f", data))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp to an aware UTC datetime (None when unparseable)."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Lowercase, strip and dedupe tags, keeping first-seen order."""
    seen: List[str] = []
    for tag in tags or ():
        t = str(tag).strip().lower()
        if t and t not in seen:
            seen.append(t)
    return seen


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


class EntryStatus(Enum):
    """Lifecycle state of an entry."""
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


_ENTRY_COLUMNS = (
    "rid", "id", "type", "subject", "content", "importance", "expiry",
    "source_file", "source_context", "embedding", "content_hash",
    "norm_content_hash", "minhash_sig", "subject_entity", "subject_attribute",
    "subject_key", "claim_predicate", "claim_object", "claim_confidence",
    "confirmations", "recall_count", "created_at", "updated_at", "status",
    "superseded_by", "merged_from", "consolidated_at",
)
_ENTRY_SELECT = "SELECT " + ", ".join(f"e.{c}" for c in _ENTRY_COLUMNS) + " FROM entries e"


class Entry:
    """One knowledge row with its embedding and lifecycle metadata."""

    __slots__ = _ENTRY_COLUMNS + ("tags",)

    def __init__(self, **fields: Any):
        for name in self.__slots__:
            setattr(self, name, fields.get(name))
        self.tags = list(fields.get("tags") or [])
        self.importance = int(self.importance if self.importance is not None else 5)
        self.confirmations = int(self.confirmations or 0)
        self.recall_count = int(self.recall_count or 0)
        self.merged_from = int(self.merged_from or 0)
        self.status = self.status or EntryStatus.ACTIVE.value

    @property
    def entry_status(self) -> EntryStatus:
        return EntryStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status == EntryStatus.ACTIVE.value

    @property
    def support(self) -> int:
        """Evidence weight used for keeper selection and cluster eviction."""
        return self.confirmations + self.recall_count

    @property
    def created(self) -> datetime:
        return parse_dt(self.created_at) or datetime.fromtimestamp(0, timezone.utc)

    def __repr__(self) -> str:
        return f"Entry(id={self.id!r}, type={self.type!r}, subject={self.subject!r}, status={self.status!r})"


# ---------------------------------------------------------------------------
# KnowledgeStore
# ---------------------------------------------------------------------------


class KnowledgeStore:
    """SQLite-backed knowledge store with sqlite-vec for vector search.

    Single writer per database file. Multi-step mutations run inside
    transaction(); the individual write helpers never commit on their own.
    """

    def __init__(self, db_path=None, embedding_dim: int = EMBEDDING_DIM):
        from memvault.crypto import memvault_home

        self.db_path = Path(db_path) if db_path else (memvault_home() / "knowledge.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.embedding_dim = embedding_dim

        self._lock = threading.RLock()
        self._vec_available = False
        self._fts_available = False
        self._conn = self._connect()
        self._init_schema()

        self._wal_write_count = 0
        raw_interval = int(os.environ.get("MEMVAULT_WAL_CHECKPOINT_INTERVAL", "10"))
        self._wal_checkpoint_interval = max(1, min(raw_interval, 1000))

    def _connect(self) -> sqlite3.Connection:
        """Open the connection in autocommit mode; transactions are explicit."""
        from memvault.crypto import secure_connect

        conn = secure_connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")

        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._vec_available = True
        except (ImportError, AttributeError, sqlite3.Error) as e:
            logger.warning("sqlite-vec not available, falling back to brute-force search: %s", e)
            self._vec_available = False

        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist. Does not run bulk recovery."""
        c = self._conn

        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        elif row[0] > SCHEMA_VERSION:
            logger.warning("Database schema v%d is newer than this library (v%d)", row[0], SCHEMA_VERSION)

        c.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                rid INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                type TEXT NOT NULL,
                subject TEXT NOT NULL,
                content TEXT NOT NULL,
                importance INTEGER NOT NULL DEFAULT 5,
                expiry TEXT NOT NULL DEFAULT 'temporary',
                source_file TEXT,
                source_context TEXT,
                embedding BLOB,
                content_hash TEXT,
                norm_content_hash TEXT,
                minhash_sig BLOB,
                subject_entity TEXT,
                subject_attribute TEXT,
                subject_key TEXT,
                claim_predicate TEXT,
                claim_object TEXT,
                claim_confidence REAL,
                confirmations INTEGER NOT NULL DEFAULT 0,
                recall_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                superseded_by TEXT REFERENCES entries(id),
                merged_from INTEGER NOT NULL DEFAULT 0,
                consolidated_at TEXT
            )
        """)
        for col in ("type", "status", "created_at", "content_hash", "norm_content_hash",
                    "subject_key", "superseded_by", "expiry"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_entries_{col} ON entries({col})")

        c.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                entry_id TEXT NOT NULL REFERENCES entries(id),
                tag TEXT NOT NULL,
                PRIMARY KEY (entry_id, tag)
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag)")

        c.execute("""
            CREATE TABLE IF NOT EXISTS relations (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL REFERENCES entries(id),
                target_id TEXT NOT NULL REFERENCES entries(id),
                relation_type TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        for col in ("source_id", "target_id", "relation_type"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_relations_{col} ON relations({col})")

        c.execute("""
            CREATE TABLE IF NOT EXISTS entry_sources (
                merged_entry_id TEXT NOT NULL REFERENCES entries(id),
                source_entry_id TEXT NOT NULL REFERENCES entries(id),
                original_confirmations INTEGER NOT NULL DEFAULT 0,
                original_recall_count INTEGER NOT NULL DEFAULT 0,
                original_created_at TEXT,
                PRIMARY KEY (merged_entry_id, source_entry_id)
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS conflict_log (
                id TEXT PRIMARY KEY,
                entry_a TEXT NOT NULL,
                entry_b TEXT NOT NULL,
                relation TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0,
                resolution TEXT NOT NULL,
                resolved_at TEXT,
                created_at TEXT NOT NULL
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_conflict_log_resolution ON conflict_log(resolution)")

        c.execute("""
            CREATE TABLE IF NOT EXISTS ingest_log (
                id TEXT PRIMARY KEY,
                file_path TEXT,
                ingested_at TEXT NOT NULL,
                entries_added INTEGER NOT NULL DEFAULT 0,
                entries_updated INTEGER NOT NULL DEFAULT 0,
                entries_skipped INTEGER NOT NULL DEFAULT 0,
                entries_superseded INTEGER NOT NULL DEFAULT 0,
                dedup_llm_calls INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS bulk_ingest_meta (
                key TEXT PRIMARY KEY,
                phase TEXT,
                started_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts
                USING fts5(content, subject, content='entries', content_rowid='rid')
            """)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.debug("FTS5 not available: %s", e)
            self._fts_available = False

        if self._fts_available and self.get_bulk_meta() is None:
            self._create_fts_triggers()

        if self._vec_available and self.get_bulk_meta() is None:
            try:
                self._create_vector_table()
            except sqlite3.Error as e:
                logger.warning("Failed to create vec table: %s", e)
                self._vec_available = False

    def _create_fts_triggers(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS entries_ai AFTER INSERT ON entries BEGIN
                INSERT INTO entries_fts(rowid, content, subject) VALUES (new.rid, new.content, new.subject);
            END
        """)
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS entries_ad AFTER DELETE ON entries BEGIN
                INSERT INTO entries_fts(entries_fts, rowid, content, subject)
                VALUES ('delete', old.rid, old.content, old.subject);
            END
        """)
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS entries_au AFTER UPDATE OF content, subject ON entries BEGIN
                INSERT INTO entries_fts(entries_fts, rowid, content, subject)
                VALUES ('delete', old.rid, old.content, old.subject);
                INSERT INTO entries_fts(rowid, content, subject) VALUES (new.rid, new.content, new.subject);
            END
        """)

    def _create_vector_table(self) -> None:
        self._conn.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS entries_vec
            USING vec0(embedding float[{self.embedding_dim}] distance_metric=cosine)
        """)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically: BEGIN IMMEDIATE ... COMMIT, ROLLBACK on error.

        Nested calls become SAVEPOINTs, so a helper that opens its own
        transaction composes into a caller's larger one.
        """
        with self._lock:
            if self._conn.in_transaction:
                name = f"sp_{uuid.uuid4().hex[:12]}"
                self._conn.execute(f"SAVEPOINT {name}")
                try:
                    yield self._conn
                except BaseException:
                    self._conn.execute(f"ROLLBACK TO {name}")
                    self._conn.execute(f"RELEASE {name}")
                    raise
                self._conn.execute(f"RELEASE {name}")
                return

            _retry_on_locked(self._conn.execute, "BEGIN IMMEDIATE")
            try:
                yield self._conn
                _retry_on_locked(self._conn.execute, "COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            self._maybe_wal_checkpoint()

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run one statement on the shared connection."""
        with self._lock:
            return self._conn.execute(sql, params)

    def _maybe_wal_checkpoint(self) -> None:
        """Run a PASSIVE WAL checkpoint every N commits to bound WAL growth."""
        self._wal_write_count += 1
        if self._wal_write_count >= self._wal_checkpoint_interval:
            self._wal_write_count = 0
            try:
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)").fetchone()
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint failed (non-fatal): %s", e)

    def wal_checkpoint(self, mode: str = "TRUNCATE") -> Tuple[int, int, int]:
        """Checkpoint the WAL. Raises sqlite3.OperationalError if it is blocked.

        Returns (busy, log_frames, checkpointed_frames).
        """
        if mode not in ("PASSIVE", "FULL", "RESTART", "TRUNCATE"):
            raise ValueError(f"invalid checkpoint mode: {mode}")
        with self._lock:
            row = self._conn.execute(f"PRAGMA wal_checkpoint({mode})").fetchone()
        busy, log_frames, checkpointed = row if row else (0, 0, 0)
        if busy:
            raise sqlite3.OperationalError(
                f"wal_checkpoint({mode}) blocked by a concurrent reader or writer"
            )
        return busy, log_frames, checkpointed

    def backup_to(self, target: Path) -> Path:
        """Copy the whole database into target via the SQLite backup API."""
        from memvault.crypto import secure_connect

        target = Path(target)
        dst = secure_connect(target)
        try:
            with self._lock:
                self._conn.backup(dst)
        finally:
            dst.close()
        return target

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def insert_entry(
        self,
        data: Dict[str, Any],
        embedding: Optional[Sequence[float]] = None,
        entry_id: Optional[str] = None,
    ) -> str:
        """Insert one active entry plus its tags. Returns the new id.

        Hashes (content, normalized, MinHash) are computed here unless given.
        """
        content = data["content"]
        now = _now_iso()
        entry_id = entry_id or str(uuid.uuid4())
        minhash = data.get("minhash_sig")
        if minhash is None:
            minhash = signature_to_bytes(minhash_signature(content))

        with self._lock:
            rid = self._conn.execute(
                """INSERT INTO entries (
                       id, type, subject, content, importance, expiry, source_file,
                       source_context, embedding, content_hash, norm_content_hash,
                       minhash_sig, subject_entity, subject_attribute, subject_key,
                       claim_predicate, claim_object, claim_confidence, confirmations,
                       recall_count, created_at, updated_at, status, merged_from,
                       consolidated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)""",
                (
                    entry_id,
                    data.get("type", "fact"),
                    data.get("subject", ""),
                    content,
                    int(data.get("importance", 5)),
                    data.get("expiry", "temporary"),
                    data.get("source_file"),
                    data.get("source_context"),
                    _serialize_f32(embedding) if embedding else None,
                    data.get("content_hash") or content_hash(content),
                    data.get("norm_content_hash") or norm_content_hash(content),
                    minhash,
                    data.get("subject_entity"),
                    data.get("subject_attribute"),
                    data.get("subject_key"),
                    data.get("claim_predicate"),
                    data.get("claim_object"),
                    data.get("claim_confidence"),
                    int(data.get("confirmations", 0)),
                    int(data.get("recall_count", 0)),
                    data.get("created_at") or now,
                    data.get("updated_at") or now,
                    int(data.get("merged_from", 0)),
                    data.get("consolidated_at"),
                ),
            ).lastrowid
            if embedding:
                self._index_vector(rid, embedding)
            self.add_tags(entry_id, data.get("tags"))
        return entry_id

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        rows = self._select_entries("WHERE e.id = ?", (entry_id,))
        return rows[0] if rows else None

    def get_entries(self, ids: Sequence[str], active_only: bool = False) -> List[Entry]:
        """Fetch entries by id, preserving the order of ids (missing ids skipped)."""
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        where = f"WHERE e.id IN ({placeholders})"
        if active_only:
            where += " AND e.status = 'active'"
        by_id = {e.id: e for e in self._select_entries(where, tuple(ids))}
        return [by_id[i] for i in ids if i in by_id]

    def active_entries(
        self,
        types: Optional[Sequence[str]] = None,
        embedded_only: bool = False,
    ) -> List[Entry]:
        """All active entries, oldest first, optionally type-filtered."""
        clauses = ["e.status = 'active'"]
        params: List[Any] = []
        if types:
            clauses.append(f"e.type IN ({','.join('?' * len(types))})")
            params.extend(types)
        if embedded_only:
            clauses.append("e.embedding IS NOT NULL")
        return self._select_entries("WHERE " + " AND ".join(clauses) + " ORDER BY e.created_at, e.rid", params)

    def entries_by_subject_key(self, subject_key: str) -> List[Entry]:
        return self._select_entries(
            "WHERE e.subject_key = ? AND e.status = 'active' ORDER BY e.created_at DESC", (subject_key,)
        )

    def find_by_content_hash(self, digest: str) -> Optional[Entry]:
        rows = self._select_entries(
            "WHERE e.content_hash = ? AND e.status = 'active' ORDER BY e.created_at LIMIT 1", (digest,)
        )
        return rows[0] if rows else None

    def count_entries(self, status: Optional[EntryStatus] = None) -> int:
        if status is None:
            return self.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
        return self.execute("SELECT COUNT(*) FROM entries WHERE status = ?", (status.value,)).fetchone()[0]

    def count_active(self) -> int:
        return self.count_entries(EntryStatus.ACTIVE)

    def count_active_embedded(self) -> int:
        return self.execute(
            "SELECT COUNT(*) FROM entries WHERE status = 'active' AND embedding IS NOT NULL"
        ).fetchone()[0]

    def _select_entries(self, where: str, params: Sequence[Any] = ()) -> List[Entry]:
        with self._lock:
            rows = self._conn.execute(f"{_ENTRY_SELECT} {where}", params).fetchall()
            entries = [self._row_to_entry(row) for row in rows]
            if entries:
                tags = self._tags_for([e.id for e in entries])
                for e in entries:
                    e.tags = tags.get(e.id, [])
        return entries

    def _tags_for(self, ids: List[str]) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        # Stay under SQLite's host-parameter limit
        for i in range(0, len(ids), 500):
            chunk = ids[i : i + 500]
            rows = self._conn.execute(
                f"SELECT entry_id, tag FROM tags WHERE entry_id IN ({','.join('?' * len(chunk))}) ORDER BY tag",
                chunk,
            ).fetchall()
            for entry_id, tag in rows:
                out.setdefault(entry_id, []).append(tag)
        return out

    @staticmethod
    def _row_to_entry(row: tuple) -> Entry:
        fields = dict(zip(_ENTRY_COLUMNS, row))
        fields["embedding"] = _deserialize_f32(fields["embedding"])
        return Entry(**fields)

    # ------------------------------------------------------------------
    # Mutations (callers own the transaction)
    # ------------------------------------------------------------------

    def bump_confirmations(self, entry_id: str, by: int = 1) -> None:
        self.execute(
            "UPDATE entries SET confirmations = confirmations + ?, updated_at = ? WHERE id = ?",
            (by, _now_iso(), entry_id),
        )

    def update_content(self, entry_id: str, content: str, embedding: Optional[Sequence[float]]) -> None:
        """Overwrite content, hashes and embedding; counts as one confirmation."""
        with self._lock:
            self._conn.execute(
                """UPDATE entries
                   SET content = ?, content_hash = ?, norm_content_hash = ?, minhash_sig = ?,
                       embedding = ?, confirmations = confirmations + 1, updated_at = ?
                   WHERE id = ?""",
                (
                    content,
                    content_hash(content),
                    norm_content_hash(content),
                    signature_to_bytes(minhash_signature(content)),
                    _serialize_f32(embedding) if embedding else None,
                    _now_iso(),
                    entry_id,
                ),
            )
            rid = self._rid(entry_id)
            if rid is not None:
                self._unindex_vector(rid)
                if embedding:
                    self._index_vector(rid, embedding)

    def mark_superseded(self, entry_id: str, superseded_by: str) -> None:
        """Point entry_id at its newer replacement and drop it from active views."""
        if entry_id == superseded_by:
            raise ValueError("an entry cannot supersede itself")
        with self._lock:
            self._conn.execute(
                "UPDATE entries SET status = 'superseded', superseded_by = ?, updated_at = ? WHERE id = ?",
                (superseded_by, _now_iso(), entry_id),
            )
            rid = self._rid(entry_id)
            if rid is not None:
                self._unindex_vector(rid)

    def mark_expired(self, entry_id: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE entries SET status = 'expired', superseded_by = NULL, updated_at = ? WHERE id = ?",
                (_now_iso(), entry_id),
            )
            rid = self._rid(entry_id)
            if rid is not None:
                self._unindex_vector(rid)

    def update_entry_fields(self, entry_id: str, **fields: Any) -> None:
        """Set plain columns on one entry (used by merges and claim backfill)."""
        allowed = set(_ENTRY_COLUMNS) - {"rid", "id", "embedding", "status", "superseded_by"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"cannot update columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = list(fields.values()) + [_now_iso(), entry_id]
        self.execute(f"UPDATE entries SET {assignments}, updated_at = ? WHERE id = ?", params)

    def add_tags(self, entry_id: str, tags: Optional[Iterable[str]]) -> None:
        for tag in normalize_tags(tags):
            self.execute("INSERT OR IGNORE INTO tags (entry_id, tag) VALUES (?, ?)", (entry_id, tag))

    def copy_tags(self, source_id: str, target_id: str) -> None:
        self.execute(
            "INSERT OR IGNORE INTO tags (entry_id, tag) SELECT ?, tag FROM tags WHERE entry_id = ?",
            (target_id, source_id),
        )

    def add_relation(self, source_id: str, target_id: str, relation_type: str) -> str:
        if relation_type not in RELATION_TYPES:
            raise ValueError(f"unknown relation type: {relation_type}")
        relation_id = str(uuid.uuid4())
        self.execute(
            "INSERT INTO relations (id, source_id, target_id, relation_type, created_at) VALUES (?, ?, ?, ?, ?)",
            (relation_id, source_id, target_id, relation_type, _now_iso()),
        )
        return relation_id

    def get_relations(self, entry_id: str) -> List[Dict[str, str]]:
        rows = self.execute(
            """SELECT id, source_id, target_id, relation_type, created_at FROM relations
               WHERE source_id = ? OR target_id = ? ORDER BY created_at""",
            (entry_id, entry_id),
        ).fetchall()
        return [
            {"id": r[0], "source_id": r[1], "target_id": r[2], "relation_type": r[3], "created_at": r[4]}
            for r in rows
        ]

    def add_entry_source(self, merged_entry_id: str, source: Entry) -> None:
        """Append a provenance row preserving the source's original counters."""
        self.execute(
            """INSERT OR IGNORE INTO entry_sources
               (merged_entry_id, source_entry_id, original_confirmations,
                original_recall_count, original_created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (merged_entry_id, source.id, source.confirmations, source.recall_count, source.created_at),
        )

    def get_entry_sources(self, merged_entry_id: str) -> List[Dict[str, Any]]:
        rows = self.execute(
            """SELECT source_entry_id, original_confirmations, original_recall_count, original_created_at
               FROM entry_sources WHERE merged_entry_id = ? ORDER BY source_entry_id""",
            (merged_entry_id,),
        ).fetchall()
        return [
            {
                "source_entry_id": r[0],
                "original_confirmations": r[1],
                "original_recall_count": r[2],
                "original_created_at": r[3],
            }
            for r in rows
        ]

    def delete_orphaned_relations(self) -> int:
        """Delete non-supersedes relations that touch an inactive entry."""
        cur = self.execute(
            """DELETE FROM relations
               WHERE relation_type <> 'supersedes'
                 AND (source_id IN (SELECT id FROM entries WHERE status <> 'active')
                      OR target_id IN (SELECT id FROM entries WHERE status <> 'active'))"""
        )
        return cur.rowcount or 0

    def log_ingest(self, file_path: Optional[str], result: Dict[str, Any]) -> None:
        self.execute(
            """INSERT INTO ingest_log (id, file_path, ingested_at, entries_added, entries_updated,
                   entries_skipped, entries_superseded, dedup_llm_calls, duration_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                str(uuid.uuid4()),
                file_path,
                _now_iso(),
                result.get("added", 0),
                result.get("updated", 0),
                result.get("skipped", 0),
                result.get("superseded", 0),
                result.get("llm_dedup_calls", 0),
                result.get("duration_ms", 0),
            ),
        )

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    def _rid(self, entry_id: str) -> Optional[int]:
        row = self._conn.execute("SELECT rid FROM entries WHERE id = ?", (entry_id,)).fetchone()
        return row[0] if row else None

    def has_vector_index(self) -> bool:
        if not self._vec_available:
            return False
        row = self._conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = 'entries_vec'"
        ).fetchone()
        return bool(row and row[0])

    def _index_vector(self, rid: int, embedding: Sequence[float]) -> None:
        if len(embedding) != self.embedding_dim or not self.has_vector_index():
            return
        self._conn.execute(
            "INSERT INTO entries_vec (rowid, embedding) VALUES (?, ?)", (rid, _serialize_f32(embedding))
        )

    def _unindex_vector(self, rid: int) -> None:
        if self.has_vector_index():
            self._conn.execute("DELETE FROM entries_vec WHERE rowid = ?", (rid,))

    def find_similar(
        self,
        embedding: Sequence[float],
        limit: int = 10,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[Tuple[Entry, float]]:
        """Nearest active entries by cosine similarity, best first.

        Uses the vec0 index when present; otherwise (sqlite-vec missing, or
        index dropped during a bulk import) scans the stored embeddings.
        """
        if not embedding or limit <= 0:
            return []
        exclude = set(exclude_ids or ())
        if self.has_vector_index() and len(embedding) == self.embedding_dim:
            try:
                return self._find_similar_indexed(embedding, limit, exclude)
            except sqlite3.Error as e:
                logger.debug("Vec query failed, using brute force: %s", e)
        return self._find_similar_scan(embedding, limit, exclude)

    def _find_similar_indexed(self, embedding, limit: int, exclude: set) -> List[Tuple[Entry, float]]:
        # Over-fetch to account for filtered results
        k = limit * 2 + len(exclude)
        with self._lock:
            rows = self._conn.execute(
                "SELECT rowid, distance FROM entries_vec WHERE embedding MATCH ? AND k = ?",
                (_serialize_f32(embedding), k),
            ).fetchall()
        if not rows:
            return []
        distances = {rid: distance for rid, distance in rows}
        placeholders = ",".join("?" * len(distances))
        entries = self._select_entries(
            f"WHERE e.rid IN ({placeholders}) AND e.status = 'active'", tuple(distances)
        )
        results = [(e, 1.0 - distances[e.rid]) for e in entries if e.id not in exclude]
        results.sort(key=lambda pair: pair[1], reverse=True)
        return results[:limit]

    def _find_similar_scan(self, embedding, limit: int, exclude: set) -> List[Tuple[Entry, float]]:
        scored = []
        for e in self.active_entries(embedded_only=True):
            if e.id in exclude:
                continue
            scored.append((e, cosine_similarity(embedding, e.embedding)))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    def rebuild_vector_index(self) -> Dict[str, Any]:
        """Drop and recreate the vector index from stored embeddings, then verify.

        Raises RuntimeError when the rebuilt index cannot answer a probe query.
        """
        start = _time.monotonic()
        if not self._vec_available:
            logger.info("Vector index rebuild skipped: sqlite-vec not available")
            return {"embedding_count": 0, "duration_ms": 0, "indexed": False}

        with self.transaction():
            self._conn.execute("DROP TABLE IF EXISTS entries_vec")
            self._create_vector_table()
            rows = self._conn.execute(
                "SELECT rid, embedding FROM entries WHERE status = 'active' AND embedding IS NOT NULL"
            ).fetchall()
            count = 0
            for rid, blob in rows:
                if len(blob) // 4 != self.embedding_dim:
                    continue
                self._conn.execute("INSERT INTO entries_vec (rowid, embedding) VALUES (?, ?)", (rid, blob))
                count += 1

        if count:
            probe = self._conn.execute(
                "SELECT embedding FROM entries_vec LIMIT 1"
            ).fetchone()[0]
            hits = self._conn.execute(
                "SELECT COUNT(*) FROM (SELECT rowid FROM entries_vec WHERE embedding MATCH ? AND k = 1)",
                (probe,),
            ).fetchone()[0]
            if hits != 1:
                raise RuntimeError(f"Vector index rebuild verification failed (expected 1, got {hits})")

        duration_ms = int((_time.monotonic() - start) * 1000)
        logger.info("Vector index rebuilt for %d entries (%dms)", count, duration_ms)
        return {"embedding_count": count, "duration_ms": duration_ms, "indexed": True}

    def drop_vector_index(self) -> None:
        with self._lock:
            self._conn.execute("DROP TABLE IF EXISTS entries_vec")

    # ------------------------------------------------------------------
    # Full-text search
    # ------------------------------------------------------------------

    def fts_trigger_count(self) -> int:
        return self.execute(
            """SELECT COUNT(*) FROM sqlite_master
               WHERE type = 'trigger' AND name IN ('entries_ai', 'entries_ad', 'entries_au')"""
        ).fetchone()[0]

    def drop_fts_triggers(self) -> None:
        with self._lock:
            for name in ("entries_ai", "entries_ad", "entries_au"):
                self._conn.execute(f"DROP TRIGGER IF EXISTS {name}")

    def rebuild_fts(self) -> None:
        """Repopulate entries_fts from entries and restore the sync triggers."""
        if not self._fts_available:
            return
        with self.transaction():
            self._conn.execute("INSERT INTO entries_fts(entries_fts) VALUES ('rebuild')")
            self._create_fts_triggers()

    def search_text(self, query: str, limit: int = 20) -> List[Entry]:
        """FTS5 match over content and subject, active entries only."""
        if not self._fts_available or not query.strip():
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT rowid FROM entries_fts WHERE entries_fts MATCH ? ORDER BY rank LIMIT ?",
                (query, limit * 2),
            ).fetchall()
        rids = [r[0] for r in rows]
        if not rids:
            return []
        entries = self._select_entries(
            f"WHERE e.rid IN ({','.join('?' * len(rids))}) AND e.status = 'active'", rids
        )
        order = {rid: i for i, rid in enumerate(rids)}
        entries.sort(key=lambda e: order[e.rid])
        return entries[:limit]

    # ------------------------------------------------------------------
    # Bulk ingest
    # ------------------------------------------------------------------

    def get_bulk_meta(self) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT phase, started_at, updated_at FROM bulk_ingest_meta WHERE key = 'bulk_ingest'"
        ).fetchone()
        if not row or not row[0]:
            return None
        return {"phase": row[0], "started_at": row[1], "updated_at": row[2]}

    def set_bulk_meta(self, phase: Optional[str]) -> None:
        if phase not in (None, BULK_PHASE_WRITING, BULK_PHASE_REBUILDING_VECTOR):
            raise ValueError(f"unknown bulk ingest phase: {phase}")
        now = _now_iso()
        if phase is None:
            self.execute("DELETE FROM bulk_ingest_meta WHERE key = 'bulk_ingest'")
            return
        self.execute(
            """INSERT INTO bulk_ingest_meta (key, phase, started_at, updated_at)
               VALUES ('bulk_ingest', ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET phase = excluded.phase, updated_at = excluded.updated_at""",
            (phase, now, now),
        )

    def find_duplicate_bulk(
        self,
        norm_hash: str,
        signature,
        threshold: float = 0.65,
    ) -> bool:
        """True when an active entry has the same normalized hash, or a MinHash
        Jaccard estimate at or above threshold."""
        row = self.execute(
            "SELECT 1 FROM entries WHERE norm_content_hash = ? AND status = 'active' LIMIT 1", (norm_hash,)
        ).fetchone()
        if row:
            return True
        if signature is None:
            return False
        with self._lock:
            cur = self._conn.execute(
                "SELECT minhash_sig FROM entries WHERE status = 'active' AND minhash_sig IS NOT NULL"
            )
            for (blob,) in cur:
                if minhash_jaccard(signature, signature_from_bytes(blob)) >= threshold:
                    return True
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        except sqlite3.Error as e:
            logger.debug("Close-time WAL checkpoint failed: %s", e)
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Database close failed: %s", e)

    def __enter__(self) -> "KnowledgeStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
