"""
memvault fingerprinting -- hashes, MinHash signatures, cosine, union-find.

These are the cheap primitives every dedup tier is built on:

- content_hash / ingest_content_hash: exact short-circuit before any
  embedding or LLM work
- norm_content_hash: catches cosmetic duplicates (case, spacing, punctuation)
- minhash_signature / minhash_jaccard: approximate Jaccard over character
  shingles, used by bulk ingest
- cosine_similarity / average_embedding: embedding comparisons that never raise
- UnionFind: arena-backed disjoint sets for clustering

Usage:
    sig_a = minhash_signature("The quick brown fox")
    sig_b = minhash_signature("The quick brown foxes")
    minhash_jaccard(sig_a, sig_b)  # ~0.8
"""

import hashlib
import logging
import re
from typing import Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger("memvault.fingerprint")

MINHASH_NUM_PERM = 128
MINHASH_SHINGLE_SIZE = 5
MINHASH_SEED = 1

_MERSENNE_PRIME = np.uint64((1 << 61) - 1)
_MAX_HASH = np.uint64((1 << 32) - 1)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_WHITESPACE_RE = re.compile(r"\s+")

# Permutation coefficients are derived from a fixed seed so signatures stored
# in the database stay comparable across processes.
_PERMUTATIONS: Dict[int, tuple] = {}


# ---------------------------------------------------------------------------
# Hashes
# ---------------------------------------------------------------------------


def content_hash(text: str) -> str:
    """sha256 hex digest of the raw text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def ingest_content_hash(content: str, source_file: Optional[str] = None) -> str:
    """Hash identifying one extracted entry within an ingest run.

    Two entries from the same source file with the same content collapse to
    the same key.
    """
    return content_hash(f"{source_file or ''}\n{content}")


def normalize_content(text: str) -> str:
    """Lowercase, turn punctuation into spaces and collapse whitespace."""
    text = _NON_ALNUM_RE.sub(" ", text.lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def norm_content_hash(text: str) -> str:
    return content_hash(normalize_content(text))


def normalize_subject(subject: Optional[str]) -> str:
    return (subject or "").strip().lower()


# ---------------------------------------------------------------------------
# MinHash
# ---------------------------------------------------------------------------


def _permutations(num_perm: int) -> tuple:
    perms = _PERMUTATIONS.get(num_perm)
    if perms is None:
        rng = np.random.RandomState(MINHASH_SEED)
        a = rng.randint(1, (1 << 61) - 1, size=num_perm, dtype=np.uint64)
        b = rng.randint(0, (1 << 61) - 1, size=num_perm, dtype=np.uint64)
        perms = (a, b)
        _PERMUTATIONS[num_perm] = perms
    return perms


def _shingles(text: str, size: int = MINHASH_SHINGLE_SIZE) -> set:
    normalized = normalize_content(text)
    if not normalized:
        return set()
    if len(normalized) <= size:
        return {normalized}
    return {normalized[i : i + size] for i in range(len(normalized) - size + 1)}


def _shingle_hash(shingle: str) -> int:
    return int.from_bytes(hashlib.blake2b(shingle.encode("utf-8"), digest_size=4).digest(), "little")


def minhash_signature(text: str, num_perm: int = MINHASH_NUM_PERM) -> np.ndarray:
    """Compute a MinHash signature (uint32 array of length num_perm).

    Empty text yields an all-max signature, which only matches other empty
    text.
    """
    signature = np.full(num_perm, _MAX_HASH, dtype=np.uint64)
    shingles = _shingles(text)
    if not shingles:
        return signature.astype(np.uint32)

    a, b = _permutations(num_perm)
    hashes = np.array([_shingle_hash(s) for s in shingles], dtype=np.uint64)
    # uint64 overflow wraps; the result is still a fixed pseudo-random permutation
    with np.errstate(over="ignore"):
        permuted = np.bitwise_and((hashes[:, None] * a[None, :] + b[None, :]) % _MERSENNE_PRIME, _MAX_HASH)
    signature = np.minimum(signature, permuted.min(axis=0))
    return signature.astype(np.uint32)


def minhash_jaccard(sig_a: Optional[Sequence[int]], sig_b: Optional[Sequence[int]]) -> float:
    """Estimated Jaccard similarity: fraction of equal signature slots."""
    if sig_a is None or sig_b is None:
        return 0.0
    a = np.asarray(sig_a)
    b = np.asarray(sig_b)
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    return float(np.count_nonzero(a == b)) / float(a.size)


def signature_to_bytes(signature: np.ndarray) -> bytes:
    return np.asarray(signature, dtype="<u4").tobytes()


def signature_from_bytes(data: Optional[bytes]) -> Optional[np.ndarray]:
    if not data:
        return None
    return np.frombuffer(data, dtype="<u4").copy()


# ---------------------------------------------------------------------------
# Embedding similarity
# ---------------------------------------------------------------------------


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-norm vectors."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def average_embedding(vectors: Sequence[Sequence[float]]) -> List[float]:
    """Elementwise mean of the vectors that match the first one's length."""
    if not vectors:
        return []
    dim = len(vectors[0])
    usable = [v for v in vectors if len(v) == dim]
    if dim == 0 or not usable:
        return []
    if len(usable) < len(vectors):
        logger.debug("average_embedding: skipped %d mismatched vectors", len(vectors) - len(usable))
    return np.mean(np.asarray(usable, dtype=np.float64), axis=0).tolist()


def similarity_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise cosine matrix for equal-length vectors (zero rows stay zero)."""
    if not vectors:
        return np.zeros((0, 0))
    m = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(m, axis=1)
    norms[norms == 0.0] = 1.0
    m = m / norms[:, None]
    return m @ m.T


# ---------------------------------------------------------------------------
# Union-find
# ---------------------------------------------------------------------------


class UnionFind:
    """Disjoint sets over the integer indices 0..n-1.

    Parent and rank live in flat lists; callers map their own ids to indices.
    find() compresses the whole path on every call.
    """

    __slots__ = ("parent", "rank")

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def __len__(self) -> int:
        return len(self.parent)

    def find(self, x: int) -> int:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: int, b: int) -> int:
        ra = self.find(a)
        rb = self.find(b)
        if ra == rb:
            return ra
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1
        return ra

    def connected(self, a: int, b: int) -> bool:
        return self.find(a) == self.find(b)

    def groups(self) -> Dict[int, List[int]]:
        """Map each root to its members, members in ascending index order."""
        out: Dict[int, List[int]] = {}
        for i in range(len(self.parent)):
            out.setdefault(self.find(i), []).append(i)
        return out
