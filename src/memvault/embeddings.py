"""
memvault embeddings -- embedding providers and the batching client.

Provides:
- LocalEmbedder: ONNX Runtime model (bge-small-en-v1.5, 384 dims), falling
  back to sentence-transformers, then to a deterministic hash embedding
- EmbeddingClient: wraps any provider with batching, bounded concurrency
  (3 requests in flight) and exponential backoff on rate limits
- EmbeddingCache: per-run text -> vector cache

A provider is anything with ``embed(texts) -> list of vectors``. Remote
providers signal failures with EmbeddingAuthError (never retried) or
EmbeddingRateLimitError (retried).
"""

import hashlib
import logging
import math
import os
import random
import time as _time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger("memvault.embeddings")

EMBEDDING_DIM = 384
DEFAULT_BATCH_SIZE = 64
DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 0.5  # seconds

_ONNX_DEFAULT_DIR = "~/.cache/memvault/models/bge-small-en-v1.5-onnx"
_ST_MODEL_NAME = "BAAI/bge-small-en-v1.5"
_LOAD_ATTEMPTS_BEFORE_OPEN = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300


class EmbeddingError(RuntimeError):
    """Base class for embedding provider failures."""


class EmbeddingAuthError(EmbeddingError):
    """Invalid or missing credentials. Not retried."""


class EmbeddingRateLimitError(EmbeddingError):
    """Provider asked us to slow down. Retried with backoff."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Local model
# ---------------------------------------------------------------------------


def hash_embedding(text: str, dimension: int = EMBEDDING_DIM) -> List[float]:
    """Deterministic pseudo-embedding from a text hash (unit length)."""
    seed = int.from_bytes(hashlib.md5(text.encode("utf-8")).digest()[:4], byteorder="big")
    rng = random.Random(seed)
    vector = [rng.gauss(0, 1) for _ in range(dimension)]
    magnitude = math.sqrt(sum(x * x for x in vector))
    if magnitude == 0:
        return [1.0 / math.sqrt(dimension)] * dimension
    return [x / magnitude for x in vector]


def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
    """Mean-pooled, L2-normalized embeddings from an ONNX transformer."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    if "token_type_ids" in {i.name for i in session.get_inputs()}:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        weights = mask[:, :, np.newaxis].astype(np.float32)
        embeddings = np.sum(embeddings * weights, axis=1) / np.clip(np.sum(weights, axis=1), 1e-9, None)
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, 1e-9, None)


class LocalEmbedder:
    """In-process embedding model with lazy loading and a circuit breaker.

    Load order: ONNX Runtime (model.onnx + tokenizer.json in model_dir),
    then sentence-transformers, then hash embeddings. After three failed
    loads the breaker stays open for five minutes and hash embeddings are
    served instead.
    """

    def __init__(self, model_dir: Optional[str] = None, dimension: int = EMBEDDING_DIM, cache_size: int = 512):
        self.model_dir = model_dir or os.environ.get("MEMVAULT_EMBEDDING_MODEL_DIR") or _ONNX_DEFAULT_DIR
        self.dimension = dimension
        self.backend: Optional[str] = None
        self._model: Any = None
        self._attempts = 0
        self._first_failure = 0.0
        self._cache: OrderedDict = OrderedDict()
        self._cache_size = cache_size

    def reset(self) -> None:
        self._model = None
        self.backend = None
        self._attempts = 0
        self._first_failure = 0.0
        self._cache.clear()

    def _load(self):
        if self._model is not None:
            return self._model
        if os.environ.get("MEMVAULT_SKIP_EMBEDDINGS") == "1":
            return None
        if self._attempts >= _LOAD_ATTEMPTS_BEFORE_OPEN:
            if _time.monotonic() - self._first_failure < _CIRCUIT_BREAKER_COOLDOWN_S:
                return None
            logger.info("Circuit breaker cooldown expired, retrying model load")
            self._attempts = 0
        self._attempts += 1
        if self._attempts == 1:
            self._first_failure = _time.monotonic()

        model_dir = Path(os.path.expanduser(self.model_dir))
        if (model_dir / "model.onnx").exists():
            try:
                import onnxruntime as ort
                from tokenizers import Tokenizer

                tokenizer = Tokenizer.from_file(str(model_dir / "tokenizer.json"))
                tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                tokenizer.enable_truncation(max_length=512)
                opts = ort.SessionOptions()
                opts.log_severity_level = 4
                opts.enable_cpu_mem_arena = False
                session = ort.InferenceSession(
                    str(model_dir / "model.onnx"), sess_options=opts, providers=["CPUExecutionProvider"]
                )
                self._model = (tokenizer, session)
                self.backend = "onnx"
                self._attempts = 0
                logger.info("Loaded ONNX embedding model from %s", model_dir)
                return self._model
            except Exception as e:
                logger.warning("Failed to load ONNX model (attempt %d): %s", self._attempts, e)

        try:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(_ST_MODEL_NAME)
            self.backend = "sentence-transformers"
            self._attempts = 0
            logger.info("Loaded sentence-transformers model %s", _ST_MODEL_NAME)
        except ImportError:
            logger.warning("No embedding backend available; using hash embeddings")
        except Exception as e:
            logger.warning("Failed to load sentence-transformers (attempt %d): %s", self._attempts, e)
        return self._model

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        texts = list(texts)
        if not texts:
            return []
        missing = [t for t in dict.fromkeys(texts) if t not in self._cache]
        if missing:
            for text, vector in zip(missing, self._encode(missing)):
                self._cache[text] = vector
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)
        out = []
        for t in texts:
            vector = self._cache.get(t)
            if vector is None:
                # evicted by a large batch; recompute alone
                vector = self._encode([t])[0]
            else:
                self._cache.move_to_end(t)
            out.append(vector)
        return out

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load()
        if model is not None:
            try:
                if self.backend == "onnx":
                    tokenizer, session = model
                    results: List[List[float]] = []
                    for i in range(0, len(texts), 32):
                        results.extend(_onnx_encode(tokenizer, session, texts[i : i + 32]).tolist())
                    return results
                return [e.tolist() for e in model.encode(texts, normalize_embeddings=True, batch_size=32)]
            except Exception as e:
                logger.warning("Embedding generation failed, falling back to hash: %s", e)
        return [hash_embedding(t, self.dimension) for t in texts]


# ---------------------------------------------------------------------------
# Batching client
# ---------------------------------------------------------------------------


class EmbeddingClient:
    """Batches texts for a provider with bounded concurrency and retries.

    provider is either an object with ``embed(texts)`` or a plain callable
    taking the list of texts. Output order always matches input order.
    """

    def __init__(
        self,
        provider: Any,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        dimension: Optional[int] = None,
        sleep: Callable[[float], None] = _time.sleep,
    ):
        if batch_size < 1 or max_concurrency < 1 or max_attempts < 1:
            raise ValueError("batch_size, max_concurrency and max_attempts must be >= 1")
        self._embed_fn = provider.embed if hasattr(provider, "embed") else provider
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.dimension = dimension
        self._sleep = sleep
        self.calls = 0

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        texts = list(texts)
        if not texts:
            return []
        batches = [texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)]
        if len(batches) == 1:
            return self._embed_batch(batches[0])
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="embedding") as pool:
            results = list(pool.map(self._embed_batch, batches))
        return [vector for batch in results for vector in batch]

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.calls += 1
                vectors = self._embed_fn(batch)
                break
            except EmbeddingRateLimitError as e:
                if attempt >= self.max_attempts:
                    raise
                delay = e.retry_after if e.retry_after is not None else self.base_delay * (2 ** (attempt - 1))
                logger.warning("Embedding rate limited (attempt %d/%d), retrying in %.1fs",
                               attempt, self.max_attempts, delay)
                self._sleep(delay)
        vectors = [list(map(float, v)) for v in vectors]
        if len(vectors) != len(batch):
            raise EmbeddingError(f"provider returned {len(vectors)} vectors for {len(batch)} texts")
        expected = self.dimension or (len(vectors[0]) if vectors else 0)
        for v in vectors:
            if len(v) != expected:
                raise EmbeddingError(f"provider returned a {len(v)}-dim vector, expected {expected}")
        return vectors


class EmbeddingCache:
    """Per-run text -> embedding cache; embeds only texts not seen before."""

    def __init__(self):
        self._vectors: Dict[str, List[float]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, text: str) -> bool:
        return text in self._vectors

    def get(self, text: str) -> Optional[List[float]]:
        return self._vectors.get(text)

    def put(self, text: str, vector: List[float]) -> None:
        self._vectors[text] = vector

    def embed(self, embedder: Any, texts: Sequence[str]) -> List[List[float]]:
        missing = [t for t in dict.fromkeys(texts) if t not in self._vectors]
        self.hits += len(texts) - len(missing)
        self.misses += len(missing)
        if missing:
            for text, vector in zip(missing, embedder.embed(missing)):
                self._vectors[text] = vector
        return [self._vectors[t] for t in texts]
