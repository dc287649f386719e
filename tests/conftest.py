"""memvault test configuration."""
import math
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure memvault is importable without an install
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

TEST_DIM = 8


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------


def axis(i, dim=TEST_DIM):
    """Unit vector along axis i."""
    v = [0.0] * dim
    v[i] = 1.0
    return v


def near(base, other, similarity, dim=TEST_DIM):
    """Unit vector with cosine `similarity` to axis(base), leaning toward axis(other).

    Two vectors near(b, o1, s1) and near(b, o2, s2) with o1 != o2 have cosine s1 * s2.
    """
    v = [0.0] * dim
    v[base] = similarity
    v[other] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return v


def days_ago(days):
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeEmbedder:
    """Deterministic embedder: registered vectors first, hash vectors otherwise."""

    def __init__(self, dim=TEST_DIM):
        from memvault.embeddings import hash_embedding

        self.dim = dim
        self.vectors = {}
        self.calls = 0
        self.texts = []
        self._hash = hash_embedding

    def set(self, text, vector):
        self.vectors[text] = list(vector)

    def embed(self, texts):
        self.calls += 1
        self.texts.extend(texts)
        return [list(self.vectors.get(t) or self._hash(t, self.dim)) for t in texts]


class ScriptedLLM:
    """LLM client whose tool calls return scripted arguments.

    responses maps a tool name to a dict (returned every time), a list
    (consumed in order, the last item repeats), a callable taking
    (system_prompt, user_prompt) or an Exception instance to raise.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self._lock = threading.Lock()

    def call_tool(self, system_prompt, user_prompt, tool):
        name = tool["name"]
        with self._lock:
            self.calls.append((name, user_prompt))
            response = self.responses.get(name)
            if isinstance(response, list):
                response = response.pop(0) if len(response) > 1 else (response[0] if response else None)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(system_prompt, user_prompt)
        return response

    def count(self, tool_name=None):
        return len([c for c in self.calls if tool_name is None or c[0] == tool_name])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_home(tmp_path):
    """Create a temporary MEMVAULT_HOME for testing."""
    home = tmp_path / ".memvault"
    home.mkdir()
    old_home = os.environ.get("MEMVAULT_HOME")
    old_encrypt = os.environ.get("MEMVAULT_ENCRYPT")
    os.environ["MEMVAULT_HOME"] = str(home)
    # Default: disable encryption in tests for deterministic output
    os.environ["MEMVAULT_ENCRYPT"] = "0"
    from memvault.crypto import reset_crypto_state

    reset_crypto_state()
    yield home
    for key, old in (("MEMVAULT_HOME", old_home), ("MEMVAULT_ENCRYPT", old_encrypt)):
        if old is not None:
            os.environ[key] = old
        else:
            os.environ.pop(key, None)
    reset_crypto_state()


@pytest.fixture
def tmp_home_encrypted(tmp_home):
    """MEMVAULT_HOME with state-file encryption enabled."""
    os.environ["MEMVAULT_ENCRYPT"] = "1"
    from memvault.crypto import reset_crypto_state

    reset_crypto_state()
    yield tmp_home
    os.environ["MEMVAULT_ENCRYPT"] = "0"


@pytest.fixture
def store(tmp_home):
    """Create a fresh KnowledgeStore with small embeddings."""
    from memvault.store import KnowledgeStore

    s = KnowledgeStore(db_path=tmp_home / "test.db", embedding_dim=TEST_DIM)
    yield s
    s.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def add_entry(store):
    """Insert an active entry directly: add_entry(content, vector, **fields) -> id."""

    def _add(content, vector=None, **fields):
        data = {"type": "fact", "subject": "Jim", "content": content}
        data.update(fields)
        with store.transaction():
            return store.insert_entry(data, vector)

    return _add
