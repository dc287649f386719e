"""
memvault crypto -- secure file creation and optional encryption of state files.

The knowledge database and the JSON state files (review queue, consolidation
checkpoint) are created owner-only (0600) inside a 0700 home directory.

When MEMVAULT_ENCRYPT=1, JSON state files are written as a single Fernet
token (AES-128-CBC + HMAC-SHA256) prefixed with "ENC:". The key lives at
$MEMVAULT_HOME/.key and is created on first use. Plain files stay readable
after encryption is turned on, so existing queues migrate transparently.
"""

import base64
import json
import logging
import os
import secrets
import sqlite3
import stat
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger("memvault.crypto")

_fernet_instance = None


def memvault_home() -> Path:
    """Resolve MEMVAULT_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("MEMVAULT_HOME", str(Path.home() / ".memvault")))


def ensure_home() -> Path:
    home = memvault_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    return home


def is_enabled() -> bool:
    """Encryption of state files is opt-in: MEMVAULT_ENCRYPT=1."""
    val = os.environ.get("MEMVAULT_ENCRYPT", "").strip().lower()
    return val in ("1", "true", "yes")


def reset_crypto_state() -> None:
    """Reset module state for test isolation."""
    global _fernet_instance
    _fernet_instance = None


def _get_or_create_key() -> bytes:
    kp = memvault_home() / ".key"
    if kp.exists():
        raw = kp.read_bytes().strip()
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    ensure_home()
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    fd = os.open(str(kp), os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    try:
        os.write(fd, encoded_key)
    finally:
        os.close(fd)
    logger.info("Created encryption key at %s", kp)
    return encoded_key


def _get_fernet():
    global _fernet_instance
    if _fernet_instance is None:
        from cryptography.fernet import Fernet

        _fernet_instance = Fernet(_get_or_create_key())
    return _fernet_instance


def encrypt(plaintext: str) -> str:
    """Encrypt a string when encryption is enabled, else return it unchanged."""
    if not is_enabled():
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return "ENC:" + token.decode("ascii")


def decrypt(data: str) -> str:
    """Decrypt "ENC:" payloads; anything else is returned as-is.

    Raises ValueError when the payload cannot be decrypted (wrong key or
    corrupted file).
    """
    if not data.startswith("ENC:"):
        return data
    from cryptography.fernet import InvalidToken

    try:
        return _get_fernet().decrypt(data[4:].encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise ValueError(f"Decryption failed: {e}") from e


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON via temp file + rename so readers never see a torn file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    text = encrypt(json.dumps(payload, indent=2, sort_keys=True))
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path) -> Any:
    """Read a JSON state file written by atomic_write_json.

    Returns None when the file does not exist.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return json.loads(decrypt(raw.strip()))


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Create a SQLite connection with secure file permissions (0o600).

    Pre-creates the DB file with restricted permissions before connecting,
    and fixes existing files that have overly permissive permissions.
    """
    db_path_str = str(db_path)
    if db_path_str == ":memory:":
        return sqlite3.connect(db_path_str, **kwargs)

    path_obj = Path(db_path_str)
    if not path_obj.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)
