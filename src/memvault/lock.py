"""
memvault lock -- advisory consolidation lock file.

Consolidation holds $MEMVAULT_HOME/consolidation.lock (containing its PID)
for the whole run. Writers only warn when it is held; a second consolidation
refuses to start. Locks left behind by dead processes are removed on acquire.
"""

import errno
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from memvault.crypto import ensure_home, memvault_home

logger = logging.getLogger("memvault.lock")

LOCK_FILENAME = "consolidation.lock"


class ConsolidationLockedError(RuntimeError):
    """Another live process is consolidating the same store."""

    def __init__(self, pid: int, path: Path):
        super().__init__(f"Consolidation already running (pid {pid}, lock {path})")
        self.pid = pid
        self.path = path


def lock_path() -> Path:
    return memvault_home() / LOCK_FILENAME


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as e:
        return e.errno == errno.EPERM
    return True


def _read_pid(path: Path) -> Optional[int]:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def acquire_lock(path: Optional[Path] = None) -> Path:
    """Create the lock file with our PID. Raises ConsolidationLockedError."""
    path = Path(path) if path else lock_path()
    if path.parent == memvault_home():
        ensure_home()
    for _ in range(2):
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            holder = _read_pid(path)
            if holder is not None and holder != os.getpid() and _pid_alive(holder):
                raise ConsolidationLockedError(holder, path)
            logger.info("Removing stale consolidation lock (pid %s)", holder)
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            continue
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return path
    holder = _read_pid(path) or 0
    raise ConsolidationLockedError(holder, path)


def release_lock(path: Optional[Path] = None) -> None:
    """Remove the lock if this process owns it."""
    path = Path(path) if path else lock_path()
    if _read_pid(path) == os.getpid():
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def is_locked(path: Optional[Path] = None) -> bool:
    """True when a live process other than this one holds the lock."""
    path = Path(path) if path else lock_path()
    holder = _read_pid(path)
    return holder is not None and holder != os.getpid() and _pid_alive(holder)


def warn_if_locked(path: Optional[Path] = None) -> bool:
    if is_locked(path):
        logger.warning("Consolidation in progress. Writes may be delayed.")
        return True
    return False


@contextmanager
def consolidation_lock(path: Optional[Path] = None) -> Iterator[Path]:
    held = acquire_lock(path)
    try:
        yield held
    finally:
        release_lock(held)
