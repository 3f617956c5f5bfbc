"""
Per-tile concurrency control.

Two layers work together:

1. A durable lock file per job name. It is created exclusively, survives
   process restarts, and is reclaimed by any waiter once it is older than the
   staleness window (its holder is presumed crashed).
2. An in-process set of running job names. A request for a name that this
   process is already servicing is dropped before any lock is touched.

The durable lock is the correctness boundary across workers; the in-process
set only absorbs duplicate bursts (e.g. retried HTTP requests).
"""

import json
import logging
import os
import random
import re
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from infinite_map.pyramid.coords import TileCoordinate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_STALE_AFTER = 30.0
# Jittered sleep between acquisition attempts, in seconds
BACKOFF_RANGE = (0.025, 0.05)

_LOCK_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class LockTimeout(TimeoutError):
  """A lock could not be acquired in time and no stale lock was reclaimed."""

  def __init__(self, name: str, waited: float):
    super().__init__(f"Lock timeout: {name} (waited {waited:.2f}s)")
    self.name = name
    self.waited = waited


def job_name(coord: TileCoordinate) -> str:
  """Stable lock/job name for a tile coordinate."""
  return f"job_{coord.key}"


class FileLock:
  """
  Guard for an acquired lock file.

  Releasing removes the lock file unconditionally. A failed removal is only
  logged: the leftover file goes stale and is reclaimed by the next waiter.
  """

  def __init__(self, path: Path, name: str, owner: str):
    self.path = path
    self.name = name
    self.owner = owner
    self.released = False

  def release(self) -> None:
    if self.released:
      return
    self.released = True
    try:
      self.path.unlink(missing_ok=True)
    except OSError as e:
      logger.warning(f"Failed to remove lock {self.name}: {e}")

  def __enter__(self) -> "FileLock":
    return self

  def __exit__(self, exc_type, exc, tb) -> None:
    self.release()


class LockManager:
  """
  Creates and reclaims lock files in a directory.

  Args:
    lock_dir: Directory holding the lock files
    timeout: Max seconds to wait for a lock before raising LockTimeout
    stale_after: Age in seconds after which a lock is considered abandoned
  """

  def __init__(
    self,
    lock_dir: Path,
    timeout: float = DEFAULT_TIMEOUT,
    stale_after: float = DEFAULT_STALE_AFTER,
  ):
    self.lock_dir = Path(lock_dir)
    self.timeout = timeout
    self.stale_after = stale_after
    self.lock_dir.mkdir(parents=True, exist_ok=True)

  def lock_path(self, name: str) -> Path:
    if not _LOCK_NAME_RE.match(name):
      raise ValueError(f"Invalid lock name: {name!r}")
    return self.lock_dir / f"{name}.lock"

  def _is_stale(self, path: Path) -> bool:
    try:
      age = time.time() - path.stat().st_mtime
    except FileNotFoundError:
      return False
    return age > self.stale_after

  def _reclaim_if_stale(self, path: Path, name: str) -> bool:
    """
    Remove a lock file whose age exceeds the staleness window.

    The file is first renamed aside so that two waiters reclaiming at once
    cannot delete a lock that a third party has just created.

    Returns:
      True if a stale lock was removed
    """
    if not self._is_stale(path):
      return False

    tomb = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.stale")
    try:
      os.rename(path, tomb)
    except FileNotFoundError:
      return False

    try:
      if not self._is_stale(tomb):
        # Moved a live lock; put it back unless the slot was taken meanwhile.
        try:
          os.link(tomb, path)
        except OSError as e:
          logger.warning(f"Could not restore live lock {name}: {e}")
        return False
    finally:
      tomb.unlink(missing_ok=True)

    logger.warning(f"Removed stale lock: {name}")
    return True

  def _try_create(self, path: Path, name: str, owner: str) -> bool:
    try:
      fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
      return False
    with os.fdopen(fd, "w") as f:
      json.dump({"name": name, "owner": owner, "created_at": time.time()}, f)
    return True

  def acquire(self, name: str) -> FileLock:
    """
    Block until the named lock is held, reclaiming it if stale.

    Raises:
      LockTimeout: if the wait exceeds the timeout and the existing lock
        is not stale
    """
    path = self.lock_path(name)
    owner = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
    start = time.monotonic()

    while True:
      if self._try_create(path, name, owner):
        logger.debug(f"Acquired lock {name} ({owner})")
        return FileLock(path, name, owner)

      if self._reclaim_if_stale(path, name):
        continue

      waited = time.monotonic() - start
      if waited > self.timeout:
        # One final staleness check before giving up
        if not self._reclaim_if_stale(path, name):
          raise LockTimeout(name, waited)
        continue

      time.sleep(random.uniform(*BACKOFF_RANGE))

  @contextmanager
  def hold(self, name: str) -> Iterator[FileLock]:
    """Context manager form of acquire()."""
    guard = self.acquire(name)
    try:
      yield guard
    finally:
      guard.release()

  def clean_stale(self) -> int:
    """Remove every stale lock in the directory. Returns how many."""
    removed = 0
    for path in self.lock_dir.glob("*.lock"):
      if self._reclaim_if_stale(path, path.stem):
        removed += 1
    return removed

  def clear(self) -> int:
    """Remove all lock files regardless of age."""
    removed = 0
    for path in self.lock_dir.iterdir():
      path.unlink(missing_ok=True)
      removed += 1
    return removed


class ConcurrencyGate:
  """
  Owned gate combining in-process dedup with durable per-tile locks.

  Args:
    locks: LockManager providing the durable layer
  """

  def __init__(self, locks: LockManager):
    self.locks = locks
    self._running: set[str] = set()
    self._running_lock = threading.Lock()

  def is_running(self, name: str) -> bool:
    with self._running_lock:
      return name in self._running

  @contextmanager
  def job(self, name: str) -> Iterator[bool]:
    """
    Register a job name as running in this process for the block.

    Yields False (and registers nothing) when the name is already running,
    in which case the caller drops the request. The entry is removed when
    the block exits, whether it succeeded or raised.
    """
    with self._running_lock:
      accepted = name not in self._running
      if accepted:
        self._running.add(name)

    if not accepted:
      logger.info(f"Job already running for {name}, skipping duplicate request")
      yield False
      return

    try:
      yield True
    finally:
      with self._running_lock:
        self._running.discard(name)

  def lock(self, name: str) -> FileLock:
    """Acquire the durable lock for a job name (use as a context manager)."""
    return self.locks.acquire(name)

  def lock_tile(self, coord: TileCoordinate) -> FileLock:
    return self.lock(job_name(coord))
