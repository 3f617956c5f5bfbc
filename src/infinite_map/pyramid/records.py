"""
Database-backed tile metadata records.

One row per tile coordinate holds its status, content hash, content version,
seed and timestamps. Every write runs in its own IMMEDIATE transaction, so an
interrupted write never leaves a partially written record visible to readers.
"""

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from infinite_map.pyramid.coords import TileCoordinate

logger = logging.getLogger(__name__)

SQLITE_TIMEOUT_SECONDS = 30.0

# Fields a caller may set through upsert()/update()
WRITABLE_FIELDS = ("status", "hash", "content_ver", "seed")


class TileStatus(str, Enum):
  EMPTY = "EMPTY"
  PENDING = "PENDING"
  READY = "READY"


@dataclass
class TileRecord:
  """Metadata for a single tile coordinate."""

  z: int
  x: int
  y: int
  status: TileStatus = TileStatus.EMPTY
  hash: str | None = None
  content_ver: int = 0
  seed: str | None = None
  created_at: str | None = None
  updated_at: str | None = None

  @property
  def coord(self) -> TileCoordinate:
    return TileCoordinate(self.z, self.x, self.y)

  @classmethod
  def empty(cls, coord: TileCoordinate) -> "TileRecord":
    """A synthesized record for a coordinate that was never written."""
    return cls(z=coord.z, x=coord.x, y=coord.y)

  @classmethod
  def from_row(cls, row: tuple) -> "TileRecord":
    """
    Create a TileRecord from a database row.

    Raises ValueError or TypeError if the row does not hold a valid record.
    """
    z, x, y, status, hash_value, content_ver, seed, created_at, updated_at = row
    if content_ver is None:
      content_ver = 0
    if not isinstance(content_ver, int) or content_ver < 0:
      raise ValueError(f"Invalid content_ver: {content_ver!r}")
    return cls(
      z=int(z),
      x=int(x),
      y=int(y),
      status=TileStatus(status),
      hash=hash_value,
      content_ver=content_ver,
      seed=seed,
      created_at=created_at,
      updated_at=updated_at,
    )

  def to_dict(self) -> dict[str, Any]:
    """Convert to dictionary for JSON serialization."""
    return {
      "z": self.z,
      "x": self.x,
      "y": self.y,
      "status": self.status.value,
      "hash": self.hash,
      "content_ver": self.content_ver,
      "seed": self.seed,
      "created_at": self.created_at,
      "updated_at": self.updated_at,
    }


def _now_iso() -> str:
  return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class TileRecordStore:
  """
  Durable key-value store of TileRecords keyed by coordinate.

  This is the only component that writes tile metadata. Connections are
  opened per operation so the store is safe to share between threads, and
  SQLite's locking makes it safe across processes.

  Args:
    db_path: Path to the SQLite database file (created on first use)
  """

  def __init__(self, db_path: Path):
    self.db_path = Path(db_path)
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    self._init_table()

  # ===========================================================================
  # Connection handling
  # ===========================================================================

  def _connect(self) -> sqlite3.Connection:
    conn = sqlite3.connect(
      self.db_path, timeout=SQLITE_TIMEOUT_SECONDS, isolation_level=None
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=FULL")
    return conn

  @contextmanager
  def _transaction(self) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on error."""
    conn = self._connect()
    try:
      conn.execute("BEGIN IMMEDIATE")
      try:
        yield conn
      except BaseException:
        conn.execute("ROLLBACK")
        raise
      conn.execute("COMMIT")
    finally:
      conn.close()

  def _init_table(self) -> None:
    """Initialize the tiles table if it doesn't exist."""
    with self._transaction() as conn:
      conn.execute("""
        CREATE TABLE IF NOT EXISTS tiles (
          z INTEGER NOT NULL,
          x INTEGER NOT NULL,
          y INTEGER NOT NULL,
          status TEXT NOT NULL DEFAULT 'EMPTY',
          hash TEXT,
          content_ver INTEGER NOT NULL DEFAULT 0,
          seed TEXT,
          created_at TEXT,
          updated_at TEXT,
          PRIMARY KEY (z, x, y)
        )
      """)
      conn.execute("CREATE INDEX IF NOT EXISTS idx_tiles_status ON tiles(status)")

  # ===========================================================================
  # Reads
  # ===========================================================================

  def _select(self, conn: sqlite3.Connection, coord: TileCoordinate) -> TileRecord | None:
    cursor = conn.execute(
      """
      SELECT z, x, y, status, hash, content_ver, seed, created_at, updated_at
      FROM tiles
      WHERE z = ? AND x = ? AND y = ?
      """,
      (coord.z, coord.x, coord.y),
    )
    row = cursor.fetchone()
    if row is None:
      return None
    try:
      return TileRecord.from_row(row)
    except (ValueError, TypeError) as e:
      # Metadata is an index over the payloads, so a bad row reads as absent.
      logger.error(
        f"Corrupt tile record for {coord}: {e}; treating as EMPTY. "
        "This indicates an out-of-band write to the metadata store."
      )
      return None

  def get(self, coord: TileCoordinate) -> TileRecord | None:
    """Get the record for a coordinate, or None if never written."""
    conn = self._connect()
    try:
      return self._select(conn, coord)
    finally:
      conn.close()

  def batch_get(self, coords: Iterable[TileCoordinate]) -> list[TileRecord]:
    """
    Get one record per input coordinate, in input order.

    Coordinates never written get a synthesized EMPTY record.
    """
    conn = self._connect()
    try:
      records = []
      for coord in coords:
        record = self._select(conn, coord)
        records.append(record if record is not None else TileRecord.empty(coord))
      return records
    finally:
      conn.close()

  def status_summary(self) -> list[tuple[int, str, int]]:
    """Count records per (depth, status), ordered by depth."""
    conn = self._connect()
    try:
      cursor = conn.execute(
        """
        SELECT z, status, COUNT(*)
        FROM tiles
        GROUP BY z, status
        ORDER BY z ASC, status ASC
        """
      )
      return [(row[0], row[1], row[2]) for row in cursor.fetchall()]
    finally:
      conn.close()

  # ===========================================================================
  # Writes
  # ===========================================================================

  def _write(self, conn: sqlite3.Connection, record: TileRecord) -> None:
    conn.execute(
      """
      INSERT OR REPLACE INTO tiles
        (z, x, y, status, hash, content_ver, seed, created_at, updated_at)
      VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
      """,
      (
        record.z,
        record.x,
        record.y,
        record.status.value,
        record.hash,
        record.content_ver,
        record.seed,
        record.created_at,
        record.updated_at,
      ),
    )

  def upsert(
    self,
    coord: TileCoordinate,
    status: TileStatus | None = None,
    hash: str | None = None,
    content_ver: int | None = None,
    seed: str | None = None,
  ) -> TileRecord:
    """
    Merge the supplied fields over the current record (or EMPTY defaults).

    Fields left as None keep their current value. updated_at is always
    refreshed, so calling twice with the same status only moves updated_at.

    Returns:
      The record as written
    """
    with self._transaction() as conn:
      current = self._select(conn, coord) or TileRecord.empty(coord)
      now = _now_iso()
      merged = TileRecord(
        z=coord.z,
        x=coord.x,
        y=coord.y,
        status=TileStatus(status) if status is not None else current.status,
        hash=hash if hash is not None else current.hash,
        content_ver=content_ver if content_ver is not None else current.content_ver,
        seed=seed if seed is not None else current.seed,
        created_at=current.created_at or now,
        updated_at=now,
      )
      self._write(conn, merged)
    return merged

  def update(self, coord: TileCoordinate, patch: dict[str, Any]) -> TileRecord:
    """
    Apply a patch where present keys always win, including explicit None.

    A None for hash or seed clears it; a None for content_ver resets it to 0.
    Use this when a value must be removed, e.g. on tile deletion.

    Args:
      coord: Tile coordinate
      patch: Mapping of field name to new value

    Returns:
      The record as written
    """
    unknown = set(patch) - set(WRITABLE_FIELDS)
    if unknown:
      raise ValueError(f"Unknown tile record fields: {sorted(unknown)}")
    if "status" in patch and patch["status"] is None:
      raise ValueError("status cannot be cleared")

    with self._transaction() as conn:
      current = self._select(conn, coord) or TileRecord.empty(coord)
      now = _now_iso()
      merged = TileRecord(
        z=coord.z,
        x=coord.x,
        y=coord.y,
        status=TileStatus(patch.get("status", current.status)),
        hash=patch.get("hash", current.hash),
        content_ver=patch.get("content_ver", current.content_ver) or 0,
        seed=patch.get("seed", current.seed),
        created_at=current.created_at or now,
        updated_at=now,
      )
      self._write(conn, merged)
    return merged

  def clear(self) -> int:
    """Delete every record. Returns the number of rows removed."""
    with self._transaction() as conn:
      cursor = conn.execute("DELETE FROM tiles")
      return cursor.rowcount
