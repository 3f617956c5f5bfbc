"""
Payload storage for encoded tile images.

Payloads are addressed by coordinate, one file per tile. Writes go to a
temporary file in the same directory and are moved into place with
os.replace(), so readers see either the old payload or the new one.
"""

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

from infinite_map.pyramid.coords import TileCoordinate

logger = logging.getLogger(__name__)

_TILE_FILE_RE = re.compile(r"^(\d+)_(\d+)_(\d+)$")


def write_bytes_atomic(path: Path, data: bytes) -> None:
  """Write bytes to path via a temporary file and an atomic rename."""
  path.parent.mkdir(parents=True, exist_ok=True)
  fd, tmp_name = tempfile.mkstemp(
    prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
  )
  try:
    with os.fdopen(fd, "wb") as f:
      f.write(data)
      f.flush()
      os.fsync(f.fileno())
    os.replace(tmp_name, path)
  except BaseException:
    Path(tmp_name).unlink(missing_ok=True)
    raise


class PayloadStore:
  """
  Coordinate-addressed store of opaque tile payloads.

  Args:
    tile_dir: Directory holding the tile files
    extension: File extension matching the encoder format (e.g. "webp")
  """

  def __init__(self, tile_dir: Path, extension: str = "webp"):
    self.tile_dir = Path(tile_dir)
    self.extension = extension
    self.tile_dir.mkdir(parents=True, exist_ok=True)

  def tile_path(self, coord: TileCoordinate) -> Path:
    return self.tile_dir / f"{coord.key}.{self.extension}"

  def read(self, coord: TileCoordinate) -> bytes | None:
    """Read a tile payload, or None if the tile has none."""
    try:
      return self.tile_path(coord).read_bytes()
    except FileNotFoundError:
      return None

  def read_many(self, coords: list[TileCoordinate]) -> list[bytes | None]:
    return [self.read(c) for c in coords]

  def exists(self, coord: TileCoordinate) -> bool:
    return self.tile_path(coord).exists()

  def write(self, coord: TileCoordinate, payload: bytes) -> None:
    """Replace the payload at a coordinate."""
    write_bytes_atomic(self.tile_path(coord), payload)

  def delete(self, coord: TileCoordinate) -> bool:
    """
    Remove the payload at a coordinate.

    Returns:
      True if a payload was removed, False if there was none
    """
    try:
      self.tile_path(coord).unlink()
      return True
    except FileNotFoundError:
      return False

  def coords_at_depth(self, z: int) -> list[TileCoordinate]:
    """List every coordinate at depth z that currently holds a payload."""
    coords = []
    for path in self.tile_dir.glob(f"{z}_*_*.{self.extension}"):
      match = _TILE_FILE_RE.match(path.stem)
      if match and int(match.group(1)) == z:
        coords.append(TileCoordinate(z, int(match.group(2)), int(match.group(3))))
    return sorted(coords, key=lambda c: (c.y, c.x))

  def clear(self) -> int:
    """Delete all payloads. Returns the number of entries removed."""
    removed = 0
    for path in self.tile_dir.iterdir():
      if path.is_dir():
        shutil.rmtree(path)
      else:
        path.unlink(missing_ok=True)
      removed += 1
    logger.info(f"Cleared {removed} entries from {self.tile_dir}")
    return removed
