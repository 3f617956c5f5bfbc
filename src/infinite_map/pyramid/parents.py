"""
Bottom-up synthesis of interior (parent) tiles.

A parent tile is its four children stitched into a 2x composite and
downsampled back to the tile size. Missing children are filled with the
default tile, but a parent with no children at all is never created.
"""

import logging
from collections.abc import Callable, Iterable

from PIL import Image

from infinite_map.pyramid.coords import InvalidCoordinate, TileCoordinate, validate
from infinite_map.pyramid.hashing import HASH_ALGORITHM_VERSION, hash_bytes, hash_tile_payload
from infinite_map.pyramid.images import bytes_to_image, fit_to_size, image_to_bytes, stitch_quadrants
from infinite_map.pyramid.locks import ConcurrencyGate
from infinite_map.pyramid.records import TileRecord, TileRecordStore, TileStatus
from infinite_map.pyramid.storage import PayloadStore

logger = logging.getLogger(__name__)

PARENT_SEED = "parent"


class PyramidBuilder:
  """
  Builds and clears parent tiles from the payloads one depth below.

  Every write to a parent coordinate happens under that coordinate's
  durable lock. No lock spans more than one level.

  Args:
    records: Tile metadata store
    payloads: Tile payload store
    gate: Concurrency gate providing per-tile locks
    default_tile: Encoded placeholder substituted for missing children
    tile_size: Edge length of a tile in pixels
    zmax: Leaf depth of the pyramid
    image_format: Encoder format for parent payloads
    image_quality: Encoder quality for lossy formats
  """

  def __init__(
    self,
    records: TileRecordStore,
    payloads: PayloadStore,
    gate: ConcurrencyGate,
    default_tile: bytes,
    tile_size: int,
    zmax: int,
    image_format: str = "webp",
    image_quality: int = 85,
  ):
    self.records = records
    self.payloads = payloads
    self.gate = gate
    self.tile_size = tile_size
    self.zmax = zmax
    self.image_format = image_format
    self.image_quality = image_quality
    self.default_image = fit_to_size(bytes_to_image(default_tile), tile_size)

  def _check_interior(self, coord: TileCoordinate) -> None:
    validate(coord, self.zmax)
    if coord.z >= self.zmax:
      raise InvalidCoordinate(f"Leaf tile {coord} has no children to build from")

  # ===========================================================================
  # Single-tile operations
  # ===========================================================================

  def compose_parent(self, coord: TileCoordinate) -> bytes | None:
    """
    Render the parent payload from the current children without writing it.

    Returns:
      Encoded parent tile, or None if none of the four children exist
    """
    child_payloads = self.payloads.read_many(coord.children())
    if all(payload is None for payload in child_payloads):
      return None

    quadrants = [
      bytes_to_image(payload) if payload is not None else self.default_image
      for payload in child_payloads
    ]
    combined = stitch_quadrants(quadrants, self.tile_size)
    parent = combined.resize((self.tile_size, self.tile_size), Image.Resampling.LANCZOS)
    return image_to_bytes(parent, self.image_format, self.image_quality)

  def _commit(self, coord: TileCoordinate, payload: bytes) -> TileRecord:
    current = self.records.get(coord) or TileRecord.empty(coord)
    content_ver = current.content_ver + 1
    tile_hash = hash_tile_payload(
      HASH_ALGORITHM_VERSION, content_ver, hash_bytes(payload), PARENT_SEED
    )
    self.payloads.write(coord, payload)
    return self.records.upsert(
      coord,
      status=TileStatus.READY,
      hash=tile_hash,
      content_ver=content_ver,
      seed=PARENT_SEED,
    )

  def build_parent(self, coord: TileCoordinate) -> TileRecord | None:
    """
    Build and commit one parent tile.

    Returns:
      The READY record, or None when the tile has no children (nothing is
      written in that case)
    """
    self._check_interior(coord)
    with self.gate.lock_tile(coord):
      payload = self.compose_parent(coord)
      if payload is None:
        logger.debug(f"Skipping {coord}: no children")
        return None
      record = self._commit(coord, payload)

    logger.debug(f"Built parent {coord} (content_ver={record.content_ver})")
    return record

  def refresh(self, coord: TileCoordinate) -> TileRecord | None:
    """
    Bring a parent tile in line with its children.

    Like build_parent(), except a parent whose children are all gone loses
    its payload and is reset to EMPTY.

    Returns:
      The READY record if the tile was rebuilt, otherwise None
    """
    self._check_interior(coord)
    with self.gate.lock_tile(coord):
      payload = self.compose_parent(coord)
      if payload is not None:
        return self._commit(coord, payload)

      removed = self.payloads.delete(coord)
      current = self.records.get(coord)
      if removed or (current is not None and current.status != TileStatus.EMPTY):
        self.records.update(
          coord, {"status": TileStatus.EMPTY, "hash": None, "content_ver": None}
        )
        logger.info(f"Cleared parent {coord}: no children remain")
      return None

  # ===========================================================================
  # Multi-level operations
  # ===========================================================================

  def propagate(self, z: int, positions: Iterable[tuple[int, int]]) -> int:
    """
    Refresh every ancestor of the given tiles, one depth at a time.

    Args:
      z: Depth of the changed tiles
      positions: (x, y) of the changed tiles at depth z

    Returns:
      Number of ancestor tiles refreshed
    """
    level = set(positions)
    refreshed = 0
    while z > 0 and level:
      z -= 1
      parents = sorted({(x // 2, y // 2) for x, y in level}, key=lambda p: (p[1], p[0]))
      for px, py in parents:
        self.refresh(TileCoordinate(z, px, py))
        refreshed += 1
      level = set(parents)
    return refreshed

  def clear_upward(self, coord: TileCoordinate) -> int:
    """Propagate a leaf deletion to the root."""
    return self.propagate(coord.z, [(coord.x, coord.y)])

  def rebuild_all(
    self, progress: Callable[[TileCoordinate], None] | None = None
  ) -> int:
    """
    Rebuild every parent tile, deepest level first.

    Each depth is finished before the one above it is started, since a
    level's build reads the level below.

    Args:
      progress: Optional callback invoked after each built tile

    Returns:
      Number of parent tiles built
    """
    built = 0
    for z in range(self.zmax - 1, -1, -1):
      children = self.payloads.coords_at_depth(z + 1)
      parents = sorted({(c.x // 2, c.y // 2) for c in children}, key=lambda p: (p[1], p[0]))
      logger.info(f"Rebuilding depth {z}: {len(parents)} tiles")
      for px, py in parents:
        coord = TileCoordinate(z, px, py)
        if self.build_parent(coord) is not None:
          built += 1
        if progress is not None:
          progress(coord)
    return built
