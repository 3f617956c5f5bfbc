"""
Tile engine: the operations an API or CLI layer calls.

Leaf tiles are generated (or edited through previews) one coordinate at a
time. Every committed leaf change is followed by a bottom-up refresh of its
ancestors, so the whole pyramid always reflects the current leaves.

Locking discipline: a tile's durable lock is held only while its record or
payload is being changed. Generation and drift estimation run unlocked; the
read path (get_meta, read_tile) never locks.
"""

import logging
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

from PIL import Image

from infinite_map.pyramid.blend import blend_grid, blend_tile, mask_slice, radial_mask
from infinite_map.pyramid.config import PyramidConfig, load_config, load_style_name
from infinite_map.pyramid.coords import (
  TileCoordinate,
  is_valid,
  neighbors_of,
  require_leaf,
  validate,
)
from infinite_map.pyramid.drift import (
  DriftError,
  DriftResult,
  align_composite_over_base,
  compute_drift,
  translate_image,
)
from infinite_map.pyramid.generator import (
  NeighborContext,
  TileGenerator,
  create_generator,
  generate_grid,
  leaf_from_grid,
)
from infinite_map.pyramid.hashing import (
  HASH_ALGORITHM_VERSION,
  derive_seed,
  etag_for,
  hash_bytes,
  hash_tile_payload,
)
from infinite_map.pyramid.images import (
  GRID_OFFSETS,
  bytes_to_image,
  compose_grid,
  extract_grid_tiles,
  image_to_bytes,
  load_default_tile,
)
from infinite_map.pyramid.locks import ConcurrencyGate, LockManager, LockTimeout, job_name
from infinite_map.pyramid.parents import PyramidBuilder
from infinite_map.pyramid.previews import PreviewStore, preview_coord
from infinite_map.pyramid.records import TileRecord, TileRecordStore, TileStatus
from infinite_map.pyramid.storage import PayloadStore

logger = logging.getLogger(__name__)

CENTER_CELL = (1, 1)
PREVIEW_MODES = ("raw", "blended")


class ClaimResult(str, Enum):
  ENQUEUED = "ENQUEUED"
  ALREADY_PENDING = "ALREADY_PENDING"


class TileNotFound(LookupError):
  """The operation requires an existing tile record."""


class TileEngine:
  """
  Owns the stores, the concurrency gate and the pyramid builder.

  Args:
    config: Engine configuration
    generator: Leaf generator; None always uses the local fallback
    default_tile: Encoded placeholder for missing children and unserved
      tiles; loaded (or created) from config.default_tile_path when None
    style_name: Style label; read from config.style_path when None
  """

  def __init__(
    self,
    config: PyramidConfig,
    generator: TileGenerator | None = None,
    default_tile: bytes | None = None,
    style_name: str | None = None,
  ):
    self.config = config
    self.tile_size = config.tile_size
    self.zmax = config.zmax
    self.generator = generator
    self.style_name = style_name or load_style_name(config.style_path)
    self.default_tile = (
      default_tile
      if default_tile is not None
      else load_default_tile(config.default_tile_path, config.tile_size)
    )

    self.records = TileRecordStore(config.meta_db_path)
    self.payloads = PayloadStore(config.tile_dir, extension=config.image_format)
    self.locks = LockManager(
      config.lock_dir, timeout=config.lock_timeout, stale_after=config.lock_stale_after
    )
    self.gate = ConcurrencyGate(self.locks)
    self.previews = PreviewStore(config.preview_dir)
    self.builder = PyramidBuilder(
      self.records,
      self.payloads,
      self.gate,
      self.default_tile,
      tile_size=config.tile_size,
      zmax=config.zmax,
      image_format=config.image_format,
      image_quality=config.image_quality,
    )

    removed = self.locks.clean_stale()
    if removed:
      logger.info(f"Removed {removed} stale lock(s) on startup")

  @classmethod
  def from_config(cls, config: PyramidConfig | None = None) -> "TileEngine":
    """Create an engine wired to Gemini (when an API key is set)."""
    config = config or load_config()
    style_name = load_style_name(config.style_path)
    return cls(config, generator=create_generator(config, style_name), style_name=style_name)

  # ===========================================================================
  # Helpers
  # ===========================================================================

  def _encode(self, img: Image.Image) -> bytes:
    return image_to_bytes(img, self.config.image_format, self.config.image_quality)

  def neighbor_context(self, coord: TileCoordinate) -> NeighborContext:
    """Collect the payloads of the eight neighbors (None when absent)."""
    neighbors: dict[str, bytes | None] = {}
    for direction, neighbor in neighbors_of(coord).items():
      neighbors[direction] = (
        self.payloads.read(neighbor) if is_valid(neighbor, self.zmax) else None
      )
    return NeighborContext(coord=coord, neighbors=neighbors)

  def grid_coords(self, center: TileCoordinate) -> dict[tuple[int, int], TileCoordinate]:
    """Map each (col, row) of a 3x3 grid to its tile coordinate."""
    return {
      (col, row): TileCoordinate(center.z, center.x + col - 1, center.y + row - 1)
      for col, row in GRID_OFFSETS
    }

  def existing_grid_tiles(
    self, center: TileCoordinate
  ) -> dict[tuple[int, int], Image.Image | None]:
    """Decode the current tiles around a center (None where absent)."""
    tiles: dict[tuple[int, int], Image.Image | None] = {}
    for cell, coord in self.grid_coords(center).items():
      payload = self.payloads.read(coord) if is_valid(coord, self.zmax) else None
      tiles[cell] = bytes_to_image(payload) if payload is not None else None
    return tiles

  def _commit_leaf(
    self,
    coord: TileCoordinate,
    payload: bytes,
    seed: str,
    content_ver: int | None = None,
  ) -> TileRecord:
    """
    Write a leaf payload and mark it READY. Caller must hold the tile lock.

    content_ver defaults to the current version plus one.
    """
    if content_ver is None:
      current = self.records.get(coord) or TileRecord.empty(coord)
      content_ver = current.content_ver + 1
    tile_hash = hash_tile_payload(
      HASH_ALGORITHM_VERSION, content_ver, hash_bytes(payload), seed
    )
    self.payloads.write(coord, payload)
    return self.records.upsert(
      coord,
      status=TileStatus.READY,
      hash=tile_hash,
      content_ver=content_ver,
      seed=seed,
    )

  # ===========================================================================
  # Generation
  # ===========================================================================

  def _regenerate(
    self, coord: TileCoordinate, prompt: str, bump_version: bool
  ) -> TileRecord | None:
    """
    Mark a leaf PENDING, generate it and commit it, then refresh ancestors.

    The record is re-read under the tile lock. Without bump_version (the
    claim path) a tile another worker already marked PENDING is left alone
    and None is returned.

    With bump_version, content_ver is incremented when the tile goes PENDING
    and the commit keeps that version; otherwise the commit increments it.
    A PENDING tile carries no hash. On any failure the tile's previous
    status, hash and version are restored.
    """
    with self.gate.lock_tile(coord):
      previous = self.records.get(coord) or TileRecord.empty(coord)
      if not bump_version and previous.status == TileStatus.PENDING:
        logger.info(f"Tile {coord} is already pending")
        return None
      pending_ver = previous.content_ver + 1 if bump_version else previous.content_ver
      self.records.update(
        coord,
        {"status": TileStatus.PENDING, "hash": None, "content_ver": pending_ver},
      )

    try:
      seed = derive_seed(coord, self.style_name, prompt)
      context = self.neighbor_context(coord)
      grid, used_fallback = generate_grid(
        self.generator, context, prompt, seed, self.tile_size
      )
      payload = self._encode(leaf_from_grid(grid, self.tile_size))

      with self.gate.lock_tile(coord):
        commit_ver = None
        if bump_version:
          commit_ver = (self.records.get(coord) or previous).content_ver
        record = self._commit_leaf(coord, payload, seed, content_ver=commit_ver)
    except Exception:
      self._restore(coord, previous)
      raise

    logger.info(
      f"Generated {coord} (content_ver={record.content_ver}"
      f"{', fallback' if used_fallback else ''})"
    )
    self.builder.propagate(coord.z, [(coord.x, coord.y)])
    return record

  def _restore(self, coord: TileCoordinate, previous: TileRecord) -> None:
    try:
      with self.gate.lock_tile(coord):
        self.records.update(
          coord,
          {
            "status": previous.status,
            "hash": previous.hash,
            "content_ver": previous.content_ver,
          },
        )
    except LockTimeout as e:
      logger.error(f"Could not restore status of {coord} after failure: {e}")

  def claim(self, coord: TileCoordinate, prompt: str = "") -> ClaimResult:
    """
    Generate a leaf tile unless it is already being generated.

    Returns:
      ENQUEUED once the tile has been generated and committed, or
      ALREADY_PENDING if another claim for it is in flight

    Raises:
      InvalidCoordinate: if coord is not a valid leaf
      LockTimeout: if the tile lock could not be acquired
    """
    require_leaf(coord, self.zmax)
    with self.gate.job(job_name(coord)) as accepted:
      if not accepted:
        return ClaimResult.ALREADY_PENDING
      if self._regenerate(coord, prompt, bump_version=False) is None:
        return ClaimResult.ALREADY_PENDING
    return ClaimResult.ENQUEUED

  def invalidate(self, coord: TileCoordinate, prompt: str = "") -> ClaimResult:
    """
    Regenerate an existing leaf tile, bumping its content version.

    Raises:
      TileNotFound: if the tile has no record
      InvalidCoordinate: if coord is not a valid leaf
    """
    require_leaf(coord, self.zmax)
    if self.records.get(coord) is None:
      raise TileNotFound(f"Tile {coord} does not exist")

    with self.gate.job(job_name(coord)) as accepted:
      if not accepted:
        return ClaimResult.ALREADY_PENDING
      self._regenerate(coord, prompt, bump_version=True)
    return ClaimResult.ENQUEUED

  # ===========================================================================
  # Reads
  # ===========================================================================

  def get_meta(self, coord: TileCoordinate) -> dict[str, Any]:
    """Status, hash and last update time of a tile (EMPTY if unknown)."""
    validate(coord, self.zmax)
    record = self.records.get(coord) or TileRecord.empty(coord)
    return {
      "status": record.status.value,
      "hash": record.hash,
      "updated_at": record.updated_at,
    }

  def read_tile(self, coord: TileCoordinate) -> tuple[bytes, str]:
    """
    Serve a tile payload, or the default tile when there is none.

    Returns:
      (body, etag)
    """
    validate(coord, self.zmax)
    body = self.payloads.read(coord)
    if body is None:
      body = self.default_tile
    return body, etag_for(body)

  def compute_drift(self, reference: bytes, moved: bytes) -> DriftResult:
    return compute_drift(reference, moved)

  # ===========================================================================
  # Deletion
  # ===========================================================================

  def delete_leaf(self, coord: TileCoordinate) -> bool:
    """
    Remove a leaf tile and clear or rebuild its ancestors.

    Returns:
      True if a payload was removed
    """
    require_leaf(coord, self.zmax)
    with self.gate.lock_tile(coord):
      removed = self.payloads.delete(coord)
      self.records.update(
        coord, {"status": TileStatus.EMPTY, "hash": None, "content_ver": None}
      )

    logger.info(f"Deleted {coord}" + ("" if removed else " (had no payload)"))
    self.builder.clear_upward(coord)
    return removed

  # ===========================================================================
  # Previews
  # ===========================================================================

  def build_preview_composite(self, coord: TileCoordinate, prompt: str = "") -> str:
    """
    Generate a 3x3 neighborhood around a leaf and store it as a preview.

    Nothing is committed; see confirm_edit().

    Returns:
      Preview id
    """
    require_leaf(coord, self.zmax)
    seed = derive_seed(coord, self.style_name, prompt)
    grid, _ = generate_grid(
      self.generator, self.neighbor_context(coord), prompt, seed, self.tile_size
    )
    preview_id = self.previews.new_id(coord)
    self.previews.save(preview_id, grid)
    logger.info(f"Stored preview {preview_id}")
    return preview_id

  def render_preview(self, preview_id: str, mode: str = "raw") -> Image.Image:
    """
    Load a preview grid, optionally blended over the current tiles.

    Args:
      preview_id: Id returned by build_preview_composite()
      mode: "raw" for the generated grid, "blended" for the result a
        confirmation would produce for existing tiles
    """
    if mode not in PREVIEW_MODES:
      raise ValueError(f"Unknown preview mode: {mode!r}")
    grid = self.previews.load(preview_id)
    if mode == "raw":
      return grid

    center = preview_coord(preview_id)
    blended = blend_grid(
      extract_grid_tiles(grid, self.tile_size),
      self.existing_grid_tiles(center),
      self.tile_size,
    )
    return compose_grid(blended, self.tile_size)

  def _align_preview(
    self,
    grid: Image.Image,
    existing: dict[tuple[int, int], Image.Image | None],
    selected: set[tuple[int, int]] | None,
  ) -> Image.Image:
    """Undo generator drift using the center tile, when it already exists."""
    if existing[CENTER_CELL] is None:
      return grid
    if selected is not None and not any(existing[cell] is not None for cell in selected):
      return grid

    base = compose_grid({CENTER_CELL: existing[CENTER_CELL]}, self.tile_size)
    try:
      aligned, drift = align_composite_over_base(base, grid, self.tile_size)
    except DriftError as e:
      logger.warning(f"Skipping alignment: {e}")
      return grid
    logger.info(f"Aligned preview by ({-drift.dx}, {-drift.dy})")
    return aligned

  def confirm_edit(
    self,
    preview_id: str,
    selected: Iterable[tuple[int, int]] | None = None,
    apply_to_all_new: bool = False,
    offset: tuple[int, int] | None = None,
  ) -> list[TileCoordinate]:
    """
    Commit a stored preview into the pyramid.

    Args:
      preview_id: Id returned by build_preview_composite()
      selected: (col, row) grid cells to write; every cell when None. With
        an explicit selection, selected cells are written whether or not
        they already exist.
      apply_to_all_new: Without a selection, also write cells that have no
        existing tile (the center is always written)
      offset: Explicit (dx, dy) translation of the preview; disables
        automatic drift alignment

    Cells whose tile is PENDING are skipped so an in-flight generation
    keeps ownership of them.

    Returns:
      Coordinates of the tiles that were written
    """
    center = require_leaf(preview_coord(preview_id), self.zmax)
    grid = self.previews.load(preview_id)

    selected_cells = set(selected) if selected is not None else None
    if selected_cells is not None:
      unknown = selected_cells - set(GRID_OFFSETS)
      if unknown:
        raise ValueError(f"Invalid grid cells: {sorted(unknown)}")

    existing = self.existing_grid_tiles(center)
    if offset is not None:
      grid = translate_image(grid, int(offset[0]), int(offset[1]))
    else:
      grid = self._align_preview(grid, existing, selected_cells)

    new_tiles = extract_grid_tiles(grid, self.tile_size)
    mask = radial_mask(self.config.grid_size)
    coords = self.grid_coords(center)

    written: list[TileCoordinate] = []
    for cell in GRID_OFFSETS:
      coord = coords[cell]
      if not is_valid(coord, self.zmax):
        continue
      if selected_cells is not None:
        if cell not in selected_cells:
          continue
      elif existing[cell] is None and cell != CENTER_CELL and not apply_to_all_new:
        continue

      tile = blend_tile(
        new_tiles[cell],
        existing[cell],
        mask_slice(mask, cell[0], cell[1], self.tile_size),
        self.tile_size,
      )
      payload = self._encode(tile)
      with self.gate.lock_tile(coord):
        current = self.records.get(coord)
        if current is not None and current.status == TileStatus.PENDING:
          logger.warning(f"Skipping {coord}: a generation is in flight")
          continue
        self._commit_leaf(coord, payload, seed=preview_id)
      written.append(coord)

    self.builder.propagate(center.z, [(c.x, c.y) for c in written])
    self.previews.delete(preview_id)
    logger.info(f"Confirmed {preview_id}: {len(written)} tile(s) written")
    return written

  # ===========================================================================
  # Maintenance
  # ===========================================================================

  def rebuild_all(self, progress: Callable[[TileCoordinate], None] | None = None) -> int:
    """Rebuild every parent tile from the leaves up."""
    return self.builder.rebuild_all(progress=progress)

  def reset(self) -> dict[str, int]:
    """Delete all tiles, records, locks and previews."""
    counts = {
      "tiles": self.payloads.clear(),
      "records": self.records.clear(),
      "previews": self.previews.clear(),
      "locks": self.locks.clear(),
    }
    logger.info(f"Reset canvas: {counts}")
    return counts
