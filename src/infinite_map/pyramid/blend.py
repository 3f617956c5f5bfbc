"""
Radial-falloff blending of new tile content over existing content.

One mask is computed for the whole 3x3 composite and sliced per tile, so the
falloff is continuous across tile borders.
"""

import numpy as np
from PIL import Image

from infinite_map.pyramid.images import GRID_OFFSETS, fit_to_size

# Fraction of the radius that stays fully opaque
INNER_RADIUS_FRACTION = 0.5


def radial_mask(size: int) -> Image.Image:
  """
  Build a square "L" mode alpha mask centered on the canvas.

  Alpha is 255 within 50% of the radius (size / 2), falls linearly to 0 at
  the full radius and stays 0 beyond.
  """
  radius = size / 2.0
  inner = radius * INNER_RADIUS_FRACTION
  coords = np.arange(size, dtype=np.float64)
  dist = np.hypot(coords[np.newaxis, :] - radius, coords[:, np.newaxis] - radius)

  alpha = 1.0 - (dist - inner) / (radius - inner)
  alpha = np.clip(alpha, 0.0, 1.0)
  return Image.fromarray(np.round(alpha * 255.0).astype(np.uint8))


def mask_slice(mask: Image.Image, col: int, row: int, tile_size: int) -> Image.Image:
  """Cut the mask region covering grid cell (col, row)."""
  left = col * tile_size
  top = row * tile_size
  return mask.crop((left, top, left + tile_size, top + tile_size))


def blend_tile(
  new_tile: Image.Image,
  existing: Image.Image | None,
  mask_tile: Image.Image,
  tile_size: int,
) -> Image.Image:
  """
  Composite a new tile over existing content through a mask slice.

  Args:
    new_tile: Freshly generated tile
    existing: Current tile content, or None if there is none
    mask_tile: Mask slice for this tile position
    tile_size: Standard tile edge length

  Returns:
    The blended RGBA tile (the new tile unmodified when nothing exists)
  """
  if existing is None:
    return new_tile

  new_rgba = fit_to_size(new_tile, tile_size)
  base = fit_to_size(existing, tile_size)
  mask_tile = mask_tile.convert("L")
  if mask_tile.size != (tile_size, tile_size):
    mask_tile = mask_tile.resize((tile_size, tile_size), Image.Resampling.BILINEAR)

  alpha = np.asarray(new_rgba.getchannel("A"), dtype=np.float32)
  weights = np.asarray(mask_tile, dtype=np.float32) / 255.0
  faded = new_rgba.copy()
  faded.putalpha(Image.fromarray(np.round(alpha * weights).astype(np.uint8)))

  return Image.alpha_composite(base, faded)


def blend_grid(
  raw_tiles: dict[tuple[int, int], Image.Image],
  existing_tiles: dict[tuple[int, int], Image.Image | None],
  tile_size: int,
) -> dict[tuple[int, int], Image.Image]:
  """
  Blend every cell of a 3x3 composite against the existing tiles.

  Args:
    raw_tiles: New tiles keyed by (col, row)
    existing_tiles: Existing tiles keyed by (col, row) (None if absent)
    tile_size: Standard tile edge length

  Returns:
    Blended tiles keyed by (col, row)
  """
  mask = radial_mask(tile_size * 3)
  blended = {}
  for col, row in GRID_OFFSETS:
    if (col, row) not in raw_tiles:
      continue
    blended[(col, row)] = blend_tile(
      raw_tiles[(col, row)],
      existing_tiles.get((col, row)),
      mask_slice(mask, col, row, tile_size),
      tile_size,
    )
  return blended
