"""
Image encoding and layout helpers shared by the pyramid modules.
"""

import io
import logging
from pathlib import Path

from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

# (col, row) offsets of the 3x3 neighborhood, row-major, center at (1, 1)
GRID_OFFSETS: list[tuple[int, int]] = [
  (col, row) for row in range(3) for col in range(3)
]

CHECKER_SIZE = 16
CHECKER_LIGHT = (255, 255, 255)
CHECKER_DARK = (200, 200, 200)


# =============================================================================
# Encoding
# =============================================================================


def image_to_bytes(img: Image.Image, image_format: str = "webp", quality: int = 85) -> bytes:
  """
  Encode a PIL Image as a tile payload.

  Args:
    img: Image to encode
    image_format: "webp" (lossy, uses quality) or "png"
    quality: Encoder quality for lossy formats

  Returns:
    Encoded bytes
  """
  buffer = io.BytesIO()
  if image_format == "webp":
    img.save(buffer, format="WEBP", quality=quality)
  else:
    img.save(buffer, format=image_format.upper())
  return buffer.getvalue()


def image_to_png_bytes(img: Image.Image) -> bytes:
  """Convert a PIL Image to PNG bytes."""
  buffer = io.BytesIO()
  img.save(buffer, format="PNG")
  return buffer.getvalue()


def bytes_to_image(data: bytes) -> Image.Image:
  """Decode payload bytes into a fully loaded RGBA image."""
  img = Image.open(io.BytesIO(data))
  img.load()
  return img.convert("RGBA")


def fit_to_size(img: Image.Image, size: int) -> Image.Image:
  """Resize to size x size RGBA if needed."""
  img = img.convert("RGBA")
  if img.size != (size, size):
    img = img.resize((size, size), Image.Resampling.LANCZOS)
  return img


# =============================================================================
# Layout
# =============================================================================


def stitch_quadrants(
  quadrants: list[Image.Image],
  tile_size: int,
) -> Image.Image:
  """
  Stitch four child tiles into a single 2x composite.

  Args:
    quadrants: Images in top-left, top-right, bottom-left, bottom-right order
    tile_size: Edge length each child is normalized to

  Returns:
    RGBA image of 2 * tile_size per side
  """
  if len(quadrants) != 4:
    raise ValueError(f"Expected 4 quadrants, got {len(quadrants)}")

  combined = Image.new("RGBA", (tile_size * 2, tile_size * 2), (0, 0, 0, 0))
  placements = [
    (0, 0),  # TL
    (tile_size, 0),  # TR
    (0, tile_size),  # BL
    (tile_size, tile_size),  # BR
  ]
  for img, pos in zip(quadrants, placements):
    combined.paste(fit_to_size(img, tile_size), pos)
  return combined


def compose_grid(
  tiles: dict[tuple[int, int], Image.Image | None],
  tile_size: int,
  background: Image.Image | None = None,
) -> Image.Image:
  """
  Lay out up to nine tiles into a 3x3 grid.

  Args:
    tiles: Mapping of (col, row) in [0, 3) to image (None cells stay empty)
    tile_size: Edge length of a single tile
    background: Optional 3T x 3T image painted first

  Returns:
    RGBA image of 3 * tile_size per side
  """
  grid_size = tile_size * 3
  if background is not None:
    grid = fit_to_size(background, grid_size).copy()
  else:
    grid = Image.new("RGBA", (grid_size, grid_size), (0, 0, 0, 0))

  for (col, row), img in tiles.items():
    if img is None:
      continue
    grid.paste(fit_to_size(img, tile_size), (col * tile_size, row * tile_size))
  return grid


def extract_grid_tiles(
  grid: Image.Image, tile_size: int
) -> dict[tuple[int, int], Image.Image]:
  """
  Split a 3x3 grid image into its nine tiles.

  The grid is resized to exactly 3 * tile_size first if it differs.

  Returns:
    Mapping of (col, row) to tile image, row-major
  """
  grid = fit_to_size(grid, tile_size * 3)
  return {
    (col, row): grid.crop(
      (col * tile_size, row * tile_size, (col + 1) * tile_size, (row + 1) * tile_size)
    )
    for col, row in GRID_OFFSETS
  }


def checkerboard(size: int, cell: int = CHECKER_SIZE) -> Image.Image:
  """Two-tone checkerboard used to mark the area a model should fill."""
  img = Image.new("RGBA", (size, size), CHECKER_LIGHT + (255,))
  draw = ImageDraw.Draw(img)
  for top in range(0, size, cell):
    for left in range(0, size, cell):
      if (left // cell + top // cell) % 2:
        draw.rectangle(
          [left, top, left + cell - 1, top + cell - 1], fill=CHECKER_DARK + (255,)
        )
  return img


# =============================================================================
# Default tile
# =============================================================================


def create_default_tile(tile_size: int) -> bytes:
  """Render the neutral placeholder served for tiles with no payload."""
  img = Image.new("RGBA", (tile_size, tile_size), (236, 236, 236, 255))
  draw = ImageDraw.Draw(img)
  draw.rectangle([0, 0, tile_size - 1, tile_size - 1], outline=(214, 214, 214, 255))
  return image_to_png_bytes(img)


def load_default_tile(path: Path | None, tile_size: int) -> bytes:
  """
  Load the default tile from disk, creating it when missing.

  Args:
    path: Location of the default tile image (None keeps it in memory only)
    tile_size: Edge length for a freshly created default tile

  Returns:
    PNG bytes of the default tile
  """
  if path is not None and path.exists():
    return path.read_bytes()

  data = create_default_tile(tile_size)
  if path is not None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logger.info(f"Created default tile at {path}")
  return data
