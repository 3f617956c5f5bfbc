"""
On-disk store for generated 3x3 edit previews awaiting confirmation.
"""

import logging
import re
import time
from pathlib import Path

from PIL import Image

from infinite_map.pyramid.coords import TileCoordinate
from infinite_map.pyramid.images import bytes_to_image, image_to_png_bytes
from infinite_map.pyramid.storage import write_bytes_atomic

logger = logging.getLogger(__name__)

PREVIEW_ID_RE = re.compile(r"^preview-(\d+)-(\d+)-(\d+)-(\d+)$")


class PreviewNotFound(LookupError):
  """No stored preview has the requested id."""


def preview_coord(preview_id: str) -> TileCoordinate:
  """
  Parse the center coordinate out of a preview id.

  Raises:
    ValueError: if the id is not of the form preview-{z}-{x}-{y}-{millis}
  """
  match = PREVIEW_ID_RE.match(preview_id)
  if not match:
    raise ValueError(f"Invalid preview id: {preview_id!r}")
  z, x, y = (int(match.group(i)) for i in (1, 2, 3))
  return TileCoordinate(z, x, y)


class PreviewStore:
  """
  Stores preview grids as PNG files named by preview id.

  Args:
    preview_dir: Directory holding the previews
  """

  def __init__(self, preview_dir: Path):
    self.preview_dir = Path(preview_dir)
    self.preview_dir.mkdir(parents=True, exist_ok=True)

  def new_id(self, coord: TileCoordinate) -> str:
    millis = int(time.time() * 1000)
    return f"preview-{coord.z}-{coord.x}-{coord.y}-{millis}"

  def path(self, preview_id: str) -> Path:
    preview_coord(preview_id)
    return self.preview_dir / f"{preview_id}.png"

  def save(self, preview_id: str, grid: Image.Image) -> Path:
    path = self.path(preview_id)
    write_bytes_atomic(path, image_to_png_bytes(grid))
    logger.debug(f"Saved preview {preview_id}")
    return path

  def load(self, preview_id: str) -> Image.Image:
    """
    Load a stored preview grid.

    Raises:
      ValueError: for a malformed id
      PreviewNotFound: if no preview with this id exists
    """
    path = self.path(preview_id)
    try:
      data = path.read_bytes()
    except FileNotFoundError:
      raise PreviewNotFound(f"Preview not found: {preview_id}") from None
    return bytes_to_image(data)

  def delete(self, preview_id: str) -> bool:
    path = self.path(preview_id)
    try:
      path.unlink()
      return True
    except FileNotFoundError:
      return False

  def list_ids(self) -> list[str]:
    return sorted(p.stem for p in self.preview_dir.glob("preview-*.png"))

  def clear(self) -> int:
    removed = 0
    for path in self.preview_dir.glob("*.png"):
      path.unlink(missing_ok=True)
      removed += 1
    return removed
