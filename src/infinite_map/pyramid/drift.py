"""
Sub-tile drift estimation and correction.

A generated grid can come back shifted by a few pixels relative to the
neighbors it was conditioned on. Phase correlation between the existing tile
and the generated one recovers that integer translation so it can be undone
before the new tiles are blended in.

Sign convention: if `moved` equals `reference` shifted right by tx and down
by ty, phase_correlation(reference, moved) returns (tx, ty). Translating
`moved` by (-tx, -ty) re-aligns it.
"""

import io
import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

MIN_CORRELATION_SIZE = 8
EPSILON = 1e-12


class DriftError(ValueError):
  """Base class for drift estimation input errors."""


class ImageTooSmall(DriftError):
  """An input image is below the minimum size for correlation."""


class InvalidImageDimensions(DriftError):
  """An input image has a non-positive dimension."""


def largest_power_of_2(n: int) -> int:
  """Return the largest power of 2 <= n."""
  if n < 1:
    return 0
  return 1 << (n.bit_length() - 1)


def to_gray_array(img: Image.Image) -> np.ndarray:
  """
  Convert an image to float luminance in [0, 1].

  Uses ITU-R BT.601 weights. Transparent pixels count as black so that
  empty margins do not correlate as content.
  """
  rgba = np.asarray(img.convert("RGBA"), dtype=np.float32) / 255.0
  luma = 0.299 * rgba[..., 0] + 0.587 * rgba[..., 1] + 0.114 * rgba[..., 2]
  return luma * rgba[..., 3]


def crop_center_pow2(a: Image.Image, b: Image.Image) -> tuple[Image.Image, Image.Image]:
  """
  Center-crop both images to the same power-of-2 square.

  The square is the largest power of 2 that fits in every dimension of
  both inputs.

  Raises:
    InvalidImageDimensions: if any dimension is zero
    ImageTooSmall: if the square would be below MIN_CORRELATION_SIZE
  """
  dims = [*a.size, *b.size]
  if min(dims) <= 0:
    raise InvalidImageDimensions(f"Image dimensions must be positive, got {a.size} and {b.size}")

  side = largest_power_of_2(min(dims))
  if side < MIN_CORRELATION_SIZE:
    raise ImageTooSmall(
      f"Images must be at least {MIN_CORRELATION_SIZE}px, got {a.size} and {b.size}"
    )

  def center(img: Image.Image) -> Image.Image:
    left = (img.width - side) // 2
    top = (img.height - side) // 2
    return img.crop((left, top, left + side, top + side))

  return center(a), center(b)


def hann_window(size: int) -> np.ndarray:
  """Separable 2D Hann window of size x size."""
  window = np.hanning(size).astype(np.float32)
  return np.outer(window, window)


def phase_correlation(
  reference: Image.Image, moved: Image.Image
) -> tuple[int, int, float]:
  """
  Estimate the integer translation of `moved` relative to `reference`.

  Args:
    reference: Image in its expected position
    moved: Image that may be translated

  Returns:
    (dx, dy, peak) where peak is the normalized correlation peak value
    (close to 1.0 for a clean translation)
  """
  ref_crop, moved_crop = crop_center_pow2(reference, moved)
  window = hann_window(ref_crop.width)

  f_ref = np.fft.fft2(to_gray_array(ref_crop) * window)
  f_moved = np.fft.fft2(to_gray_array(moved_crop) * window)

  cross = f_moved * np.conj(f_ref)
  cross /= np.abs(cross) + EPSILON
  surface = np.real(np.fft.ifft2(cross))

  peak_index = int(np.argmax(surface))
  peak_y, peak_x = np.unravel_index(peak_index, surface.shape)
  height, width = surface.shape

  # Indices past the midpoint wrap around to negative shifts
  dx = int(peak_x) - width if peak_x > width // 2 else int(peak_x)
  dy = int(peak_y) - height if peak_y > height // 2 else int(peak_y)

  return dx, dy, float(surface[peak_y, peak_x])


def translate_image(img: Image.Image, dx: int, dy: int) -> Image.Image:
  """
  Shift an image by an integer offset, filling uncovered area with transparency.

  Output size always equals input size. A zero offset returns the input as-is;
  an offset past the image bounds yields a fully transparent image.
  """
  if dx == 0 and dy == 0:
    return img

  width, height = img.size
  shifted = Image.new("RGBA", (width, height), (0, 0, 0, 0))
  if abs(dx) >= width or abs(dy) >= height:
    return shifted

  shifted.paste(img.convert("RGBA"), (dx, dy))
  return shifted


@dataclass
class DriftResult:
  """Measured translation of a generated patch against a reference."""

  dx: int
  dy: int
  peak_value: float

  def to_dict(self) -> dict[str, Any]:
    return {"dx": self.dx, "dy": self.dy, "peak_value": self.peak_value}


def compute_drift(reference_bytes: bytes, moved_bytes: bytes) -> DriftResult:
  """
  Phase-correlate two encoded images.

  Args:
    reference_bytes: Encoded image in its expected position
    moved_bytes: Encoded image that may be translated

  Returns:
    DriftResult with the offset of `moved` relative to `reference`

  Raises:
    DriftError: if the images are too small to correlate
  """
  reference = Image.open(io.BytesIO(reference_bytes))
  moved = Image.open(io.BytesIO(moved_bytes))
  dx, dy, peak = phase_correlation(reference, moved)
  logger.debug(f"Drift: dx={dx} dy={dy} peak={peak:.3f}")
  return DriftResult(dx=dx, dy=dy, peak_value=peak)


def align_composite_over_base(
  base: Image.Image, raw: Image.Image, tile_size: int
) -> tuple[Image.Image, DriftResult]:
  """
  Align a generated 3x3 composite to an existing one.

  Only the center tile of each composite is correlated; the negated offset
  is then applied to the whole generated composite.

  Args:
    base: Composite built from the existing tiles
    raw: Generated composite of the same size
    tile_size: Edge length of one tile

  Returns:
    (aligned composite, measured drift)

  Raises:
    DriftError: if the center tiles are too small to correlate
  """
  box = (tile_size, tile_size, tile_size * 2, tile_size * 2)
  dx, dy, peak = phase_correlation(base.crop(box), raw.crop(box))
  logger.info(f"Composite drift: dx={dx} dy={dy} peak={peak:.3f}")
  return translate_image(raw, -dx, -dy), DriftResult(dx=dx, dy=dy, peak_value=peak)
