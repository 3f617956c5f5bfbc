"""
Leaf tile generation.

The engine hands a generator the eight neighbors of a tile laid out on a
3x3 canvas and gets back a filled 3x3 image whose center cell is the new
tile. Gemini is the production generator; when it fails (or none is
configured) a deterministic local stub is used instead, with no retries.
"""

import logging
from dataclasses import dataclass, field
from typing import Protocol

from google import genai
from google.genai import types
from PIL import Image, ImageDraw

from infinite_map.pyramid.config import PyramidConfig
from infinite_map.pyramid.coords import NEIGHBOR_OFFSETS, TileCoordinate
from infinite_map.pyramid.images import bytes_to_image, checkerboard, compose_grid, fit_to_size

logger = logging.getLogger(__name__)

EDGE_OPACITY = int(255 * 0.15)

PROMPT_TEMPLATE = (
  "complete image. do not modify existing art's position or content.\n\n"
  "Style: {style}\n"
  "Additional context: {prompt}"
)


class GeneratorFailure(RuntimeError):
  """The generator errored or returned no usable image."""


# Compass direction -> (col, row) cell on the 3x3 canvas
DIRECTION_CELLS: dict[str, tuple[int, int]] = {
  direction: (1 + dx, 1 + dy) for direction, (dx, dy) in NEIGHBOR_OFFSETS.items()
}


@dataclass
class NeighborContext:
  """A tile coordinate plus the payloads of its eight neighbors."""

  coord: TileCoordinate
  neighbors: dict[str, bytes | None] = field(default_factory=dict)

  def present(self) -> list[str]:
    """Directions that have content, in compass order."""
    return [d for d in NEIGHBOR_OFFSETS if self.neighbors.get(d) is not None]

  def cells(self) -> dict[tuple[int, int], Image.Image | None]:
    """Decoded neighbor images keyed by their (col, row) grid cell."""
    cells: dict[tuple[int, int], Image.Image | None] = {}
    for direction, cell in DIRECTION_CELLS.items():
      payload = self.neighbors.get(direction)
      cells[cell] = bytes_to_image(payload) if payload is not None else None
    return cells


class TileGenerator(Protocol):
  def generate(self, context: NeighborContext, prompt: str) -> Image.Image:
    """Return a filled 3x3 grid image or raise GeneratorFailure."""
    ...


def build_context_grid(context: NeighborContext, tile_size: int) -> Image.Image:
  """
  Lay out the neighbors on a checkerboard canvas.

  The checkerboard marks every cell the model is expected to fill.
  """
  return compose_grid(
    context.cells(), tile_size, background=checkerboard(tile_size * 3)
  )


# =============================================================================
# Deterministic fallback
# =============================================================================


def stub_tile(context: NeighborContext, prompt: str, seed: str, tile_size: int) -> Image.Image:
  """
  Render a flat placeholder tile derived from the seed and prompt.

  Edges facing existing neighbors get a faint white line so the stub is
  visibly stitched to its surroundings.
  """
  background = (int(seed[0:2], 16), int(seed[2:4], 16), (len(prompt) * 19) % 255, 255)
  tile = Image.new("RGBA", (tile_size, tile_size), background)

  overlay = Image.new("RGBA", (tile_size, tile_size), (0, 0, 0, 0))
  draw = ImageDraw.Draw(overlay)
  edge = (255, 255, 255, EDGE_OPACITY)
  last = tile_size - 1
  for direction in context.present():
    dx, dy = NEIGHBOR_OFFSETS[direction]
    if dx and dy:
      draw.point((last if dx > 0 else 0, last if dy > 0 else 0), fill=edge)
    elif dy:
      row = last if dy > 0 else 0
      draw.line([(0, row), (last, row)], fill=edge)
    else:
      col = last if dx > 0 else 0
      draw.line([(col, 0), (col, last)], fill=edge)

  return Image.alpha_composite(tile, overlay)


def fallback_grid(
  context: NeighborContext, prompt: str, seed: str, tile_size: int
) -> Image.Image:
  """Transparent 3x3 grid holding the neighbors and a stub center tile."""
  cells = context.cells()
  cells[(1, 1)] = stub_tile(context, prompt, seed, tile_size)
  return compose_grid(cells, tile_size)


def generate_grid(
  generator: TileGenerator | None,
  context: NeighborContext,
  prompt: str,
  seed: str,
  tile_size: int,
) -> tuple[Image.Image, bool]:
  """
  Run the generator once, falling back to the stub on failure.

  Returns:
    (3x3 grid image sized exactly 3 * tile_size, whether the fallback was used)
  """
  if generator is None:
    return fallback_grid(context, prompt, seed, tile_size), True

  try:
    grid = generator.generate(context, prompt)
  except GeneratorFailure as e:
    logger.warning(f"Generator failed for {context.coord}, using fallback: {e}")
    return fallback_grid(context, prompt, seed, tile_size), True

  if not isinstance(grid, Image.Image) or min(grid.size) <= 0:
    logger.warning(f"Generator returned no usable image for {context.coord}, using fallback")
    return fallback_grid(context, prompt, seed, tile_size), True

  return fit_to_size(grid, tile_size * 3), False


# =============================================================================
# Gemini
# =============================================================================


class GeminiGenerator:
  """
  Fills the checkerboard cells of a neighborhood canvas with Gemini.

  Args:
    api_key: Gemini API key
    model: Image-capable Gemini model name
    style_name: Style label included in every prompt
    tile_size: Edge length of a tile in pixels
  """

  def __init__(self, api_key: str, model: str, style_name: str, tile_size: int):
    self.client = genai.Client(api_key=api_key)
    self.model = model
    self.style_name = style_name
    self.tile_size = tile_size

  def build_prompt(self, prompt: str) -> str:
    return PROMPT_TEMPLATE.format(style=self.style_name, prompt=prompt)

  def generate(self, context: NeighborContext, prompt: str) -> Image.Image:
    canvas = build_context_grid(context, self.tile_size)
    logger.info(f"Calling {self.model} for {context.coord} ({len(context.present())} neighbors)")

    try:
      response = self.client.models.generate_content(
        model=self.model,
        contents=[canvas.convert("RGB"), self.build_prompt(prompt)],
        config=types.GenerateContentConfig(
          response_modalities=["TEXT", "IMAGE"],
          image_config=types.ImageConfig(aspect_ratio="1:1"),
        ),
      )
    except Exception as e:
      raise GeneratorFailure(f"Gemini request failed: {e}") from e

    for candidate in response.candidates or []:
      if candidate.content is None:
        continue
      for part in candidate.content.parts or []:
        if part.text:
          logger.debug(f"Model response: {part.text}")
        elif part.inline_data is not None and part.inline_data.data:
          try:
            return bytes_to_image(part.inline_data.data)
          except OSError as e:
            raise GeneratorFailure(f"Undecodable image from Gemini: {e}") from e

    feedback = getattr(response, "prompt_feedback", None)
    raise GeneratorFailure(f"No image in Gemini response (feedback: {feedback})")


def create_generator(config: PyramidConfig, style_name: str) -> TileGenerator | None:
  """Build the Gemini generator, or None when no API key is configured."""
  api_key = config.gemini_api_key
  if not api_key:
    logger.warning(
      f"{config.gemini_api_key_env} not set; tiles will use the local fallback"
    )
    return None
  return GeminiGenerator(api_key, config.gemini_model, style_name, config.tile_size)


def leaf_from_grid(grid: Image.Image, tile_size: int) -> Image.Image:
  """Extract the center tile of a 3x3 grid."""
  return grid.crop((tile_size, tile_size, tile_size * 2, tile_size * 2))
