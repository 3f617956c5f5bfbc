"""
Shared fixtures for the tile pyramid tests.

Engines use small tiles and a shallow pyramid so image work stays fast;
tests that need the production geometry build their own config.
"""

import io
import threading

import numpy as np
import pytest
from PIL import Image

from infinite_map.pyramid.config import PyramidConfig
from infinite_map.pyramid.engine import TileEngine
from infinite_map.pyramid.generator import GeneratorFailure, NeighborContext

TEST_TILE_SIZE = 32
TEST_ZMAX = 3


def solid_png(size: int, color: tuple[int, int, int, int]) -> bytes:
  buffer = io.BytesIO()
  Image.new("RGBA", (size, size), color).save(buffer, format="PNG")
  return buffer.getvalue()


def noise_image(size: int, seed: int = 0) -> Image.Image:
  """Deterministic random RGB pattern for correlation tests."""
  rng = np.random.default_rng(seed)
  pixels = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
  return Image.fromarray(pixels).convert("RGBA")


class SolidGenerator:
  """Returns a flat 3x3 grid of one color and counts calls."""

  def __init__(self, tile_size: int, color=(200, 40, 40, 255)):
    self.tile_size = tile_size
    self.color = color
    self.calls: list[tuple[NeighborContext, str]] = []

  def generate(self, context: NeighborContext, prompt: str) -> Image.Image:
    self.calls.append((context, prompt))
    return Image.new("RGBA", (self.tile_size * 3, self.tile_size * 3), self.color)


class FailingGenerator:
  def __init__(self):
    self.calls = 0

  def generate(self, context: NeighborContext, prompt: str) -> Image.Image:
    self.calls += 1
    raise GeneratorFailure("model unavailable")


class BlockingGenerator(SolidGenerator):
  """Blocks inside generate() until released, to hold a claim in flight."""

  def __init__(self, tile_size: int):
    super().__init__(tile_size)
    self.entered = threading.Event()
    self.release = threading.Event()

  def generate(self, context: NeighborContext, prompt: str) -> Image.Image:
    self.entered.set()
    self.release.wait(timeout=10)
    return super().generate(context, prompt)


@pytest.fixture
def config(tmp_path) -> PyramidConfig:
  return PyramidConfig(
    data_dir=tmp_path / "data",
    tile_size=TEST_TILE_SIZE,
    zmax=TEST_ZMAX,
    image_format="png",
    lock_timeout=1.0,
  )


@pytest.fixture
def default_tile() -> bytes:
  return solid_png(TEST_TILE_SIZE, (10, 10, 10, 255))


@pytest.fixture
def generator() -> SolidGenerator:
  return SolidGenerator(TEST_TILE_SIZE)


@pytest.fixture
def engine(config, generator, default_tile) -> TileEngine:
  return TileEngine(config, generator=generator, default_tile=default_tile, style_name="test")
