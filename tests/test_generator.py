"""
Tests for neighbor context assembly, the local fallback and the Gemini wrapper.
"""

from types import SimpleNamespace

import pytest
from PIL import Image

from infinite_map.pyramid.config import PyramidConfig
from infinite_map.pyramid.coords import TileCoordinate
from infinite_map.pyramid.generator import (
  GeminiGenerator,
  GeneratorFailure,
  NeighborContext,
  build_context_grid,
  create_generator,
  fallback_grid,
  generate_grid,
  leaf_from_grid,
  stub_tile,
)
from infinite_map.pyramid.images import CHECKER_DARK, CHECKER_LIGHT, image_to_png_bytes

from conftest import FailingGenerator, solid_png

TILE = 32
COORD = TileCoordinate(3, 3, 3)
GREEN = (0, 255, 0, 255)


@pytest.fixture
def context() -> NeighborContext:
  return NeighborContext(coord=COORD, neighbors={"N": solid_png(TILE, GREEN), "SE": None})


class TestNeighborContext:
  def test_present(self, context) -> None:
    assert context.present() == ["N"]

  def test_cells(self, context) -> None:
    cells = context.cells()
    assert cells[(1, 0)].getpixel((0, 0)) == GREEN
    assert cells[(2, 2)] is None
    assert (1, 1) not in cells

  def test_context_grid(self, context) -> None:
    grid = build_context_grid(context, TILE)
    assert grid.size == (TILE * 3, TILE * 3)
    assert grid.getpixel((TILE + 1, 1)) == GREEN
    assert grid.getpixel((TILE + 1, TILE + 1))[:3] in (CHECKER_LIGHT, CHECKER_DARK)


class TestFallback:
  def test_stub_is_deterministic(self, context) -> None:
    a = stub_tile(context, "harbor", "a1b2c3d4", TILE)
    b = stub_tile(context, "harbor", "a1b2c3d4", TILE)
    assert a.tobytes() == b.tobytes()
    assert a.getpixel((TILE // 2, TILE // 2)) == (0xA1, 0xB2, (6 * 19) % 255, 255)

  def test_stub_marks_neighbor_edges(self, context) -> None:
    tile = stub_tile(context, "", "00000000", TILE)
    assert tile.getpixel((TILE // 2, 0)) != tile.getpixel((TILE // 2, TILE // 2))
    assert tile.getpixel((TILE // 2, TILE - 1)) == tile.getpixel((TILE // 2, TILE // 2))

  def test_fallback_grid(self, context) -> None:
    grid = fallback_grid(context, "", "ffffffff", TILE)
    assert grid.getpixel((TILE + 1, 1)) == GREEN
    assert grid.getpixel((0, TILE * 2 + 1))[3] == 0
    assert leaf_from_grid(grid, TILE).size == (TILE, TILE)


class TestGenerateGrid:
  def test_failure_falls_back(self, context) -> None:
    generator = FailingGenerator()
    grid, used_fallback = generate_grid(generator, context, "", "12345678", TILE)
    assert used_fallback is True
    assert generator.calls == 1
    assert grid.size == (TILE * 3, TILE * 3)

  def test_normalizes_size(self, context) -> None:
    class Oversized:
      def generate(self, context, prompt):
        return Image.new("RGB", (TILE * 4, TILE * 4), (9, 9, 9))

    grid, used_fallback = generate_grid(Oversized(), context, "", "12345678", TILE)
    assert used_fallback is False
    assert grid.size == (TILE * 3, TILE * 3)
    assert grid.mode == "RGBA"

  def test_no_generator(self, context) -> None:
    _, used_fallback = generate_grid(None, context, "", "12345678", TILE)
    assert used_fallback is True


def fake_response(parts) -> SimpleNamespace:
  return SimpleNamespace(
    candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))],
    prompt_feedback=None,
  )


class FakeModels:
  def __init__(self, response=None, error=None):
    self.response = response
    self.error = error
    self.requests = []

  def generate_content(self, **kwargs):
    self.requests.append(kwargs)
    if self.error is not None:
      raise self.error
    return self.response


class TestGeminiGenerator:
  def make(self, models: FakeModels) -> GeminiGenerator:
    generator = GeminiGenerator("test-key", "test-model", "watercolor", TILE)
    generator.client = SimpleNamespace(models=models)
    return generator

  def test_returns_inline_image(self, context) -> None:
    png = image_to_png_bytes(Image.new("RGB", (TILE * 3, TILE * 3), (1, 2, 3)))
    models = FakeModels(
      fake_response([
        SimpleNamespace(text="here you go", inline_data=None),
        SimpleNamespace(text=None, inline_data=SimpleNamespace(data=png)),
      ])
    )
    img = self.make(models).generate(context, "docks")

    assert img.size == (TILE * 3, TILE * 3)
    request = models.requests[0]
    assert request["model"] == "test-model"
    assert "Style: watercolor" in request["contents"][1]
    assert "Additional context: docks" in request["contents"][1]

  def test_no_image_raises(self, context) -> None:
    models = FakeModels(fake_response([SimpleNamespace(text="blocked", inline_data=None)]))
    with pytest.raises(GeneratorFailure):
      self.make(models).generate(context, "")

  def test_request_error_raises(self, context) -> None:
    models = FakeModels(error=ConnectionError("offline"))
    with pytest.raises(GeneratorFailure):
      self.make(models).generate(context, "")


class TestCreateGenerator:
  def test_without_key(self, tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    assert create_generator(PyramidConfig(data_dir=tmp_path), "default") is None

  def test_with_key(self, tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    generator = create_generator(PyramidConfig(data_dir=tmp_path), "default")
    assert isinstance(generator, GeminiGenerator)
