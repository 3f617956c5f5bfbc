"""
Tests for parent tile synthesis and propagation.
"""

import pytest

from infinite_map.pyramid.coords import InvalidCoordinate, TileCoordinate
from infinite_map.pyramid.images import bytes_to_image
from infinite_map.pyramid.locks import ConcurrencyGate, LockManager
from infinite_map.pyramid.parents import PARENT_SEED, PyramidBuilder
from infinite_map.pyramid.records import TileRecordStore, TileStatus
from infinite_map.pyramid.storage import PayloadStore

from conftest import solid_png

TILE = 16
ZMAX = 3
RED = (255, 0, 0, 255)
GREY = (10, 10, 10, 255)


@pytest.fixture
def builder(tmp_path) -> PyramidBuilder:
  records = TileRecordStore(tmp_path / "meta.db")
  payloads = PayloadStore(tmp_path / "tiles", extension="png")
  gate = ConcurrencyGate(LockManager(tmp_path / "locks", timeout=1.0))
  return PyramidBuilder(
    records,
    payloads,
    gate,
    solid_png(TILE, GREY),
    tile_size=TILE,
    zmax=ZMAX,
    image_format="png",
  )


def write_leaf(builder: PyramidBuilder, coord: TileCoordinate, color=RED) -> None:
  builder.payloads.write(coord, solid_png(TILE, color))
  builder.records.upsert(coord, status=TileStatus.READY, hash="v1-leaf", content_ver=1)


class TestBuildParent:
  def test_skips_without_children(self, builder) -> None:
    parent = TileCoordinate(2, 1, 1)
    assert builder.build_parent(parent) is None
    assert builder.records.get(parent) is None
    assert not builder.payloads.exists(parent)

  def test_builds_from_one_child(self, builder) -> None:
    write_leaf(builder, TileCoordinate(3, 3, 3))
    record = builder.build_parent(TileCoordinate(2, 1, 1))

    assert record.status == TileStatus.READY
    assert record.content_ver == 1
    assert record.seed == PARENT_SEED
    assert record.hash.startswith("v1-")

    img = bytes_to_image(builder.payloads.read(TileCoordinate(2, 1, 1)))
    assert img.size == (TILE, TILE)
    # Child (3,3) is bottom-right; the rest come from the default tile
    assert img.getpixel((TILE - 2, TILE - 2))[:3] == (255, 0, 0)
    assert img.getpixel((1, 1))[:3] == GREY[:3]

  def test_rebuild_increments_version(self, builder) -> None:
    write_leaf(builder, TileCoordinate(3, 0, 0))
    builder.build_parent(TileCoordinate(2, 0, 0))
    record = builder.build_parent(TileCoordinate(2, 0, 0))
    assert record.content_ver == 2

  def test_rejects_leaf(self, builder) -> None:
    with pytest.raises(InvalidCoordinate):
      builder.build_parent(TileCoordinate(ZMAX, 0, 0))


class TestPropagation:
  def test_propagate_reaches_root(self, builder) -> None:
    write_leaf(builder, TileCoordinate(3, 5, 2))
    refreshed = builder.propagate(3, [(5, 2)])

    assert refreshed == 3
    for coord in (TileCoordinate(2, 2, 1), TileCoordinate(1, 1, 0), TileCoordinate(0, 0, 0)):
      assert builder.records.get(coord).status == TileStatus.READY
      assert builder.payloads.exists(coord)

  def test_propagate_shares_parents(self, builder) -> None:
    leaves = [TileCoordinate(3, x, y) for x in (0, 1) for y in (0, 1)]
    for leaf in leaves:
      write_leaf(builder, leaf)
    assert builder.propagate(3, [(c.x, c.y) for c in leaves]) == 3
    assert builder.records.get(TileCoordinate(2, 0, 0)).content_ver == 1

  def test_clear_upward_empties_ancestors(self, builder) -> None:
    leaves = [TileCoordinate(3, x, y) for x in (0, 1) for y in (0, 1)]
    for leaf in leaves:
      write_leaf(builder, leaf)
    builder.propagate(3, [(c.x, c.y) for c in leaves])

    for leaf in leaves:
      builder.payloads.delete(leaf)
      builder.clear_upward(leaf)

    for coord in (TileCoordinate(2, 0, 0), TileCoordinate(1, 0, 0), TileCoordinate(0, 0, 0)):
      record = builder.records.get(coord)
      assert record.status == TileStatus.EMPTY
      assert record.hash is None
      assert record.content_ver == 0
      assert not builder.payloads.exists(coord)

  def test_clear_upward_rebuilds_when_siblings_remain(self, builder) -> None:
    write_leaf(builder, TileCoordinate(3, 0, 0))
    write_leaf(builder, TileCoordinate(3, 1, 0))
    builder.propagate(3, [(0, 0), (1, 0)])

    builder.payloads.delete(TileCoordinate(3, 1, 0))
    builder.clear_upward(TileCoordinate(3, 1, 0))

    record = builder.records.get(TileCoordinate(2, 0, 0))
    assert record.status == TileStatus.READY
    assert record.content_ver == 2

  def test_refresh_leaves_untouched_tile_alone(self, builder) -> None:
    assert builder.refresh(TileCoordinate(2, 3, 3)) is None
    assert builder.records.get(TileCoordinate(2, 3, 3)) is None


class TestRebuildAll:
  def test_rebuild_all(self, builder) -> None:
    write_leaf(builder, TileCoordinate(3, 0, 0))
    write_leaf(builder, TileCoordinate(3, 7, 7))
    seen = []

    built = builder.rebuild_all(progress=seen.append)

    # Two distinct chains up to a shared root
    assert built == 5
    assert seen[0].z == 2
    assert seen[-1] == TileCoordinate(0, 0, 0)
    assert builder.records.get(TileCoordinate(1, 1, 1)).status == TileStatus.READY
    assert builder.records.get(TileCoordinate(1, 1, 0)) is None
