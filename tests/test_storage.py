"""
Tests for the payload store.
"""

import pytest

from infinite_map.pyramid.coords import TileCoordinate
from infinite_map.pyramid.storage import PayloadStore, write_bytes_atomic


@pytest.fixture
def payloads(tmp_path) -> PayloadStore:
  return PayloadStore(tmp_path / "tiles", extension="png")


class TestWriteBytesAtomic:
  def test_writes_and_replaces(self, tmp_path) -> None:
    path = tmp_path / "sub" / "file.bin"
    write_bytes_atomic(path, b"one")
    write_bytes_atomic(path, b"two")
    assert path.read_bytes() == b"two"

  def test_leaves_no_temp_files(self, tmp_path) -> None:
    path = tmp_path / "file.bin"
    write_bytes_atomic(path, b"data")
    assert [p.name for p in tmp_path.iterdir()] == ["file.bin"]


class TestPayloadStore:
  def test_read_missing(self, payloads) -> None:
    assert payloads.read(TileCoordinate(1, 0, 0)) is None
    assert not payloads.exists(TileCoordinate(1, 0, 0))

  def test_write_read(self, payloads) -> None:
    coord = TileCoordinate(2, 1, 3)
    payloads.write(coord, b"payload")
    assert payloads.read(coord) == b"payload"
    assert payloads.tile_path(coord).name == "2_1_3.png"

  def test_read_many(self, payloads) -> None:
    a, b = TileCoordinate(1, 0, 0), TileCoordinate(1, 1, 0)
    payloads.write(b, b"b")
    assert payloads.read_many([a, b]) == [None, b"b"]

  def test_delete(self, payloads) -> None:
    coord = TileCoordinate(1, 0, 0)
    payloads.write(coord, b"x")
    assert payloads.delete(coord) is True
    assert payloads.delete(coord) is False

  def test_coords_at_depth(self, payloads) -> None:
    payloads.write(TileCoordinate(2, 1, 0), b"x")
    payloads.write(TileCoordinate(2, 0, 1), b"x")
    payloads.write(TileCoordinate(3, 0, 0), b"x")
    payloads.write(TileCoordinate(12, 0, 0), b"x")
    assert payloads.coords_at_depth(2) == [TileCoordinate(2, 1, 0), TileCoordinate(2, 0, 1)]
    assert payloads.coords_at_depth(1) == []

  def test_clear(self, payloads) -> None:
    payloads.write(TileCoordinate(1, 0, 0), b"x")
    payloads.write(TileCoordinate(1, 1, 0), b"x")
    assert payloads.clear() == 2
    assert payloads.coords_at_depth(1) == []
