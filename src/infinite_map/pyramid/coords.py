"""
Tile coordinate math for the quadtree pyramid.

Depth 0 is a single tile covering the whole world; depth ZMAX holds the leaf
tiles. At depth z there are 2^z x 2^z tiles, addressed by (x, y) in [0, 2^z).
"""

from __future__ import annotations

from dataclasses import dataclass


class InvalidCoordinate(ValueError):
  """A coordinate outside the pyramid, or at a depth the operation forbids."""


# Compass direction -> (dx, dy). y grows downward.
NEIGHBOR_OFFSETS: dict[str, tuple[int, int]] = {
  "N": (0, -1),
  "S": (0, 1),
  "E": (1, 0),
  "W": (-1, 0),
  "NE": (1, -1),
  "NW": (-1, -1),
  "SE": (1, 1),
  "SW": (-1, 1),
}


@dataclass(frozen=True)
class TileCoordinate:
  """A tile address in the pyramid."""

  z: int
  x: int
  y: int

  def __str__(self) -> str:
    return f"{self.z}/{self.x}/{self.y}"

  @property
  def key(self) -> str:
    """Stable string key, e.g. '8_3_3'."""
    return f"{self.z}_{self.x}_{self.y}"

  @classmethod
  def from_key(cls, key: str) -> TileCoordinate:
    """Parse a key like '8_3_3' (or '8/3/3') back into a coordinate."""
    parts = key.strip().replace("/", "_").split("_")
    if len(parts) != 3:
      raise InvalidCoordinate(f"Invalid tile key: {key!r}")
    try:
      z, x, y = (int(p) for p in parts)
    except ValueError:
      raise InvalidCoordinate(f"Invalid tile key: {key!r}") from None
    return cls(z, x, y)

  def parent(self) -> TileCoordinate:
    return parent_of(self)

  def children(self) -> list[TileCoordinate]:
    return children_of(self)


def parent_of(coord: TileCoordinate) -> TileCoordinate:
  """Return the tile one level up that contains this tile."""
  return TileCoordinate(coord.z - 1, coord.x // 2, coord.y // 2)


def children_of(coord: TileCoordinate) -> list[TileCoordinate]:
  """
  Return the four tiles one level down covering this tile.

  Order is top-left, top-right, bottom-left, bottom-right.
  """
  zc = coord.z + 1
  x2 = coord.x * 2
  y2 = coord.y * 2
  return [
    TileCoordinate(zc, x2, y2),
    TileCoordinate(zc, x2 + 1, y2),
    TileCoordinate(zc, x2, y2 + 1),
    TileCoordinate(zc, x2 + 1, y2 + 1),
  ]


def tiles_per_side(z: int) -> int:
  return 1 << z


def is_valid(coord: TileCoordinate, zmax: int) -> bool:
  """Check that the coordinate lies inside a pyramid of depth zmax."""
  if coord.z < 0 or coord.z > zmax:
    return False
  side = tiles_per_side(coord.z)
  return 0 <= coord.x < side and 0 <= coord.y < side


def validate(coord: TileCoordinate, zmax: int) -> TileCoordinate:
  """Return the coordinate, or raise InvalidCoordinate if out of range."""
  if not is_valid(coord, zmax):
    raise InvalidCoordinate(f"Tile {coord} is outside the pyramid (zmax={zmax})")
  return coord


def require_leaf(coord: TileCoordinate, zmax: int) -> TileCoordinate:
  """Validate a coordinate that must sit at the leaf depth."""
  validate(coord, zmax)
  if coord.z != zmax:
    raise InvalidCoordinate(f"Only leaf tiles (z={zmax}) allowed, got {coord}")
  return coord


def neighbors_of(coord: TileCoordinate) -> dict[str, TileCoordinate]:
  """
  Get the eight same-depth neighbors of a tile, keyed by compass direction.

  Neighbors may fall outside the pyramid at the world edge; callers treat
  those as absent.
  """
  return {
    direction: TileCoordinate(coord.z, coord.x + dx, coord.y + dy)
    for direction, (dx, dy) in NEIGHBOR_OFFSETS.items()
  }
