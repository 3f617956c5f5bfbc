"""
Content hashing for tile payloads.

Hashes are change-detection and cache-validity tokens, not a security boundary.
"""

import hashlib

from infinite_map.pyramid.coords import TileCoordinate

# Bump to invalidate every previously issued tile hash.
HASH_ALGORITHM_VERSION = 1

BYTES_HASH_LENGTH = 16
SEED_LENGTH = 8


def blake2s_hex(data: bytes) -> str:
  """Full blake2s hex digest of raw bytes."""
  return hashlib.blake2s(data).hexdigest()


def hash_bytes(payload: bytes) -> str:
  """
  Compute a short digest of raw payload bytes.

  Args:
    payload: Encoded image bytes

  Returns:
    16-character hex digest
  """
  return blake2s_hex(payload)[:BYTES_HASH_LENGTH]


def hash_tile_payload(
  algorithm_version: int,
  content_ver: int,
  bytes_hash: str,
  seed: str | None,
) -> str:
  """
  Compose the tile-level hash stored on a TileRecord.

  The byte digest is bound to the content version and generation seed, so
  identical bytes with different provenance still hash differently. The
  algorithm version is both mixed in and used as a prefix.

  Args:
    algorithm_version: Hash format version
    content_ver: Content version being committed
    bytes_hash: Result of hash_bytes() on the payload
    seed: Generation seed (or a label such as "parent")

  Returns:
    Versioned digest like "v1-0123456789abcdef"
  """
  material = f"v{algorithm_version}|{content_ver}|{bytes_hash}|{seed or ''}"
  digest = blake2s_hex(material.encode("utf-8"))[:BYTES_HASH_LENGTH]
  return f"v{algorithm_version}-{digest}"


def derive_seed(coord: TileCoordinate, style_name: str, prompt: str) -> str:
  """Deterministic generation seed for a tile, style and prompt."""
  material = f"{coord.z}:{coord.x}:{coord.y}:{style_name}:{prompt}"
  return blake2s_hex(material.encode("utf-8"))[:SEED_LENGTH]


def etag_for(body: bytes) -> str:
  """Quoted HTTP entity tag for a served tile body."""
  return f'"{hash_bytes(body)}"'
