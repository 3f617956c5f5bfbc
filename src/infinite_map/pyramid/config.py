"""
Configuration for the tile pyramid engine.

Values come from environment variables (a .env file is loaded first), with
defaults suitable for local development:

  TILE_DATA_DIR        Root directory for tiles, metadata, locks and previews
  TILE_SIZE            Edge length of a tile in pixels (default: 256)
  ZMAX                 Leaf depth of the pyramid (default: 8)
  DEFAULT_TILE_PATH    Placeholder image used for missing children
  STYLE_PATH           Style-control JSON file ({"name": ...})
  TILE_IMAGE_FORMAT    "webp" or "png" (default: webp)
  TILE_IMAGE_QUALITY   Lossy encoder quality (default: 85)
  LOCK_TIMEOUT_SECONDS Max wait for a tile lock (default: 5)
  LOCK_STALE_SECONDS   Age after which a lock is reclaimed (default: 30)
  GEMINI_API_KEY       API key for the image generation model
  GEMINI_MODEL         Model name for tile generation
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = ".tiledata"
DEFAULT_TILE_SIZE = 256
DEFAULT_ZMAX = 8
DEFAULT_IMAGE_FORMAT = "webp"
DEFAULT_IMAGE_QUALITY = 85
DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_LOCK_STALE_AFTER = 30.0
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-image-preview"
DEFAULT_STYLE_NAME = "default"


@dataclass
class PyramidConfig:
  """Settings shared by every component of the engine."""

  data_dir: Path = Path(DEFAULT_DATA_DIR)
  tile_size: int = DEFAULT_TILE_SIZE
  zmax: int = DEFAULT_ZMAX
  image_format: str = DEFAULT_IMAGE_FORMAT
  image_quality: int = DEFAULT_IMAGE_QUALITY
  lock_timeout: float = DEFAULT_LOCK_TIMEOUT
  lock_stale_after: float = DEFAULT_LOCK_STALE_AFTER
  default_tile_path: Path | None = None
  style_path: Path | None = None
  gemini_api_key_env: str = "GEMINI_API_KEY"
  gemini_model: str = DEFAULT_GEMINI_MODEL

  def __post_init__(self) -> None:
    self.data_dir = Path(self.data_dir)
    if self.tile_size <= 0:
      raise ValueError(f"tile_size must be positive, got {self.tile_size}")
    if self.zmax < 0:
      raise ValueError(f"zmax must be >= 0, got {self.zmax}")
    if self.image_format not in ("webp", "png"):
      raise ValueError(f"Unsupported image format: {self.image_format}")

  @property
  def meta_db_path(self) -> Path:
    return self.data_dir / "meta.db"

  @property
  def tile_dir(self) -> Path:
    return self.data_dir / "tiles"

  @property
  def lock_dir(self) -> Path:
    return self.data_dir / "locks"

  @property
  def preview_dir(self) -> Path:
    return self.data_dir / "previews"

  @property
  def grid_size(self) -> int:
    """Edge length of a 3x3 neighborhood composite."""
    return self.tile_size * 3

  @property
  def gemini_api_key(self) -> str | None:
    """Get the API key from environment variables."""
    return os.getenv(self.gemini_api_key_env) or None

  def to_dict(self) -> dict[str, Any]:
    """Convert to dictionary for display (without API key)."""
    return {
      "data_dir": str(self.data_dir),
      "tile_size": self.tile_size,
      "zmax": self.zmax,
      "image_format": self.image_format,
      "image_quality": self.image_quality,
      "lock_timeout": self.lock_timeout,
      "lock_stale_after": self.lock_stale_after,
      "default_tile_path": str(self.default_tile_path) if self.default_tile_path else None,
      "style_path": str(self.style_path) if self.style_path else None,
      "gemini_model": self.gemini_model,
    }


def _env_path(name: str) -> Path | None:
  value = os.getenv(name)
  return Path(value) if value else None


def load_config(data_dir: Path | str | None = None) -> PyramidConfig:
  """
  Build a PyramidConfig from the environment.

  Args:
    data_dir: Optional override for TILE_DATA_DIR

  Returns:
    PyramidConfig with environment values applied over the defaults
  """
  load_dotenv()

  return PyramidConfig(
    data_dir=Path(data_dir or os.getenv("TILE_DATA_DIR", DEFAULT_DATA_DIR)),
    tile_size=int(os.getenv("TILE_SIZE", DEFAULT_TILE_SIZE)),
    zmax=int(os.getenv("ZMAX", DEFAULT_ZMAX)),
    image_format=os.getenv("TILE_IMAGE_FORMAT", DEFAULT_IMAGE_FORMAT).lower(),
    image_quality=int(os.getenv("TILE_IMAGE_QUALITY", DEFAULT_IMAGE_QUALITY)),
    lock_timeout=float(os.getenv("LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT)),
    lock_stale_after=float(
      os.getenv("LOCK_STALE_SECONDS", DEFAULT_LOCK_STALE_AFTER)
    ),
    default_tile_path=_env_path("DEFAULT_TILE_PATH"),
    style_path=_env_path("STYLE_PATH"),
    gemini_model=os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
  )


def load_style_name(style_path: Path | None) -> str:
  """
  Read the style name from a style-control JSON file.

  A missing or unreadable file falls back to the default style.
  """
  if style_path is None or not style_path.exists():
    return DEFAULT_STYLE_NAME
  try:
    with open(style_path) as f:
      data = json.load(f)
  except (OSError, json.JSONDecodeError) as e:
    logger.warning(f"Could not read style config {style_path}: {e}")
    return DEFAULT_STYLE_NAME
  return str(data.get("name") or DEFAULT_STYLE_NAME)
