"""
Command-line access to the tile engine.

Usage:
  # Generate a leaf tile
  infinite-map claim 8/3/3 --prompt "harbor with lighthouse"

  # Regenerate an existing leaf tile
  infinite-map invalidate 8/3/3 --prompt "same harbor at night"

  # Delete a leaf tile and clear/rebuild its ancestors
  infinite-map delete 8/3/3

  # Show a tile's metadata (--full for the whole record)
  infinite-map meta 7/1/1

  # Measure the drift between two images
  infinite-map drift reference.png moved.png

  # Rebuild every parent tile from the leaves
  infinite-map rebuild

  # Show tile counts per depth and status
  infinite-map status

  # Wipe the canvas
  infinite-map reset --yes

  # Write the default placeholder tile
  infinite-map default-tile out.png

  # Show the effective configuration
  infinite-map config
"""

import argparse
import json
import logging
from pathlib import Path

from tabulate import tabulate
from tqdm import tqdm

from infinite_map.pyramid.config import load_config
from infinite_map.pyramid.coords import InvalidCoordinate, TileCoordinate, validate
from infinite_map.pyramid.drift import DriftError, compute_drift
from infinite_map.pyramid.engine import TileEngine, TileNotFound
from infinite_map.pyramid.images import create_default_tile
from infinite_map.pyramid.locks import LockTimeout
from infinite_map.pyramid.records import TileRecord


def parse_coord(value: str) -> TileCoordinate:
  """argparse type for 'z/x/y' or 'z_x_y'."""
  try:
    return TileCoordinate.from_key(value)
  except InvalidCoordinate as e:
    raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    description="Manage an infinite quadtree tile pyramid."
  )
  parser.add_argument(
    "--data-dir",
    type=Path,
    default=None,
    help="Tile data directory (default: $TILE_DATA_DIR or .tiledata)",
  )
  parser.add_argument(
    "-v",
    "--verbose",
    action="store_true",
    help="Enable debug logging",
  )
  subparsers = parser.add_subparsers(dest="command", required=True)

  claim = subparsers.add_parser("claim", help="Generate a leaf tile")
  claim.add_argument("coord", type=parse_coord, help="Leaf coordinate z/x/y")
  claim.add_argument("--prompt", default="", help="Additional prompt text")

  invalidate = subparsers.add_parser("invalidate", help="Regenerate an existing leaf tile")
  invalidate.add_argument("coord", type=parse_coord, help="Leaf coordinate z/x/y")
  invalidate.add_argument("--prompt", default="", help="Additional prompt text")

  delete = subparsers.add_parser("delete", help="Delete a leaf tile")
  delete.add_argument("coord", type=parse_coord, help="Leaf coordinate z/x/y")

  meta = subparsers.add_parser("meta", help="Show tile metadata")
  meta.add_argument("coord", type=parse_coord, help="Tile coordinate z/x/y")
  meta.add_argument("--full", action="store_true", help="Show the whole tile record")

  drift = subparsers.add_parser("drift", help="Measure drift between two images")
  drift.add_argument("reference", type=Path, help="Reference image")
  drift.add_argument("moved", type=Path, help="Possibly shifted image")

  subparsers.add_parser("rebuild", help="Rebuild every parent tile")
  subparsers.add_parser("status", help="Show tile counts per depth and status")

  reset = subparsers.add_parser("reset", help="Delete all tiles and metadata")
  reset.add_argument("--yes", action="store_true", help="Confirm the reset")

  default_tile = subparsers.add_parser("default-tile", help="Write the default tile")
  default_tile.add_argument("output", type=Path, help="Output PNG path")
  default_tile.add_argument("--size", type=int, default=None, help="Tile size in pixels")

  subparsers.add_parser("config", help="Show the effective configuration")

  return parser


def show_status(engine: TileEngine) -> None:
  rows = engine.records.status_summary()
  if not rows:
    print("📭 No tiles yet")
    return
  print("\n📊 Tile Status:")
  print(tabulate(rows, headers=["Depth", "Status", "Count"]))

  preview_ids = engine.previews.list_ids()
  if preview_ids:
    print(f"\n🖼️  {len(preview_ids)} unconfirmed preview(s):")
    for preview_id in preview_ids:
      print(f"   {preview_id}")


def run(args: argparse.Namespace) -> int:
  config = load_config(args.data_dir)

  # Commands that don't need the engine
  if args.command == "drift":
    result = compute_drift(args.reference.read_bytes(), args.moved.read_bytes())
    print(json.dumps(result.to_dict(), indent=2))
    return 0

  if args.command == "config":
    print(json.dumps(config.to_dict(), indent=2))
    return 0

  if args.command == "default-tile":
    size = args.size or config.tile_size
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_bytes(create_default_tile(size))
    print(f"✅ Wrote {size}x{size} default tile to {args.output}")
    return 0

  engine = TileEngine.from_config(config)

  if args.command == "claim":
    print(f"\n🎨 Claiming {args.coord}...")
    result = engine.claim(args.coord, args.prompt)
    print(f"   ✓ {result.value}")
  elif args.command == "invalidate":
    print(f"\n🔄 Regenerating {args.coord}...")
    result = engine.invalidate(args.coord, args.prompt)
    print(f"   ✓ {result.value}")
  elif args.command == "delete":
    print(f"\n🗑️  Deleting {args.coord}...")
    removed = engine.delete_leaf(args.coord)
    print("   ✓ Deleted" if removed else "   ⏭️  Tile had no payload")
  elif args.command == "meta":
    if args.full:
      validate(args.coord, engine.zmax)
      record = engine.records.get(args.coord) or TileRecord.empty(args.coord)
      print(json.dumps(record.to_dict(), indent=2))
    else:
      print(json.dumps(engine.get_meta(args.coord), indent=2))
  elif args.command == "rebuild":
    print("\n🏗️  Rebuilding parent tiles...")
    with tqdm(desc="Parents", unit="tile") as progress:
      built = engine.rebuild_all(progress=lambda _coord: progress.update(1))
    print(f"   ✓ Built {built} parent tile(s)")
  elif args.command == "status":
    show_status(engine)
  elif args.command == "reset":
    if not args.yes:
      print("❌ Refusing to reset without --yes")
      return 1
    counts = engine.reset()
    print(f"✅ Canvas reset: {counts}")
  return 0


def main(argv: list[str] | None = None) -> int:
  parser = build_parser()
  args = parser.parse_args(argv)

  logging.basicConfig(
    level=logging.DEBUG if args.verbose else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
  )

  try:
    return run(args)
  except (InvalidCoordinate, TileNotFound, DriftError) as e:
    print(f"❌ Error: {e}")
    return 1
  except LockTimeout as e:
    print(f"❌ Tile is busy: {e}")
    return 2


if __name__ == "__main__":
  exit(main())
