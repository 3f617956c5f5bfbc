"""
Tile pyramid engine for Infinite Map.

This module keeps the quadtree of map tiles consistent, including:
- Tile coordinates and parent/child addressing
- Tile metadata records and payload storage
- Per-tile locking and duplicate request suppression
- Bottom-up parent tile synthesis
- Drift alignment and radial blending of new content
"""
