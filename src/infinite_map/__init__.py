"""Infinite Map: an endless, AI-generated raster map backed by a tile pyramid."""

__version__ = "0.1.0"
