"""Seed-driven Spotify playlist harvester."""

__version__ = "0.1.0"
