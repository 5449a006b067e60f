"""Crosslink - cross-platform identity graph."""

__version__ = "0.1.0"
