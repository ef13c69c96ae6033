"""Provably fair lottery draws seeded by a committed Bitcoin block hash."""

__version__ = "1.0.0"
