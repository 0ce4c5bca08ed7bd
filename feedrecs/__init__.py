"""Embedding-based feed personalization core."""

__version__ = "0.3.0"
