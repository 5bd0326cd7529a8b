"""Competitor discovery and product matching service."""

__version__ = "0.1.0"
