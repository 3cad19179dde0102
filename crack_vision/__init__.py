"""Align two photographs of a crack site and highlight what changed between them."""

__version__ = "0.1.0"
