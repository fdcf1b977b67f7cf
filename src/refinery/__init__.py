"""Refinery: explore, score and refine AI agent output."""

__version__ = "0.1.0"
