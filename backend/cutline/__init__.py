"""Cutline: job orchestration for manual and scene-based video clipping."""

__version__ = "1.0.0"
