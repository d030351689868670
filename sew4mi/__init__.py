"""Sew4Mi escrow, milestone and dispute backend."""

__version__ = "0.1.0"
