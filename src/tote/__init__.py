"""Tote - parimutuel settlement engine for sports prediction markets."""

__version__ = "0.1.0"
