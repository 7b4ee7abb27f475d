"""Tally - evidence-backed decisions and responsibilities from chat transcripts."""

__version__ = "0.1.0"
