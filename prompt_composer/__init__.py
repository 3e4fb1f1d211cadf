"""Diverse prompt composition from a corpus of reusable prompt components."""

__version__ = "0.1.0"
