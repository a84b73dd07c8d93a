"""Adaptive candidate selection with feedback fusion and entropy-based harmonization."""

__version__ = "0.1.0"
