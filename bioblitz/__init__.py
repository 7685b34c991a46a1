"""Incremental observation sync and deterministic participant scoring."""

__version__ = "0.3.0"
