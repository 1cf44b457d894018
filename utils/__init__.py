# utils/__init__.py
"""General utilities for the Reader Panel."""

from .logging import setup_logging

__all__ = ["setup_logging"]
