"""Small shared utilities."""

from flowrun.utils.io import atomic_write

__all__ = ["atomic_write"]
