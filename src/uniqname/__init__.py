"""Username uniqueness cache and allocator."""

__version__ = "0.1.0"
