"""Error taxonomy for the username cache and allocator."""

from __future__ import annotations


class UniqnameError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(UniqnameError, ValueError):
    """Raised when a membership cache is built with invalid parameters."""


class DecodeError(UniqnameError):
    """Raised when a serialized snapshot is malformed or incompatible."""


class StoreError(UniqnameError):
    """Raised when the authoritative store cannot answer a query."""


class PersistenceError(UniqnameError):
    """Raised when the snapshot store is unreachable.

    Never surfaced to allocation callers; the guard logs it and carries on.
    """
