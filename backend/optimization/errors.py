"""Exceptions raised by the optimization core."""


class CacheStorageError(RuntimeError):
    """The backing key-value store could not be read or written."""


class InvalidJobPayload(ValueError):
    """A job payload or result failed schema validation at the boundary."""
