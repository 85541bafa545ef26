"""
The errors raised by entity stores. Every error an entity store raises on purpose is a :class:`StoreError`, so callers
can catch the whole family at once, or single out the kind they care about.
"""
import typing as t


class StoreError(Exception):
    """Base class for all entity store errors."""


class EmptyKeyError(StoreError):
    """An operation needed an entity's key, but the entity has none."""

    def __init__(self, message: str = "store: key is empty"):
        super().__init__(message)


class NotFoundError(StoreError):
    """
    No entity exists at a given key. Also raised by ``delete_multiple`` when fewer entities were deleted than were
    requested, in which case :attr:`deleted` holds the number that *were* deleted.
    """

    def __init__(
        self,
        message: str = "store: key not found",
        *,
        keys: t.Sequence[str] = (),
        deleted: t.Optional[int] = None,
        requested: t.Optional[int] = None,
    ):
        super().__init__(message)
        self.keys = list(keys)
        self.deleted = deleted
        self.requested = requested


class ConversionError(StoreError):
    """A field's kind or value has no supported encoding, or a stored value could not be decoded."""


class MalformedKeyError(StoreError):
    """An enumerated storage key did not carry the prefix of the type being listed."""


class TransportError(StoreError):
    """Wraps a failure of the underlying store client (connection loss, timeout, command error)."""
