# core/exceptions.py
from __future__ import annotations


class StorageError(Exception):
    """
    Base class for errors raised by the local storage layer
    (key/value store, counters).
    """


class StorageUnavailable(StorageError):
    """
    The durable local store cannot be read or written.
    """


class CounterCorrupted(StorageError):
    """
    A stored document counter is not a valid non-negative integer.

    Raised instead of guessing a value, so a corrupted counter never
    produces a duplicate document number.
    """

    def __init__(self, key: str, raw_value) -> None:
        self.key = key
        self.raw_value = raw_value
        super().__init__(f"Counter '{key}' holds an invalid value: {raw_value!r}")


class ReplayFailed(Exception):
    """
    A queued operation could not be applied while draining the offline queue.
    Treated as transient: the operation stays queued.
    """
