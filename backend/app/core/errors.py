"""Errors shared across services."""


class StorageUnavailableError(Exception):
    """The relational store could not be reached or timed out.

    Transient: callers surface it as a retryable 503 instead of a fault.
    """
    pass
