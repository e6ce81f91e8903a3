"""Conversation store exceptions."""


class StorageError(Exception):
    """Base exception for conversation store errors."""

    pass


class StorageUnavailable(StorageError):
    """The database could not be located, opened or migrated."""

    pass


class InvalidState(StorageError, RuntimeError):
    """Operation invoked on a store that is closed."""

    pass


class InvalidArgument(StorageError, ValueError):
    """A caller-supplied identifier or field failed validation."""

    pass


class NotFound(StorageError, LookupError):
    """The requested session does not exist."""

    pass


class ParseFailure(StorageError, ValueError):
    """A stored timestamp could not be decoded."""

    pass


class OperationCancelled(StorageError):
    """The caller's cancel signal or deadline fired before the operation finished."""

    pass
