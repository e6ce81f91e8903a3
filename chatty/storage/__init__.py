"""Persistent conversation storage backed by SQLite."""
from .conversation_store import ConversationStore, resolve_db_path
from .errors import (
    InvalidArgument,
    InvalidState,
    NotFound,
    OperationCancelled,
    ParseFailure,
    StorageError,
    StorageUnavailable,
)
from .models import Message, SessionSummary, Transcript
from .timestamps import ZERO_TIME, format_timestamp, parse_timestamp

__all__ = [
    "ConversationStore",
    "resolve_db_path",
    "Message",
    "SessionSummary",
    "Transcript",
    # Errors
    "StorageError",
    "StorageUnavailable",
    "InvalidState",
    "InvalidArgument",
    "NotFound",
    "ParseFailure",
    "OperationCancelled",
    # Timestamps
    "ZERO_TIME",
    "parse_timestamp",
    "format_timestamp",
]
