"""Session documents, persistence and the session manager."""

from chatvault.session.errors import (
    CompactionError,
    CompactionParseError,
    MalformedDocumentError,
    MissingComponentError,
    SessionError,
    SessionNotFoundError,
)
from chatvault.session.models import SessionCoordinates

__all__ = [
    "CompactionError",
    "CompactionParseError",
    "MalformedDocumentError",
    "MissingComponentError",
    "SessionCoordinates",
    "SessionError",
    "SessionNotFoundError",
]
