"""Error types raised by the session engine."""


class SessionError(Exception):
    """Base class for session engine errors."""


class SessionNotFoundError(SessionError):
    """An operation required a session that does not exist."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class MalformedDocumentError(SessionError):
    """A stored document exists but could not be parsed."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Malformed document {key}: {reason}")
        self.key = key
        self.reason = reason


class MissingComponentError(SessionError):
    """A session document needed to build a request is absent."""

    def __init__(self, session_id: str, component: str):
        super().__init__(f"{component} not found for: {session_id}")
        self.session_id = session_id
        self.component = component


class CompactionError(SessionError):
    """Compaction could not produce a new checkpoint."""


class CompactionParseError(CompactionError):
    """The completion service returned text that is not a valid summary."""
