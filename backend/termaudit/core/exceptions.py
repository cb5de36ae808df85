"""Exception taxonomy for the audit and interception engine."""


class TermAuditError(Exception):
    """Base error for the audit engine."""


class PolicyError(TermAuditError):
    """Blacklist rule policy error."""


class InvalidPatternError(PolicyError):
    """Pattern failed to compile or was rejected by the stress check.

    Raised at rule write time; the live rule cache is never touched.
    """

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")


class RuleNotFoundError(PolicyError):
    """No blacklist rule with the given id."""

    def __init__(self, rule_id: int):
        self.rule_id = rule_id
        super().__init__(f"Blacklist rule {rule_id} not found")


class SnapshotNotFoundError(PolicyError):
    """Requested rule cache version is no longer retained."""

    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Rule snapshot version {version} is not available")


class SessionStateError(TermAuditError):
    """Terminal session lifecycle error."""


class SessionNotFoundError(SessionStateError):
    """Unknown terminal session."""

    def __init__(self, key: int | str):
        self.key = key
        super().__init__(f"Terminal session {key} not found")


class SessionAlreadyEndedError(SessionStateError):
    """Event for a session that has already ended."""

    def __init__(self, key: int | str):
        self.key = key
        super().__init__(f"Terminal session {key} has already ended")


class SessionAlreadyExistsError(SessionStateError):
    """A session with this stream id is already registered."""

    def __init__(self, stream_id: str):
        self.stream_id = stream_id
        super().__init__(f"Terminal session for stream {stream_id} already exists")


class StorageError(TermAuditError):
    """Persistent storage failure."""


class AuditWriteError(StorageError):
    """A command audit record could not be written after retries."""


class RecordingError(StorageError):
    """Recording artifact failure."""


class RecordingNotFoundError(RecordingError):
    """Recording disabled, not finalized, or missing on disk."""

    def __init__(self, key: int | str, reason: str = "recording not found"):
        self.key = key
        self.reason = reason
        super().__init__(f"Recording for session {key}: {reason}")
