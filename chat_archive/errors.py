"""Exception hierarchy for archival and search."""


class ChatArchiveError(Exception):
    """Base class for all chat_archive errors."""


class ConfigError(ChatArchiveError, ValueError):
    """Raised when configuration contains an invalid value."""


class StorageError(ChatArchiveError):
    """Object storage write/read/verify failed (transient; may be retried)."""


class LiveSourceError(ChatArchiveError):
    """The live message source was unreachable or returned an error."""


class ArchiveFormatError(ChatArchiveError):
    """A stored batch payload could not be decoded as a batch document."""


class ChecksumMismatchError(ChatArchiveError):
    """Stored batch content does not match its recorded checksum. Never retried."""

    def __init__(self, path: str, expected: str, computed: str) -> None:
        super().__init__(f"checksum mismatch for {path}: expected {expected}, computed {computed}")
        self.path = path
        self.expected = expected
        self.computed = computed


class QueryValidationError(ChatArchiveError, ValueError):
    """Search query rejected before any I/O (too short, too long, empty)."""


class ArchivalInProgressError(ChatArchiveError):
    """Another archival job already holds the claim for this course."""

    def __init__(self, tenant_id: str, course_id: str) -> None:
        super().__init__(f"archival already running for course {course_id} (tenant {tenant_id})")
        self.tenant_id = tenant_id
        self.course_id = course_id
