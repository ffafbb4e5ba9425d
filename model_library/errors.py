"""
Typed errors raised by the library and service layer.

Expected multi-outcome operations (3MF parsing, profile conflicts) return
tagged result records from ``models.py`` instead of raising.
"""


class LibraryError(Exception):
    """Base class for every error raised by model_library."""


# --- Input validation ---


class ValidationError(LibraryError):
    """Raised before any storage or database write when input is rejected."""


class EmptyUpload(ValidationError):
    def __init__(self) -> None:
        super().__init__("At least one file is required to create a version")


class TooManyFiles(ValidationError):
    def __init__(self, count: int, limit: int) -> None:
        self.count = count
        self.limit = limit
        super().__init__(f"Too many files: {count} (maximum {limit} per upload)")


class UnsupportedType(ValidationError):
    def __init__(self, extension: str, filename: str) -> None:
        self.extension = extension
        self.filename = filename
        shown = f".{extension}" if extension else "(no extension)"
        super().__init__(f"Unsupported file type {shown} for '{filename}'")


class FileTooLarge(ValidationError):
    def __init__(self, filename: str, extension: str, actual: int, limit: int) -> None:
        from .limits import format_bytes

        self.filename = filename
        self.extension = extension
        self.actual = actual
        self.limit = limit
        super().__init__(
            f"File '{filename}' is too large: {format_bytes(actual)} exceeds the "
            f"{format_bytes(limit)} limit for .{extension} files"
        )


class InvalidModelName(ValidationError):
    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid model name {name!r}: {reason}")


# --- Authorization / limits ---


class NotFoundOrDenied(LibraryError):
    """The target does not exist, is deleted, or belongs to another tenant.

    All three cases share one message so existence never leaks across
    organizations.
    """

    def __init__(self, what: str = "Model") -> None:
        self.what = what
        super().__init__(f"{what} not found or access denied")


class UsageLimitExceeded(LibraryError):
    def __init__(self, resource: str, current: int, requested: int, limit: int) -> None:
        self.resource = resource
        self.current = current
        self.requested = requested
        self.limit = limit
        super().__init__(
            f"{resource} limit exceeded: {current} in use + {requested} requested > {limit}"
        )


# --- Storage / persistence ---


class StorageFailure(LibraryError):
    """Raised when an object store operation fails."""

    def __init__(self, message: str, key: str | None = None, operation: str | None = None) -> None:
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFound(StorageFailure):
    """The object does not exist. Rollback code treats this as success."""


class PersistenceFailure(LibraryError):
    """Raised when the metadata transaction fails (after compensation ran)."""
