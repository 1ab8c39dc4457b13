"""Custom exception types for Sender Notes.

Error messages follow one shape:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)

Duplicate pattern rejections are NOT exceptions. They are returned as
structured results by the repository so callers can show them inline.
"""


class SenderNotesError(Exception):
    """Base exception for all Sender Notes errors."""

    pass


class ConfigValidationError(SenderNotesError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(SenderNotesError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(SenderNotesError):
    """Raised when a storage operation fails (transaction abort, I/O, corruption)."""

    pass


class SchemaUpgradeError(DatabaseError):
    """Raised when the storage schema cannot be brought to the current version.

    The upgrade runs in a single transaction, so nothing from the failed
    upgrade persists. This is fatal for initialization.

    Attributes:
        from_version: Schema version found in the database
        to_version: Schema version the upgrade was aiming for
    """

    def __init__(self, message: str, from_version: int, to_version: int):
        super().__init__(message)
        self.from_version = from_version
        self.to_version = to_version


class MigrationError(SenderNotesError):
    """Raised when a data migration is misconfigured or required migrations failed.

    Attributes:
        migration_id: The migration involved, if a single one is responsible
    """

    def __init__(self, message: str, migration_id: str | None = None):
        super().__init__(message)
        self.migration_id = migration_id


class RequestValidationError(SenderNotesError):
    """Raised when an incoming message fails caller-facing validation.

    Attributes:
        action: The message action that was rejected (if it could be determined)
        errors: Individual validation problems, one human-readable line each
    """

    def __init__(self, message: str, action: str | None = None, errors: list[str] | None = None):
        super().__init__(message)
        self.action = action
        self.errors = errors or []


class UnknownActionError(RequestValidationError):
    """Raised when a message names an action the dispatcher does not handle."""

    pass


class LegacyImportError(SenderNotesError):
    """Raised when a legacy export cannot be read (missing file, bad JSON, wrong shape)."""

    pass
