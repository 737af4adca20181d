"""
Error Taxonomy
--------------
Typed errors for the authorization core.

Rules:
- Malformed grants are surfaced to the writer, never coerced
- Parse failures never raise; they become denials upstream
- Unknown scopes deny and are logged as configuration defects
- Storage errors propagate; every caller treats them as a denial
- Nothing is retried
"""

from enum import Enum, auto
from typing import Optional


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""
    MALFORMED_GRANT = auto()    # Invalid wildcard or entity on write
    PARSE_FAILURE = auto()      # Command could not be safely classified
    UNKNOWN_SCOPE = auto()      # Enforcement path got an unrecognized tag
    STORAGE_FAILURE = auto()    # Relation store I/O failed
    PERMISSION_DENIED = auto()  # Explicit denial surfaced as an exception
    CONFIG_ERROR = auto()       # Invalid configuration file


class GatekeeperError(Exception):
    """Base class for all gatekeeper errors."""

    category: ErrorCategory = ErrorCategory.PERMISSION_DENIED

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.category.name}: {self.message})"


class MalformedGrantError(GatekeeperError):
    """A caller attempted to write an ill-formed relation."""
    category = ErrorCategory.MALFORMED_GRANT


class InvalidWildcardError(MalformedGrantError):
    """Object id carries a wildcard anywhere other than a single trailing '*'."""

    def __init__(self, object_id: str, message: str):
        self.object_id = object_id
        super().__init__(message)


class StorageError(GatekeeperError):
    """Reading or writing relations failed."""
    category = ErrorCategory.STORAGE_FAILURE


class ConfigError(GatekeeperError):
    """Configuration could not be loaded or validated."""
    category = ErrorCategory.CONFIG_ERROR


class ScopeDeniedError(GatekeeperError):
    """
    Raised by the command dispatcher when a scope check denies.

    The message is the enforcer's error message, verbatim.
    """
    category = ErrorCategory.PERMISSION_DENIED

    def __init__(self, message: str, scope: str, group: Optional[str] = None,
                 subcommand: Optional[str] = None):
        self.scope = scope
        self.group = group
        self.subcommand = subcommand
        super().__init__(message)
