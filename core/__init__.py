# Core module - Error taxonomy shared by every layer
# Nothing here is retried; callers decide deny-or-propagate

from .errors import (
    ErrorCategory, GatekeeperError, MalformedGrantError, InvalidWildcardError,
    StorageError, ConfigError, ScopeDeniedError,
)

__all__ = [
    "ErrorCategory", "GatekeeperError", "MalformedGrantError", "InvalidWildcardError",
    "StorageError", "ConfigError", "ScopeDeniedError",
]
