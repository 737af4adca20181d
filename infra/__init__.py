# Infrastructure module - Logging, configuration, persistence and audit
# The HTTP service (infra.service_bus) is imported explicitly, not from here

from .logging import (
    get_logger, configure_logging, CheckContext,
    get_check_id, generate_check_id
)
from .database import (
    DatabaseManager, DatabaseError, SchemaMismatchError, MigrationFailedError,
    SCHEMA_VERSION
)
from .config import (
    ConfigManager, GatekeeperConfig, AgentConfig, BashConfig, BashMode, load_config
)
from .audit import AuditLog, AuditEntry, EventType, VerifyResult
from .event_bus import AuditEmitter, AuditLogPublisher, HttpEventPublisher, build_emitter

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "CheckContext",
    "get_check_id",
    "generate_check_id",
    # Database
    "DatabaseManager",
    "DatabaseError",
    "SchemaMismatchError",
    "MigrationFailedError",
    "SCHEMA_VERSION",
    # Configuration
    "ConfigManager",
    "GatekeeperConfig",
    "AgentConfig",
    "BashConfig",
    "BashMode",
    "load_config",
    # Audit
    "AuditLog",
    "AuditEntry",
    "EventType",
    "VerifyResult",
    "AuditEmitter",
    "AuditLogPublisher",
    "HttpEventPublisher",
    "build_emitter",
]
