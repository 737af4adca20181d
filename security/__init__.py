# Security module - Relation-based authorization
# Default deny policy - no implicit trust, no cached decisions

from .context import ScopeContext, ScopeContextScope, get_scope_context, run_with_context
from .relations import Relation, RelationFilter, RelationStore, validate_wildcard
from .engine import PermissionEngine
from .scope import ScopeEnforcer, ScopeCheckResult, ScopeTag

__all__ = [
    "ScopeContext", "ScopeContextScope", "get_scope_context", "run_with_context",
    "Relation", "RelationFilter", "RelationStore", "validate_wildcard",
    "PermissionEngine",
    "ScopeEnforcer", "ScopeCheckResult", "ScopeTag",
]
