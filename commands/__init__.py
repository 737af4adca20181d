# Commands module - CLI command scope table and dispatcher
# This module does NOT decide permissions, it routes to the scope enforcer

from .registry import COMMAND_SCOPES, CommandDispatcher, resolve_scope

__all__ = ["COMMAND_SCOPES", "CommandDispatcher", "resolve_scope"]
