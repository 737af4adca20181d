# Hooks module - Pre-tool-use permission hooks for the agent runtime
# Deny payloads are consumed verbatim by the runtime

from .pre_tool_use import (
    HookMatcher, SDK_TOOLS, deny_decision, is_denied, run_hooks,
    create_bash_permission_hook, create_tool_permission_hook,
)

__all__ = [
    "HookMatcher", "SDK_TOOLS", "deny_decision", "is_denied", "run_hooks",
    "create_bash_permission_hook", "create_tool_permission_hook",
]
