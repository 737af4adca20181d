# Shell module - Command-line safety screening
# Pattern screen first, then parse; anything unparseable is denied

from .patterns import (
    check_dangerous_patterns, PatternCheckResult, UNCONDITIONAL_BLOCKS
)
from .parser import (
    parse_bash_command, ParsedCommand, extract_cli_invocations, find_env_assignments
)
from .policy import (
    check_bash_permission, BashPermissionResult, default_allowlist, default_denylist
)

__all__ = [
    "check_dangerous_patterns", "PatternCheckResult", "UNCONDITIONAL_BLOCKS",
    "parse_bash_command", "ParsedCommand", "extract_cli_invocations", "find_env_assignments",
    "check_bash_permission", "BashPermissionResult", "default_allowlist", "default_denylist",
]
