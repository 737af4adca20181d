"""
Command Scope Registry
----------------------
Declarative scope table for the platform CLI plus the dispatcher that
enforces it.

Resolution: (group, subcommand) entry > (group, None) entry > "admin".
A command nobody registered is therefore fail-secure.

Exit Criterion: Every command's scope is auditable without running it.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.errors import ScopeDeniedError
from infra.logging import get_logger
from security.context import ScopeContext
from security.scope import ScopeEnforcer, ScopeTag

logger = get_logger("commands.registry")

DEFAULT_SCOPE = ScopeTag.ADMIN

ScopeKey = Tuple[str, Optional[str]]

COMMAND_SCOPES: Dict[ScopeKey, str] = {
    # Operator-only
    ("permissions", None): ScopeTag.SUPERADMIN,

    # Media and read-only helpers
    ("audio", None): ScopeTag.OPEN,
    ("copilot", None): ScopeTag.OPEN,
    ("events", None): ScopeTag.OPEN,
    ("image", None): ScopeTag.OPEN,
    ("media", None): ScopeTag.OPEN,
    ("tools", None): ScopeTag.OPEN,
    ("transcribe", None): ScopeTag.OPEN,
    ("video", None): ScopeTag.OPEN,
    ("whatsapp.dm", None): ScopeTag.OPEN,
    ("bash", "check"): ScopeTag.OPEN,

    # Channel and daemon administration
    ("channels", None): ScopeTag.ADMIN,
    ("daemon", None): ScopeTag.ADMIN,
    ("heartbeat", None): ScopeTag.ADMIN,
    ("instances", None): ScopeTag.ADMIN,
    ("instances.routes", None): ScopeTag.ADMIN,
    ("instances.pending", None): ScopeTag.ADMIN,
    ("matrix", None): ScopeTag.ADMIN,
    ("service", None): ScopeTag.ADMIN,
    ("whatsapp", None): ScopeTag.ADMIN,

    # Owned resources; ownership checked in the command body
    ("triggers", None): ScopeTag.RESOURCE,
    ("cron", None): ScopeTag.RESOURCE,
    ("outbound", None): ScopeTag.RESOURCE,

    # Contact writes
    ("contacts", "add"): ScopeTag.WRITE_CONTACTS,
    ("contacts", "approve"): ScopeTag.WRITE_CONTACTS,
    ("contacts", "block"): ScopeTag.WRITE_CONTACTS,
    ("contacts", "delete"): ScopeTag.WRITE_CONTACTS,
    ("contacts", "tag"): ScopeTag.WRITE_CONTACTS,
    ("contacts", "untag"): ScopeTag.WRITE_CONTACTS,
}


def resolve_scope(
    group: str,
    subcommand: Optional[str] = None,
    table: Optional[Dict[ScopeKey, str]] = None,
) -> str:
    """Scope tag for a command; subcommand entries override the group entry."""
    table = COMMAND_SCOPES if table is None else table
    if subcommand is not None and (group, subcommand) in table:
        return table[(group, subcommand)]
    return table.get((group, None), DEFAULT_SCOPE)


@dataclass
class DispatchRecord:
    """Trace of one scope decision, exposed through CommandDispatcher.history."""
    group: str
    subcommand: Optional[str]
    scope: str
    allowed: bool


class CommandDispatcher:
    """
    Runs command handlers behind their scope check.

    Responsibilities:
    - Resolve the scope tag from the table
    - Ask the enforcer
    - Raise ScopeDeniedError (verbatim message) instead of running a denied handler

    Forbidden:
    - Deciding permissions itself
    """

    def __init__(self, enforcer: ScopeEnforcer, table: Optional[Dict[ScopeKey, str]] = None):
        self._enforcer = enforcer
        self._table = COMMAND_SCOPES if table is None else table
        self._history: List[DispatchRecord] = []

    @property
    def history(self) -> List[DispatchRecord]:
        return list(self._history)

    def scope_for(self, group: str, subcommand: Optional[str] = None) -> str:
        return resolve_scope(group, subcommand, self._table)

    def check(self, group: str, subcommand: Optional[str] = None,
              ctx: Optional[ScopeContext] = None):
        """Run the scope check only. Returns the enforcer's ScopeCheckResult."""
        scope = self.scope_for(group, subcommand)
        result = self._enforcer.enforce_scope_check(scope, group, subcommand, ctx)
        self._history.append(DispatchRecord(group, subcommand, scope, result.allowed))
        return result

    def dispatch(
        self,
        group: str,
        subcommand: Optional[str],
        handler: Callable[..., Any],
        *args: Any,
        ctx: Optional[ScopeContext] = None,
        **kwargs: Any,
    ) -> Any:
        """Check the command's scope, then run handler(*args, **kwargs)."""
        result = self.check(group, subcommand, ctx)
        if not result.allowed:
            raise ScopeDeniedError(
                result.error_message,
                scope=self.scope_for(group, subcommand),
                group=group,
                subcommand=subcommand,
            )

        logger.debug(f"Dispatching {group} {subcommand or ''}".rstrip())
        return handler(*args, **kwargs)

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, key: ScopeKey) -> bool:
        return key in self._table
