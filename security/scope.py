"""
Scope Enforcer
--------------
Decides whether the calling agent may touch a session, contact, agent,
owned resource or CLI command. All relation checks go through the
PermissionEngine.

Rules:
- No agent in context means trusted operator (CLI direct), allowed
- Own session is always accessible and modifiable
- Owned resources are matched by exact owner id, never by pattern
- Unknown scope tags deny (fail-secure) and are logged as defects
- Every denial is audited, after the decision is made
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from security.context import ScopeContext, get_scope_context
from security.engine import PermissionEngine
from infra.logging import get_logger


class ScopeTag:
    """Scope tags attached to CLI commands."""
    OPEN = "open"
    RESOURCE = "resource"
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    WRITE_CONTACTS = "writeContacts"

    ALL = (OPEN, RESOURCE, SUPERADMIN, ADMIN, WRITE_CONTACTS)


@dataclass(frozen=True)
class ScopeCheckResult:
    """Outcome of enforce_scope_check; error_message is empty when allowed."""
    allowed: bool
    error_message: str = ""


ALLOWED = ScopeCheckResult(allowed=True)


def denial_message(agent_id: Optional[str], relation: str, obj: str) -> str:
    return f"Permission denied: agent:{agent_id} requires {relation} on {obj}"


class ScopeEnforcer:
    """
    Scope isolation checks for one engine.

    Usage:
        enforcer = ScopeEnforcer(engine, emitter)
        result = enforcer.enforce_scope_check("admin", "contacts", "list")
        if not result.allowed:
            print(result.error_message)
    """

    def __init__(self, engine: PermissionEngine, emitter=None):
        self._engine = engine
        self._emitter = emitter
        self._logger = get_logger("security.scope")

    @property
    def engine(self) -> PermissionEngine:
        return self._engine

    def is_scope_enforced(self, ctx: ScopeContext) -> bool:
        """False for the operator and for superadmins."""
        if not ctx.agent_id:
            return False
        return not self._engine.is_superadmin("agent", ctx.agent_id)

    # Sessions

    def can_access_session(self, ctx: ScopeContext, target: str) -> bool:
        if not ctx.agent_id:
            return True
        if ctx.owns_session(target):
            return True
        return self._engine.agent_can(ctx.agent_id, "access", "session", target)

    def filter_accessible_sessions(self, ctx: ScopeContext, sessions: Sequence[Any]) -> List[Any]:
        """
        Keep the sessions ctx may access.

        Sessions are dicts or objects with 'name' and/or 'session_key'; the
        name wins when present.
        """
        if not ctx.agent_id:
            return list(sessions)
        return [s for s in sessions if self.can_access_session(ctx, _session_label(s))]

    def can_modify_session(self, ctx: ScopeContext, target: str) -> bool:
        """Reset, delete and rename require 'modify' unless it's the caller's own session."""
        if not ctx.agent_id:
            return True
        if ctx.owns_session(target):
            return True
        return self._engine.agent_can(ctx.agent_id, "modify", "session", target)

    # Contacts

    def can_access_contact(
        self,
        ctx: ScopeContext,
        contact: Dict[str, Any],
        contact_sessions: Optional[Iterable[Dict[str, Any]]] = None,
    ) -> bool:
        """
        Check read access to a contact ({"id": ..., "tags": [...]}).

        write_contacts implies read; read_own_contacts needs one of the
        contact's sessions routed to the caller; any tagged grant matching
        one of the contact's tags is enough; else read_contact on the id.
        """
        agent_id = ctx.agent_id
        if not agent_id:
            return True

        if self._engine.agent_can(agent_id, "write_contacts", "system", "*"):
            return True

        if self._engine.agent_can(agent_id, "read_own_contacts", "system", "*"):
            if any(s.get("agent_id") == agent_id for s in contact_sessions or []):
                return True

        for tag in contact.get("tags") or []:
            if self._engine.agent_can(agent_id, "read_tagged_contacts", "system", tag):
                return True

        return self._engine.agent_can(agent_id, "read_contact", "contact", str(contact.get("id")))

    def can_write_contacts(self, ctx: ScopeContext) -> bool:
        return self._engine.agent_can(ctx.agent_id, "write_contacts", "system", "*")

    # Agents

    def can_view_agent(self, ctx: ScopeContext, target_agent_id: str) -> bool:
        if not ctx.agent_id:
            return True
        if ctx.agent_id == target_agent_id:
            return True
        return self._engine.agent_can(ctx.agent_id, "view", "agent", target_agent_id)

    def filter_visible_agents(self, ctx: ScopeContext, agents: Sequence[Any]) -> List[Any]:
        if not ctx.agent_id:
            return list(agents)
        return [a for a in agents if self.can_view_agent(ctx, _agent_id_of(a))]

    # Owned resources (cron jobs, triggers, outbound queues)

    def can_access_resource(self, ctx: ScopeContext, owner_agent_id: Optional[str]) -> bool:
        if not ctx.agent_id:
            return True
        if self._engine.is_superadmin("agent", ctx.agent_id):
            return True
        if not owner_agent_id:
            return False
        return ctx.agent_id == owner_agent_id

    # Command scopes

    def enforce_scope_check(
        self,
        scope: str,
        group: Optional[str] = None,
        subcommand: Optional[str] = None,
        ctx: Optional[ScopeContext] = None,
    ) -> ScopeCheckResult:
        """
        Check a CLI command's scope tag against the caller.

        'resource' is allowed here; ownership is checked in the command body.
        """
        if scope in (ScopeTag.OPEN, ScopeTag.RESOURCE):
            return ALLOWED

        ctx = ctx or get_scope_context()
        agent_id = ctx.agent_id

        if scope == ScopeTag.SUPERADMIN:
            if self._engine.agent_can(agent_id, "admin", "system", "*"):
                return ALLOWED
            return self._deny(ctx, "admin", "system:*", group, subcommand)

        if scope == ScopeTag.ADMIN:
            if self._engine.agent_can(agent_id, "execute", "group", group or "*"):
                return ALLOWED
            if group and subcommand:
                if self._engine.agent_can(agent_id, "execute", "group", f"{group}_{subcommand}"):
                    return ALLOWED
                target = f"group:{group}_{subcommand}"
            else:
                target = f"group:{group or '*'}"
            return self._deny(ctx, "execute", target, group, subcommand)

        if scope == ScopeTag.WRITE_CONTACTS:
            if self.can_write_contacts(ctx):
                return ALLOWED
            return self._deny(ctx, "write_contacts", "system:*", group, subcommand)

        # Configuration defect: the command table names a tag nobody handles
        self._logger.error(
            f"Unknown scope {scope!r} on {_command_label(group, subcommand) or '<none>'}, denying"
        )
        return ScopeCheckResult(
            allowed=False,
            error_message=f'Permission denied: agent:{agent_id}: unknown scope "{scope}"',
        )

    def _deny(
        self,
        ctx: ScopeContext,
        relation: str,
        target: str,
        group: Optional[str],
        subcommand: Optional[str],
    ) -> ScopeCheckResult:
        message = denial_message(ctx.agent_id, relation, target)
        command = _command_label(group, subcommand)
        self._logger.warning(message, extra={"relation": relation, "object": target, "command": command})

        event = {"type": "scope", "agentId": ctx.agent_id, "denied": target, "reason": message}
        if command:
            event["command"] = command
        if self._emitter is not None:
            self._emitter.emit(event)

        return ScopeCheckResult(allowed=False, error_message=message)


def _command_label(group: Optional[str], subcommand: Optional[str]) -> Optional[str]:
    if not group:
        return None
    return f"{group} {subcommand}" if subcommand else group


def _session_label(session: Any) -> str:
    if isinstance(session, dict):
        return session.get("name") or session.get("session_key") or ""
    return getattr(session, "name", None) or getattr(session, "session_key", "")


def _agent_id_of(agent: Any) -> str:
    if isinstance(agent, dict):
        return agent.get("id", "")
    return getattr(agent, "id", "")
