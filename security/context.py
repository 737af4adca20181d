"""
Scope Context
-------------
Caller identity snapshot used by every scope check.

The context is never persisted. It is rebuilt on every check from:
1. The in-process context variable (set by run_with_context / ScopeContextScope)
2. GATEKEEPER_* environment variables (agent shell invoking the CLI)
"""

import contextvars
import os
from dataclasses import dataclass
from typing import Optional

ENV_AGENT_ID = "GATEKEEPER_AGENT_ID"
ENV_SESSION_KEY = "GATEKEEPER_SESSION_KEY"
ENV_SESSION_NAME = "GATEKEEPER_SESSION_NAME"


@dataclass(frozen=True)
class ScopeContext:
    """Who is asking. No agent_id means the trusted operator."""
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    session_name: Optional[str] = None

    @property
    def is_operator(self) -> bool:
        return not self.agent_id

    def owns_session(self, target: str) -> bool:
        """Whether target names or keys the caller's own session."""
        if self.session_name and self.session_name == target:
            return True
        if self.session_key and self.session_key == target:
            return True
        return False


_context_var: contextvars.ContextVar[Optional[ScopeContext]] = contextvars.ContextVar(
    "scope_context", default=None
)


class ScopeContextScope:
    """
    Context manager binding a ScopeContext for the current thread/task.

    Usage:
        with ScopeContextScope(ScopeContext(agent_id="dev")):
            enforcer.enforce_scope_check("admin", "contacts", "list")
    """

    def __init__(self, ctx: ScopeContext):
        self._ctx = ctx
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> ScopeContext:
        self._token = _context_var.set(self._ctx)
        return self._ctx

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _context_var.reset(self._token)


def run_with_context(ctx: ScopeContext, fn, *args, **kwargs):
    """Run fn with ctx bound as the current scope context."""
    with ScopeContextScope(ctx):
        return fn(*args, **kwargs)


def get_scope_context() -> ScopeContext:
    """
    Get the current scope context.

    In-process bindings win; otherwise the environment is consulted, which
    is how a CLI subprocess started from an agent's shell learns who it
    runs for. With neither, the caller is the operator.
    """
    ctx = _context_var.get()
    if ctx is not None:
        return ctx

    env = os.environ
    if not env.get(ENV_AGENT_ID) and not env.get(ENV_SESSION_KEY) and not env.get(ENV_SESSION_NAME):
        return ScopeContext()

    return ScopeContext(
        agent_id=env.get(ENV_AGENT_ID) or None,
        session_key=env.get(ENV_SESSION_KEY) or None,
        session_name=env.get(ENV_SESSION_NAME) or None,
    )


def current_agent_id() -> Optional[str]:
    """Agent id of the current scope context, if any."""
    return get_scope_context().agent_id
