"""
Gatekeeper Runtime
------------------
Wires configuration, storage, engine, enforcer, hooks and audit together.

Non-negotiable rule: components never construct their own dependencies.
The store is built once here and injected everywhere.

Usage:
    gk = Gatekeeper(load_config())
    gk.initialize()
    matchers = gk.hooks_for("dev")
    ...
    gk.shutdown()
"""

from typing import Callable, List, Optional

from infra.audit import AuditLog
from infra.config import AgentConfig, BashConfig, GatekeeperConfig
from infra.database import MEMORY_DB, DatabaseManager
from infra.event_bus import AuditEmitter, build_emitter
from infra.logging import get_logger
from security.context import get_scope_context
from security.engine import PermissionEngine
from security.relations import RelationStore
from security.scope import ScopeEnforcer
from hooks.pre_tool_use import HookMatcher, create_bash_permission_hook, create_tool_permission_hook
from commands.registry import CommandDispatcher


class Gatekeeper:
    """
    Central coordinator for the authorization core.

    Responsibilities:
    - Open the relation database
    - Build the audit sinks
    - Expose the engine, enforcer, dispatcher and hook factories
    - Flush audit events on shutdown
    """

    def __init__(self, config: Optional[GatekeeperConfig] = None,
                 db: Optional[DatabaseManager] = None):
        self.config = config or GatekeeperConfig()
        self._db = db
        self._logger = get_logger("core.runtime")

        self.audit_log: Optional[AuditLog] = None
        self.emitter: Optional[AuditEmitter] = None
        self.store: Optional[RelationStore] = None
        self.engine: Optional[PermissionEngine] = None
        self.enforcer: Optional[ScopeEnforcer] = None
        self.dispatcher: Optional[CommandDispatcher] = None

    @property
    def db(self) -> Optional[DatabaseManager]:
        return self._db

    def initialize(self, sync: bool = False) -> None:
        """Open storage and build every component. sync=True regrants config relations."""
        if self._db is None:
            self._db = DatabaseManager(self.config.database_path)
        if not self._db.initialized:
            self._db.initialize()

        audit = self.config.audit
        audit_db = audit.db_path or self.config.database_path
        if audit.enabled and audit_db == MEMORY_DB:
            # The audit log opens a connection per write; an in-memory db would vanish each time
            self._logger.warning("Audit log disabled: in-memory database has no durable audit table")
        elif audit.enabled:
            self.audit_log = AuditLog(audit_db)
        self.emitter = build_emitter(
            audit_log=self.audit_log,
            event_bus_url=audit.event_bus_url if audit.enabled else None,
            max_in_flight=audit.max_in_flight,
        )

        self.store = RelationStore(self._db, audit_log=self.audit_log)
        self.engine = PermissionEngine(self.store)
        self.enforcer = ScopeEnforcer(self.engine, self.emitter)
        self.dispatcher = CommandDispatcher(self.enforcer)

        if sync:
            self.sync()

        self._logger.info(f"Gatekeeper ready (db={self._db.db_path}, agents={len(self.config.agents)})")

    def sync(self) -> int:
        """Regenerate config-sourced relations from the configured agents."""
        return self.store.sync_from_config(self.config.agents, self.config.superadmin_agent)

    def agent(self, agent_id: Optional[str]) -> Optional[AgentConfig]:
        return self.config.get_agent(agent_id)

    def bash_config_for(self, agent_id: Optional[str]) -> Optional[BashConfig]:
        agent = self.agent(agent_id)
        return agent.bash if agent else None

    def hooks_for(self, agent_id: Optional[str]) -> List[HookMatcher]:
        """Tool hook then Bash hook for a fixed agent."""
        return self.hooks(lambda: agent_id)

    def hooks(self, get_agent_id: Callable[[], Optional[str]]) -> List[HookMatcher]:
        """Tool hook then Bash hook, resolving the agent per call."""
        return [
            create_tool_permission_hook(self.engine, get_agent_id, emitter=self.emitter),
            create_bash_permission_hook(
                self.engine,
                get_agent_id,
                get_bash_config=lambda: self.bash_config_for(get_agent_id()),
                emitter=self.emitter,
                platform_cli=self.config.platform_cli,
                get_context=get_scope_context,
            ),
        ]

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Flush audit events and close storage. Returns False if the flush timed out."""
        flushed = True
        if self.emitter is not None:
            flushed = self.emitter.close(timeout if timeout is not None else self.config.audit.flush_timeout_seconds)
        if self._db is not None:
            self._db.close()
        self._logger.info("Gatekeeper shut down")
        return flushed
