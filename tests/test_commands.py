"""
Command Scope Tests
-------------------
Tests for the command scope table, the dispatcher and the operator
'permissions' commands.

Test Cases:
1. Scope resolution (subcommand > group > fail-secure default)
2. Dispatch runs handlers only when allowed
3. Entity parsing and relation validation
4. grant / revoke / check / list / sync / init / clear
"""

import io

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from rich.console import Console

from core.errors import GatekeeperError, MalformedGrantError, ScopeDeniedError
from core.runtime import Gatekeeper
from commands.permissions import PermissionsCommands, parse_entity, validate_relation
from commands.registry import COMMAND_SCOPES, DEFAULT_SCOPE, CommandDispatcher, resolve_scope
from infra.config import AgentConfig, AuditSettings, BashConfig, BashMode, GatekeeperConfig
from security.context import ScopeContext
from security.relations import RelationFilter, SOURCE_CONFIG, SOURCE_MANUAL
from security.scope import ScopeTag
from shell.policy import default_allowlist

DEV = ScopeContext(agent_id="dev")


class TestScopeTable:
    """Test resolve_scope against the command table."""

    @pytest.mark.parametrize("group,subcommand,expected", [
        ("permissions", "grant", ScopeTag.SUPERADMIN),
        ("media", "list", ScopeTag.OPEN),
        ("whatsapp.dm", "send", ScopeTag.OPEN),
        ("whatsapp", "connect", ScopeTag.ADMIN),
        ("cron", "add", ScopeTag.RESOURCE),
        ("triggers", "delete", ScopeTag.RESOURCE),
        ("contacts", "add", ScopeTag.WRITE_CONTACTS),
        ("contacts", "untag", ScopeTag.WRITE_CONTACTS),
        ("bash", "check", ScopeTag.OPEN),
    ])
    def test_known_commands(self, group, subcommand, expected):
        """Table entries resolve to their tag."""
        assert resolve_scope(group, subcommand) == expected

    def test_unlisted_subcommand_falls_back_to_default(self):
        """contacts list has no entry and no group entry, so admin."""
        assert resolve_scope("contacts", "list") == DEFAULT_SCOPE == ScopeTag.ADMIN

    def test_unknown_group_is_fail_secure(self):
        """Unregistered commands require admin."""
        assert resolve_scope("brand-new-group") == ScopeTag.ADMIN

    def test_every_tag_is_known(self):
        """The table only uses tags the enforcer handles."""
        assert set(COMMAND_SCOPES.values()) <= set(ScopeTag.ALL)

    def test_custom_table(self):
        """A dispatcher can carry its own table."""
        table = {("demo", None): ScopeTag.OPEN, ("demo", "nuke"): ScopeTag.SUPERADMIN}

        assert resolve_scope("demo", "list", table) == ScopeTag.OPEN
        assert resolve_scope("demo", "nuke", table) == ScopeTag.SUPERADMIN


class TestDispatcher:
    """Test CommandDispatcher."""

    def test_allowed_handler_runs(self, enforcer):
        """Open commands run for anyone."""
        dispatcher = CommandDispatcher(enforcer)

        result = dispatcher.dispatch("media", "list", lambda x, y=0: x + y, 1, y=2, ctx=DEV)

        assert result == 3
        assert dispatcher.history[-1].allowed

    def test_denied_handler_never_runs(self, enforcer):
        """A denial raises with the enforcer's message and skips the handler."""
        dispatcher = CommandDispatcher(enforcer)
        calls = []

        with pytest.raises(ScopeDeniedError) as exc_info:
            dispatcher.dispatch("permissions", "grant", lambda: calls.append(1), ctx=DEV)

        assert calls == []
        assert exc_info.value.message == "Permission denied: agent:dev requires admin on system:*"
        assert exc_info.value.scope == ScopeTag.SUPERADMIN
        assert exc_info.value.group == "permissions"
        assert not dispatcher.history[-1].allowed

    def test_grant_unlocks_dispatch(self, enforcer, store):
        """The next dispatch sees a new grant."""
        dispatcher = CommandDispatcher(enforcer)
        store.grant("agent", "dev", "execute", "group", "contacts_list")

        assert dispatcher.dispatch("contacts", "list", lambda: "ok", ctx=DEV) == "ok"

    def test_check_does_not_run_anything(self, enforcer):
        """check only reports."""
        dispatcher = CommandDispatcher(enforcer)

        result = dispatcher.check("contacts", "add", DEV)

        assert not result.allowed
        assert "write_contacts" in result.error_message

    def test_table_protocol(self, enforcer):
        """The dispatcher exposes its table size and membership."""
        dispatcher = CommandDispatcher(enforcer)

        assert len(dispatcher) == len(COMMAND_SCOPES)
        assert ("permissions", None) in dispatcher
        assert ("nope", None) not in dispatcher


class TestEntityParsing:
    """Test type:id parsing."""

    def test_parse(self):
        """Split on the first colon."""
        assert parse_entity("agent:dev") == ("agent", "dev")
        assert parse_entity("system:*") == ("system", "*")
        assert parse_entity("session:dev:sub") == ("session", "dev:sub")

    @pytest.mark.parametrize("entity", ["dev", "robot:dev", "agent:"])
    def test_malformed(self, entity):
        """Missing colon, unknown type and empty id are rejected."""
        with pytest.raises(MalformedGrantError):
            parse_entity(entity)

    def test_relation_validation(self):
        """Only known relations may be written."""
        validate_relation("access")
        with pytest.raises(MalformedGrantError):
            validate_relation("own")


@pytest.fixture
def gatekeeper(tmp_path):
    """Runtime over a file database with the audit log enabled."""
    config = GatekeeperConfig(
        database_path=str(tmp_path / "gatekeeper.db"),
        audit=AuditSettings(enabled=True),
        agents=[
            AgentConfig(id="main"),
            AgentConfig(
                id="dev",
                allowed_sessions=["dev-*"],
                bash=BashConfig(mode=BashMode.ALLOWLIST, allowlist=["git"]),
            ),
        ],
    )
    gk = Gatekeeper(config)
    gk.initialize()
    yield gk
    gk.shutdown(timeout=1.0)


@pytest.fixture
def commands(gatekeeper):
    console = Console(file=io.StringIO(), width=200)
    return PermissionsCommands(gatekeeper, console)


def output_of(commands):
    return commands._console.file.getvalue()


class TestPermissionsCommands:
    """Test the operator 'permissions' group."""

    def test_grant_and_check(self, commands, gatekeeper):
        """A grant is immediately checkable."""
        commands.grant("agent:dev", "access", "session:prod-*")

        assert commands.check("agent:dev", "access", "session:prod-1") is True
        assert commands.check("agent:dev", "access", "session:test-1") is False
        assert "ALLOWED" in output_of(commands)
        assert "DENIED" in output_of(commands)

    def test_grant_invalid_wildcard(self, commands):
        """Malformed grants are surfaced to the operator."""
        with pytest.raises(MalformedGrantError):
            commands.grant("agent:dev", "access", "session:*-prod")

    def test_grant_warns_about_redundancy(self, commands):
        """Wildcard grants point out the individual relations they cover."""
        commands.grant("agent:dev", "use", "tool:Read")
        commands.grant("agent:dev", "use", "tool:*")
        commands.grant("agent:dev", "use", "tool:Write")

        out = output_of(commands)
        assert "1 individual relation(s) are now redundant" in out
        assert "Redundant: wildcard tool:* already covers this" in out

    def test_revoke(self, commands, gatekeeper):
        """Revoke removes the tuple; missing tuples are an error."""
        commands.grant("agent:dev", "execute", "group:contacts")
        commands.revoke("agent:dev", "execute", "group:contacts")

        assert not gatekeeper.store.has_relation("agent", "dev", "execute", "group", "contacts")
        with pytest.raises(GatekeeperError, match="Relation not found"):
            commands.revoke("agent:dev", "execute", "group:contacts")

    def test_list_filters(self, commands):
        """list prints a table and returns the row count."""
        commands.grant("agent:dev", "use", "tool:Read")
        commands.grant("agent:ops", "use", "tool:Read")

        assert commands.list(subject="agent:dev") == 1
        assert commands.list(obj="tool:Read") == 2
        assert commands.list(subject="agent:nobody") == 0
        assert "No relations found." in output_of(commands)

    def test_sync(self, commands, gatekeeper):
        """sync regenerates config relations from the agents."""
        count = commands.sync()

        # main: admin; dev: one session + one executable
        assert count == 3
        assert gatekeeper.engine.agent_can("dev", "access", "session", "dev-42")
        assert gatekeeper.engine.is_superadmin("agent", "main")

    def test_init_safe_executables(self, commands, gatekeeper):
        """The template includes the defaults and the platform CLI."""
        count = commands.init("agent:ops", "safe-executables")

        assert count == len(default_allowlist()) + 1
        assert gatekeeper.engine.agent_can("ops", "execute", "executable", "git")
        assert gatekeeper.engine.agent_can("ops", "execute", "executable", "agentctl")

    def test_init_unknown_template(self, commands):
        """Unknown templates are rejected."""
        with pytest.raises(GatekeeperError, match="Unknown template"):
            commands.init("agent:ops", "everything")

    def test_clear_manual_keeps_config(self, commands, gatekeeper):
        """clear without --all only removes manual relations."""
        commands.sync()
        commands.grant("agent:dev", "use", "tool:Read")

        assert commands.clear() == 1
        assert gatekeeper.store.list_relations(RelationFilter(source=SOURCE_MANUAL)) == []
        assert gatekeeper.store.list_relations(RelationFilter(source=SOURCE_CONFIG))

    def test_clear_all(self, commands, gatekeeper):
        """clear --all removes everything."""
        commands.sync()
        commands.grant("agent:dev", "use", "tool:Read")

        assert commands.clear(all=True) == 4
        assert gatekeeper.store.list_relations() == []
        assert "permissions sync" in output_of(commands)

    def test_manual_grants_are_audited(self, commands, gatekeeper):
        """Manual grants and revokes land in the audit log."""
        commands.grant("agent:dev", "use", "tool:Read")
        commands.revoke("agent:dev", "use", "tool:Read")

        stats = gatekeeper.audit_log.get_stats()
        assert stats["by_type"]["RELATION_GRANTED"] == 1
        assert stats["by_type"]["RELATION_REVOKED"] == 1
        assert gatekeeper.audit_log.verify_chain().valid

    def test_agent_cannot_dispatch_permissions(self, commands, gatekeeper):
        """The permissions group is superadmin-only."""
        with pytest.raises(ScopeDeniedError):
            gatekeeper.dispatcher.dispatch(
                "permissions", "grant", commands.grant, "agent:dev", "admin", "system:*", ctx=DEV
            )

        assert not gatekeeper.engine.is_superadmin("agent", "dev")
