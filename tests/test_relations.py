"""
Relation Store Tests
--------------------
Tests for relation persistence.

Test Cases:
1. Grant / revoke / exact lookup
2. Upsert semantics (source update, no duplicates)
3. Wildcard validation on write
4. Filtered listing and clearing
5. Config sync (idempotent, manual relations kept)
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import InvalidWildcardError, MalformedGrantError
from infra.config import AgentConfig, BashConfig, BashMode
from security.relations import (
    RelationFilter,
    SOURCE_CONFIG,
    SOURCE_MANUAL,
    derive_relations,
    validate_wildcard,
)


class TestGrantRevoke:
    """Test basic relation CRUD."""

    def test_grant_then_has_relation(self, store):
        """A granted tuple is found by exact lookup."""
        store.grant("agent", "dev", "execute", "group", "contacts")

        assert store.has_relation("agent", "dev", "execute", "group", "contacts")
        assert not store.has_relation("agent", "dev", "execute", "group", "cron")

    def test_revoke_returns_true_when_removed(self, store):
        """Revoking an existing tuple removes it."""
        store.grant("agent", "dev", "access", "session", "dev-*")

        assert store.revoke("agent", "dev", "access", "session", "dev-*") is True
        assert not store.has_relation("agent", "dev", "access", "session", "dev-*")

    def test_revoke_missing_returns_false(self, store):
        """Revoking something never granted is not an error."""
        assert store.revoke("agent", "dev", "access", "session", "nope") is False

    def test_has_relation_does_not_resolve_wildcards(self, store):
        """Exact lookup ignores wildcard grants."""
        store.grant("agent", "dev", "access", "session", "*")

        assert not store.has_relation("agent", "dev", "access", "session", "dev-1")

    def test_default_source_is_manual(self, store):
        """Grants without a source are manual."""
        store.grant("agent", "dev", "use", "tool", "Bash")

        [relation] = store.list_relations()
        assert relation.source == SOURCE_MANUAL


class TestUpsert:
    """Test granting an existing tuple."""

    def test_regrant_keeps_single_row(self, store):
        """The same tuple granted twice is stored once."""
        store.grant("agent", "dev", "use", "tool", "Read")
        store.grant("agent", "dev", "use", "tool", "Read")

        assert len(store.list_relations()) == 1

    def test_regrant_updates_source(self, store):
        """Regranting only updates the source."""
        store.grant("agent", "dev", "use", "tool", "Read", SOURCE_CONFIG)
        first = store.list_relations()[0]

        store.grant("agent", "dev", "use", "tool", "Read", SOURCE_MANUAL)
        second = store.list_relations()[0]

        assert second.id == first.id
        assert second.source == SOURCE_MANUAL
        assert second.created_at == first.created_at


class TestWildcardValidation:
    """Test the single-trailing-wildcard rule."""

    @pytest.mark.parametrize("object_id", ["*", "dev-*", "dev", "grupo_1"])
    def test_valid_ids(self, object_id):
        """Plain ids, '*' and trailing prefixes are accepted."""
        validate_wildcard(object_id)

    @pytest.mark.parametrize("object_id", ["*-dev", "dev*grupo", "a*b*", "**"])
    def test_invalid_ids(self, object_id):
        """Leading, middle and repeated wildcards are rejected."""
        with pytest.raises(InvalidWildcardError) as exc_info:
            validate_wildcard(object_id)

        assert exc_info.value.object_id == object_id
        assert "Invalid wildcard pattern" in exc_info.value.message

    def test_grant_rejects_invalid_wildcard(self, store):
        """An invalid grant never reaches storage."""
        with pytest.raises(MalformedGrantError):
            store.grant("agent", "dev", "access", "session", "*-dev")

        assert store.list_relations() == []

    def test_middle_wildcard_message(self):
        """Middle wildcard explains the trailing-only rule."""
        with pytest.raises(InvalidWildcardError) as exc_info:
            validate_wildcard("dev*grupo")

        assert "Only trailing wildcards are supported" in str(exc_info.value)


class TestListAndClear:
    """Test filtered listing and bulk removal."""

    @pytest.fixture
    def populated(self, store):
        store.grant("agent", "dev", "access", "session", "dev-*", SOURCE_CONFIG)
        store.grant("agent", "dev", "use", "tool", "Bash", SOURCE_MANUAL)
        store.grant("agent", "ops", "execute", "group", "cron", SOURCE_MANUAL)
        return store

    def test_list_all_ordered_by_id(self, populated):
        """Listing without filter returns everything in insertion order."""
        relations = populated.list_relations()

        assert [r.subject_id for r in relations] == ["dev", "dev", "ops"]
        assert [r.id for r in relations] == sorted(r.id for r in relations)

    def test_list_by_subject(self, populated):
        """Filter by subject."""
        relations = populated.list_relations(RelationFilter(subject_type="agent", subject_id="dev"))

        assert {r.relation for r in relations} == {"access", "use"}

    def test_list_by_source(self, populated):
        """Filter by source."""
        relations = populated.list_relations(RelationFilter(source=SOURCE_CONFIG))

        assert len(relations) == 1
        assert relations[0].object == "session:dev-*"
        assert relations[0].is_pattern

    def test_clear_manual_only(self, populated):
        """Clearing by source leaves other sources alone."""
        assert populated.clear_relations(source=SOURCE_MANUAL) == 2

        remaining = populated.list_relations()
        assert len(remaining) == 1
        assert remaining[0].source == SOURCE_CONFIG

    def test_clear_subject(self, populated):
        """Clearing by subject removes only that subject."""
        assert populated.clear_relations(subject_type="agent", subject_id="ops") == 1
        assert all(r.subject_id == "dev" for r in populated.list_relations())

    def test_clear_all(self, populated):
        """Clearing with no filter empties the table."""
        assert populated.clear_relations() == 3
        assert populated.list_relations() == []


class TestDeriveRelations:
    """Test translation of agent config into tuples."""

    def test_superadmin_gets_admin_only(self):
        """The superadmin agent gets a single admin relation."""
        agent = AgentConfig(id="main", contact_scope="all", allowed_tools=["Bash"])

        assert derive_relations(agent, "main") == [("admin", "system", "*")]

    def test_contact_scopes(self):
        """all / own / tagged map to their relations."""
        assert ("write_contacts", "system", "*") in derive_relations(AgentConfig(id="a", contact_scope="all"))
        assert ("read_own_contacts", "system", "*") in derive_relations(AgentConfig(id="a", contact_scope="own"))
        assert ("read_tagged_contacts", "system", "vip") in derive_relations(
            AgentConfig(id="a", contact_scope="tagged:vip")
        )

    def test_sessions_and_tools(self):
        """Allowed sessions and tools become access / use relations."""
        agent = AgentConfig(id="dev", allowed_sessions=["dev-*"], allowed_tools=["Read", "Bash"])

        derived = derive_relations(agent)
        assert ("access", "session", "dev-*") in derived
        assert ("use", "tool", "Read") in derived
        assert ("use", "tool", "Bash") in derived

    def test_allowlist_executables(self):
        """Allowlist bash config grants execute per executable."""
        agent = AgentConfig(id="dev", bash=BashConfig(mode=BashMode.ALLOWLIST, allowlist=["git", "ls"]))

        derived = derive_relations(agent)
        assert ("execute", "executable", "git") in derived
        assert ("execute", "executable", "ls") in derived

    def test_denylist_grants_no_executables(self):
        """Denylist mode stays on the legacy path."""
        agent = AgentConfig(id="dev", bash=BashConfig(mode=BashMode.DENYLIST, denylist=["rm"]))

        assert not any(rel == "execute" for rel, _, _ in derive_relations(agent))


class TestSyncFromConfig:
    """Test config sync."""

    @pytest.fixture
    def agents(self):
        return [
            AgentConfig(id="main"),
            AgentConfig(id="dev", contact_scope="own", allowed_sessions=["dev-*"], allowed_tools=["Read"]),
        ]

    def test_sync_grants_config_relations(self, store, agents):
        """Sync writes config-sourced tuples."""
        granted = store.sync_from_config(agents)

        assert granted == 4
        assert store.has_relation("agent", "main", "admin", "system", "*")
        assert store.has_relation("agent", "dev", "access", "session", "dev-*")
        assert all(r.source == SOURCE_CONFIG for r in store.list_relations())

    def test_sync_is_idempotent(self, store, agents):
        """Syncing twice yields the same set of tuples."""
        store.sync_from_config(agents)
        first = {(r.subject, r.relation, r.object) for r in store.list_relations()}

        store.sync_from_config(agents)
        second = {(r.subject, r.relation, r.object) for r in store.list_relations()}

        assert first == second

    def test_sync_keeps_manual_relations(self, store, agents):
        """Manual grants survive a sync."""
        store.grant("agent", "dev", "execute", "group", "cron", SOURCE_MANUAL)

        store.sync_from_config(agents)

        assert store.has_relation("agent", "dev", "execute", "group", "cron")

    def test_sync_drops_stale_config_relations(self, store, agents):
        """Relations removed from config disappear on the next sync."""
        store.sync_from_config(agents)

        agents[1] = AgentConfig(id="dev", allowed_tools=["Read"])
        store.sync_from_config(agents)

        assert not store.has_relation("agent", "dev", "access", "session", "dev-*")
        assert store.has_relation("agent", "dev", "use", "tool", "Read")

    def test_sync_is_atomic(self, store):
        """A failing sync leaves the previous config set in place."""
        store.sync_from_config([AgentConfig(id="dev", allowed_tools=["Read"])])

        broken = AgentConfig(id="dev", allowed_sessions=["ok", "bad*pattern"])
        with pytest.raises(InvalidWildcardError):
            store.sync_from_config([broken])

        assert store.has_relation("agent", "dev", "use", "tool", "Read")
        assert not store.has_relation("agent", "dev", "access", "session", "ok")


class TestGrantMany:
    """Test batched grants."""

    def test_grants_all(self, store):
        """Every triple is granted for the subject."""
        count = store.grant_many("agent", "ops", [("use", "tool", "Read"), ("execute", "executable", "git")])

        assert count == 2
        assert store.has_relation("agent", "ops", "use", "tool", "Read")
        assert store.has_relation("agent", "ops", "execute", "executable", "git")

    def test_all_or_nothing(self, store):
        """One malformed triple rolls back the batch."""
        with pytest.raises(InvalidWildcardError):
            store.grant_many("agent", "ops", [("use", "tool", "Read"), ("use", "tool", "*Write")])

        assert store.list_relations() == []
