"""
Relation Store
--------------
Persistence for relation tuples: (subject) has (relation) over (object).

Examples:
    (agent, main, admin, system, *)          main is superadmin
    (agent, dev, execute, group, contacts)   dev can run contacts commands
    (agent, dev, access, session, dev-*)     dev can access sessions named dev-*

Rules:
- Only a single trailing wildcard is valid in object_id
- Granting an existing tuple only updates its source
- has_relation is an exact lookup; wildcard resolution belongs to the engine
- Config sync replaces config tuples atomically, manual tuples are kept
"""

import sqlite3
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from core.errors import InvalidWildcardError
from infra.config import AgentConfig, BashMode
from infra.database import DatabaseManager
from infra.logging import get_logger

SOURCE_CONFIG = "config"
SOURCE_MANUAL = "manual"

WILDCARD = "*"


@dataclass(frozen=True)
class Relation:
    """A stored relation tuple."""
    id: int
    subject_type: str
    subject_id: str
    relation: str
    object_type: str
    object_id: str
    source: str
    created_at: int

    @property
    def subject(self) -> str:
        return f"{self.subject_type}:{self.subject_id}"

    @property
    def object(self) -> str:
        return f"{self.object_type}:{self.object_id}"

    @property
    def is_pattern(self) -> bool:
        return self.object_id.endswith(WILDCARD) and self.object_id != WILDCARD

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Relation":
        return cls(
            id=row["id"],
            subject_type=row["subject_type"],
            subject_id=row["subject_id"],
            relation=row["relation"],
            object_type=row["object_type"],
            object_id=row["object_id"],
            source=row["source"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class RelationFilter:
    """Any subset of the key fields, plus source."""
    subject_type: Optional[str] = None
    subject_id: Optional[str] = None
    relation: Optional[str] = None
    object_type: Optional[str] = None
    object_id: Optional[str] = None
    source: Optional[str] = None

    def to_where(self) -> Tuple[str, list]:
        conditions = []
        params = []
        for column in ("subject_type", "subject_id", "relation", "object_type", "object_id", "source"):
            value = getattr(self, column)
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params


def validate_wildcard(object_id: str) -> None:
    """
    Reject any wildcard that is not a single trailing '*'.

    "*" and "dev-*" are valid; "*-dev", "dev*grupo" and "a*b*" are not.
    """
    star_count = object_id.count(WILDCARD)
    if star_count == 0:
        return
    if star_count > 1:
        raise InvalidWildcardError(
            object_id,
            f'Invalid wildcard pattern: "{object_id}". Only a single trailing wildcard is supported.'
        )
    if not object_id.endswith(WILDCARD):
        raise InvalidWildcardError(
            object_id,
            f'Invalid wildcard pattern: "{object_id}". Only trailing wildcards are supported (e.g., "dev-*").'
        )


class RelationStore:
    """
    CRUD for the relations table.

    Built on an explicitly constructed DatabaseManager; nothing is cached,
    so a revoke is visible to the very next check.
    """

    def __init__(self, db: DatabaseManager, audit_log=None):
        self._db = db
        self._audit = audit_log
        self._logger = get_logger("security.relations")

    @property
    def db(self) -> DatabaseManager:
        return self._db

    def grant(
        self,
        subject_type: str,
        subject_id: str,
        relation: str,
        object_type: str,
        object_id: str,
        source: str = SOURCE_MANUAL,
    ) -> None:
        """Grant a relation. Upsert: an existing tuple only gets its source updated."""
        self._upsert(subject_type, subject_id, relation, object_type, object_id, source)
        self._logger.info(
            f"Granted ({subject_type}:{subject_id}) {relation} ({object_type}:{object_id}) [{source}]"
        )
        if self._audit is not None and source == SOURCE_MANUAL:
            self._audit.record_grant(subject_type, subject_id, relation, object_type, object_id)

    def grant_many(
        self,
        subject_type: str,
        subject_id: str,
        grants: Iterable[Tuple[str, str, str]],
        source: str = SOURCE_MANUAL,
    ) -> int:
        """
        Grant (relation, object_type, object_id) triples in one transaction.

        All or nothing. Audit records are written after the commit; the audit
        log writes through its own connection.
        """
        grants = list(grants)
        with self._db.transaction():
            for relation, object_type, object_id in grants:
                self._upsert(subject_type, subject_id, relation, object_type, object_id, source)

        self._logger.info(f"Granted {len(grants)} relations to {subject_type}:{subject_id} [{source}]")
        if self._audit is not None and source == SOURCE_MANUAL:
            for relation, object_type, object_id in grants:
                self._audit.record_grant(subject_type, subject_id, relation, object_type, object_id)
        return len(grants)

    def _upsert(
        self,
        subject_type: str,
        subject_id: str,
        relation: str,
        object_type: str,
        object_id: str,
        source: str,
    ) -> None:
        validate_wildcard(object_id)
        self._db.execute(
            """
            INSERT INTO relations (subject_type, subject_id, relation, object_type, object_id, source, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(subject_type, subject_id, relation, object_type, object_id) DO UPDATE SET
                source = excluded.source
            """,
            (subject_type, subject_id, relation, object_type, object_id, source, int(time.time())),
        )

    def revoke(
        self,
        subject_type: str,
        subject_id: str,
        relation: str,
        object_type: str,
        object_id: str,
    ) -> bool:
        """Revoke a specific relation. Returns True iff a row was removed."""
        changes = self._db.execute(
            """
            DELETE FROM relations
            WHERE subject_type = ? AND subject_id = ? AND relation = ? AND object_type = ? AND object_id = ?
            """,
            (subject_type, subject_id, relation, object_type, object_id),
        )
        if changes > 0:
            self._logger.info(
                f"Revoked ({subject_type}:{subject_id}) {relation} ({object_type}:{object_id})"
            )
            if self._audit is not None:
                self._audit.record_revoke(subject_type, subject_id, relation, object_type, object_id)
        return changes > 0

    def has_relation(
        self,
        subject_type: str,
        subject_id: str,
        relation: str,
        object_type: str,
        object_id: str,
    ) -> bool:
        """Exact-match lookup, no wildcard or pattern resolution."""
        row = self._db.query_one(
            """
            SELECT 1 FROM relations
            WHERE subject_type = ? AND subject_id = ? AND relation = ? AND object_type = ? AND object_id = ?
            LIMIT 1
            """,
            (subject_type, subject_id, relation, object_type, object_id),
        )
        return row is not None

    def list_relations(self, filter: Optional[RelationFilter] = None) -> List[Relation]:
        """List relations matching the filter, ordered by id."""
        where, params = (filter or RelationFilter()).to_where()
        rows = self._db.query(f"SELECT * FROM relations {where} ORDER BY id", params)
        return [Relation.from_row(row) for row in rows]

    def clear_relations(
        self,
        subject_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> int:
        """Delete relations, optionally filtered by subject and/or source. Returns count removed."""
        where, params = RelationFilter(
            subject_type=subject_type, subject_id=subject_id, source=source
        ).to_where()
        return self._db.execute(f"DELETE FROM relations {where}", params)

    def sync_from_config(
        self,
        agents: Iterable[AgentConfig],
        superadmin_agent: Optional[str] = "main",
    ) -> int:
        """
        Replace all config-sourced relations with those derived from agents.

        Runs in one transaction: readers see either the old or the new set,
        never a gap. Manual relations are untouched. Returns the number of
        relations granted.
        """
        agents = list(agents)
        granted = 0

        with self._db.transaction():
            cleared = self.clear_relations(source=SOURCE_CONFIG)
            if cleared > 0:
                self._logger.debug(f"Cleared {cleared} config relations")

            for agent in agents:
                for relation, object_type, object_id in derive_relations(agent, superadmin_agent):
                    self._upsert("agent", agent.id, relation, object_type, object_id, SOURCE_CONFIG)
                    granted += 1

        self._logger.info(f"Synced relations from config: agents={len(agents)} granted={granted}")
        if self._audit is not None:
            self._audit.record_sync(len(agents), granted)
        return granted


def derive_relations(
    agent: AgentConfig,
    superadmin_agent: Optional[str] = "main",
) -> List[Tuple[str, str, str]]:
    """
    Translate one agent's configuration into (relation, object_type, object_id) triples.
    """
    if superadmin_agent and agent.id == superadmin_agent:
        return [("admin", "system", WILDCARD)]

    derived: List[Tuple[str, str, str]] = []

    scope = agent.contact_scope
    if scope == "all":
        derived.append(("write_contacts", "system", WILDCARD))
    elif scope == "own":
        derived.append(("read_own_contacts", "system", WILDCARD))
    elif scope and scope.startswith("tagged:"):
        derived.append(("read_tagged_contacts", "system", scope[len("tagged:"):]))

    for pattern in agent.allowed_sessions or []:
        derived.append(("access", "session", pattern))

    for tool in agent.allowed_tools or []:
        derived.append(("use", "tool", tool))

    if agent.bash is not None and agent.bash.mode == BashMode.ALLOWLIST:
        for executable in agent.bash.allowlist:
            derived.append(("execute", "executable", executable))

    return derived
