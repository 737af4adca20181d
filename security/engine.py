"""
Permission Engine
-----------------
Resolves permission checks against the relation store.

Resolution order (first success wins, otherwise deny):
1. Superadmin: (subject, admin, system, *)
2. Direct relation: exact tuple
3. Wildcard: (subject, relation, object_type, *)
4. Pattern: stored object_id ending in '*' whose prefix the request starts with

Rules:
- No agent id means trusted operator, always allowed
- Never cross object types or relations
- 'admin' is special only on system:*
- Every call reads the store; there is no cache to go stale
"""

from typing import Optional

from security.relations import RelationFilter, RelationStore, WILDCARD
from infra.logging import get_logger


def match_pattern(pattern: str, value: str) -> bool:
    """
    Match a trailing-wildcard pattern against a concrete id.

    "dev-*" matches "dev-grupo1" but not "dev" nor "prod-dev-x".
    A value that is itself a pattern never matches.
    """
    if WILDCARD in value:
        return False
    if pattern == value:
        return True
    if pattern.endswith(WILDCARD):
        prefix = pattern[:-1]
        return len(value) >= len(prefix) and value.startswith(prefix)
    return False


class PermissionEngine:
    """
    Relation-based authorization over an injected RelationStore.

    Usage:
        engine = PermissionEngine(store)
        if engine.agent_can("dev", "access", "session", "dev-grupo1"):
            ...
    """

    def __init__(self, store: RelationStore):
        self._store = store
        self._logger = get_logger("security.engine")

    @property
    def store(self) -> RelationStore:
        return self._store

    def can(
        self,
        subject_type: str,
        subject_id: str,
        relation: str,
        object_type: str,
        object_id: str,
    ) -> bool:
        """Check whether subject holds relation on object."""
        # 1. Superadmin
        if self._store.has_relation(subject_type, subject_id, "admin", "system", WILDCARD):
            return True

        # 2. Direct relation
        if self._store.has_relation(subject_type, subject_id, relation, object_type, object_id):
            return True

        if object_id == WILDCARD:
            return False

        # 3. Wildcard on object_id
        if self._store.has_relation(subject_type, subject_id, relation, object_type, WILDCARD):
            return True

        # 4. Prefix patterns
        candidates = self._store.list_relations(RelationFilter(
            subject_type=subject_type,
            subject_id=subject_id,
            relation=relation,
            object_type=object_type,
        ))
        for rel in candidates:
            if rel.is_pattern and match_pattern(rel.object_id, object_id):
                self._logger.debug(
                    f"{subject_type}:{subject_id} {relation} {object_type}:{object_id} "
                    f"matched pattern {rel.object_id}"
                )
                return True

        return False

    def agent_can(
        self,
        agent_id: Optional[str],
        relation: str,
        object_type: str,
        object_id: str,
    ) -> bool:
        """Check an agent's permission. No agent id is the trusted operator."""
        if not agent_id:
            return True
        return self.can("agent", agent_id, relation, object_type, object_id)

    def is_superadmin(self, subject_type: str, subject_id: Optional[str]) -> bool:
        if not subject_id:
            return False
        return self._store.has_relation(subject_type, subject_id, "admin", "system", WILDCARD)

    def has_any(self, subject_type: str, subject_id: str, relation: str, object_type: str) -> bool:
        """Whether subject holds relation on at least one object of object_type."""
        return bool(self._store.list_relations(RelationFilter(
            subject_type=subject_type,
            subject_id=subject_id,
            relation=relation,
            object_type=object_type,
        )))
