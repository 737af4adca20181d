"""
Permissions Commands
--------------------
Operator commands for managing relations: grant, revoke, check, list,
sync, init, clear.

Every handler is dispatched under the 'permissions' group, which carries
the superadmin scope. Handlers print through a Rich console and raise
GatekeeperError subclasses on bad input; they never exit the process.
"""

from typing import Callable, Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from core.errors import GatekeeperError, MalformedGrantError
from core.runtime import Gatekeeper
from hooks.pre_tool_use import SDK_TOOLS
from security.relations import RelationFilter, SOURCE_CONFIG, SOURCE_MANUAL, WILDCARD
from shell.policy import default_allowlist

VALID_RELATIONS = (
    "admin",                 # (agent, admin, system, *)
    "use",                   # (agent, use, tool, Bash)
    "execute",               # (agent, execute, executable, git) or (agent, execute, group, contacts)
    "access",                # (agent, access, session, dev-*)
    "modify",                # (agent, modify, session, dev-*)
    "view",                  # (agent, view, agent, dev)
    "write_contacts",        # (agent, write_contacts, system, *)
    "read_own_contacts",     # (agent, read_own_contacts, system, *)
    "read_tagged_contacts",  # (agent, read_tagged_contacts, system, <tag>)
    "read_contact",          # (agent, read_contact, contact, <id>)
)

VALID_ENTITY_TYPES = (
    "agent", "system", "group", "session", "contact",
    "cron", "trigger", "outbound", "team",
    "tool", "executable",
)

TEMPLATES = ("sdk-tools", "all-tools", "safe-executables", "full-access")

REDUNDANT_LIST_LIMIT = 10


def parse_entity(entity: str) -> Tuple[str, str]:
    """
    Parse "type:id" notation.

    "agent:dev" -> ("agent", "dev"), "system:*" -> ("system", "*")
    """
    if ":" not in entity:
        raise MalformedGrantError(
            f'Invalid entity format: "{entity}". Expected "type:id" (e.g., agent:dev, group:contacts)'
        )
    entity_type, entity_id = entity.split(":", 1)
    if entity_type not in VALID_ENTITY_TYPES:
        raise MalformedGrantError(
            f'Unknown entity type: "{entity_type}". Valid types: {", ".join(VALID_ENTITY_TYPES)}'
        )
    if not entity_id:
        raise MalformedGrantError(f'Empty entity id in "{entity}"')
    return entity_type, entity_id


def validate_relation(relation: str) -> None:
    if relation not in VALID_RELATIONS:
        raise MalformedGrantError(
            f'Unknown relation: "{relation}". Valid relations: {", ".join(VALID_RELATIONS)}'
        )


class PermissionsCommands:
    """Handlers for the 'permissions' command group."""

    def __init__(self, gatekeeper: Gatekeeper, console: Optional[Console] = None):
        self._gk = gatekeeper
        self._console = console or Console()

    @property
    def _store(self):
        return self._gk.store

    def grant(self, subject: str, relation: str, obj: str) -> None:
        subject_type, subject_id = parse_entity(subject)
        object_type, object_id = parse_entity(obj)
        validate_relation(relation)

        self._store.grant(subject_type, subject_id, relation, object_type, object_id, SOURCE_MANUAL)
        self._console.print(f"[green]✓[/green] Granted: ({subject}) {relation} ({obj})")

        if object_id == WILDCARD:
            individuals = self._individual_relations(subject_type, subject_id, relation, object_type)
            if individuals:
                self._console.print(
                    f"[yellow]⚠[/yellow] {len(individuals)} individual relation(s) are now redundant "
                    f"(covered by wildcard)"
                )
        elif self._store.has_relation(subject_type, subject_id, relation, object_type, WILDCARD):
            self._console.print(f"[yellow]⚠[/yellow] Redundant: wildcard {object_type}:* already covers this")

    def revoke(self, subject: str, relation: str, obj: str) -> None:
        subject_type, subject_id = parse_entity(subject)
        object_type, object_id = parse_entity(obj)

        if not self._store.revoke(subject_type, subject_id, relation, object_type, object_id):
            raise GatekeeperError("Relation not found")

        self._console.print(f"[green]✓[/green] Revoked: ({subject}) {relation} ({obj})")

        if object_id == WILDCARD:
            remaining = self._individual_relations(subject_type, subject_id, relation, object_type)
            if remaining:
                self._console.print(f"[yellow]⚠[/yellow] {len(remaining)} individual relation(s) still active:")
                for r in remaining[:REDUNDANT_LIST_LIMIT]:
                    self._console.print(f"    {r.object}")
                if len(remaining) > REDUNDANT_LIST_LIMIT:
                    self._console.print(f"    ... and {len(remaining) - REDUNDANT_LIST_LIMIT} more")

    def check(self, subject: str, relation: str, obj: str) -> bool:
        subject_type, subject_id = parse_entity(subject)
        object_type, object_id = parse_entity(obj)

        allowed = self._gk.engine.can(subject_type, subject_id, relation, object_type, object_id)
        if allowed:
            self._console.print(f"[green]✓ ALLOWED[/green]: ({subject}) {relation} ({obj})")
        else:
            self._console.print(f"[red]✗ DENIED[/red]: ({subject}) {relation} ({obj})")
        return allowed

    def list(
        self,
        subject: Optional[str] = None,
        obj: Optional[str] = None,
        relation: Optional[str] = None,
        source: Optional[str] = None,
    ) -> int:
        subject_type = subject_id = object_type = object_id = None
        if subject:
            subject_type, subject_id = parse_entity(subject)
        if obj:
            object_type, object_id = parse_entity(obj)

        relations = self._store.list_relations(RelationFilter(
            subject_type=subject_type,
            subject_id=subject_id,
            relation=relation,
            object_type=object_type,
            object_id=object_id,
            source=source,
        ))

        if not relations:
            self._console.print("No relations found.")
            return 0

        table = Table(title=f"Relations ({len(relations)})")
        table.add_column("SUBJECT", style="cyan")
        table.add_column("RELATION")
        table.add_column("OBJECT", style="magenta")
        table.add_column("SOURCE", style="dim")
        for r in relations:
            table.add_row(r.subject, r.relation, r.object, r.source)
        self._console.print(table)
        return len(relations)

    def sync(self) -> int:
        self._gk.sync()
        count = len(self._store.list_relations(RelationFilter(source=SOURCE_CONFIG)))
        self._console.print(f"[green]✓[/green] Synced {count} config relations")
        return count

    def init(self, subject: str, template: str) -> int:
        subject_type, subject_id = parse_entity(subject)

        templates: Dict[str, Callable[[], List[Tuple[str, str, str]]]] = {
            "sdk-tools": lambda: [("use", "tool", tool) for tool in SDK_TOOLS],
            "all-tools": lambda: [("use", "tool", WILDCARD)],
            "safe-executables": lambda: [
                ("execute", "executable", exe)
                for exe in default_allowlist() + [self._gk.config.platform_cli]
            ],
            "full-access": lambda: [("use", "tool", WILDCARD), ("execute", "executable", WILDCARD)],
        }

        build = templates.get(template)
        if build is None:
            raise GatekeeperError(f'Unknown template: "{template}". Available: {", ".join(templates)}')

        grants = build()
        self._store.grant_many(subject_type, subject_id, grants, SOURCE_MANUAL)

        self._console.print(
            f'[green]✓[/green] Applied template "{template}" to {subject} ({len(grants)} relation(s))'
        )
        return len(grants)

    def clear(self, all: bool = False) -> int:
        count = self._store.clear_relations() if all else self._store.clear_relations(source=SOURCE_MANUAL)
        self._console.print(f"[green]✓[/green] Cleared {count} relation(s)")
        if all:
            self._console.print(
                f"Run '{self._gk.config.platform_cli} permissions sync' to regenerate config relations."
            )
        return count

    def _individual_relations(self, subject_type: str, subject_id: str, relation: str, object_type: str):
        return [
            r for r in self._store.list_relations(RelationFilter(
                subject_type=subject_type,
                subject_id=subject_id,
                relation=relation,
                object_type=object_type,
            ))
            if r.object_id != WILDCARD
        ]
