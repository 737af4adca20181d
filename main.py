#!/usr/bin/env python3
"""
Gatekeeper - Authorization and Command-Safety Core
==================================================

Operator entry point.

Usage:
    python main.py permissions grant agent:dev access session:dev-*
    python main.py permissions check agent:dev execute group:contacts
    python main.py permissions list --subject agent:dev
    python main.py permissions sync
    python main.py permissions init agent:dev safe-executables
    python main.py permissions clear [--all]
    python main.py bash check "git status && npm install" --agent dev
    python main.py serve --port 8787

When invoked from an agent's shell, GATEKEEPER_AGENT_ID (and session
variables) identify the caller, and the 'permissions' group requires
superadmin.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Ensure project root is in path
sys.path.insert(0, str(Path(__file__).parent))

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from core.errors import ConfigError, GatekeeperError, ScopeDeniedError, StorageError
from core.runtime import Gatekeeper
from commands.permissions import PermissionsCommands, TEMPLATES
from hooks.pre_tool_use import run_hooks
from infra.config import load_config
from infra.logging import configure_logging, get_logger
from security.context import ScopeContext, ScopeContextScope, get_scope_context


# Setup rich console
console = Console()


def flush_audit_and_exit(gatekeeper: Optional[Gatekeeper], code: int) -> None:
    """
    Flush pending audit events, then exit.

    Must be used instead of sys.exit() once the runtime is up, so denial
    events emitted during the command are not lost.
    """
    if gatekeeper is not None:
        gatekeeper.shutdown()
    sys.exit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gatekeeper - relation-based permissions for agents"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to configuration file (default: $GATEKEEPER_CONFIG or gatekeeper.yaml)"
    )
    parser.add_argument(
        "--log-level", "-l",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)"
    )

    groups = parser.add_subparsers(dest="group", required=True)

    # permissions
    perms = groups.add_parser("permissions", help="Relation management (superadmin)")
    perm_cmds = perms.add_subparsers(dest="subcommand", required=True)

    for name, help_text in (
        ("grant", "Grant a relation"),
        ("revoke", "Revoke a relation"),
        ("check", "Check if a subject has a permission on an object"),
    ):
        p = perm_cmds.add_parser(name, help=help_text)
        p.add_argument("subject", help="Subject (e.g., agent:dev)")
        p.add_argument("relation", help="Relation (e.g., admin, access, execute, write_contacts)")
        p.add_argument("object", help="Object (e.g., system:*, group:contacts, session:dev-*)")

    p = perm_cmds.add_parser("list", help="List relations")
    p.add_argument("--subject", help="Filter by subject (e.g., agent:dev)")
    p.add_argument("--object", help="Filter by object (e.g., group:contacts)")
    p.add_argument("--relation", help="Filter by relation")
    p.add_argument("--source", choices=["config", "manual"], help="Filter by source")

    perm_cmds.add_parser("sync", help="Re-sync relations from agent configs")

    p = perm_cmds.add_parser("init", help="Apply a permission template to a subject")
    p.add_argument("subject", help="Subject (e.g., agent:dev)")
    p.add_argument("template", help=f"Template: {', '.join(TEMPLATES)}")

    p = perm_cmds.add_parser("clear", help="Clear manual relations")
    p.add_argument("--all", action="store_true", help="Clear ALL relations (including config)")

    # bash
    bash = groups.add_parser("bash", help="Command-line safety checks")
    bash_cmds = bash.add_subparsers(dest="subcommand", required=True)
    p = bash_cmds.add_parser("check", help="Check a command as an agent would run it")
    p.add_argument("command", help="Command line to check")
    p.add_argument("--agent", help="Agent id (default: calling agent, or operator)")

    # serve
    p = groups.add_parser("serve", help="Run the HTTP hook service")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8787)

    return parser


def run_permissions(gk: Gatekeeper, args: argparse.Namespace) -> int:
    commands = PermissionsCommands(gk, console)
    sub = args.subcommand

    if sub == "grant":
        handler, call_args = commands.grant, (args.subject, args.relation, args.object)
    elif sub == "revoke":
        handler, call_args = commands.revoke, (args.subject, args.relation, args.object)
    elif sub == "check":
        handler, call_args = commands.check, (args.subject, args.relation, args.object)
    elif sub == "list":
        handler, call_args = commands.list, (args.subject, args.object, args.relation, args.source)
    elif sub == "sync":
        handler, call_args = commands.sync, ()
    elif sub == "init":
        handler, call_args = commands.init, (args.subject, args.template)
    else:
        handler, call_args = commands.clear, (args.all,)

    gk.dispatcher.dispatch("permissions", sub, handler, *call_args)
    return 0


def run_bash_check(gk: Gatekeeper, args: argparse.Namespace) -> int:
    def check() -> int:
        caller = get_scope_context()
        agent_id = args.agent or caller.agent_id
        ctx = ScopeContext(agent_id, caller.session_key, caller.session_name)
        hook_input = {"hook_event_name": "PreToolUse", "tool_name": "Bash",
                      "tool_input": {"command": args.command}}

        with ScopeContextScope(ctx):
            result = run_hooks(gk.hooks_for(agent_id), hook_input)

        who = f"agent:{agent_id}" if agent_id else "operator"
        if result:
            reason = result["hookSpecificOutput"]["permissionDecisionReason"]
            console.print(f"[red]✗ DENIED[/red] ({who}): {reason}")
            return 1
        console.print(f"[green]✓ ALLOWED[/green] ({who})")
        return 0

    return gk.dispatcher.dispatch("bash", "check", check)


def run_serve(gk: Gatekeeper, args: argparse.Namespace) -> int:
    from infra.service_bus import create_app, run_server

    banner = Text()
    banner.append("Gatekeeper", style="bold cyan")
    banner.append(f" listening on http://{args.host}:{args.port}\n", style="dim")
    banner.append(f"Database: {gk.db.db_path}", style="dim")
    console.print(Panel(banner, border_style="blue"))

    run_server(create_app(gk), host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point. Always exits through flush_audit_and_exit."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        flush_audit_and_exit(None, 2)

    level = args.log_level or config.log_level
    configure_logging(level=getattr(logging, level.upper(), logging.INFO), log_dir=config.log_dir)
    logger = get_logger("main")

    gk: Optional[Gatekeeper] = None
    code = 0
    try:
        gk = Gatekeeper(config)
        # The service syncs config relations on start
        gk.initialize(sync=args.group == "serve")

        if args.group == "permissions":
            code = run_permissions(gk, args)
        elif args.group == "bash":
            code = run_bash_check(gk, args)
        else:
            # The service owns shutdown through its lifespan
            code = run_serve(gk, args)
            gk = None

    except ScopeDeniedError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        code = 1
    except StorageError as e:
        logger.error(f"Storage failure: {e}")
        console.print(f"[bold red]Storage error:[/bold red] {e}")
        code = 1
    except GatekeeperError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        code = 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        code = 130

    flush_audit_and_exit(gk, code)


if __name__ == "__main__":
    main()
