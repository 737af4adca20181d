"""
Pre-Tool-Use Hooks
------------------
Hook callbacks the agent runtime invokes before every tool call.

Protocol:
    hook(input, tool_use_id, context) -> dict
    input = {"hook_event_name": "PreToolUse", "tool_name": ..., "tool_input": {...}}

An empty dict allows the call. A denial is exactly:
    {"hookSpecificOutput": {"hookEventName": "PreToolUse",
                            "permissionDecision": "deny",
                            "permissionDecisionReason": "<reason>"}}

Rules:
- No agent id means trusted operator, allowed
- Any error while checking denies; a hook never lets an error become an allow
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from infra.config import BashConfig
from infra.logging import CheckContext, get_logger
from security.context import ScopeContext, get_scope_context
from security.engine import PermissionEngine
from security.scope import ScopeEnforcer, denial_message
from shell.parser import extract_cli_invocations, find_env_assignments, parse_bash_command
from shell.patterns import UNCONDITIONAL_BLOCKS, check_dangerous_patterns
from shell.policy import check_bash_permission

logger = get_logger("hooks.pre_tool_use")

HookCallback = Callable[[Dict[str, Any], Optional[str], Any], Dict[str, Any]]

# Built-in tools of the agent runtime; anything else (MCP tools) is not checked here
SDK_TOOLS = (
    "Task", "Bash", "Glob", "Grep", "Read", "Edit", "Write",
    "NotebookEdit", "WebFetch", "WebSearch", "TodoWrite",
    "ExitPlanMode", "EnterPlanMode", "AskUserQuestion", "Skill",
    "TaskOutput", "KillShell", "TaskStop", "LSP",
)

PROTECTED_ENV_PREFIX = "GATEKEEPER_"
BASH_REASON_PREFIX = "Bash command blocked: "

# Platform CLI 'sessions' subcommands whose first argument is a session
SESSION_READ_SUBCOMMANDS = frozenset({"send", "info", "read", "ask", "answer", "inform", "execute"})
SESSION_MODIFY_SUBCOMMANDS = frozenset({"reset", "delete", "rename", "set-model", "set-thinking"})

LOG_COMMAND_LIMIT = 200


@dataclass
class HookMatcher:
    """Hooks plus the tool name they fire for (None fires for every tool)."""
    matcher: Optional[str]
    hooks: List[HookCallback]


def deny_decision(reason: str) -> Dict[str, Any]:
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": reason,
        }
    }


def is_denied(result: Dict[str, Any]) -> bool:
    output = result.get("hookSpecificOutput") or {}
    return output.get("permissionDecision") == "deny"


def _emit(emitter, event_type: str, agent_id: str, denied: str, reason: str,
          command: Optional[str] = None) -> None:
    if emitter is None:
        return
    event = {"type": event_type, "agentId": agent_id, "denied": denied, "reason": reason}
    if command:
        event["command"] = command[:LOG_COMMAND_LIMIT]
    emitter.emit(event)


class BashCommandChecker:
    """
    Relation-aware bash command checks for one agent.

    Precedence: an agent holding any 'execute' relation on an executable is
    checked against its relations; otherwise its legacy BashConfig applies.
    """

    def __init__(
        self,
        engine: PermissionEngine,
        get_bash_config: Optional[Callable[[], Optional[BashConfig]]] = None,
        platform_cli: str = "agentctl",
    ):
        self._engine = engine
        self._enforcer = ScopeEnforcer(engine)
        self._get_bash_config = get_bash_config
        self._platform_cli = platform_cli

    def check(self, command: str, ctx: ScopeContext) -> Optional[tuple]:
        """
        Return None when allowed, else (reason, denied_object).
        """
        agent_id = ctx.agent_id

        spoofed = [n for n in find_env_assignments(command) if n.startswith(PROTECTED_ENV_PREFIX)]
        if spoofed:
            return "GATEKEEPER environment variables cannot be overridden", f"env:{spoofed[0]}"

        if self._engine.has_any("agent", agent_id, "execute", "executable"):
            denial = self._check_relations(command, agent_id)
        else:
            denial = self._check_legacy(command)
        if denial is not None:
            return denial

        return self._check_session_targets(command, ctx)

    def _check_relations(self, command: str, agent_id: str) -> Optional[tuple]:
        pattern_check = check_dangerous_patterns(command)
        if not pattern_check.safe:
            return pattern_check.reason, "bash:pattern"

        parsed = parse_bash_command(command)
        if not parsed.success:
            return parsed.error or "Failed to parse command", "bash:parse"

        reasons = []
        blocked = []
        for exe in parsed.executables:
            if exe in UNCONDITIONAL_BLOCKS:
                reasons.append(f"{exe} is unconditionally blocked")
                blocked.append(exe)
            elif not self._engine.agent_can(agent_id, "execute", "executable", exe):
                reasons.append(denial_message(agent_id, "execute", f"executable:{exe}"))
                blocked.append(exe)

        if blocked:
            return "; ".join(reasons), f"executable:{blocked[0]}"
        return None

    def _check_legacy(self, command: str) -> Optional[tuple]:
        config = self._get_bash_config() if self._get_bash_config else None
        result = check_bash_permission(command, config)
        if result.allowed:
            return None
        denied = f"executable:{result.blocked_executables[0]}" if result.blocked_executables else "bash:command"
        return result.reason, denied

    def _check_session_targets(self, command: str, ctx: ScopeContext) -> Optional[tuple]:
        for group, subcommand, args in extract_cli_invocations(command, self._platform_cli):
            if group != "sessions" or not args:
                continue
            target = args[0]
            if subcommand in SESSION_MODIFY_SUBCOMMANDS:
                if not self._enforcer.can_modify_session(ctx, target):
                    return denial_message(ctx.agent_id, "modify", f"session:{target}"), f"session:{target}"
            elif subcommand in SESSION_READ_SUBCOMMANDS:
                if not self._enforcer.can_access_session(ctx, target):
                    return denial_message(ctx.agent_id, "access", f"session:{target}"), f"session:{target}"
        return None


def create_bash_permission_hook(
    engine: PermissionEngine,
    get_agent_id: Callable[[], Optional[str]],
    get_bash_config: Optional[Callable[[], Optional[BashConfig]]] = None,
    emitter=None,
    platform_cli: str = "agentctl",
    get_context: Callable[[], ScopeContext] = get_scope_context,
) -> HookMatcher:
    """
    Build the Bash hook.

    get_agent_id names the acting agent; get_context supplies its session
    (name/key) for own-session checks.
    """
    checker = BashCommandChecker(engine, get_bash_config, platform_cli)

    def bash_permission_hook(input: Dict[str, Any], tool_use_id: Optional[str], context: Any) -> Dict[str, Any]:
        command = (input.get("tool_input") or {}).get("command")
        if not command:
            return {}

        agent_id = get_agent_id()
        if not agent_id:
            return {}

        with CheckContext():
            try:
                if engine.is_superadmin("agent", agent_id):
                    return {}

                base = get_context()
                ctx = ScopeContext(agent_id=agent_id, session_key=base.session_key, session_name=base.session_name)
                denial = checker.check(command, ctx)
            except Exception as e:
                logger.error(f"Bash permission check failed for agent:{agent_id}: {e}")
                return deny_decision(f"{BASH_REASON_PREFIX}permission check failed")

            if denial is None:
                logger.debug(f"Bash command allowed: {command[:100]}")
                return {}

            reason, denied = denial
            logger.warning(
                f"Bash command blocked for agent:{agent_id}: {reason}",
                extra={"command": command[:LOG_COMMAND_LIMIT], "reason": reason, "object": denied},
            )
            _emit(emitter, "bash", agent_id, denied, reason, command)
            return deny_decision(f"{BASH_REASON_PREFIX}{reason}")

    return HookMatcher(matcher="Bash", hooks=[bash_permission_hook])


def create_tool_permission_hook(
    engine: PermissionEngine,
    get_agent_id: Callable[[], Optional[str]],
    emitter=None,
) -> HookMatcher:
    """Build the hook that requires 'use' on tool:<name> for built-in tools."""

    def tool_permission_hook(input: Dict[str, Any], tool_use_id: Optional[str], context: Any) -> Dict[str, Any]:
        tool_name = input.get("tool_name")
        if tool_name not in SDK_TOOLS:
            return {}

        agent_id = get_agent_id()
        if not agent_id:
            return {}

        with CheckContext():
            try:
                allowed = engine.agent_can(agent_id, "use", "tool", tool_name)
            except Exception as e:
                logger.error(f"Tool permission check failed for agent:{agent_id}: {e}")
                return deny_decision("permission check failed")

            if allowed:
                return {}

            reason = denial_message(agent_id, "use", f"tool:{tool_name}")
            logger.warning(reason, extra={"relation": "use", "object": f"tool:{tool_name}"})
            _emit(emitter, "tool", agent_id, f"tool:{tool_name}", reason)
            return deny_decision(reason)

    return HookMatcher(matcher=None, hooks=[tool_permission_hook])


def run_hooks(matchers: List[HookMatcher], input: Dict[str, Any],
              tool_use_id: Optional[str] = None, context: Any = None) -> Dict[str, Any]:
    """Run every matching hook in order; the first denial wins."""
    tool_name = input.get("tool_name")
    for matcher in matchers:
        if matcher.matcher is not None and matcher.matcher != tool_name:
            continue
        for hook in matcher.hooks:
            result = hook(input, tool_use_id, context)
            if is_denied(result):
                return result
    return {}
