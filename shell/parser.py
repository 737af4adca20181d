"""
Command Parser
--------------
Extracts every executable a shell command line would run.

Handles:
- Pipes: cat file | grep foo -> [cat, grep]
- Chains: git status && npm install -> [git, npm]
- Background and pipe-stderr: ls & rm x -> [ls, rm], a |& b -> [a, b]
- Env vars: NODE_ENV=prod node app.js -> [node]
- Quoting: "bash" -c x, \\bash -c x -> [bash]
- Grouping: (cd x; rm y) -> [cd, rm]
- Wrappers: sudo -u root rm x -> [sudo, rm], env bash -c x -> [env, bash]
- find -exec: find . -exec rm {} ; -> [find, rm]
- Full paths: /usr/bin/git status -> [git]
- Semicolons and newlines: ls; pwd -> [ls, pwd]

Rules:
- This is NOT a shell grammar; when unsure, fail so the caller denies
- A command word that is not a plain name ($CMD, -c, "a b") fails the parse
- Interpreters given inline code, or reading a program from a pipe, fail the parse
- Never raises; any error becomes a failed ParsedCommand
"""

import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from infra.logging import get_logger

logger = get_logger("shell.parser")

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_REDIRECTION = re.compile(r"^[0-9]*(?:&>>?|<<?|>>?|<>|>&|<&|>\|)")
_REDIRECTION_ONLY = re.compile(r"^[0-9]*(?:&>>?|<<?|>>?|<>|>&|<&|>\|)$")
_COMMAND_WORD = re.compile(r"^(?:[A-Za-z0-9_][A-Za-z0-9_.+\-]*|\[\[?|\.|:)$")
_EXPANSION = re.compile(r"[$`*?]")
_OPENERS = frozenset("({")
_CLOSERS = frozenset(")}")

# Words that may precede a command without being one
PREFIX_KEYWORDS: FrozenSet[str] = frozenset({"!", "if", "then", "elif", "else", "while", "until", "do"})
CLOSING_KEYWORDS: FrozenSet[str] = frozenset({"fi", "done", "esac"})
# Compound commands whose bodies cannot be followed without a grammar
COMPOUND_KEYWORDS: FrozenSet[str] = frozenset({"for", "case", "select", "function", "coproc"})

# Builtins whose arguments are assignments
ASSIGNING_BUILTINS: FrozenSet[str] = frozenset({"export", "declare", "typeset", "readonly", "local"})

FIND_EXEC_ACTIONS: FrozenSet[str] = frozenset({"-exec", "-execdir", "-ok", "-okdir"})

MAX_NESTING = 8


class CommandParseError(Exception):
    """A command line the parser will not guess about."""


@dataclass(frozen=True)
class Wrapper:
    """How a command-running wrapper takes its options."""
    value_options: FrozenSet[str] = frozenset()
    # Options that start a shell or take a command string
    shell_options: FrozenSet[str] = frozenset()
    # Options that make the wrapper run nothing
    no_exec_options: FrozenSet[str] = frozenset()
    # Operands between the options and the command (timeout DURATION)
    operands: int = 0
    accepts_assignments: bool = False
    # What runs when no command is given
    default: Optional[str] = None


WRAPPERS: Dict[str, Wrapper] = {
    "sudo": Wrapper(
        value_options=frozenset({
            "-u", "-g", "-h", "-p", "-C", "-D", "-r", "-t", "-U", "-T", "-R",
            "--user", "--group", "--host", "--prompt", "--close-from", "--chdir",
            "--role", "--type", "--other-user", "--command-timeout", "--chroot",
        }),
        shell_options=frozenset({"-s", "-i", "--shell", "--login"}),
        no_exec_options=frozenset({"-l", "--list", "-v", "--validate", "-V", "--version", "-e", "--edit"}),
        accepts_assignments=True,
    ),
    "doas": Wrapper(
        value_options=frozenset({"-u", "-C"}),
        shell_options=frozenset({"-s"}),
        accepts_assignments=True,
    ),
    "env": Wrapper(
        value_options=frozenset({"-u", "--unset", "-C", "--chdir"}),
        shell_options=frozenset({"-S", "--split-string"}),
        accepts_assignments=True,
    ),
    "xargs": Wrapper(
        value_options=frozenset({
            "-a", "-d", "-E", "-I", "-L", "-n", "-P", "-s",
            "--arg-file", "--delimiter", "--max-lines", "--max-args",
            "--max-procs", "--max-chars", "--process-slot-var",
        }),
        default="echo",
    ),
    "nice": Wrapper(value_options=frozenset({"-n", "--adjustment"})),
    "nohup": Wrapper(),
    "setsid": Wrapper(),
    "builtin": Wrapper(),
    "timeout": Wrapper(
        value_options=frozenset({"-s", "--signal", "-k", "--kill-after"}),
        operands=1,
    ),
    "command": Wrapper(no_exec_options=frozenset({"-v", "-V"})),
    "time": Wrapper(value_options=frozenset({"-f", "--format", "-o", "--output"})),
    "stdbuf": Wrapper(value_options=frozenset({"-i", "-o", "-e", "--input", "--output", "--error"})),
    "ionice": Wrapper(value_options=frozenset({"-c", "-n", "--class", "--classdata"})),
    "watch": Wrapper(value_options=frozenset({"-n", "--interval"})),
}


@dataclass(frozen=True)
class InlineCodeFlags:
    """Flags that hand an interpreter its program on the command line."""
    short: str
    long: Tuple[str, ...] = ()
    # Options stop at the first operand (npx <package> args...)
    stop_at_operand: bool = False
    value_options: Tuple[str, ...] = ()
    # Reads its program from stdin when given no script
    reads_stdin: bool = True


INLINE_CODE_FLAGS: Dict[str, InlineCodeFlags] = {
    "python": InlineCodeFlags(short="c"),
    "node": InlineCodeFlags(short="ep", long=("--eval", "--print")),
    "perl": InlineCodeFlags(short="eE"),
    "ruby": InlineCodeFlags(short="e"),
    "php": InlineCodeFlags(short="r"),
    "bun": InlineCodeFlags(short="ep", long=("--eval", "--print"), reads_stdin=False),
    "tsx": InlineCodeFlags(short="ep", long=("--eval", "--print"), reads_stdin=False),
    "ts-node": InlineCodeFlags(short="ep", long=("--eval", "--print"), reads_stdin=False),
    "npx": InlineCodeFlags(
        short="c", long=("--call",), stop_at_operand=True,
        value_options=("-p", "--package"), reads_stdin=False,
    ),
}

_INTERPRETER_FAMILIES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"^(?:python|pypy)[0-9.]*$"), "python"),
    (re.compile(r"^node(?:js)?$"), "node"),
    (re.compile(r"^perl[0-9.]*$"), "perl"),
    (re.compile(r"^ruby[0-9.]*$"), "ruby"),
    (re.compile(r"^php[0-9.]*$"), "php"),
]


@dataclass
class ParsedCommand:
    """Result of parsing a command line."""
    executables: List[str] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None


@dataclass
class ResolvedCommand:
    """One executable found in a simple command, with its arguments."""
    name: str
    args: List[str]
    # Sits behind xargs, so stdin becomes arguments
    via_xargs: bool = False


@dataclass
class ResolvedSegment:
    """Everything a simple command runs, outermost first."""
    commands: List[ResolvedCommand] = field(default_factory=list)
    assignments: List[str] = field(default_factory=list)
    piped: bool = False


def _normalize(command: str) -> str:
    """Newlines separate commands just like ';'."""
    return command.replace("\r\n", "\n").replace("\n", " ; ")


def _split_segments(text: str) -> List[Tuple[str, bool]]:
    """
    Split on |, |&, &&, ||, & and ; outside quotes.

    Returns (segment, piped) pairs; piped is True when the segment reads the
    previous one's output. Redirections such as 2>&1, &>file and >|file are
    not separators.
    """
    segments: List[Tuple[str, bool]] = []
    current: List[str] = []
    piped = False
    in_single = False
    in_double = False
    escape = False
    i = 0

    def push(next_piped: bool) -> None:
        nonlocal piped
        segment = "".join(current).strip()
        if segment:
            segments.append((segment, piped))
        current.clear()
        piped = next_piped

    while i < len(text):
        char = text[i]
        nxt = text[i + 1] if i + 1 < len(text) else ""
        prev = text[i - 1] if i > 0 else ""

        if escape:
            escape = False
            current.append(char)
            i += 1
            continue
        if char == "\\" and not in_single:
            escape = True
            current.append(char)
            i += 1
            continue
        if char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double
        if in_single or in_double or char in ("'", '"'):
            current.append(char)
            i += 1
            continue

        if (char == "&" and nxt == "&") or (char == "|" and nxt == "|"):
            push(False)
            i += 2
            continue
        if char == "|" and nxt == "&":
            push(True)
            i += 2
            continue
        if char == "|" and prev != ">":
            push(True)
            i += 1
            continue
        if char == "&" and prev not in ("<", ">") and nxt != ">":
            push(False)
            i += 1
            continue
        if char == ";":
            push(False)
            i += 1
            continue

        current.append(char)
        i += 1

    push(False)
    return segments


def split_by_operators(command: str) -> List[str]:
    """Split on pipes, chains, '&' and ';' outside quotes. Returns simple commands."""
    return [segment for segment, _ in _split_segments(_normalize(command))]


def executable_name(token: str) -> str:
    """/usr/bin/git -> git"""
    return token.rsplit("/", 1)[-1]


def is_env_assignment(token: str) -> bool:
    return bool(_ENV_ASSIGNMENT.match(token))


def interpreter_family(name: str) -> Optional[str]:
    """python3.11 -> python, nodejs -> node; None for non-interpreters."""
    if name in INLINE_CODE_FLAGS:
        return name
    for pattern, family in _INTERPRETER_FAMILIES:
        if pattern.match(name):
            return family
    return None


def _tokenize(segment: str, strict: bool = True) -> List[str]:
    try:
        return shlex.split(segment)
    except ValueError as e:
        if strict:
            raise CommandParseError(f"cannot tokenize command: {e}") from e
        # Unbalanced quotes
        return segment.split()


def _command_word(token: str) -> str:
    """Validate a command-position token and return its executable name."""
    word = token.lstrip("({").rstrip(")")
    name = executable_name(word)
    if not word or _EXPANSION.search(word) or not _COMMAND_WORD.match(name):
        raise CommandParseError(f"cannot determine executable from '{token}'")
    return name


def _skip_prefix(tokens: List[str], assignments: List[str]) -> List[str]:
    """Drop assignments, redirections, keywords and grouping before the command word."""
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token in PREFIX_KEYWORDS or token in CLOSING_KEYWORDS:
            i += 1
            continue
        if token in COMPOUND_KEYWORDS:
            raise CommandParseError(f"'{token}' blocks are not supported")
        if token and (set(token) <= _OPENERS or set(token) <= _CLOSERS):
            i += 1
            continue
        if is_env_assignment(token):
            assignments.append(token.split("=", 1)[0])
            i += 1
            continue
        if _REDIRECTION_ONLY.match(token):
            i += 2
            continue
        if _REDIRECTION.match(token):
            i += 1
            continue
        break
    return tokens[i:]


def _short_cluster(token: str, value_options: FrozenSet[str]) -> Tuple[List[str], bool]:
    """
    Flags in a short-option cluster like -iu, and whether the next token is
    the value of its last flag.
    """
    flags = []
    for j, char in enumerate(token[1:]):
        flag = f"-{char}"
        flags.append(flag)
        if flag in value_options:
            # -uroot carries its value; -u takes the next token
            return flags, j == len(token) - 2
    return flags, False


def _unwrap(name: str, args: List[str], assignments: List[str]) -> Optional[List[str]]:
    """Tokens of the command a wrapper runs, or None when it runs nothing."""
    wrapper = WRAPPERS[name]
    i = 0
    while i < len(args):
        token = args[i]
        if token == "--":
            i += 1
            break
        if wrapper.accepts_assignments and is_env_assignment(token):
            assignments.append(token.split("=", 1)[0])
            i += 1
            continue
        if not token.startswith("-") or token == "-":
            break

        if token.startswith("--"):
            option = token.split("=", 1)[0]
            flags = [option]
            takes_next = option in wrapper.value_options and "=" not in token
        else:
            flags, takes_next = _short_cluster(token, wrapper.value_options)

        for flag in flags:
            if flag in wrapper.shell_options:
                raise CommandParseError(f"{name} {flag} runs a command the parser cannot see")
        if any(flag in wrapper.no_exec_options for flag in flags):
            return None
        i += 2 if takes_next else 1

    rest = args[i + wrapper.operands:]
    if not rest:
        return [wrapper.default] if wrapper.default else None
    return rest


def _find_exec_targets(args: List[str]) -> List[List[str]]:
    """Commands run by find -exec/-execdir/-ok/-okdir, up to ';' or '+'."""
    targets = []
    i = 0
    while i < len(args):
        if args[i] in FIND_EXEC_ACTIONS:
            end = i + 1
            while end < len(args) and args[end] not in (";", "+"):
                end += 1
            target = args[i + 1:end]
            if not target:
                raise CommandParseError(f"find {args[i]} without a command")
            targets.append(target)
            i = end
        i += 1
    return targets


def _resolve(tokens: List[str], segment: ResolvedSegment, depth: int = 0, via_xargs: bool = False) -> None:
    if depth > MAX_NESTING:
        raise CommandParseError("command nesting is too deep")

    rest = _skip_prefix(tokens, segment.assignments)
    if not rest:
        return

    name = _command_word(rest[0])
    args = rest[1:]
    segment.commands.append(ResolvedCommand(name, args, via_xargs))

    if name in WRAPPERS:
        target = _unwrap(name, args, segment.assignments)
        if target:
            _resolve(target, segment, depth + 1, via_xargs or name == "xargs")
    elif name == "find":
        for target in _find_exec_targets(args):
            _resolve(target, segment, depth + 1, via_xargs)
    elif name in ASSIGNING_BUILTINS:
        segment.assignments.extend(arg.split("=", 1)[0] for arg in args if is_env_assignment(arg))


def resolve_segment(segment: str, piped: bool = False, strict: bool = True) -> ResolvedSegment:
    """Resolve one simple command. Raises CommandParseError when it cannot."""
    resolved = ResolvedSegment(piped=piped)
    _resolve(_tokenize(segment, strict), resolved)
    return resolved


def parse_simple_command(command: str) -> Optional[str]:
    """Executable of a single command with no pipes or chains."""
    resolved = resolve_segment(command.strip())
    return resolved.commands[0].name if resolved.commands else None


def _has_inline_flag(token: str, flags: InlineCodeFlags) -> bool:
    if token.startswith("--"):
        return token.split("=", 1)[0] in flags.long
    if token.startswith("-") and len(token) > 1:
        # Clusters count: python3 -Ic, perl -ne, node -pe
        for char in token[1:]:
            if not char.isalpha():
                break
            if char in flags.short:
                return True
    return False


def inline_code_violation(executable: str, args: List[str]) -> Optional[str]:
    """Reason string if executable is an interpreter given an inline-code flag."""
    family = interpreter_family(executable)
    if family is None:
        return None
    flags = INLINE_CODE_FLAGS[family]

    i = 0
    while i < len(args):
        token = args[i]
        if _has_inline_flag(token, flags):
            return f"{executable} with inline code flag is not allowed"
        if flags.stop_at_operand:
            if token in flags.value_options:
                i += 2
                continue
            if not token.startswith("-"):
                break
        i += 1
    return None


def _reads_program_from_stdin(args: List[str]) -> bool:
    for token in args:
        if token == "-":
            return True
        if token == "-m" or not token.startswith("-"):
            return False
    return True


def stdin_code_violation(command: ResolvedCommand, piped: bool) -> Optional[str]:
    """Reason string if a piped-into interpreter would run its input as code."""
    if not piped or command.via_xargs:
        return None
    family = interpreter_family(command.name)
    if family is None or not INLINE_CODE_FLAGS[family].reads_stdin:
        return None
    if _reads_program_from_stdin(command.args):
        return "piping to interpreter stdin is not allowed"
    return None


def resolve_command_line(command: str, strict: bool = True) -> List[ResolvedSegment]:
    """Resolve every simple command in a command line."""
    return [
        resolve_segment(segment, piped, strict)
        for segment, piped in _split_segments(_normalize(command))
    ]


def parse_bash_command(command: str) -> ParsedCommand:
    """
    Parse a command line and extract all executables.

    Executables are de-duplicated in first-seen order. Inline code given to
    an interpreter, or a program piped into one, fails the whole parse.
    """
    try:
        executables: List[str] = []
        for segment in resolve_command_line(command):
            for resolved in segment.commands:
                reason = (
                    inline_code_violation(resolved.name, resolved.args)
                    or stdin_code_violation(resolved, segment.piped)
                )
                if reason:
                    return ParsedCommand(executables=[], success=False, error=reason)
                executables.append(resolved.name)

        return ParsedCommand(executables=list(dict.fromkeys(executables)), success=True)

    except CommandParseError as e:
        logger.debug(f"Command not parseable: {e}")
        return ParsedCommand(executables=[], success=False, error=str(e))
    except Exception as e:
        logger.error(f"Command parse failed: {e}")
        return ParsedCommand(executables=[], success=False, error=str(e) or "Parse error")


def extract_cli_invocations(command: str, cli_name: str) -> List[Tuple[str, Optional[str], List[str]]]:
    """
    Find invocations of a CLI inside a command line.

    "FOO=1 agentctl sessions send dev-x hi" -> [("sessions", "send", ["dev-x", "hi"])]
    Leading env assignments, wrappers like sudo or env, and an absolute path
    to the CLI are looked through. Segments that cannot be resolved are
    skipped; the executable check denies them.
    """
    invocations = []
    for segment, piped in _split_segments(_normalize(command)):
        try:
            resolved = resolve_segment(segment, piped, strict=False)
        except CommandParseError as e:
            logger.debug(f"Skipping unresolvable segment for {cli_name}: {e}")
            continue
        for found in resolved.commands:
            if found.name != cli_name or not found.args:
                continue
            group = found.args[0]
            subcommand = found.args[1] if len(found.args) > 1 else None
            invocations.append((group, subcommand, found.args[2:]))
    return invocations


def find_env_assignments(command: str) -> List[str]:
    """
    Names of environment variables a command line sets.

    Covers NAME=value prefixes of every simple command, assignments passed
    through wrappers (env, sudo), and arguments of export and friends. A
    segment that cannot be resolved counts every assignment-looking token.
    """
    names: List[str] = []
    for segment, piped in _split_segments(_normalize(command)):
        try:
            names.extend(resolve_segment(segment, piped, strict=False).assignments)
        except CommandParseError:
            names.extend(t.split("=", 1)[0] for t in _tokenize(segment, strict=False) if is_env_assignment(t))
    return list(dict.fromkeys(names))
