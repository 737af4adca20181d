"""
Dangerous-Pattern Detector
--------------------------
Regex screen over the raw command text, run BEFORE parsing.

Anything matched here is an injection or bypass vector that the parser
cannot reason about (nested commands, process substitution, piping into
an interpreter). A match is a denial, regardless of configuration.
"""

import re
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Tuple

SHELLS = ("bash", "sh", "zsh", "dash", "ksh", "csh", "tcsh", "fish")

_shells = "|".join(SHELLS)
_interpreters = r"(?:python|pypy)[0-9.]*|node(?:js)?|perl[0-9.]*|ruby[0-9.]*|php[0-9.]*"
# A pipe (not ||), optionally into env and an absolute or relative path
_pipe_into = r"(?<!\|)\|(?!\|)&?\s*(?:(?:[^\s|;&]*/)?env(?:\s+(?:-\S+|[A-Za-z_][A-Za-z0-9_]*=\S*))*\s+)?(?:[^\s|;&]*/)?"

# Order matters: the first match is reported
DANGEROUS_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\$\("), "command substitution $(...) is not allowed"),
    (re.compile(r"`[^`]*`"), "backtick command substitution is not allowed"),
    (re.compile(r"<\("), "process substitution <(...) is not allowed"),
    (re.compile(r">\("), "process substitution >(...) is not allowed"),
    (re.compile(r"<<[<-]?"), "here documents are not allowed"),
    (re.compile(rf"{_pipe_into}({_shells})\b"), "piping to shell is not allowed"),
    (
        re.compile(rf"{_pipe_into}({_interpreters})\s+(-c|-e|-r|--eval|--print)\b"),
        "piping to interpreter with inline code is not allowed",
    ),
    (re.compile(rf"{_pipe_into}({_interpreters})\s*(?:$|[;&|)])"), "piping to interpreter stdin is not allowed"),
]

# Executables that can run arbitrary strings; blocked whatever the config says
UNCONDITIONAL_BLOCKS: FrozenSet[str] = frozenset({
    # Shells
    "bash", "sh", "zsh", "dash", "ksh", "csh", "fish", "tcsh",
    # String execution
    "eval", "exec",
    # source / dot
    "source", ".",
})


@dataclass(frozen=True)
class PatternCheckResult:
    """Outcome of the pattern screen."""
    safe: bool
    reason: Optional[str] = None
    pattern: Optional[str] = None


def check_dangerous_patterns(command: str) -> PatternCheckResult:
    """Return the first dangerous pattern found in command, if any."""
    for pattern, reason in DANGEROUS_PATTERNS:
        if pattern.search(command):
            return PatternCheckResult(safe=False, reason=reason, pattern=pattern.pattern)
    return PatternCheckResult(safe=True)
