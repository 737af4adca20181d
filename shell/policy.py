"""
Bash Permission Checker
-----------------------
Validates a command line against an agent's BashConfig.

Defense in depth:
1. Dangerous patterns (injection attempts) on the raw text
2. Parse to extract every executable; a failed parse denies
3. Unconditional blocks, whatever the mode
4. Allowlist or denylist from the config

Bypass mode (or no config) allows everything and skips all steps.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from infra.config import BashConfig, BashMode
from shell.parser import parse_bash_command
from shell.patterns import UNCONDITIONAL_BLOCKS, check_dangerous_patterns


@dataclass
class BashPermissionResult:
    """Outcome of a bash permission check."""
    allowed: bool
    reason: Optional[str] = None
    blocked_executables: List[str] = field(default_factory=list)


def default_allowlist() -> List[str]:
    """Low-risk executables commonly needed for development."""
    return [
        # File operations
        "ls", "cat", "head", "tail", "find", "mkdir", "cp", "mv", "touch",
        "stat", "file", "wc", "sort", "uniq", "tee",
        # Git
        "git",
        # Text processing
        "grep", "rg", "awk", "sed", "diff", "jq", "yq", "cut", "tr", "xargs",
        # Node/JS
        "node", "npm", "npx", "bun", "bunx", "yarn", "pnpm", "tsx", "ts-node",
        # Python
        "python", "python3", "pip", "pip3", "poetry", "uv",
        # Build tools
        "make", "cargo", "go", "rustc", "gcc", "g++", "clang",
        # Testing
        "jest", "vitest", "pytest", "mocha",
        # Linting
        "eslint", "prettier", "biome", "ruff", "black",
        # Misc
        "echo", "printf", "date", "pwd", "whoami", "which", "env", "dirname",
        "basename", "realpath", "true", "false", "test", "[", "[[",
    ]


def default_denylist() -> List[str]:
    """Destructive, privileged or network-capable executables."""
    return [
        # Destructive file operations
        "rm", "rmdir", "shred", "dd",
        # System administration
        "sudo", "su", "chmod", "chown", "chgrp", "systemctl", "service", "mount", "umount",
        # Network
        "curl", "wget", "nc", "netcat", "ssh", "scp", "sftp", "rsync", "ftp", "telnet",
        # System package managers
        "apt", "apt-get", "brew", "yum", "dnf", "pacman", "snap", "flatpak",
        # Containers
        "docker", "podman", "kubectl", "helm",
        # Process control
        "kill", "killall", "pkill",
        # Machine state
        "reboot", "shutdown", "halt", "poweroff", "mkfs", "fdisk", "parted",
    ]


def check_bash_permission(command: str, config: Optional[BashConfig]) -> BashPermissionResult:
    """Check a command against a BashConfig. See module docstring for the steps."""
    if config is None or config.mode == BashMode.BYPASS:
        return BashPermissionResult(allowed=True)

    pattern_check = check_dangerous_patterns(command)
    if not pattern_check.safe:
        return BashPermissionResult(allowed=False, reason=pattern_check.reason)

    parsed = parse_bash_command(command)
    if not parsed.success:
        return BashPermissionResult(allowed=False, reason=parsed.error or "Failed to parse command")

    blocked: List[str] = []
    reasons: List[str] = []

    for exe in parsed.executables:
        if exe in UNCONDITIONAL_BLOCKS:
            blocked.append(exe)
            reasons.append(f"{exe} is unconditionally blocked")
            continue

        if config.mode == BashMode.ALLOWLIST and exe not in config.allowlist:
            blocked.append(exe)
            reasons.append(f"{exe} is not in allowlist")
        elif config.mode == BashMode.DENYLIST and exe in config.denylist:
            blocked.append(exe)
            reasons.append(f"{exe} is in denylist")

    if blocked:
        return BashPermissionResult(allowed=False, reason="; ".join(reasons), blocked_executables=blocked)

    return BashPermissionResult(allowed=True)
