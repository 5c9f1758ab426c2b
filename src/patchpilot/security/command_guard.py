"""
patchpilot — command guard

File: src/patchpilot/security/command_guard.py

Purpose
- Enforce the command execution policy applied before anything reaches the sandbox:
  length cap, fixed deny-list, advisory dangerous patterns, repository allow-list, path
  confinement and argument count.

Functional requirements
- Deny-list hits, over-long commands and disallowed paths raise before any process spawns.
- Dangerous-pattern matches, allow-list misses and argument overflow are reported as
  violations; callers decide whether to escalate them.
- Output sanitization and rate limiting share the same policy object.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, Final

import structlog

from patchpilot.constants import (
    DEFAULT_ALLOWED_PATHS,
    MAX_ARGUMENTS,
    MAX_COMMAND_LENGTH,
    MAX_OUTPUT_SIZE,
    RATE_LIMIT_ATTEMPTS,
    RATE_LIMIT_DECAY_SECONDS,
    RESTRICTED_PATHS,
)
from patchpilot.domain.models import CommandValidation, RepoProfile, SanitizedOutput
from patchpilot.errors import CommandBlocked, PathViolation
from patchpilot.sandbox.rate_limiter import SlidingWindowRateLimiter, rate_limit_key
from patchpilot.security.redaction import sanitize_output

if TYPE_CHECKING:
    from patchpilot.config.settings import GuardSettings

BLOCKED_COMMANDS: Final[tuple[str, ...]] = (
    "rm -rf /",
    "rm -rf /*",
    "dd if=/dev/zero",
    "dd if=/dev/random",
    "mkfs",
    "fdisk",
    "mount",
    "umount",
    "chroot",
    "sudo",
    "su -",
    "passwd",
    "useradd",
    "userdel",
    "groupadd",
    "groupdel",
    "systemctl",
    "service",
    "killall",
    "pkill",
    "reboot",
    "shutdown",
    "poweroff",
    "halt",
    "iptables",
    "nc -l",
    "netcat -l",
    "nmap",
    "tcpdump",
    "wget --post-file",
    "curl -d @",
    "curl --upload-file",
    "ssh",
    "scp",
    "rsync --daemon",
    "chmod 777",
    "chmod -R 777",
    "chown -R",
    ":(){:|:&};:",
    "eval",
    "exec",
    "$()",
    "`",
    ">",
    ">>",
    "|",
    "&",
    "&&",
    ";",
    "||",
)

DANGEROUS_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(pattern)
    for pattern in (
        r"\.\./",
        r"/etc/shadow",
        r"/etc/passwd",
        r"/proc/",
        r"/sys/",
        r"/dev/",
        r"\$\(.*\)",
        r"`.*`",
        r";\s*rm",
        r"\|\s*sh",
        r"\|\s*bash",
        r">\s*/dev/",
        r"2>&1",
    )
)

_SCRIPT_RUNNERS: Final[dict[str, frozenset[str]]] = {
    "npm": frozenset({"run", "test"}),
    "yarn": frozenset({"run", "test"}),
    "pnpm": frozenset({"run", "test"}),
    "composer": frozenset({"run-script", "test"}),
}

_WHITESPACE = re.compile(r"\s+")
_ABSOLUTE_PATH = re.compile(r"(?<![^\s=:'\"])/\S+")
_SINGLE_LETTER_ROOT = re.compile(r"^/[a-z]$")
_PARENT_ESCAPE = re.compile(r"\.\./\S*")
_VENDOR_PATH = re.compile(r"(?:\./)?vendor/\S+")


def normalize_command(command: str) -> str:
    """Collapse whitespace and lower-case for deny-list matching."""
    return _WHITESPACE.sub(" ", command.strip()).lower()


def extract_base_command(command: str) -> str:
    """First token, or the script-runner unit (``npm run build``, ``composer test``)."""
    parts = command.strip().split(" ")
    if len(parts) >= 2 and parts[1] in _SCRIPT_RUNNERS.get(parts[0], frozenset()):
        return " ".join(parts[:3])
    return parts[0]


def command_matches(base_command: str, allowed: str) -> bool:
    if base_command == allowed or base_command.startswith(f"{allowed} "):
        return True
    if "*" in allowed:
        regex = "^" + ".*".join(re.escape(chunk) for chunk in allowed.split("*")) + "$"
        return re.match(regex, base_command) is not None
    return base_command == extract_base_command(allowed)


def extract_paths(command: str) -> tuple[str, ...]:
    """Path-like substrings: absolute paths, ``../`` escapes and vendor tool paths."""
    found: list[str] = [
        match
        for match in _ABSOLUTE_PATH.findall(command)
        if not _SINGLE_LETTER_ROOT.match(match)
    ]
    found.extend(_PARENT_ESCAPE.findall(command))
    found.extend(_VENDOR_PATH.findall(command))
    return tuple(dict.fromkeys(found))


def _under(path: str, root: str) -> bool:
    root = root.rstrip("/") or "/"
    if root == "/":
        return path.startswith("/")
    return path == root or path.startswith(f"{root}/")


def _expand_roots(roots: Iterable[str]) -> tuple[str, ...]:
    expanded: list[str] = []
    for root in roots:
        if not root:
            continue
        expanded.append(root)
        if os.path.exists(root):
            expanded.append(os.path.realpath(root))
    return tuple(dict.fromkeys(expanded))


def is_path_allowed(path: str, allowed_paths: Sequence[str]) -> bool:
    if "/" not in path:
        return True
    if ".." in path:
        return False
    if path.startswith(("vendor/", "./vendor/")):
        return True
    if os.path.exists(path):
        path = os.path.realpath(path)
    if any(_under(path, restricted) for restricted in RESTRICTED_PATHS):
        return False
    if any(_under(path, root) for root in _expand_roots(allowed_paths)):
        return True
    return not path.startswith("/")


class CommandGuard:
    """Validates commands against the execution policy.

    Construct once per process with immutable :class:`GuardSettings`; the instance owns the
    rate-limit windows.
    """

    def __init__(
        self,
        settings: GuardSettings | None = None,
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        logger: Any | None = None,
    ) -> None:
        self._max_command_length = settings.max_command_length if settings else MAX_COMMAND_LENGTH
        self._max_arguments = settings.max_arguments if settings else MAX_ARGUMENTS
        self._allowed_paths: tuple[str, ...] = (
            settings.allowed_paths if settings else DEFAULT_ALLOWED_PATHS
        )
        self._max_output_size = settings.max_output_size if settings else MAX_OUTPUT_SIZE
        self._rate_limiter = (
            rate_limiter
            if rate_limiter is not None
            else SlidingWindowRateLimiter(
                max_attempts=settings.rate_limit_attempts if settings else RATE_LIMIT_ATTEMPTS,
                decay_seconds=(
                    settings.rate_limit_decay_seconds if settings else RATE_LIMIT_DECAY_SECONDS
                ),
            )
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def allowed_paths(self) -> tuple[str, ...]:
        return self._allowed_paths

    def validate_command(
        self,
        command: str,
        repo_profile: RepoProfile | None = None,
        allowed_paths: Sequence[str] = (),
    ) -> CommandValidation:
        """Validate ``command``; raise on fatal policy hits, otherwise report violations.

        Raises:
            CommandBlocked: the command is too long or contains a deny-listed operation.
            PathViolation: a referenced path lies outside the allowed roots.
        """
        if not isinstance(command, str):
            raise TypeError(f"command must be a string, got {type(command).__name__}")
        if len(command) > self._max_command_length:
            raise CommandBlocked(
                f"Command exceeds maximum length of {self._max_command_length} characters",
                command=command[:200],
            )

        normalized = normalize_command(command)
        for blocked in BLOCKED_COMMANDS:
            if blocked.lower() in normalized:
                raise CommandBlocked(
                    f"Command contains blocked operation: {blocked}", command=command
                )

        violations = [
            f"Command matches dangerous pattern: /{pattern.pattern}/"
            for pattern in DANGEROUS_PATTERNS
            if pattern.search(normalized)
        ]

        allowed_commands = repo_profile.allowed_commands() if repo_profile is not None else ()
        if allowed_commands:
            base_command = extract_base_command(command)
            if not any(command_matches(base_command, entry) for entry in allowed_commands):
                violations.append(
                    f"Command '{base_command}' not in allowed list from repo profile"
                )

        effective_paths = (*self._allowed_paths, *allowed_paths)
        for path in extract_paths(command):
            if not is_path_allowed(path, effective_paths):
                raise PathViolation(
                    f"Path '{path}' is not in allowed paths: {', '.join(effective_paths)}",
                    path=path,
                )

        arg_count = len(command.split(" "))
        if arg_count > self._max_arguments:
            violations.append(
                f"Command has too many arguments ({arg_count} > {self._max_arguments})"
            )

        if violations:
            self._logger.warning(
                "command_validation_violations", command=command, violations=violations
            )

        return CommandValidation(
            command=command, normalized=normalized, violations=tuple(violations)
        )

    def sanitize_output(self, output: str, max_size: int | None = None) -> SanitizedOutput:
        return sanitize_output(output, self._max_output_size if max_size is None else max_size)

    def get_rate_limit_key(self, ticket_id: str, command: str) -> str:
        return rate_limit_key(ticket_id, command)

    def is_rate_limited(
        self,
        key: str,
        max_attempts: int | None = None,
        decay_seconds: float | None = None,
    ) -> bool:
        limited = self._rate_limiter.is_limited(
            key, max_attempts=max_attempts, decay_seconds=decay_seconds
        )
        if limited:
            self._logger.warning(
                "command_rate_limited", key=key, attempts=self._rate_limiter.attempts(key)
            )
        return limited


__all__ = [
    "BLOCKED_COMMANDS",
    "DANGEROUS_PATTERNS",
    "CommandGuard",
    "command_matches",
    "extract_base_command",
    "extract_paths",
    "is_path_allowed",
    "normalize_command",
]
