"""Confirmation policy: decide whether a specific call may run, must ask, or is denied."""

import fnmatch
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Literal

from helmsman.config import ToolsConfig, get_config
from helmsman.logging import get_logger
from helmsman.tools.schema import ToolDescriptor

log = get_logger(__name__)

SHELL_TOOL_NAME = "shell"

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env"}

PolicyAction = Literal["allow", "ask", "deny"]


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def split_shell_segments(command: str) -> list[list[str]]:
    """Split a shell command into tokenized segments separated by control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _segment_base_command(tokens: list[str]) -> str:
    for token in tokens:
        token = str(token).strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    """Executable names of every segment of a shell command line."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return []
    return [base for segment in segments if (base := _segment_base_command(segment))]


def is_blocked_shell_command(command: str, blocked_patterns: Iterable[str]) -> tuple[bool, str]:
    """Match a command against blocked patterns.

    Patterns containing whitespace match whole segments (regex search); others
    match the base command of each segment (regex match).
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [base for segment in segments if (base := _segment_base_command(segment))]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level else base_commands
        matcher = compiled.search if segment_level else compiled.match
        if any(matcher(target) for target in targets):
            return True, pattern
    return False, ""


def shell_pattern_matches(command: str, pattern: str) -> bool:
    """Match a shell command against a glob-like policy pattern."""
    cleaned_command = str(command or "").strip().lower()
    cleaned_pattern = str(pattern or "").strip().lower()
    if not cleaned_command or not cleaned_pattern:
        return False

    targets: list[str] = [cleaned_command]
    try:
        targets.extend(" ".join(segment) for segment in split_shell_segments(cleaned_command))
    except ValueError:
        pass
    base_commands = extract_shell_base_commands(cleaned_command)
    targets.extend(base_commands)
    targets.extend(Path(item).name for item in base_commands)
    return any(fnmatch.fnmatchcase(target, cleaned_pattern) for target in targets if target)


@dataclass(frozen=True)
class PolicyDecision:
    action: PolicyAction
    reason: str = ""


class ConfirmationPolicy:
    """Per-session approval rules for tool calls.

    Built from ``tools`` config; "proceed always" approvals are remembered for
    the rest of the session (per tool, or per base command for the shell).
    """

    def __init__(self, tools_config: ToolsConfig | None = None):
        self._config = tools_config or get_config().tools
        self._always_tools: set[str] = set()
        self._always_shell_commands: set[str] = set()

    def evaluate(self, descriptor: ToolDescriptor, arguments: dict[str, Any]) -> PolicyDecision:
        """Classify one call as allow, ask or deny."""
        if descriptor.name == SHELL_TOOL_NAME and descriptor.source.kind == "builtin":
            decision = self._evaluate_shell(str(arguments.get("command", "")))
        elif descriptor.name in self._always_tools:
            decision = PolicyDecision("allow", "Previously approved for this session")
        elif descriptor.requires_confirmation or descriptor.name in self._config.require_confirmation:
            decision = PolicyDecision("ask", f"Tool '{descriptor.name}' requires confirmation")
        else:
            decision = PolicyDecision("allow", "Tool is auto-approved")

        if decision.action == "ask" and self._config.approval_mode == "yolo":
            return PolicyDecision("allow", "Auto-approved (yolo mode)")
        return decision

    def _evaluate_shell(self, command: str) -> PolicyDecision:
        cleaned = command.strip()
        if not cleaned:
            return PolicyDecision("deny", "Command is empty")

        shell_cfg = self._config.shell
        blocked, matched = is_blocked_shell_command(cleaned, shell_cfg.blocked)
        if blocked:
            if matched == "empty_command":
                return PolicyDecision("deny", "Command is empty")
            if matched == "unparseable_command":
                return PolicyDecision("deny", "Command is not parseable")
            return PolicyDecision("deny", f"Command matches blocked pattern: {matched}")

        for pattern in shell_cfg.deny_patterns:
            if shell_pattern_matches(cleaned, pattern):
                return PolicyDecision("deny", f"Command matches deny pattern: {pattern}")

        for pattern in shell_cfg.allow_patterns:
            if shell_pattern_matches(cleaned, pattern):
                return PolicyDecision("allow", f"Command matches allow pattern: {pattern}")

        base_commands = {Path(item).name for item in extract_shell_base_commands(cleaned)}
        if base_commands and base_commands <= self._always_shell_commands:
            return PolicyDecision("allow", "Command previously approved for this session")
        if SHELL_TOOL_NAME in self._always_tools:
            return PolicyDecision("allow", "Previously approved for this session")

        default_policy = shell_cfg.default_policy
        if default_policy == "allow":
            if SHELL_TOOL_NAME in self._config.require_confirmation:
                return PolicyDecision("ask", "Shell commands require confirmation")
            return PolicyDecision("allow", "Default shell execution policy allows command")
        if default_policy == "deny":
            return PolicyDecision("deny", "Default shell execution policy denies command")
        return PolicyDecision("ask", "Default shell execution policy requires approval")

    def remember(self, descriptor: ToolDescriptor, arguments: dict[str, Any]) -> None:
        """Record a "proceed always" approval."""
        if descriptor.name == SHELL_TOOL_NAME and descriptor.source.kind == "builtin":
            commands = {Path(item).name for item in extract_shell_base_commands(str(arguments.get("command", "")))}
            self._always_shell_commands.update(commands)
            log.info("Remembered shell approval", commands=sorted(commands))
            return
        self._always_tools.add(descriptor.name)
        log.info("Remembered tool approval", tool=descriptor.name)


def requires_confirmation(
    descriptor: ToolDescriptor,
    arguments: dict[str, Any],
    policy: ConfirmationPolicy | None = None,
) -> bool:
    """Whether this specific call needs user approval before it runs."""
    return (policy or ConfirmationPolicy()).evaluate(descriptor, arguments).action == "ask"
