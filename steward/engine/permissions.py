"""Permission decision engine for tool calls.

Evaluation order (first match wins):

1. Session memory keyed by tool + command prefix / path
2. Tools in the always-allowed set
3. Read-only tools, when auto-allow for read-only is enabled
4. Explicit rules, in insertion order
5. Tools in the always-ask set (caller must confirm with the human)
6. Configured default (allow, deny, or ask)

check() is pure apart from bumping the matched rule's usage counter.
State changes only through record_decision() / add_rule(), both of which
are synchronous so no other coroutine can observe a half-applied update.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any

from .models import (
    DecisionSource,
    DefaultDecision,
    PermissionDecision,
    PermissionRequest,
    PermissionRule,
    RuleDecision,
)

logger = logging.getLogger(__name__)

READ_ONLY_TOOLS: frozenset[str] = frozenset({
    "read_file", "list_dir", "grep", "glob", "web_fetch",
})
DANGEROUS_TOOLS: tuple[str, ...] = (
    "bash", "write_file", "edit_file", "delete_file",
)

_COMMAND_KEYS = ("command", "cmd", "script")
_PATH_KEYS = ("path", "file_path")


@dataclass
class PermissionConfig:
    """Static policy for the permission engine."""
    default_decision: DefaultDecision = DefaultDecision.ASK
    allow_read_only: bool = False
    always_allowed: list[str] = field(default_factory=list)
    always_ask: list[str] = field(default_factory=lambda: list(DANGEROUS_TOOLS))


def extract_command(args: dict[str, Any]) -> str:
    for key in _COMMAND_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def extract_path(args: dict[str, Any]) -> str:
    for key in _PATH_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def matches_pattern(value: str, pattern: str) -> bool:
    """Glob-lite match: ``*`` spans any run of characters; a pattern
    without ``*`` matches by equality or prefix."""
    if pattern == "*":
        return True
    if "*" in pattern:
        body = ".*".join(re.escape(part) for part in pattern.split("*"))
        return re.fullmatch(body, value, re.DOTALL) is not None
    return value == pattern or value.startswith(pattern)


class PermissionEngine:
    """Decides whether a tool call may run without asking the human."""

    def __init__(
        self,
        config: PermissionConfig | None = None,
        rules: list[PermissionRule] | None = None,
    ) -> None:
        self._config = config or PermissionConfig()
        self._rules: list[PermissionRule] = []
        self._session_allowed: set[str] = set()
        self._session_denied: set[str] = set()
        for rule in rules or []:
            self.add_rule(rule)

    @property
    def config(self) -> PermissionConfig:
        return self._config

    @property
    def rules(self) -> list[PermissionRule]:
        return list(self._rules)

    # ── Evaluation ──

    def check(self, request: PermissionRequest) -> PermissionDecision:
        """Evaluate a request against session memory, config and rules."""
        args = request.args if isinstance(request.args, dict) else {}
        tool = request.tool
        key = self.build_key(request)

        if key in self._session_allowed:
            return PermissionDecision(
                allowed=True, reason="Session allow rule",
                source=DecisionSource.SESSION,
            )
        if key in self._session_denied:
            return PermissionDecision(
                allowed=False, reason="Session deny rule",
                source=DecisionSource.SESSION,
            )

        if tool in self._config.always_allowed:
            return PermissionDecision(
                allowed=True, reason="Always allowed",
                source=DecisionSource.ALWAYS_ALLOWED,
            )

        if self._config.allow_read_only and tool in READ_ONLY_TOOLS:
            return PermissionDecision(
                allowed=True, reason="Read-only operation",
                source=DecisionSource.READ_ONLY,
            )

        for rule in self._rules:
            if self._matches_rule(tool, args, rule):
                rule.usage_count += 1
                logger.debug(
                    "Permission rule hit tool=%s action=%s path=%s decision=%s",
                    rule.tool, rule.action, rule.path_pattern, rule.decision.value,
                )
                return PermissionDecision(
                    allowed=rule.decision == RuleDecision.ALLOW,
                    reason=f"Matched rule: {self.describe_rule(rule)}",
                    rule=rule,
                    source=DecisionSource.RULE,
                )

        if tool in self._config.always_ask:
            return PermissionDecision(
                allowed=False, reason="Requires confirmation",
                source=DecisionSource.CONFIRM,
            )

        default = self._config.default_decision
        if default == DefaultDecision.ALLOW:
            return PermissionDecision(allowed=True, reason="Default allow")
        if default == DefaultDecision.DENY:
            return PermissionDecision(allowed=False, reason="Default deny")
        return PermissionDecision(
            allowed=False, reason="Ask user", source=DecisionSource.CONFIRM,
        )

    # ── Recording ──

    def record_decision(
        self,
        request: PermissionRequest,
        allowed: bool,
        remember_for_session: bool = False,
        persistent: bool = False,
    ) -> PermissionRule | None:
        """Remember a human decision.

        Returns the persistent rule that was created, if any; the caller
        is responsible for flushing it to the rule store.
        """
        if not (remember_for_session or persistent):
            return None

        key = self.build_key(request)
        if allowed:
            self._session_allowed.add(key)
            self._session_denied.discard(key)
        else:
            self._session_denied.add(key)
            self._session_allowed.discard(key)
        logger.info(
            "Permission remembered key=%s allowed=%s persistent=%s",
            key, allowed, persistent,
        )

        if not persistent:
            return None
        args = request.args if isinstance(request.args, dict) else {}
        rule = PermissionRule(
            tool=request.tool,
            action=self._action_of(args),
            path_pattern=extract_path(args) or None,
            decision=RuleDecision.ALLOW if allowed else RuleDecision.DENY,
            usage_count=1,
            persistent=True,
        )
        self.add_rule(rule)
        return rule

    def add_rule(self, rule: PermissionRule) -> None:
        """Append a rule, replacing any rule with the same key."""
        self._rules = [r for r in self._rules if r.key != rule.key]
        self._rules.append(rule)

    def remove_rule(self, index: int) -> PermissionRule | None:
        if 0 <= index < len(self._rules):
            return self._rules.pop(index)
        return None

    def clear_rules(self) -> None:
        self._rules = []

    def load_rules(self, rules: list[PermissionRule]) -> None:
        """Merge rules from durable storage, preserving their order."""
        for rule in rules:
            self.add_rule(rule)
        logger.debug("Permission rules loaded: %d (total %d)", len(rules), len(self._rules))

    def persistent_rules(self) -> list[PermissionRule]:
        return [replace(r) for r in self._rules if r.persistent]

    def clear_session(self) -> None:
        self._session_allowed.clear()
        self._session_denied.clear()

    def reset(self) -> None:
        """Drop session memory and session-scoped rules."""
        self.clear_session()
        self._rules = [r for r in self._rules if r.persistent]

    def session_permissions(self) -> dict[str, list[str]]:
        return {
            "allowed": sorted(self._session_allowed),
            "denied": sorted(self._session_denied),
        }

    def update_config(self, **changes: Any) -> None:
        self._config = replace(self._config, **changes)

    # ── Helpers ──

    @staticmethod
    def build_key(request: PermissionRequest) -> str:
        """Session-memory key: tool plus command prefix or path."""
        args = request.args if isinstance(request.args, dict) else {}
        parts = [request.tool]
        command = extract_command(args)
        if command:
            parts.append(command.split()[0])
        else:
            path = extract_path(args)
            if path:
                parts.append(path)
        return ":".join(parts)

    @staticmethod
    def describe_rule(rule: PermissionRule) -> str:
        text = rule.tool
        if rule.action:
            text += f":{rule.action}"
        if rule.path_pattern:
            text += f" {rule.path_pattern}"
        return text

    @staticmethod
    def _action_of(args: dict[str, Any]) -> str | None:
        command = extract_command(args)
        return command.split()[0] if command else None

    @staticmethod
    def _matches_rule(tool: str, args: dict[str, Any], rule: PermissionRule) -> bool:
        if rule.tool != tool and rule.tool != "*":
            return False
        if rule.action:
            command = extract_command(args)
            if not command or not matches_pattern(command, rule.action):
                return False
        if rule.path_pattern:
            path = extract_path(args)
            if not path or not matches_pattern(path, rule.path_pattern):
                return False
        return True
