"""YAML configuration loader.

An alternative to STEWARD_* env vars. Every section is optional; keys
left out keep their EngineConfig defaults.

Example YAML:
    engine:
      max_iterations: 30
      system_prompt: |
        You are a careful coding assistant.
      log_level: DEBUG

    permissions:
      default_decision: ask        # ask | allow | deny
      allow_read_only: true
      always_allowed: [list_dir]
      always_ask: [bash, write_file, edit_file, delete_file]
      rules:
        - tool: bash
          action: "git *"
          decision: allow
        - tool: write_file
          path_pattern: "/tmp/*"
          decision: allow

    tasks:
      max_completed: 50
      cleanup_interval_seconds: 300

    history:
      max_visible_collapsed: 3
      truncate_threshold: 500
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, _parse_default_decision
from .models import PermissionRule, RuleDecision

logger = logging.getLogger(__name__)


@dataclass
class StewardConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    # Rules declared inline in the YAML file. These are configuration,
    # not learned decisions, so they are never written to the rule file.
    rules: list[PermissionRule] = field(default_factory=list)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        logger.warning("YAML section %r is not a mapping; ignoring", name)
        return {}
    return value


def _str_list(value: Any, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def _parse_rule(entry: Any) -> PermissionRule | None:
    if not isinstance(entry, dict) or not entry.get("tool"):
        logger.warning("Skipping malformed permission rule in YAML: %r", entry)
        return None
    decision_raw = str(entry.get("decision", "allow")).strip().lower()
    try:
        decision = RuleDecision(decision_raw)
    except ValueError:
        logger.warning(
            "Skipping rule for %s: unknown decision %r", entry.get("tool"), decision_raw,
        )
        return None
    path_pattern = entry.get("path_pattern", entry.get("pathPattern"))
    return PermissionRule(
        tool=str(entry["tool"]),
        decision=decision,
        action=str(entry["action"]) if entry.get("action") else None,
        path_pattern=str(path_pattern) if path_pattern else None,
        persistent=False,
    )


def parse_config(raw: dict[str, Any]) -> StewardConfig:
    """Build a StewardConfig from an already-parsed mapping."""
    defaults = EngineConfig()
    engine_raw = _section(raw, "engine")
    perms_raw = _section(raw, "permissions")
    tasks_raw = _section(raw, "tasks")
    history_raw = _section(raw, "history")

    engine = EngineConfig(
        max_iterations=int(engine_raw.get("max_iterations", defaults.max_iterations)),
        system_prompt=engine_raw.get("system_prompt") or defaults.system_prompt,
        require_permission=bool(
            engine_raw.get("require_permission", defaults.require_permission)
        ),
        default_decision=_parse_default_decision(
            str(perms_raw.get("default_decision", defaults.default_decision.value))
        ),
        allow_read_only=bool(perms_raw.get("allow_read_only", defaults.allow_read_only)),
        always_allowed=_str_list(perms_raw.get("always_allowed"), defaults.always_allowed),
        always_ask=_str_list(perms_raw.get("always_ask"), defaults.always_ask),
        project_dir=engine_raw.get("project_dir") or defaults.project_dir,
        max_completed_tasks=int(
            tasks_raw.get("max_completed", defaults.max_completed_tasks)
        ),
        task_cleanup_interval_seconds=float(
            tasks_raw.get(
                "cleanup_interval_seconds", defaults.task_cleanup_interval_seconds,
            )
        ),
        max_visible_tool_uses=int(
            history_raw.get("max_visible_collapsed", defaults.max_visible_tool_uses)
        ),
        tool_result_truncate_chars=int(
            history_raw.get("truncate_threshold", defaults.tool_result_truncate_chars)
        ),
        log_level=str(engine_raw.get("log_level", defaults.log_level)),
        log_file=engine_raw.get("log_file") or defaults.log_file,
    )

    rules: list[PermissionRule] = []
    for entry in perms_raw.get("rules") or []:
        rule = _parse_rule(entry)
        if rule is not None:
            rules.append(rule)

    return StewardConfig(engine=engine, rules=rules)


def load_yaml_config(path: str | Path) -> StewardConfig:
    """Load and parse a YAML config file.

    A missing, unreadable or malformed file yields the defaults; the
    problem is logged as a warning rather than raised.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.is_file(),
    )
    if not path.is_file():
        logger.warning("load_yaml_config: %s not found; using defaults", path)
        return StewardConfig()
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.warning("load_yaml_config: YAML parse error in %s: %s", path, exc)
        return StewardConfig()
    except OSError as exc:
        logger.warning("load_yaml_config: cannot read %s: %s", path, exc)
        return StewardConfig()

    if not isinstance(raw, dict):
        logger.warning("load_yaml_config: %s is not a mapping; using defaults", path)
        return StewardConfig()

    try:
        config = parse_config(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("load_yaml_config: invalid value in %s: %s", path, exc)
        return StewardConfig()

    logger.info(
        "Parsed YAML config %s: sections=%s rules=%d",
        path.name,
        ", ".join(sorted(raw)) if raw else "(empty)",
        len(config.rules),
    )
    return config
