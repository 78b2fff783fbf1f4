"""Application wiring and command-line entry point.

create_orchestrator() assembles the engine pieces for a host; main()
inspects engine configuration and manages persisted permission rules.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from steward.adapters.console import ConsolePresenter
from steward.adapters.permission_store import PermissionRuleStore
from steward.engine.callbacks import TurnCallbacks
from steward.engine.config import EngineConfig
from steward.engine.models import PermissionRule
from steward.engine.orchestrator import TurnOrchestrator
from steward.engine.permissions import PermissionEngine
from steward.engine.providers.base import Provider
from steward.engine.tasks import TaskManager
from steward.engine.tool_registry import ToolRegistry
from steward.engine.yaml_config import load_yaml_config
from steward.logging_setup import configure_logging

logger = logging.getLogger(__name__)


def create_orchestrator(
    provider: Provider,
    tools: ToolRegistry,
    *,
    config: EngineConfig | None = None,
    callbacks: TurnCallbacks | None = None,
    rules: list[PermissionRule] | None = None,
    rule_store: PermissionRuleStore | None = None,
) -> TurnOrchestrator:
    """Wire an orchestrator with its permission engine, rule store and
    task manager.

    Persisted rules are loaded from the rule store; ``rules`` (e.g. from
    a YAML file) are added after them.
    """
    config = config or EngineConfig()
    store = rule_store or PermissionRuleStore(config.project_dir)
    permissions = PermissionEngine(config.permission_config(), rules=store.load())
    permissions.load_rules(list(rules or []))
    task_manager = TaskManager(
        max_completed_tasks=config.max_completed_tasks,
        cleanup_interval_seconds=config.task_cleanup_interval_seconds,
    )
    logger.info(
        "Orchestrator wired provider=%s tools=%d rules=%d",
        provider.name, len(tools.catalog()), len(permissions.rules),
    )
    return TurnOrchestrator(
        provider,
        tools,
        config=config,
        permissions=permissions,
        callbacks=callbacks,
        task_manager=task_manager,
        rule_store=store,
    )


def _load_engine_config(config_path: str | None) -> tuple[EngineConfig, list]:
    if config_path:
        parsed = load_yaml_config(config_path)
        return parsed.engine, parsed.rules
    return EngineConfig.from_env(), []


def _render_config(console: Console, config: EngineConfig) -> None:
    table = Table(title="Engine configuration")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("max_iterations", str(config.max_iterations))
    table.add_row("require_permission", str(config.require_permission))
    table.add_row("default_decision", config.default_decision.value)
    table.add_row("allow_read_only", str(config.allow_read_only))
    table.add_row("always_allowed", ", ".join(config.always_allowed) or "-")
    table.add_row("always_ask", ", ".join(config.always_ask) or "-")
    table.add_row("max_completed_tasks", str(config.max_completed_tasks))
    table.add_row(
        "task_cleanup_interval_seconds", f"{config.task_cleanup_interval_seconds:g}",
    )
    table.add_row("max_visible_tool_uses", str(config.max_visible_tool_uses))
    table.add_row("tool_result_truncate_chars", str(config.tool_result_truncate_chars))
    table.add_row("log_level", config.log_level)
    table.add_row("log_file", config.log_file or "~/.steward/logs/steward.log")
    console.print(table)


def main(argv: list[str] | None = None, console: Console | None = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="steward",
        description="Steward: inspect turn-engine settings and permission rules",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: STEWARD_* environment variables)",
    )
    parser.add_argument(
        "--project", metavar="DIR",
        help="Project directory whose .steward/permissions.json to use",
    )
    parser.add_argument(
        "--show-config", action="store_true",
        help="Print the effective engine configuration",
    )
    parser.add_argument(
        "--rules", action="store_true",
        help="List persisted and configured permission rules",
    )
    parser.add_argument(
        "--remove-rule", metavar="N", type=int,
        help="Remove persisted rule number N (1-based, as shown by --rules)",
    )
    parser.add_argument(
        "--clear-rules", action="store_true",
        help="Delete every persisted rule in the target rule file",
    )
    parser.add_argument(
        "--log-level", default=None,
        help="Log level (default: the configured log_level)",
    )
    args = parser.parse_args(argv)

    config, config_rules = _load_engine_config(args.config)
    configure_logging(args.log_level or config.log_level, log_file=config.log_file)
    console = console or Console()
    presenter = ConsolePresenter(console)

    project_dir = args.project or config.project_dir
    store = PermissionRuleStore(Path(project_dir) if project_dir else None)

    did_something = False

    if args.show_config:
        _render_config(console, config)
        did_something = True

    if args.clear_rules:
        if not store.clear():
            console.print(f"[red]Could not write {store.target_path}[/red]")
            return 1
        console.print(f"Cleared permission rules in {store.target_path}")
        did_something = True

    if args.remove_rule is not None:
        engine = PermissionEngine(rules=store.load())
        removed = engine.remove_rule(args.remove_rule - 1)
        if removed is None:
            console.print(f"[red]No persisted rule number {args.remove_rule}[/red]")
            return 1
        path = store.path_for(removed.scope)
        if not store.remove(removed):
            console.print(f"[red]Could not update {path}[/red]")
            return 1
        console.print(
            f"Removed rule: {PermissionEngine.describe_rule(removed)} (from {path})"
        )
        did_something = True

    if args.rules:
        # Persisted rules first so numbering matches --remove-rule.
        engine = PermissionEngine(config.permission_config(), rules=store.load())
        engine.load_rules(config_rules)
        presenter.render_rules(engine.rules)
        did_something = True

    if not did_something:
        parser.print_help(file=sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
