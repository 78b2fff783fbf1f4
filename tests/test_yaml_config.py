"""YAML configuration loader."""

from __future__ import annotations

import textwrap

from steward.engine.config import EngineConfig
from steward.engine.models import DefaultDecision, RuleDecision
from steward.engine.yaml_config import load_yaml_config


def _write(tmp_path, body: str):
    path = tmp_path / "steward.yaml"
    path.write_text(textwrap.dedent(body))
    return path


def test_full_config(tmp_path):
    path = _write(tmp_path, """
        engine:
          max_iterations: 12
          system_prompt: be careful
        permissions:
          default_decision: allow
          allow_read_only: true
          always_allowed: [list_dir]
          always_ask: [bash]
          rules:
            - tool: bash
              action: "git *"
              decision: allow
            - tool: write_file
              path_pattern: "/tmp/*"
              decision: deny
        tasks:
          max_completed: 9
          cleanup_interval_seconds: 60
        history:
          max_visible_collapsed: 5
          truncate_threshold: 1000
    """)

    config = load_yaml_config(path)
    engine = config.engine

    assert engine.max_iterations == 12
    assert engine.system_prompt == "be careful"
    assert engine.default_decision == DefaultDecision.ALLOW
    assert engine.allow_read_only is True
    assert engine.always_allowed == ["list_dir"]
    assert engine.always_ask == ["bash"]
    assert engine.max_completed_tasks == 9
    assert engine.task_cleanup_interval_seconds == 60.0
    assert engine.max_visible_tool_uses == 5
    assert engine.tool_result_truncate_chars == 1000

    assert [(r.tool, r.action, r.path_pattern, r.decision) for r in config.rules] == [
        ("bash", "git *", None, RuleDecision.ALLOW),
        ("write_file", None, "/tmp/*", RuleDecision.DENY),
    ]
    assert all(not r.persistent for r in config.rules)


def test_partial_config_keeps_defaults(tmp_path):
    path = _write(tmp_path, """
        engine:
          max_iterations: 3
    """)
    config = load_yaml_config(path)
    assert config.engine.max_iterations == 3
    assert config.engine.always_ask == EngineConfig().always_ask
    assert config.rules == []


def test_missing_file_yields_defaults(tmp_path):
    config = load_yaml_config(tmp_path / "nope.yaml")
    assert config.engine == EngineConfig()
    assert config.rules == []


def test_malformed_yaml_yields_defaults(tmp_path):
    path = _write(tmp_path, "engine: [unclosed\n")
    assert load_yaml_config(path).engine == EngineConfig()


def test_bad_values_yield_defaults(tmp_path):
    path = _write(tmp_path, """
        engine:
          max_iterations: lots
    """)
    assert load_yaml_config(path).engine == EngineConfig()


def test_bad_rules_are_skipped(tmp_path):
    path = _write(tmp_path, """
        permissions:
          rules:
            - tool: bash
              decision: perhaps
            - just a string
            - tool: grep
    """)
    rules = load_yaml_config(path).rules
    assert [(r.tool, r.decision) for r in rules] == [("grep", RuleDecision.ALLOW)]
