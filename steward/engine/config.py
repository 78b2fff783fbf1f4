"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via STEWARD_* env vars,
or load a YAML file with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .models import DefaultDecision
from .permissions import DANGEROUS_TOOLS, PermissionConfig
from .tasks import DEFAULT_CLEANUP_INTERVAL_SECONDS, DEFAULT_MAX_COMPLETED_TASKS
from .tool_history import DEFAULT_MAX_VISIBLE_COLLAPSED, TRUNCATE_THRESHOLD

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_list(name: str) -> list[str] | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_default_decision(value: str) -> DefaultDecision:
    try:
        return DefaultDecision(value.strip().lower())
    except ValueError:
        logger.warning("Unknown default permission decision %r; using 'ask'", value)
        return DefaultDecision.ASK


@dataclass
class EngineConfig:
    """Turn engine configuration."""

    # Turn orchestration
    # Upper bound on provider round-trips per turn (guards tool-call loops).
    max_iterations: int = 50
    system_prompt: str | None = None
    # When False, every tool runs without consulting the permission engine.
    require_permission: bool = True

    # Permission engine
    default_decision: DefaultDecision = DefaultDecision.ASK
    allow_read_only: bool = False
    always_allowed: list[str] = field(default_factory=list)
    always_ask: list[str] = field(default_factory=lambda: list(DANGEROUS_TOOLS))
    # Project directory for the persistent rule file (.steward/permissions.json).
    project_dir: str | None = None

    # Background tasks
    max_completed_tasks: int = DEFAULT_MAX_COMPLETED_TASKS
    task_cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS

    # Tool history
    max_visible_tool_uses: int = DEFAULT_MAX_VISIBLE_COLLAPSED
    tool_result_truncate_chars: int = TRUNCATE_THRESHOLD

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    def permission_config(self) -> PermissionConfig:
        return PermissionConfig(
            default_decision=self.default_decision,
            allow_read_only=self.allow_read_only,
            always_allowed=list(self.always_allowed),
            always_ask=list(self.always_ask),
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from STEWARD_* environment variables."""
        steward_vars = {
            k: v for k, v in os.environ.items() if k.startswith("STEWARD_")
        }
        if steward_vars:
            logger.info(
                "EngineConfig.from_env: STEWARD_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(steward_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no STEWARD_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            max_iterations=int(os.getenv(
                "STEWARD_MAX_ITERATIONS", str(defaults.max_iterations)
            )),
            system_prompt=os.getenv("STEWARD_SYSTEM_PROMPT") or None,
            require_permission=(
                os.getenv("STEWARD_REQUIRE_PERMISSION", "true").lower()
                in _TRUE_VALUES
            ),
            default_decision=_parse_default_decision(
                os.getenv("STEWARD_DEFAULT_DECISION", defaults.default_decision.value)
            ),
            allow_read_only=(
                os.getenv("STEWARD_ALLOW_READ_ONLY", "").lower() in _TRUE_VALUES
            ),
            always_allowed=(
                _env_list("STEWARD_ALWAYS_ALLOWED") or list(defaults.always_allowed)
            ),
            always_ask=(
                _env_list("STEWARD_ALWAYS_ASK")
                if os.getenv("STEWARD_ALWAYS_ASK") is not None
                else list(defaults.always_ask)
            ),
            project_dir=os.getenv("STEWARD_PROJECT_DIR") or None,
            max_completed_tasks=int(os.getenv(
                "STEWARD_MAX_COMPLETED_TASKS", str(defaults.max_completed_tasks)
            )),
            task_cleanup_interval_seconds=float(os.getenv(
                "STEWARD_TASK_CLEANUP_INTERVAL",
                str(defaults.task_cleanup_interval_seconds),
            )),
            max_visible_tool_uses=int(os.getenv(
                "STEWARD_MAX_VISIBLE_TOOL_USES", str(defaults.max_visible_tool_uses)
            )),
            tool_result_truncate_chars=int(os.getenv(
                "STEWARD_TRUNCATE_CHARS", str(defaults.tool_result_truncate_chars)
            )),
            log_level=os.getenv("STEWARD_LOG_LEVEL", defaults.log_level),
            log_file=os.getenv("STEWARD_LOG_FILE") or None,
        )
        logger.info(
            "EngineConfig.from_env: max_iterations=%d default_decision=%s "
            "allow_read_only=%s log_level=%s",
            config.max_iterations, config.default_decision.value,
            config.allow_read_only, config.log_level,
        )
        return config
