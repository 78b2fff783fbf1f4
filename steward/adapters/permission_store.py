"""Persistent storage for "always" permission rules.

Rules live at two levels:
- Global: ~/.steward/permissions.json (applies to all projects)
- Project: <project>/.steward/permissions.json

Both files hold an ordered JSON list of camelCase rule records. Loading
merges global then project (a project rule with the same key replaces
the global one). Saving writes to the project file when a project is
known, otherwise to the global file; removal edits whichever file the
rule was loaded from.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from steward.engine.models import PermissionRule
from steward.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".steward"
FILENAME = "permissions.json"

SCOPE_GLOBAL = "global"
SCOPE_PROJECT = "project"


class PermissionRuleStore:
    """Load and save persistent permission rules.

    Every loaded rule is tagged with the scope of the file it came from.
    Writes only ever touch one file and only that file's own rules, so a
    global rule is never copied into a project file.
    """

    def __init__(
        self,
        project_dir: Path | str | None = None,
        *,
        global_dir: Path | None = None,
    ) -> None:
        self._global_path = (global_dir or GLOBAL_DIR) / FILENAME
        project_path = Path(project_dir) / ".steward" / FILENAME if project_dir else None
        if project_path == self._global_path:
            project_path = None
        self._project_path = project_path

    @property
    def global_path(self) -> Path:
        return self._global_path

    @property
    def project_path(self) -> Path | None:
        return self._project_path

    @property
    def target_scope(self) -> str:
        """Scope that save() writes to."""
        return SCOPE_PROJECT if self._project_path else SCOPE_GLOBAL

    @property
    def target_path(self) -> Path:
        """File that save() writes to."""
        return self.path_for(self.target_scope)

    def path_for(self, scope: str | None) -> Path:
        if scope == SCOPE_PROJECT and self._project_path:
            return self._project_path
        if scope == SCOPE_GLOBAL:
            return self._global_path
        return self.target_path

    def load(self) -> list[PermissionRule]:
        """Load all rules (global + project merged). Never raises."""
        merged: dict[tuple, PermissionRule] = {}
        sources = [(SCOPE_GLOBAL, self._global_path)]
        if self._project_path:
            sources.append((SCOPE_PROJECT, self._project_path))
        for scope, path in sources:
            for rule in self._load_file(path):
                rule.scope = scope
                merged[rule.key] = rule
        rules = list(merged.values())
        logger.debug("Loaded %d persistent permission rule(s)", len(rules))
        return rules

    def save(self, rules: list[PermissionRule]) -> bool:
        """Write the target file's persistent rules. Returns False on I/O error.

        Rules tagged with another scope are left out; new (untagged)
        rules are written to the target file.
        """
        scope = self.target_scope
        own = [r for r in rules if r.persistent and r.scope in (None, scope)]
        return self._write(self.target_path, own)

    def remove(self, rule: PermissionRule) -> bool:
        """Delete ``rule`` from the file it was loaded from.

        Returns False when the rule is not in that file or the write fails.
        """
        path = self.path_for(rule.scope)
        current = self._load_file(path)
        kept = [r for r in current if r.key != rule.key]
        if len(kept) == len(current):
            logger.warning("Rule %s not found in %s", rule.key, path)
            return False
        return self._write(path, kept)

    def clear(self) -> bool:
        return self._write(self.target_path, [])

    @staticmethod
    def _write(path: Path, rules: list[PermissionRule]) -> bool:
        payload = [r.to_dict() for r in rules]
        try:
            atomic_write_json(path, payload)
        except OSError:
            logger.warning("Failed to write %s", path, exc_info=True)
            return False
        logger.info("Saved %d permission rule(s) to %s", len(payload), path)
        return True

    @staticmethod
    def _load_file(path: Path) -> list[PermissionRule]:
        """Parse one rule file. Missing or malformed files yield no rules."""
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError):
            logger.warning("Failed to load %s", path)
            return []
        if not isinstance(data, list):
            logger.warning("Ignoring %s: expected a list of rules", path)
            return []
        rules: list[PermissionRule] = []
        for entry in data:
            if not isinstance(entry, dict):
                logger.warning("Skipping malformed rule in %s: %r", path, entry)
                continue
            try:
                rules.append(PermissionRule.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed rule in %s: %s", path, exc)
        return rules
