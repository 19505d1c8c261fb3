"""Task template registry.

Templates live as YAML files in ``settings.templates_dir``. A file may hold
the template at the top level or under a ``task_template:`` key. Lookup is by
template id, optionally pinned to a version:

    business_onboarding.yaml          -> id business_onboarding, any version
    business_onboarding@2.0.0.yaml    -> id business_onboarding, version 2.0.0

When no version is requested the highest version found wins.
"""

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from errors import ConfigurationError, PhaseDependencyError, TemplateNotFoundError
from models.templates import TaskTemplate

logger = structlog.get_logger(__name__)


def _version_key(version: str) -> tuple[Any, ...]:
    parts: list[Any] = []
    for piece in version.split("."):
        parts.append((0, int(piece)) if piece.isdigit() else (1, piece))
    return tuple(parts)


def validate_phases(template: TaskTemplate) -> None:
    """Check phase ordering and ids before anything runs.

    Every ``depends_on`` entry must name an *earlier* phase, so declared order
    is always a valid execution order and cycles are impossible.

    Raises:
        PhaseDependencyError: Duplicate phase or subtask ids, or a self,
            forward or unknown dependency.
    """
    seen_phases: set[str] = set()
    all_ids = {phase.id for phase in template.phases}
    seen_subtasks: set[str] = set()

    for phase in template.phases:
        if phase.id in seen_phases:
            raise PhaseDependencyError(f"Duplicate phase id '{phase.id}' in {template.id}")

        for dependency in phase.depends_on:
            if dependency == phase.id:
                raise PhaseDependencyError(f"Phase '{phase.id}' depends on itself")
            if dependency not in all_ids:
                raise PhaseDependencyError(
                    f"Phase '{phase.id}' depends on unknown phase '{dependency}'"
                )
            if dependency not in seen_phases:
                raise PhaseDependencyError(
                    f"Phase '{phase.id}' depends on later phase '{dependency}'"
                )

        for subtask in phase.subtasks:
            if subtask.id in seen_subtasks:
                raise PhaseDependencyError(
                    f"Duplicate subtask id '{subtask.id}' in {template.id}"
                )
            seen_subtasks.add(subtask.id)

        seen_phases.add(phase.id)


def parse_template(raw: Any, source: str = "<memory>") -> TaskTemplate:
    """Validate a decoded YAML/JSON document into a TaskTemplate.

    Raises:
        ConfigurationError: If the document does not describe a valid template.
    """
    if isinstance(raw, dict) and "task_template" in raw:
        raw = raw["task_template"]
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Template document {source} is not a mapping")
    try:
        template = TaskTemplate.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid task template {source}: {e}") from e
    validate_phases(template)
    return template


class TemplateRegistry:
    """Loads and caches task templates from a directory of YAML files.

    Templates are immutable once loaded, so the cache is never invalidated;
    editing a file requires a restart (in-flight contexts keep their own
    snapshot regardless).
    """

    def __init__(self, templates_dir: str | Path) -> None:
        self.templates_dir = Path(templates_dir)
        self._cache: dict[tuple[str, str], TaskTemplate] = {}

    def _candidates(self, template_id: str) -> list[Path]:
        if not self.templates_dir.is_dir():
            return []
        found: list[Path] = []
        for suffix in (".yaml", ".yml"):
            found.extend(self.templates_dir.glob(f"{template_id}{suffix}"))
            found.extend(self.templates_dir.glob(f"{template_id}@*{suffix}"))
        return found

    def _read(self, path: Path) -> TaskTemplate:
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error("template_parse_failed", path=str(path), error=str(e))
            raise ConfigurationError(f"Malformed template file {path.name}: {e}") from e
        return parse_template(raw, source=path.name)

    def register(self, template: TaskTemplate) -> None:
        """Add an in-memory template (validated like a file-backed one)."""
        validate_phases(template)
        self._cache[(template.id, template.version)] = template

    def load(self, template_id: str, version: str | None = None) -> TaskTemplate:
        """Return the template for ``template_id`` (and ``version`` if given).

        Raises:
            TemplateNotFoundError: No file or registered template matches.
            ConfigurationError: A matching file is malformed.
        """
        if version is not None and (template_id, version) in self._cache:
            return self._cache[(template_id, version)]

        for path in self._candidates(template_id):
            template = self._read(path)
            if template.id != template_id:
                logger.warning(
                    "template_id_mismatch",
                    path=str(path),
                    expected=template_id,
                    found=template.id,
                )
                continue
            self._cache.setdefault((template.id, template.version), template)

        matches = [
            template
            for (cached_id, cached_version), template in self._cache.items()
            if cached_id == template_id and (version is None or cached_version == version)
        ]
        if not matches:
            logger.warning("template_not_found", template_id=template_id, version=version)
            raise TemplateNotFoundError(template_id, version)

        template = max(matches, key=lambda t: _version_key(t.version))
        logger.debug("template_loaded", template_id=template.id, version=template.version)
        return template

    def list_templates(self) -> list[str]:
        """Template ids available on disk or registered in memory."""
        ids = {template_id for template_id, _ in self._cache}
        if self.templates_dir.is_dir():
            for path in self.templates_dir.iterdir():
                if path.suffix in (".yaml", ".yml"):
                    ids.add(path.stem.split("@", 1)[0])
        return sorted(ids)
