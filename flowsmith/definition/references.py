"""Resolve a step's ``uses`` reference to a template, task or checklist file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml

from ..config import DefinitionsConfig
from ..contracts import ResolvedReference
from ..errors import DefinitionError
from .loader import load_yaml

logger = logging.getLogger(__name__)


class ReferenceResolver:
    """Look up ``uses`` names in the configured directories.

    Templates are only tried for names ending in ``-tmpl`` or containing
    ``template``. Then tasks (``.yaml`` before ``.md``), then checklists.
    """

    def __init__(
        self,
        templates_path: Optional[str | Path] = None,
        tasks_path: Optional[str | Path] = None,
        checklists_path: Optional[str | Path] = None,
    ) -> None:
        self.templates_path = Path(templates_path) if templates_path else None
        self.tasks_path = Path(tasks_path) if tasks_path else None
        self.checklists_path = Path(checklists_path) if checklists_path else None

    @classmethod
    def from_config(cls, settings: DefinitionsConfig) -> Optional["ReferenceResolver"]:
        if not (settings.templates_path or settings.tasks_path or settings.checklists_path):
            return None
        return cls(settings.templates_path, settings.tasks_path, settings.checklists_path)

    def _candidates(self, ref: str) -> list[tuple[str, Path]]:
        candidates = []
        if self.templates_path and (ref.endswith("-tmpl") or "template" in ref):
            candidates.append(("template", self.templates_path / f"{ref}.yaml"))
        if self.tasks_path:
            candidates.append(("task", self.tasks_path / f"{ref}.yaml"))
            candidates.append(("task", self.tasks_path / f"{ref}.md"))
        if self.checklists_path:
            candidates.append(("checklist", self.checklists_path / f"{ref}.md"))
        return candidates

    def resolve(self, ref: str) -> ResolvedReference:
        """Return the first matching file. Raises :class:`DefinitionError` if none."""
        for kind, path in self._candidates(ref):
            if not path.is_file():
                continue
            text = path.read_text(encoding="utf-8")
            if path.suffix == ".yaml":
                try:
                    content = load_yaml(text)
                except yaml.YAMLError as exc:
                    raise DefinitionError(f"invalid YAML in {path}: {exc}") from exc
            else:
                content = text
            logger.debug(f"Resolved '{ref}' to {kind} {path}")
            return ResolvedReference(ref=ref, kind=kind, path=str(path), content=content)
        raise DefinitionError(
            f"could not resolve reference '{ref}' as template, task or checklist"
        )
