"""Definition lookup by id, backed by a directory of YAML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from ..config import FlowsmithConfig
from ..contracts import WorkflowDefinition
from ..errors import DefinitionError
from .inference import AgentInferenceTable
from .parser import DefinitionParser, load_definition
from .references import ReferenceResolver

logger = logging.getLogger(__name__)

_SUFFIXES = (".yaml", ".yml")


class DefinitionLibrary:
    """Parse-once cache of workflow definitions.

    Definitions are either registered directly or loaded lazily from
    ``<workflows_path>/<definition_id>.yaml``.
    """

    def __init__(
        self,
        workflows_path: Optional[str | Path] = None,
        parser: Optional[DefinitionParser] = None,
    ) -> None:
        self.workflows_path = Path(workflows_path) if workflows_path else None
        self.parser = parser or DefinitionParser()
        self._definitions: Dict[str, WorkflowDefinition] = {}

    @classmethod
    def from_config(cls, config: FlowsmithConfig) -> "DefinitionLibrary":
        settings = config.definitions
        parser = DefinitionParser(
            inference=AgentInferenceTable.with_overrides(
                settings.agent_defaults, fallback=settings.fallback_agent
            ),
            default_timeout_ms=config.engine.default_timeout_ms,
            known_agents=settings.known_agents,
            resolver=ReferenceResolver.from_config(settings),
        )
        return cls(settings.workflows_path, parser=parser)

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        self._definitions[definition.id] = definition
        return definition

    def load_file(self, path: str | Path) -> WorkflowDefinition:
        """Parse ``path`` and register the result under its workflow id."""
        return self.register(load_definition(path, parser=self.parser))

    def get(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(definition_id)
        if definition is not None:
            return definition

        path = self._path_for(definition_id)
        if path is None:
            raise DefinitionError(f"workflow definition '{definition_id}' not found")
        definition = load_definition(path, parser=self.parser)
        # The cache is keyed by the requested id so later lookups hit it even
        # when the document declares a different id.
        self._definitions[definition_id] = definition
        return definition

    def exists(self, definition_id: str) -> bool:
        return definition_id in self._definitions or self._path_for(definition_id) is not None

    def list_available(self) -> list[str]:
        ids = set(self._definitions)
        if self.workflows_path and self.workflows_path.is_dir():
            for path in self.workflows_path.iterdir():
                if path.suffix in _SUFFIXES and path.is_file():
                    ids.add(path.stem)
        else:
            logger.debug(f"Workflows directory {self.workflows_path} not available")
        return sorted(ids)

    def _path_for(self, definition_id: str) -> Optional[Path]:
        if self.workflows_path is None:
            return None
        for suffix in _SUFFIXES:
            candidate = self.workflows_path / f"{definition_id}{suffix}"
            if candidate.is_file():
                return candidate
        return None
