"""Lookup table resolving default agents for steps that omit ``agent``."""

from __future__ import annotations

import fnmatch
import logging
from typing import Mapping, Optional

from ..constants import DEFAULT_STEP_AGENTS, FALLBACK_AGENT

logger = logging.getLogger(__name__)


class AgentInferenceTable:
    """Map step-name patterns to agent ids with a single fallback rule.

    Patterns use ``fnmatch`` syntax so ``"*_review"`` covers every review
    step. Exact names are checked first, then patterns in insertion order.
    """

    def __init__(
        self,
        entries: Optional[Mapping[str, str]] = None,
        fallback: str = FALLBACK_AGENT,
    ) -> None:
        self._entries: dict[str, str] = dict(
            DEFAULT_STEP_AGENTS if entries is None else entries
        )
        self.fallback = fallback

    @classmethod
    def with_overrides(
        cls, overrides: Mapping[str, str], fallback: Optional[str] = None
    ) -> "AgentInferenceTable":
        """Return the default table updated with ``overrides``."""
        entries = dict(DEFAULT_STEP_AGENTS)
        entries.update(overrides)
        return cls(entries, fallback=fallback or FALLBACK_AGENT)

    @property
    def entries(self) -> dict[str, str]:
        return dict(self._entries)

    def lookup(self, step_name: str) -> Optional[str]:
        """Return the agent for ``step_name`` or ``None`` when nothing matches."""
        if step_name in self._entries:
            return self._entries[step_name]
        for pattern, agent_id in self._entries.items():
            if fnmatch.fnmatchcase(step_name, pattern):
                return agent_id
        return None

    def resolve(self, step_name: str) -> str:
        agent_id = self.lookup(step_name)
        if agent_id is None:
            logger.warning(
                f"No default agent for step '{step_name}', using '{self.fallback}'"
            )
            return self.fallback
        return agent_id
