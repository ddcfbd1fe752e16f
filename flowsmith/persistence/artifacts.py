"""Optional storage for artifact content kept outside the instance record."""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from ..config import ArtifactsConfig

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class ArtifactStore(Protocol):
    """Protocol for artifact content backends."""

    async def put(self, instance_id: str, name: str, content: Any) -> str:
        """Store ``content`` and return a reference to it."""

    async def get(self, ref: str) -> Any:
        """Return the content stored under ``ref``."""


class InMemoryArtifactStore(ArtifactStore):
    """Keep artifact content in a dictionary. Intended for tests."""

    def __init__(self) -> None:
        self._content: Dict[str, Any] = {}

    async def put(self, instance_id: str, name: str, content: Any) -> str:
        ref = f"{instance_id}/{name}/{uuid.uuid4().hex}"
        self._content[ref] = content
        return ref

    async def get(self, ref: str) -> Any:
        try:
            return self._content[ref]
        except KeyError:
            raise KeyError(f"artifact content {ref!r} not found") from None


class FileArtifactStore(ArtifactStore):
    """Write each artifact as a JSON file under ``root/<instance_id>/``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _write(self, path: Path, content: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps({"content": content}), encoding="utf-8")
        tmp.replace(path)

    def _read(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))["content"]

    async def put(self, instance_id: str, name: str, content: Any) -> str:
        filename = f"{_UNSAFE.sub('_', name)}-{uuid.uuid4().hex[:8]}.json"
        ref = f"{_UNSAFE.sub('_', instance_id)}/{filename}"
        await asyncio.to_thread(self._write, self.root / ref, content)
        return ref

    async def get(self, ref: str) -> Any:
        return await asyncio.to_thread(self._read, self.root / ref)


def get_artifact_store(config: ArtifactsConfig) -> Optional[ArtifactStore]:
    """Return the configured artifact store, or ``None`` for inline content."""
    if config.backend == "inline":
        return None
    if config.backend == "memory":
        return InMemoryArtifactStore()
    return FileArtifactStore(config.path)
