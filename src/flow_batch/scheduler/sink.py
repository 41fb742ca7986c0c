"""Output sinks for completed task results."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol


class OutputSink(Protocol):
    """Protocol implemented by result writers."""

    def exists(self, name: str) -> bool:
        """Return whether an artifact with this name is already present."""

    def write(self, name: str, content: str) -> Path:
        """Write the artifact, creating parent structure; raise ``OSError`` on failure."""


class FileOutputSink:
    """Writes task results as UTF-8 files under one output directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def resolve(self, name: str) -> Path:
        relative = Path(name)
        if not name.strip() or relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Output name must be a relative path inside the output dir: {name!r}")
        return self.root / relative

    def exists(self, name: str) -> bool:
        return self.resolve(name).exists()

    def write(self, name: str, content: str) -> Path:
        path = self.resolve(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, "utf-8")
        return path
