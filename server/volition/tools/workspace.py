from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from volition.tools.runtime import FileResult


class WorkspaceAccessError(ValueError):
    pass


@dataclass
class WorkspaceBackend:
    """READ_FILE: reads UTF-8 text from inside a sandbox directory."""

    root: Path
    max_chars: int = 20000

    def resolve(self, relative: str) -> Path:
        candidate = (relative or "").strip().replace("\\", "/")
        if not candidate:
            raise WorkspaceAccessError("empty path")
        if candidate.startswith("/") or ".." in Path(candidate).parts:
            raise WorkspaceAccessError(f"path escapes workspace: {relative!r}")

        root = self.root.resolve()
        resolved = (root / candidate).resolve()
        if resolved != root and root not in resolved.parents:
            raise WorkspaceAccessError(f"path escapes workspace: {relative!r}")
        return resolved

    def read(self, relative: str) -> FileResult:
        path = self.resolve(relative)
        if not path.is_file():
            raise WorkspaceAccessError(f"no such file: {relative!r}")
        text = path.read_text(encoding="utf-8", errors="replace")
        truncated = len(text) > self.max_chars
        return FileResult(
            path=path.relative_to(self.root.resolve()).as_posix(),
            content=text[: self.max_chars],
            truncated=truncated,
        )

    async def __call__(self, arg: str, reason: str) -> FileResult:
        return await asyncio.to_thread(self.read, arg)
