"""
Sandboxed file tools: file.read, file.write, file.edit, file.list, file.search.

All paths go through crabclaw.sandbox.resolve_path first, so a path that
escapes the workspace is rejected before anything touches the disk.
Large reads, listings and search results are cut off with an explicit
marker instead of being dropped silently.
"""

import logging
from pathlib import Path

from crabclaw.config import ToolConfig
from crabclaw.errors import (
    EditTargetNotFoundError,
    EmptyInputError,
    PathNotFoundError,
    ToolExecutionError,
)
from crabclaw.sandbox import relative_display, resolve_path

logger = logging.getLogger(__name__)

SKIPPED_DIRS = {".git", ".crabclaw", "__pycache__", "node_modules", ".venv"}


def truncation_marker(shown: int, total: int, unit: str) -> str:
    return f"[truncated: showing {shown} of {total} {unit}]"


class FileTools:
    """File operations bound to one workspace root."""

    def __init__(self, workspace: str | Path, config: ToolConfig | None = None) -> None:
        self.workspace = Path(workspace).resolve()
        self.config = config or ToolConfig()

    def _resolve(self, path: str) -> Path:
        return resolve_path(self.workspace, path)

    def _display(self, path: Path) -> str:
        return relative_display(self.workspace, path)

    def read(self, path: str) -> str:
        target = self._resolve(path)
        if not target.exists():
            raise PathNotFoundError(f"file not found: {path}", path=path)
        if target.is_dir():
            raise ToolExecutionError(f"path is a directory: {path}", path=path)
        text = target.read_text(encoding="utf-8", errors="replace")
        limit = self.config.max_read_chars
        if len(text) > limit:
            logger.warning(f"Truncating read of {path}: {len(text)} chars > {limit}")
            return text[:limit] + "\n" + truncation_marker(limit, len(text), "characters")
        return text

    def write(self, path: str, content: str) -> str:
        target = self._resolve(path)
        if target.is_dir():
            raise ToolExecutionError(f"path is a directory: {path}", path=path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.info(f"Wrote {len(content)} chars to {self._display(target)}")
        return f"wrote {len(content)} characters to {self._display(target)}"

    def edit(self, path: str, old: str, new: str, replace_all: bool = False) -> str:
        """Exact substring replacement; first occurrence unless replace_all."""
        if not old:
            raise EmptyInputError("old text must not be empty", path=path)
        target = self._resolve(path)
        if not target.is_file():
            raise PathNotFoundError(f"file not found: {path}", path=path)
        text = target.read_text(encoding="utf-8")
        count = text.count(old)
        if count == 0:
            raise EditTargetNotFoundError(f"old text not found in {path}", path=path)
        if replace_all:
            updated = text.replace(old, new)
            replaced = count
        else:
            updated = text.replace(old, new, 1)
            replaced = 1
        target.write_text(updated, encoding="utf-8")
        return f"replaced {replaced} occurrence(s) in {self._display(target)}"

    def list(self, path: str = ".") -> str:
        target = self._resolve(path)
        if not target.exists():
            raise PathNotFoundError(f"path not found: {path}", path=path)
        if not target.is_dir():
            return self._display(target)
        entries = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        names = [f"{p.name}/" if p.is_dir() else p.name for p in entries]
        if not names:
            return "(empty directory)"
        limit = self.config.max_list_entries
        if len(names) > limit:
            return "\n".join(names[:limit]) + "\n" + truncation_marker(limit, len(names), "entries")
        return "\n".join(names)

    def search(self, pattern: str, path: str = ".") -> str:
        """Case-insensitive substring search through text files under `path`."""
        if not pattern:
            raise EmptyInputError("search pattern must not be empty")
        base = self._resolve(path)
        if not base.exists():
            raise PathNotFoundError(f"path not found: {path}", path=path)
        needle = pattern.casefold()
        files = [base] if base.is_file() else sorted(self._walk(base))
        matches: list[str] = []
        total = 0
        limit = self.config.max_search_matches
        for file in files:
            try:
                lines = file.read_text(encoding="utf-8").splitlines()
            except (UnicodeDecodeError, OSError) as e:
                logger.debug(f"Skipping unreadable file {file}: {e}")
                continue
            for lineno, line in enumerate(lines, start=1):
                if needle in line.casefold():
                    total += 1
                    if len(matches) < limit:
                        matches.append(f"{self._display(file)}:{lineno}: {line.strip()}")
        if not matches:
            return "(no matches)"
        if total > limit:
            matches.append(truncation_marker(limit, total, "matches"))
        return "\n".join(matches)

    def _walk(self, base: Path):
        for child in base.iterdir():
            if child.is_symlink():
                continue
            if child.is_dir():
                if child.name in SKIPPED_DIRS:
                    continue
                yield from self._walk(child)
            elif child.is_file():
                yield child
