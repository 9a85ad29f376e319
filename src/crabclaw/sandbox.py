"""
Workspace sandbox.

Every file-system tool resolves its paths through resolve_path(). A path
is accepted only if it lands inside the workspace root, both lexically and
after symlinks are followed. Lexical rejection happens before any
file-system call is made.
"""

import os
import unicodedata
from pathlib import Path

from crabclaw.errors import EmptyInputError, SandboxViolationError


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _lexical_variants(raw: str) -> list[str]:
    # Compatibility forms (fullwidth dots and slashes) and backslash separators
    # must not smuggle a traversal past the check.
    variants = [raw]
    for candidate in (unicodedata.normalize("NFKC", raw), raw.replace("\\", "/")):
        if candidate not in variants:
            variants.append(candidate)
    nfkc_slashed = unicodedata.normalize("NFKC", raw).replace("\\", "/")
    if nfkc_slashed not in variants:
        variants.append(nfkc_slashed)
    return variants


def resolve_path(root: str | Path, raw: str) -> Path:
    """
    Resolve `raw` (relative or absolute) against the workspace root.

    Raises SandboxViolationError when the result would escape the root,
    EmptyInputError for an empty path.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise EmptyInputError("path must not be empty")
    if "\x00" in raw:
        raise SandboxViolationError("path contains a NUL byte", path=raw)

    root_path = Path(os.path.abspath(root))
    for variant in _lexical_variants(raw):
        lexical = Path(os.path.normpath(os.path.join(root_path, variant)))
        if not _is_within(lexical, root_path):
            raise SandboxViolationError(f"path escapes the workspace: {raw}", path=raw)

    target = Path(os.path.normpath(os.path.join(root_path, raw)))
    real_root = root_path.resolve()
    real_target = target.resolve()
    if not _is_within(real_target, real_root):
        raise SandboxViolationError(f"path escapes the workspace via symlink: {raw}", path=raw)
    return real_target


def relative_display(root: str | Path, path: Path) -> str:
    """Workspace-relative form of a resolved path, for tool output."""
    real_root = Path(root).resolve()
    try:
        rel = path.relative_to(real_root)
    except ValueError:
        return str(path)
    return str(rel) if str(rel) != "." else "."
