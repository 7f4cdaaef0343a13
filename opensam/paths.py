"""Workspace containment for every filesystem- and shell-capable tool."""

import os
from pathlib import Path

from .errors import OutsideWorkspaceError


def expand_tilde(path: str) -> Path:
    """Expand a leading ``~/`` to the home directory. Other paths pass through."""
    if path.startswith("~/"):
        return Path.home() / path[2:]
    return Path(path)


def _canonicalize(candidate: Path) -> Path:
    """Return the real absolute form of *candidate*, resolving symlinks.

    For a path that does not exist yet, the nearest existing ancestor is
    resolved and the missing suffix re-appended, so a symlinked parent
    cannot place a new file outside the workspace.
    """
    if candidate.exists():
        try:
            return candidate.resolve(strict=True)
        except (OSError, RuntimeError):
            return Path.cwd() / candidate

    missing: list[str] = []
    current = candidate
    # lexists, not exists: a dangling symlink must still be followed
    while not os.path.lexists(current):
        parent = current.parent
        if parent == current:
            break
        missing.append(current.name)
        current = parent

    try:
        base = Path(os.path.realpath(current))
    except (OSError, ValueError):
        base = Path.cwd() / current

    if not missing:
        return base
    # ".." in the missing suffix can climb back onto an existing symlink.
    return Path(os.path.realpath(base.joinpath(*reversed(missing))))


def is_within(path: Path, root: Path) -> bool:
    """Component-wise containment: ``/ws-other`` is not inside ``/ws``."""
    root_parts = root.parts
    return path.parts[: len(root_parts)] == root_parts


def validate_workspace_path(path: str, workspace: str | Path) -> Path:
    """Resolve *path* against *workspace* and ensure it stays inside.

    Relative paths are joined to the workspace; ``~/`` expands to home.
    Symlinks are resolved before the containment check, for both the
    target and the workspace root. The root validates against itself.

    Raises:
        OutsideWorkspaceError: carrying the input and the canonical root.
    """
    root = Path(workspace)
    if path.startswith("~/"):
        candidate = expand_tilde(path)
    elif Path(path).is_absolute():
        candidate = Path(path)
    else:
        candidate = root / path

    resolved = _canonicalize(candidate)
    canonical_root = _canonicalize(root if root.is_absolute() else Path.cwd() / root)

    if not is_within(resolved, canonical_root):
        raise OutsideWorkspaceError(path, str(canonical_root))
    return resolved
