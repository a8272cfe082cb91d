"""Shared helpers for workflow step callables.

File writes are content-compared first, so re-running a step against a
target that already has the right content changes nothing (not even mtimes).

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from provision.errors import FatalStepError, PreconditionError
from provision.schemas import StepContext

PACKAGE_MANAGERS = ("npm", "pnpm", "yarn")

LOCKFILES = {
    "npm": "package-lock.json",
    "pnpm": "pnpm-lock.yaml",
    "yarn": "yarn.lock",
}


def file_has_content(path: Path, content: str) -> bool:
    """True if ``path`` is a file whose text equals ``content``."""
    try:
        return path.is_file() and path.read_text() == content
    except (OSError, UnicodeDecodeError):
        return False


def write_text(path: Path, content: str, mode: Optional[int] = None) -> bool:
    """
    Write ``content`` to ``path`` unless it is already there.

    Args:
        path: File to write (parents are created)
        content: Full file content
        mode: Permission bits applied after writing

    Returns:
        True if the file was written.
    """
    changed = not file_has_content(path, content)
    if changed:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    if mode is not None and path.exists():
        os.chmod(path, mode)
    return changed


def dirs_exist(ctx: StepContext, dirs: Iterable[str]) -> bool:
    return all(ctx.path(d).is_dir() for d in dirs)


def make_dirs(ctx: StepContext, dirs: Iterable[str]) -> None:
    for d in dirs:
        ctx.path(d).mkdir(parents=True, exist_ok=True)


def read_json(path: Path) -> Dict[str, Any]:
    """
    Load a JSON object from disk.

    Raises:
        FatalStepError: If the file is missing or is not a JSON object
    """
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise FatalStepError(f"File not found: {path}", cause=e) from e
    except ValueError as e:
        raise FatalStepError(f"Invalid JSON in {path}", cause=e) from e
    if not isinstance(data, dict):
        raise FatalStepError(f"Expected a JSON object in {path}")
    return data


def dump_json(data: Dict[str, Any]) -> str:
    """Serialize the way npm writes package.json (2-space indent, newline)."""
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def package_manager(ctx: StepContext) -> str:
    """The authoritative package manager (PACKAGE_MANAGER, default npm)."""
    pm = str(ctx.get("PACKAGE_MANAGER", "npm")).lower()
    if pm not in PACKAGE_MANAGERS:
        raise PreconditionError(
            f"PACKAGE_MANAGER must be one of {', '.join(PACKAGE_MANAGERS)}, got: {pm}"
        )
    return pm


def require_root(ctx: StepContext) -> None:
    """Precondition: the process runs as root."""
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise PreconditionError("must run as root (try: sudo provision ...)")


def require_git_repo(ctx: StepContext) -> None:
    """Precondition: the target root is a git repository."""
    if not ctx.path(".git").is_dir():
        raise PreconditionError(
            f"{ctx.target} is not a git repository (run: provision init-git --target {ctx.target})"
        )


def missing_lines(path: Path, lines: Iterable[str]) -> List[str]:
    """Lines not present (as whole lines) in ``path``."""
    existing = set(path.read_text().splitlines()) if path.is_file() else set()
    return [line for line in lines if line not in existing]


def ensure_lines(path: Path, lines: Iterable[str]) -> List[str]:
    """
    Append each line that is not already present. Never rewrites or
    reorders existing content.

    Returns:
        The lines that were appended.
    """
    missing = missing_lines(path, lines)
    if missing:
        text = path.read_text() if path.is_file() else ""
        if text and not text.endswith("\n"):
            text += "\n"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text + "\n".join(missing) + "\n")
    return missing
