"""init-git workflow: turn the target root into a git repository.

Config keys:
    GIT_USER, GIT_EMAIL: repository-local identity
    GIT_BRANCH: initial branch name (default main)
    REMOTE_URL: optional origin URL
    GIT_COMMIT_MESSAGE: message of the initial commit

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
from typing import Optional

from provision.registry import StepRegistry
from provision.schemas import Step, StepContext
from provision_workflows._helpers import ensure_lines, missing_lines

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["target/.git/config"],
    "writes": ["target/.git/**", "target/.gitignore"],
    "external": ["git"],
}

NAME = "init-git"
DESCRIPTION = "Initialize the git repository, identity, remote and first commit"

logger = logging.getLogger(__name__)

# Secrets must never reach the first commit
BASE_IGNORES = [".env*", "!.env.example", "node_modules/", "dist/", "*.log"]


def _git(ctx: StepContext, *args: str) -> Optional[str]:
    return ctx.runner.output(["git", "-C", str(ctx.target), *args])


def git_init(ctx: StepContext) -> None:
    ctx.target.mkdir(parents=True, exist_ok=True)
    ctx.run(["git", "init", "-b", ctx.get("GIT_BRANCH", "main")], cwd=ctx.target)


def _identity(ctx: StepContext):
    return ctx.get("GIT_USER", "Unknown User"), ctx.get("GIT_EMAIL", "unknown@internal.com")


def _identity_applied(ctx: StepContext) -> bool:
    name, email = _identity(ctx)
    return _git(ctx, "config", "--local", "--get", "user.name") == name and _git(
        ctx, "config", "--local", "--get", "user.email"
    ) == email


def git_identity(ctx: StepContext) -> None:
    name, email = _identity(ctx)
    ctx.run(["git", "config", "--local", "user.name", name])
    ctx.run(["git", "config", "--local", "user.email", email])


def _remote_applied(ctx: StepContext) -> bool:
    url = ctx.get("REMOTE_URL")
    if not url:
        return True
    return _git(ctx, "remote", "get-url", "origin") == url


def git_remote(ctx: StepContext) -> None:
    url = ctx.get("REMOTE_URL")
    if _git(ctx, "remote", "get-url", "origin") is None:
        ctx.run(["git", "remote", "add", "origin", url])
    else:
        ctx.run(["git", "remote", "set-url", "origin", url])


def _has_commit(ctx: StepContext) -> bool:
    return _git(ctx, "rev-parse", "--verify", "--quiet", "HEAD") is not None


def initial_commit(ctx: StepContext) -> None:
    appended = ensure_lines(ctx.path(".gitignore"), BASE_IGNORES)
    if appended:
        logger.info(f"Added to .gitignore: {appended}")
    ctx.run(["git", "add", "-A"])
    message = ctx.get("GIT_COMMIT_MESSAGE", "chore: initial project structure")
    ctx.run(["git", "commit", "--allow-empty", "-m", message])


def _commit_valid(ctx: StepContext) -> bool:
    return _has_commit(ctx) and not missing_lines(ctx.path(".gitignore"), BASE_IGNORES)


def build_registry() -> StepRegistry:
    """Steps of the init-git workflow."""
    registry = StepRegistry(NAME)
    registry.register(Step(
        step_id="git-init",
        description="Initialize a git repository in the target root",
        action=git_init,
        is_applied=lambda ctx: ctx.path(".git").is_dir(),
        validate=lambda ctx: ctx.path(".git").is_dir(),
        inputs=("GIT_BRANCH",),
        backup_paths=(".git",),
        requires_tools=("git",),
    ))
    registry.register(Step(
        step_id="git-identity",
        description="Set the repository-local user name and email",
        action=git_identity,
        is_applied=_identity_applied,
        validate=_identity_applied,
        requires=("git-init",),
        inputs=("GIT_USER", "GIT_EMAIL"),
        backup_paths=(".git/config",),
    ))
    registry.register(Step(
        step_id="git-remote",
        description="Point origin at REMOTE_URL (when set)",
        action=git_remote,
        is_applied=_remote_applied,
        validate=_remote_applied,
        requires=("git-init",),
        inputs=("REMOTE_URL",),
        backup_paths=(".git/config",),
    ))
    registry.register(Step(
        step_id="initial-commit",
        description="Commit the project structure with secrets ignored",
        action=initial_commit,
        is_applied=_has_commit,
        validate=_commit_valid,
        requires=("git-identity", "git-remote"),
        inputs=("GIT_COMMIT_MESSAGE",),
        backup_paths=(".gitignore",),
    ))
    return registry
