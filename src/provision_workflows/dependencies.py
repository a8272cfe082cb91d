"""install-dependencies workflow: resolve the workspace dependency graph once.

PACKAGE_MANAGER is the single authority. A lockfile belonging to another
package manager is a precondition failure, not something to clean up
silently.

Config keys:
    PACKAGE_MANAGER: npm | pnpm | yarn (default npm)

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
from typing import Dict, List

from provision.errors import FatalStepError, PreconditionError
from provision.registry import StepRegistry
from provision.schemas import Step, StepContext, StepKind
from provision_workflows._helpers import LOCKFILES, package_manager, read_json

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["target/package.json", "target/pnpm-workspace.yaml"],
    "writes": ["target/node_modules", "target/<lockfile>"],
    "external": ["npm.install", "pnpm.install", "yarn.install", "git.add"],
}

NAME = "install-dependencies"
DESCRIPTION = "Install workspace dependencies and stage the lockfile"

logger = logging.getLogger(__name__)

INSTALL_COMMANDS: Dict[str, List[str]] = {
    # --legacy-peer-deps bridges Medusa core modules and Next.js peer ranges
    "npm": ["npm", "install", "--legacy-peer-deps", "--no-audit", "--no-fund"],
    "pnpm": ["pnpm", "install"],
    "yarn": ["yarn", "install"],
}

LIST_COMMANDS: Dict[str, List[str]] = {
    "npm": ["npm", "ls", "--workspaces", "--depth=0"],
    "pnpm": ["pnpm", "ls", "-r", "--depth", "0"],
    "yarn": ["yarn", "workspaces", "info"],
}


def check_workspace(ctx: StepContext) -> None:
    """
    Precondition: a workspace root with one authoritative lockfile.

    Raises:
        PreconditionError: Missing package.json or workspaces, missing
            package manager, or a foreign lockfile
    """
    pm = package_manager(ctx)
    if ctx.runner.which(pm) is None:
        raise PreconditionError(f"{pm} not found on PATH (run: provision system-setup)")

    package_json = ctx.path("package.json")
    if not package_json.is_file():
        raise PreconditionError(f"Root package.json missing (run: provision create-monorepo --target {ctx.target})")
    try:
        data = read_json(package_json)
    except FatalStepError as e:
        raise PreconditionError(f"Root package.json unreadable: {e}") from e
    if pm == "pnpm":
        if not ctx.path("pnpm-workspace.yaml").is_file():
            raise PreconditionError("pnpm-workspace.yaml missing")
    elif not data.get("workspaces"):
        raise PreconditionError("Workspaces key missing in package.json")

    foreign = [
        lockfile for other, lockfile in LOCKFILES.items()
        if other != pm and ctx.path(lockfile).exists()
    ]
    if foreign:
        raise PreconditionError(
            f"Multiple lockfiles detected ({', '.join(foreign)}); {pm} is the sole authority. "
            f"Remove them or set PACKAGE_MANAGER accordingly"
        )


def _workspaces_resolve(ctx: StepContext) -> bool:
    if not ctx.path("node_modules").is_dir():
        return False
    return ctx.runner.probe(LIST_COMMANDS[package_manager(ctx)], cwd=ctx.target, timeout=ctx.timeout or 300)


def install_workspace(ctx: StepContext) -> None:
    pm = package_manager(ctx)
    ctx.run(INSTALL_COMMANDS[pm])


def _lockfile(ctx: StepContext) -> str:
    return LOCKFILES[package_manager(ctx)]


def _lockfile_staged(ctx: StepContext) -> bool:
    if not ctx.path(".git").is_dir():
        return True
    if not ctx.path(_lockfile(ctx)).exists():
        return True
    git = ["git", "-C", str(ctx.target)]
    # In the index, with no worktree changes left unstaged
    return ctx.runner.probe([*git, "ls-files", "--error-unmatch", "--", _lockfile(ctx)]) and ctx.runner.probe(
        [*git, "diff", "--quiet", "--", _lockfile(ctx)]
    )


def stage_lockfile(ctx: StepContext) -> None:
    if not ctx.path(".git").is_dir():
        logger.info("Target is not a git repository, lockfile not staged")
        return
    if not ctx.path(_lockfile(ctx)).exists():
        logger.warning(f"{_lockfile(ctx)} was not produced by the install")
        return
    ctx.run(["git", "add", "--", _lockfile(ctx)])
    logger.info(f"{_lockfile(ctx)} staged; commit it once the workflow completes")


def build_registry() -> StepRegistry:
    """Steps of the install-dependencies workflow."""
    registry = StepRegistry(NAME)
    registry.register(Step(
        step_id="install-workspace",
        description="Install all workspace dependencies with the authoritative package manager",
        action=install_workspace,
        is_applied=_workspaces_resolve,
        validate=_workspaces_resolve,
        inputs=("PACKAGE_MANAGER",),
        params={"commands": INSTALL_COMMANDS},
        kind=StepKind.PACKAGE,
        precondition=check_workspace,
    ))
    registry.register(Step(
        step_id="stage-lockfile",
        description="Stage lockfile changes in git",
        action=stage_lockfile,
        is_applied=_lockfile_staged,
        validate=_lockfile_staged,
        requires=("install-workspace",),
        inputs=("PACKAGE_MANAGER",),
        kind=StepKind.COMMAND,
    ))
    return registry
