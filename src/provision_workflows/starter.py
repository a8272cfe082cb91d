"""integrate-starter workflow: transplant the Medusa B2B starter into apps/.

The starter is cloned into a scratch directory, checked for the expected
layout and only then copied over apps/medusa-backend and apps/storefront.
Both app directories are snapshotted first, so a failed run puts back
whatever was there.

Config keys:
    STARTER_REPO: git URL of the starter (default medusajs/b2b-starter-medusa)

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import shutil
import tempfile
from pathlib import Path

from provision.errors import FatalStepError, PreconditionError
from provision.registry import StepRegistry
from provision.schemas import Step, StepContext, StepKind
from provision_workflows._helpers import (
    dump_json,
    ensure_lines,
    make_dirs,
    missing_lines,
    read_json,
    write_text,
)

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["STARTER_REPO"],
    "writes": ["target/apps/medusa-backend/**", "target/apps/storefront/**",
               "target/apps/medusa-worker/**", "target/.gitignore"],
    "external": ["git.clone"],
}

NAME = "integrate-starter"
DESCRIPTION = "Transplant the Medusa B2B starter into the monorepo apps"

logger = logging.getLogger(__name__)

DEFAULT_STARTER_REPO = "https://github.com/medusajs/b2b-starter-medusa"

BACKEND = "apps/medusa-backend"
STOREFRONT = "apps/storefront"
WORKER = "apps/medusa-worker"

# starter subdirectory -> destination under the target root
TRANSPLANTS = {"backend": BACKEND, "storefront": STOREFRONT}

REQUIRED_FILES = [
    f"{BACKEND}/package.json",
    f"{BACKEND}/medusa-config.ts",
    f"{STOREFRONT}/package.json",
]

MODULE_STUBS = ["credit", "supplier", "pricing", "negotiation"]
STUB_DIRS = [f"{BACKEND}/src/modules/{name}" for name in MODULE_STUBS] + [
    f"{BACKEND}/src/api/routes/hooks/razorpay",
]

WORKER_ENTRYPOINT = "// Auto-generated worker entrypoint\nexport {};\n"

GITIGNORE_ENTRIES = ["/node_modules", ".env*", ".medusa/", "logs/"]

# git exits 128 on network failures during clone
GIT_TRANSIENT = (128,)


def _require_apps_dir(ctx: StepContext) -> None:
    if not ctx.path("apps").is_dir():
        raise PreconditionError(
            f"{ctx.path('apps')} not found (run: provision create-monorepo --target {ctx.target})"
        )


def _files_exist(ctx: StepContext, files) -> bool:
    return all(ctx.path(f).is_file() for f in files)


def _clear_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def transplant_starter(ctx: StepContext) -> None:
    """Clone the starter and copy backend/ and storefront/ into apps/."""
    ctx.work_dir.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix="starter-", dir=ctx.work_dir))
    try:
        clone = scratch / "starter"
        repo = ctx.get("STARTER_REPO", DEFAULT_STARTER_REPO)
        ctx.run(["git", "clone", "--depth", "1", repo, str(clone)], cwd=scratch, transient_exit_codes=GIT_TRANSIENT)

        missing = [name for name in TRANSPLANTS if not (clone / name).is_dir()]
        if missing:
            raise FatalStepError(f"Starter {repo} is missing expected directories: {', '.join(missing)}")

        for source, dest in TRANSPLANTS.items():
            target = ctx.path(dest)
            _clear_dir(target)
            shutil.copytree(clone / source, target, symlinks=True, dirs_exist_ok=True)
            logger.info(f"Transplanted {source}/ -> {dest}")
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def init_worker(ctx: StepContext) -> None:
    """Create the worker app from the backend's package.json.

    The copy gets its own package name; npm refuses duplicate workspace names.
    """
    package = read_json(ctx.path(f"{BACKEND}/package.json"))
    package["name"] = f"{package.get('name', 'medusa-backend')}-worker"
    write_text(ctx.path(f"{WORKER}/package.json"), dump_json(package))
    write_text(ctx.path(f"{WORKER}/src/index.ts"), WORKER_ENTRYPOINT)


def build_registry() -> StepRegistry:
    """Steps of the integrate-starter workflow."""
    registry = StepRegistry(NAME)
    registry.register(Step(
        step_id="transplant-starter",
        description="Clone the B2B starter and copy backend and storefront into apps/",
        action=transplant_starter,
        is_applied=lambda ctx: _files_exist(ctx, REQUIRED_FILES),
        validate=lambda ctx: _files_exist(ctx, REQUIRED_FILES),
        inputs=("STARTER_REPO",),
        params={"transplants": TRANSPLANTS},
        backup_paths=(BACKEND, STOREFRONT),
        kind=StepKind.NETWORK,
        requires_tools=("git",),
        precondition=_require_apps_dir,
    ))
    registry.register(Step(
        step_id="init-worker",
        description="Create the worker app (package.json and entrypoint)",
        action=init_worker,
        is_applied=lambda ctx: _files_exist(ctx, [f"{WORKER}/package.json", f"{WORKER}/src/index.ts"]),
        validate=lambda ctx: _files_exist(ctx, [f"{WORKER}/package.json", f"{WORKER}/src/index.ts"]),
        requires=("transplant-starter",),
        backup_paths=(WORKER,),
        kind=StepKind.FILESYSTEM,
    ))
    registry.register(Step(
        step_id="inject-module-stubs",
        description="Create directories for the custom B2B modules and webhooks",
        action=lambda ctx: make_dirs(ctx, STUB_DIRS),
        is_applied=lambda ctx: all(ctx.path(d).is_dir() for d in STUB_DIRS),
        validate=lambda ctx: all(ctx.path(d).is_dir() for d in STUB_DIRS),
        requires=("transplant-starter",),
        params={"dirs": STUB_DIRS},
        kind=StepKind.FILESYSTEM,
    ))
    registry.register(Step(
        step_id="update-gitignore",
        description="Append starter ignore rules to the root .gitignore",
        action=lambda ctx: ensure_lines(ctx.path(".gitignore"), GITIGNORE_ENTRIES),
        is_applied=lambda ctx: not missing_lines(ctx.path(".gitignore"), GITIGNORE_ENTRIES),
        validate=lambda ctx: not missing_lines(ctx.path(".gitignore"), GITIGNORE_ENTRIES),
        requires=("transplant-starter",),
        params={"entries": GITIGNORE_ENTRIES},
        backup_paths=(".gitignore",),
        kind=StepKind.FILESYSTEM,
    ))
    return registry
