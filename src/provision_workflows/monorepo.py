"""create-monorepo workflow: scaffold the monorepo directory tree and root files.

Pure filesystem work. Every idempotency check compares the target against
the expected result, so a lost state file never causes a rewrite of files
that are already correct.

Config keys:
    PROJECT_NAME: package name (default: target directory name)
    PROJECT_DESCRIPTION: package and README description
    AUTHOR: package.json author
    PACKAGE_MANAGER: npm | pnpm | yarn (default npm)
    DOMAIN: base domain used in env/.env.example
    OWNER, GROUP: optional owner applied by set-permissions

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import re
import shutil
import stat
from pathlib import Path
from typing import Iterator, List, Tuple

import yaml

from provision.registry import StepRegistry
from provision.schemas import Step, StepContext, StepKind
from provision_workflows._helpers import (
    dirs_exist,
    file_has_content,
    make_dirs,
    package_manager,
    read_json,
    write_text,
)
from provision_workflows.rendering import render

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["target/**"],
    "writes": ["target/{apps,infra,scripts,env,services,docs}/**", "target/package.json",
               "target/.gitignore", "target/README.md"],
    "external": [],
}

NAME = "create-monorepo"
DESCRIPTION = "Scaffold the monorepo directory tree and root files"

logger = logging.getLogger(__name__)

ROOT_DIRS = ["apps", "infra", "scripts", "env", "services", "docs"]
APP_DIRS = ["apps/storefront", "apps/medusa-backend", "apps/medusa-worker"]
INFRA_DIRS = [
    "infra/setup",
    "infra/docker",
    "infra/compose",
    "infra/nginx",
    "infra/scripts",
    "infra/nginx/sites",
    "infra/nginx/ssl",
    "infra/nginx/conf.d",
]
SCRIPT_DIRS = ["scripts/dev", "scripts/prod", "scripts/shared"]
SERVICE_DIRS = ["services/minio", "services/postgres"]

PLACEHOLDER_SCRIPTS = {
    "scripts/dev": ["setup-dev.sh", "start-dev.sh", "stop-dev.sh", "restart-dev.sh", "logs-dev.sh", "test-dev.sh"],
    "scripts/prod": ["setup-prod.sh", "deploy-prod.sh", "start-prod.sh", "stop-prod.sh", "restart-prod.sh",
                     "logs-prod.sh", "rollback-prod.sh"],
    "scripts/shared": ["health-check.sh", "backup-db.sh", "backup-minio.sh", "restore-db.sh",
                       "cleanup-old-images.sh"],
}

WORKSPACES = ["apps/*"]
ENV_TEMPLATE = "env/.env.example"

# Directories never touched by set-permissions
_PERMISSION_SKIP = {"node_modules", ".git", ".medusa", ".next"}


def _project_name(ctx: StepContext) -> str:
    name = ctx.get("PROJECT_NAME") or ctx.target.name or "project"
    return re.sub(r"[^a-z0-9._-]+", "-", str(name).lower()).strip("-") or "project"


def _description(ctx: StepContext) -> str:
    return ctx.get("PROJECT_DESCRIPTION", "B2B Ecommerce Platform")


def _placeholder(name: str) -> str:
    return (
        "#!/bin/bash\n"
        f"# {name} - To be implemented\n"
        f'echo "Script: {name}"\n'
        'echo "Status: Not yet implemented"\n'
    )


# =============================================================================
# Directory steps
# =============================================================================


def _dirs_step(step_id: str, description: str, dirs: List[str], requires=()) -> Step:
    return Step(
        step_id=step_id,
        description=description,
        action=lambda ctx: make_dirs(ctx, dirs),
        validate=lambda ctx: dirs_exist(ctx, dirs),
        is_applied=lambda ctx: dirs_exist(ctx, dirs),
        requires=requires,
        params={"dirs": dirs},
        kind=StepKind.FILESYSTEM,
    )


def _scripts_applied(ctx: StepContext) -> bool:
    if not dirs_exist(ctx, SCRIPT_DIRS):
        return False
    return all(
        ctx.path(f"{folder}/{name}").is_file()
        for folder, names in PLACEHOLDER_SCRIPTS.items()
        for name in names
    )


def create_scripts_structure(ctx: StepContext) -> None:
    """Create script folders and placeholder scripts.

    Existing scripts are never overwritten; they may already be real.
    """
    make_dirs(ctx, SCRIPT_DIRS)
    for folder, names in PLACEHOLDER_SCRIPTS.items():
        for name in names:
            path = ctx.path(f"{folder}/{name}")
            if not path.exists():
                path.write_text(_placeholder(name))
                path.chmod(0o755)


# =============================================================================
# Root files
# =============================================================================


def _package_json(ctx: StepContext) -> str:
    return render(
        "package.json.j2",
        project_name=_project_name(ctx),
        description=_description(ctx),
        author=ctx.get("AUTHOR", ""),
        workspaces=WORKSPACES,
        pm=package_manager(ctx),
    )


def _pnpm_workspace() -> str:
    return yaml.safe_dump({"packages": WORKSPACES}, default_flow_style=False)


def _package_json_applied(ctx: StepContext) -> bool:
    if not file_has_content(ctx.path("package.json"), _package_json(ctx)):
        return False
    if package_manager(ctx) == "pnpm":
        return file_has_content(ctx.path("pnpm-workspace.yaml"), _pnpm_workspace())
    return True


def create_root_package_json(ctx: StepContext) -> None:
    write_text(ctx.path("package.json"), _package_json(ctx))
    # pnpm ignores the "workspaces" key and reads its own file
    if package_manager(ctx) == "pnpm":
        write_text(ctx.path("pnpm-workspace.yaml"), _pnpm_workspace())


def _package_json_valid(ctx: StepContext) -> bool:
    data = read_json(ctx.path("package.json"))
    return data.get("workspaces") == WORKSPACES


def _env_template(ctx: StepContext) -> str:
    return render(
        "env.example.j2",
        project_name=_project_name(ctx),
        domain=ctx.get("DOMAIN", "example.com"),
    )


def _readme(ctx: StepContext) -> str:
    return render(
        "README.md.j2",
        title=ctx.get("PROJECT_TITLE", _project_name(ctx)),
        project_name=_project_name(ctx),
        description=_description(ctx),
        author=ctx.get("AUTHOR", ""),
        target=ctx.target,
        pm=package_manager(ctx),
    )


def _file_step(step_id: str, description: str, relative: str, content, inputs=()) -> Step:
    """Step writing one rendered file, idempotent on content."""
    return Step(
        step_id=step_id,
        description=description,
        action=lambda ctx: write_text(ctx.path(relative), content(ctx)),
        validate=lambda ctx: file_has_content(ctx.path(relative), content(ctx)),
        is_applied=lambda ctx: file_has_content(ctx.path(relative), content(ctx)),
        requires=("create-root-structure",),
        inputs=inputs,
        backup_paths=(relative,),
        kind=StepKind.FILESYSTEM,
    )


# =============================================================================
# Permissions
# =============================================================================


def _walk(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _PERMISSION_SKIP)
        yield Path(dirpath)
        for name in sorted(filenames):
            yield Path(dirpath) / name


def permission_plan(ctx: StepContext) -> List[Tuple[Path, int]]:
    """
    Expected modes for the scaffold.

    Directories 755, files 644, shell scripts 755, env files 600.
    Application trees under apps/ keep their own modes.
    """
    plan: List[Tuple[Path, int]] = []
    for top in ROOT_DIRS:
        root = ctx.path(top)
        if not root.is_dir() or top == "apps":
            continue
        for path in _walk(root):
            if path.is_symlink():
                continue
            if path.is_dir():
                mode = 0o755
            elif top == "env" and path.name.startswith(".env"):
                mode = 0o600
            elif path.suffix == ".sh":
                mode = 0o755
            else:
                mode = 0o644
            plan.append((path, mode))
    for name in ("package.json", ".gitignore", "README.md"):
        path = ctx.path(name)
        if path.is_file():
            plan.append((path, 0o644))
    return plan


def _modes_match(ctx: StepContext) -> bool:
    return all(stat.S_IMODE(p.stat().st_mode) == mode for p, mode in permission_plan(ctx))


def _permissions_applied(ctx: StepContext) -> bool:
    if ctx.get("OWNER"):
        # Ownership is not compared file by file; always apply
        return False
    return _modes_match(ctx)


def set_permissions(ctx: StepContext) -> None:
    plan = permission_plan(ctx)
    owner = ctx.get("OWNER")
    group = ctx.get("GROUP", owner)
    for path, mode in plan:
        if stat.S_IMODE(path.stat().st_mode) != mode:
            path.chmod(mode)
        if owner:
            shutil.chown(path, user=owner, group=group)
    logger.info(f"Permissions checked on {len(plan)} path(s)")


def build_registry() -> StepRegistry:
    """Steps of the create-monorepo workflow."""
    registry = StepRegistry(NAME)
    registry.register(_dirs_step("create-root-structure", "Create root directory structure", ROOT_DIRS))
    root = ("create-root-structure",)
    registry.register(_dirs_step("create-apps-structure", "Create app placeholder directories", APP_DIRS, root))
    registry.register(_dirs_step("create-infra-structure", "Create infrastructure directories", INFRA_DIRS, root))
    registry.register(Step(
        step_id="create-scripts-structure",
        description="Create script directories and placeholder scripts",
        action=create_scripts_structure,
        validate=_scripts_applied,
        is_applied=_scripts_applied,
        requires=root,
        params={"scripts": PLACEHOLDER_SCRIPTS},
        kind=StepKind.FILESYSTEM,
    ))
    registry.register(_dirs_step("create-services-structure", "Create service directories", SERVICE_DIRS, root))
    registry.register(Step(
        step_id="create-root-package-json",
        description="Write root package.json with workspaces",
        action=create_root_package_json,
        validate=_package_json_valid,
        is_applied=_package_json_applied,
        requires=root,
        inputs=("PROJECT_NAME", "PROJECT_DESCRIPTION", "AUTHOR", "PACKAGE_MANAGER"),
        backup_paths=("package.json", "pnpm-workspace.yaml"),
        kind=StepKind.FILESYSTEM,
    ))
    registry.register(_file_step(
        "create-env-template", "Write env/.env.example", ENV_TEMPLATE, _env_template,
        inputs=("PROJECT_NAME", "DOMAIN"),
    ))
    registry.register(_file_step(
        "create-gitignore", "Write root .gitignore", ".gitignore", lambda ctx: render("gitignore.j2"),
    ))
    registry.register(_file_step(
        "create-readme", "Write root README.md", "README.md", _readme,
        inputs=("PROJECT_NAME", "PROJECT_TITLE", "PROJECT_DESCRIPTION", "AUTHOR", "PACKAGE_MANAGER"),
    ))
    registry.register(Step(
        step_id="set-permissions",
        description="Normalize scaffold permissions (dirs 755, files 644, env 600)",
        action=set_permissions,
        validate=_modes_match,
        is_applied=_permissions_applied,
        requires=(
            "create-apps-structure",
            "create-infra-structure",
            "create-scripts-structure",
            "create-services-structure",
            "create-root-package-json",
            "create-env-template",
            "create-gitignore",
            "create-readme",
        ),
        inputs=("OWNER", "GROUP"),
        kind=StepKind.FILESYSTEM,
    ))
    return registry
