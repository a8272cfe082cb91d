"""configure-apps workflow: brand the apps, distribute env values, register the B2B module.

Env distribution copies every key of the env file into each app's .env
without touching keys already there. Secret-looking keys are written as
empty placeholders unless MERGE_SECRETS=true, so credentials are only
copied into app trees on request.

Config keys:
    BRAND_NAME: package name prefix (default "Farscape B2B")
    APP_AUTHOR: package.json author (default Farscape)
    MERGE_SECRETS: copy secret values into app .env files (default false)
    B2B_MODULE: custom module registered in medusa-config.ts (default farscape)

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import re
import stat
from typing import Dict, List

from dotenv import dotenv_values, set_key

from provision.config import is_secret_key
from provision.engine import ALL_INPUTS
from provision.errors import FatalStepError, PreconditionError
from provision.logs import get_redactor
from provision.registry import StepRegistry
from provision.schemas import Step, StepContext, StepKind
from provision_workflows._helpers import dump_json, read_json, write_text

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["env_file", "target/apps/*/package.json", "target/apps/medusa-backend/medusa-config.ts"],
    "writes": ["target/apps/*/package.json", "target/apps/*/.env",
               "target/apps/medusa-backend/medusa-config.ts", "target/apps/medusa-backend/src/modules/*"],
    "external": [],
}

NAME = "configure-apps"
DESCRIPTION = "Brand app packages, merge env values and register the B2B module"

logger = logging.getLogger(__name__)

# app directory -> package name suffix
APPS: Dict[str, str] = {
    "apps/medusa-backend": "backend",
    "apps/storefront": "storefront",
    "apps/medusa-worker": "worker",
}
MEDUSA_CONFIG = "apps/medusa-backend/medusa-config.ts"

# Never distributed to apps: they steer provisioning itself
CONTROL_KEYS = {"MERGE_SECRETS"}


def _require_backend(ctx: StepContext) -> None:
    if not ctx.path("apps/medusa-backend/package.json").is_file():
        raise PreconditionError(
            f"apps/medusa-backend is not set up (run: provision integrate-starter --target {ctx.target})"
        )


def _present_apps(ctx: StepContext) -> List[str]:
    return [app for app in APPS if ctx.path(app).is_dir()]


# =============================================================================
# brand-packages
# =============================================================================


def package_name(brand: str, suffix: str) -> str:
    """'Farscape B2B' + 'backend' -> 'farscape-b2b-backend'."""
    return re.sub(r"\s+", "-", f"{brand}-{suffix}".strip().lower())


def _branding(ctx: StepContext, app: str) -> Dict[str, str]:
    return {
        "name": package_name(ctx.get("BRAND_NAME", "Farscape B2B"), APPS[app]),
        "author": ctx.get("APP_AUTHOR", "Farscape"),
    }


def _branded(ctx: StepContext) -> bool:
    for app in _present_apps(ctx):
        path = ctx.path(f"{app}/package.json")
        if not path.is_file():
            continue
        data = read_json(path)
        if any(data.get(k) != v for k, v in _branding(ctx, app).items()):
            return False
    return True


def brand_packages(ctx: StepContext) -> None:
    for app in _present_apps(ctx):
        path = ctx.path(f"{app}/package.json")
        if not path.is_file():
            logger.warning(f"No package.json in {app}, not branded")
            continue
        data = read_json(path)
        data.update(_branding(ctx, app))
        write_text(path, dump_json(data))
        logger.info(f"Branded {app} as {data['name']}")


# =============================================================================
# merge-app-env
# =============================================================================


def env_entries(ctx: StepContext) -> Dict[str, str]:
    """Values to distribute: secrets blanked unless MERGE_SECRETS=true."""
    merge_secrets = ctx.flag("MERGE_SECRETS")
    patterns = get_redactor().patterns
    entries = {}
    for key, value in ctx.config.items():
        if key in CONTROL_KEYS:
            continue
        if is_secret_key(key, patterns) and not merge_secrets:
            entries[key] = ""
        else:
            entries[key] = "" if value is None else str(value)
    return entries


def _env_merged(ctx: StepContext) -> bool:
    keys = set(env_entries(ctx))
    for app in _present_apps(ctx):
        path = ctx.path(f"{app}/.env")
        if not path.is_file():
            return False
        if stat.S_IMODE(path.stat().st_mode) != 0o600:
            return False
        if not keys <= set(dotenv_values(path)):
            return False
    return True


def merge_app_env(ctx: StepContext) -> None:
    """Add missing keys to every app's .env; existing keys are left alone."""
    entries = env_entries(ctx)
    for app in _present_apps(ctx):
        path = ctx.path(f"{app}/.env")
        if not path.exists():
            # Create it private before any value is written
            fd = os.open(path, os.O_CREAT | os.O_WRONLY, 0o600)
            os.close(fd)
        os.chmod(path, 0o600)
        existing = dotenv_values(path)
        added = [key for key in entries if key not in existing]
        for key in added:
            set_key(str(path), key, entries[key], quote_mode="auto")
        os.chmod(path, 0o600)
        if added:
            logger.info(f"Added {len(added)} key(s) to {app}/.env")


# =============================================================================
# register-b2b-module
# =============================================================================


def _module_name(ctx: StepContext) -> str:
    name = ctx.get("B2B_MODULE", "farscape")
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise FatalStepError(f"B2B_MODULE must be an identifier, got: {name}")
    return name


def _module_dir(ctx: StepContext) -> str:
    return f"apps/medusa-backend/src/modules/{_module_name(ctx)}"


def register_module(config_text: str, name: str) -> str:
    """
    Add a module entry to medusa-config.ts text.

    Handles both ``modules: {`` (keyed) and ``modules: [`` (list) forms and
    inserts right after the first opening bracket.

    Raises:
        FatalStepError: If no modules block is found
    """
    resolve = f"./src/modules/{name}"
    if resolve in config_text:
        return config_text

    keyed = re.search(r"modules:\s*\{[ \t]*\n?", config_text)
    listed = re.search(r"modules:\s*\[[ \t]*\n?", config_text)
    if keyed and (not listed or keyed.start() < listed.start()):
        match = keyed
        entry = f'    {name}: {{\n      resolve: "{resolve}",\n      options: {{}},\n    }},\n'
    elif listed:
        match = listed
        entry = f'    {{\n      resolve: "{resolve}",\n      options: {{}},\n    }},\n'
    else:
        raise FatalStepError("No modules block found in medusa-config.ts")

    head = config_text[:match.end()]
    if not head.endswith("\n"):
        head += "\n"
    return head + entry + config_text[match.end():]


def _module_registered(ctx: StepContext) -> bool:
    path = ctx.path(MEDUSA_CONFIG)
    if not path.is_file() or not ctx.path(f"{_module_dir(ctx)}/index.ts").is_file():
        return False
    return f"./src/modules/{_module_name(ctx)}" in path.read_text()


def register_b2b_module(ctx: StepContext) -> None:
    name = _module_name(ctx)
    path = ctx.path(MEDUSA_CONFIG)
    if not path.is_file():
        raise FatalStepError(f"{MEDUSA_CONFIG} not found")
    write_text(path, register_module(path.read_text(), name))

    index = ctx.path(f"{_module_dir(ctx)}/index.ts")
    if not index.exists():
        write_text(index, f"// {name} module: to be implemented\nexport default {{}};\n")
    logger.info(f"Registered module {name} in {MEDUSA_CONFIG}")


def build_registry() -> StepRegistry:
    """Steps of the configure-apps workflow."""
    registry = StepRegistry(NAME)
    registry.register(Step(
        step_id="brand-packages",
        description="Set package names and author of every app",
        action=brand_packages,
        is_applied=_branded,
        validate=_branded,
        inputs=("BRAND_NAME", "APP_AUTHOR"),
        backup_paths=tuple(f"{app}/package.json" for app in APPS),
        kind=StepKind.FILESYSTEM,
        precondition=_require_backend,
    ))
    registry.register(Step(
        step_id="merge-app-env",
        description="Add env file keys to each app's .env (secrets blank unless MERGE_SECRETS=true)",
        action=merge_app_env,
        is_applied=_env_merged,
        validate=_env_merged,
        requires=("brand-packages",),
        inputs=(ALL_INPUTS,),
        backup_paths=tuple(f"{app}/.env" for app in APPS),
        kind=StepKind.FILESYSTEM,
    ))
    registry.register(Step(
        step_id="register-b2b-module",
        description="Register the custom B2B module in medusa-config.ts",
        action=register_b2b_module,
        is_applied=_module_registered,
        validate=_module_registered,
        requires=("brand-packages",),
        inputs=("B2B_MODULE",),
        backup_paths=(MEDUSA_CONFIG, "apps/medusa-backend/src/modules"),
        kind=StepKind.FILESYSTEM,
    ))
    return registry
