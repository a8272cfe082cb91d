"""publish-github workflow: create the GitHub repository and push to it.

Config keys:
    REPO_NAME: repository name (default: target directory name)
    ORG: optional organization owning the repository
    VISIBILITY: public | private | internal (default public)
    GITHUB_TOKEN: used to authenticate gh when it is not logged in

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging

from provision.errors import FatalStepError, PreconditionError
from provision.registry import StepRegistry
from provision.schemas import Step, StepContext, StepKind
from provision_workflows._helpers import require_git_repo

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["target/.git"],
    "writes": ["target/.git/config"],
    "external": ["gh.auth", "gh.repo.create", "git.push"],
}

NAME = "publish-github"
DESCRIPTION = "Create the GitHub repository and push the initial commit"

logger = logging.getLogger(__name__)

VISIBILITIES = ("public", "private", "internal")
# gh exits 1 for network and API errors alike; treat them as retryable
GH_TRANSIENT = (1,)


def owner_path(ctx: StepContext) -> str:
    repo = ctx.get("REPO_NAME", ctx.target.name)
    org = ctx.get("ORG")
    return f"{org}/{repo}" if org else repo


def _gh_authenticated(ctx: StepContext) -> bool:
    return ctx.runner.probe(["gh", "auth", "status"], timeout=ctx.timeout or 30)


def check_gh_auth(ctx: StepContext) -> None:
    token = ctx.get("GITHUB_TOKEN")
    if not token:
        raise FatalStepError("gh is not authenticated and GITHUB_TOKEN is not set in the env file")
    logger.info("Authenticating gh with GITHUB_TOKEN")
    ctx.run(["gh", "auth", "login", "--with-token"], input=token, transient_exit_codes=GH_TRANSIENT)


def _check_visibility(ctx: StepContext) -> None:
    require_git_repo(ctx)
    visibility = ctx.get("VISIBILITY", "public")
    if visibility not in VISIBILITIES:
        raise PreconditionError(f"VISIBILITY must be one of {', '.join(VISIBILITIES)}, got: {visibility}")


def _repo_exists(ctx: StepContext) -> bool:
    return ctx.runner.probe(["gh", "repo", "view", owner_path(ctx)], timeout=ctx.timeout or 30)


def create_remote_repo(ctx: StepContext) -> None:
    """Create the repository and push.

    Safe to retry: a repository created by an earlier attempt is reused
    and only the push is repeated.
    """
    repo = owner_path(ctx)
    has_origin = ctx.runner.output(["git", "-C", str(ctx.target), "remote", "get-url", "origin"]) is not None

    if not _repo_exists(ctx):
        command = ["gh", "repo", "create", repo, f"--{ctx.get('VISIBILITY', 'public')}"]
        if not has_origin:
            command += ["--source=.", "--remote=origin", "--push"]
        ctx.run(command, transient_exit_codes=GH_TRANSIENT)
        logger.info(f"Repository live: https://github.com/{repo}")
        if not has_origin:
            return
    else:
        logger.info(f"Repository already exists: {repo}")
        if not has_origin:
            ctx.run(["git", "remote", "add", "origin", f"https://github.com/{repo}.git"])

    ctx.run(["git", "push", "-u", "origin", "HEAD"], transient_exit_codes=(128,))


def build_registry() -> StepRegistry:
    """Steps of the publish-github workflow."""
    registry = StepRegistry(NAME)
    registry.register(Step(
        step_id="check-gh-auth",
        description="Make sure gh is authenticated (logs in with GITHUB_TOKEN if needed)",
        action=check_gh_auth,
        is_applied=_gh_authenticated,
        validate=_gh_authenticated,
        kind=StepKind.NETWORK,
        requires_tools=("gh", "git"),
        precondition=require_git_repo,
    ))
    registry.register(Step(
        step_id="create-remote-repo",
        description="Create the GitHub repository and push the current branch",
        action=create_remote_repo,
        is_applied=_repo_exists,
        validate=_repo_exists,
        requires=("check-gh-auth",),
        inputs=("REPO_NAME", "ORG", "VISIBILITY"),
        backup_paths=(".git/config",),
        kind=StepKind.NETWORK,
        requires_tools=("gh",),
        precondition=_check_visibility,
    ))
    return registry
