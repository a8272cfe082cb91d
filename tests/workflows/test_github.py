# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the publish-github workflow."""

import pytest

from provision.errors import FatalStepError, PreconditionError
from provision_workflows import github


@pytest.fixture
def repo_ctx(make_context):
    """A target that is a git repository."""

    def _make(config=None, runner=None):
        ctx = make_context(config, runner=runner, target=None)
        ctx.path(".git").mkdir(exist_ok=True)
        return ctx

    return _make


class TestOwnerPath:
    """Tests for owner_path."""

    def test_defaults_to_target_name(self, make_context, tmp_path):
        """Without REPO_NAME the target directory name is used."""
        ctx = make_context(target=tmp_path / "farscape")

        assert github.owner_path(ctx) == "farscape"

    def test_org_prefix(self, make_context):
        """ORG prefixes the repository name."""
        ctx = make_context({"REPO_NAME": "shop", "ORG": "acme"})

        assert github.owner_path(ctx) == "acme/shop"


class TestAuth:
    """Tests for check-gh-auth."""

    def test_token_passed_on_stdin(self, make_context, make_runner):
        """The token goes to gh via stdin, never the command line."""
        runner = make_runner()

        github.check_gh_auth(make_context({"GITHUB_TOKEN": "ghp_abcdef123456"}, runner=runner))

        assert runner.commands == ["gh auth login --with-token"]
        assert runner.inputs == ["ghp_abcdef123456"]

    def test_missing_token_is_fatal(self, make_context):
        """Unauthenticated gh without a token cannot continue."""
        with pytest.raises(FatalStepError, match="GITHUB_TOKEN"):
            github.check_gh_auth(make_context())

    def test_git_repo_required(self, make_context):
        """The target must be a git repository."""
        step = github.build_registry().get("check-gh-auth")

        with pytest.raises(PreconditionError, match="init-git"):
            step.precondition(make_context())


class TestCreateRemoteRepo:
    """Tests for create-remote-repo."""

    def test_new_repo_without_origin(self, repo_ctx, make_runner):
        """gh creates the repo, adds origin and pushes in one call."""
        runner = make_runner()
        ctx = repo_ctx({"REPO_NAME": "shop", "VISIBILITY": "private"}, runner=runner)

        github.create_remote_repo(ctx)

        assert runner.commands == ["gh repo create shop --private --source=. --remote=origin --push"]

    def test_existing_repo_is_reused(self, repo_ctx, make_runner):
        """A repo created by an earlier attempt only gets pushed."""
        runner = make_runner(probes={"gh repo view acme/shop": True})
        ctx = repo_ctx({"REPO_NAME": "shop", "ORG": "acme"}, runner=runner)

        github.create_remote_repo(ctx)

        assert runner.commands == [
            "git remote add origin https://github.com/acme/shop.git",
            "git push -u origin HEAD",
        ]

    def test_new_repo_with_origin_pushes_separately(self, repo_ctx, make_runner):
        """An existing origin is kept and pushed to after creation."""
        runner = make_runner()
        ctx = repo_ctx({"REPO_NAME": "shop"}, runner=runner)
        runner.outputs[f"git -C {ctx.target} remote get-url origin"] = "git@github.com:me/shop.git"

        github.create_remote_repo(ctx)

        assert runner.commands == ["gh repo create shop --public", "git push -u origin HEAD"]

    def test_invalid_visibility(self, repo_ctx):
        """VISIBILITY is checked before anything runs."""
        with pytest.raises(PreconditionError, match="VISIBILITY"):
            github._check_visibility(repo_ctx({"VISIBILITY": "secret"}))
