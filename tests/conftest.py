# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures for provision tests."""

import subprocess
from pathlib import Path
from types import MappingProxyType

import pytest

from provision.runner import CommandRunner
from provision.schemas import StepContext


class FakeRunner(CommandRunner):
    """CommandRunner double.

    Records every command, answers probe/output/which from tables and never
    starts a process. Side effects let a test emulate what a command would
    have done to the filesystem.
    """

    def __init__(self, tools=(), probes=None, outputs=None):
        super().__init__()
        self.tools = set(tools)
        self.probes = dict(probes or {})
        self.outputs = dict(outputs or {})
        self.side_effects = {}
        self.commands = []
        self.inputs = []

    @staticmethod
    def key(command) -> str:
        if isinstance(command, str):
            return command
        return " ".join(str(part) for part in command)

    def run(self, command, **kwargs):
        key = self.key(command)
        self.commands.append(key)
        self.inputs.append(kwargs.get("input"))
        for prefix, effect in self.side_effects.items():
            if key.startswith(prefix):
                effect(command, kwargs)
        return subprocess.CompletedProcess(command, 0, "", "")

    def probe(self, command, cwd=None, timeout=30.0) -> bool:
        return self.probes.get(self.key(command), False)

    def output(self, command, cwd=None, timeout=30.0):
        return self.outputs.get(self.key(command))

    def which(self, tool):
        return f"/usr/bin/{tool}" if tool in self.tools else None


@pytest.fixture(autouse=True)
def provision_home(tmp_path, monkeypatch):
    """Keep state, locks, logs and snapshots inside the test's tmp dir."""
    home = tmp_path / "provision-home"
    monkeypatch.setenv("PROVISION_HOME", str(home))
    monkeypatch.delenv("PROVISION_CONFIG", raising=False)
    return home


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_runner():
    """Factory for FakeRunner objects: make_runner(tools=..., probes=..., outputs=...)."""
    return FakeRunner


@pytest.fixture
def make_context(tmp_path):
    """Factory for StepContext objects rooted at tmp_path/target."""

    def _make(config=None, runner=None, target=None, dry_run=False) -> StepContext:
        root = Path(target) if target else tmp_path / "target"
        root.mkdir(parents=True, exist_ok=True)
        return StepContext(
            target=root,
            config=MappingProxyType(dict(config or {})),
            runner=runner or FakeRunner(),
            work_dir=tmp_path / "work",
            dry_run=dry_run,
        )

    return _make
