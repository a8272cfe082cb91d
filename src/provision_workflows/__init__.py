"""
Workflow step definitions for provision.

Each module declares one workflow: NAME, DESCRIPTION, an ``__io__``
declaration and ``build_registry()``. WORKFLOWS lists them in the order
they are meant to be run against a fresh machine.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

from provision_workflows import (
    apps,
    dependencies,
    git_init,
    github,
    monorepo,
    starter,
    system_setup,
)

WORKFLOWS = {
    module.NAME: module
    for module in (system_setup, monorepo, git_init, github, starter, apps, dependencies)
}

__all__ = ["WORKFLOWS"]
