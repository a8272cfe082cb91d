# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Main entry point for running provision as a module."""

from provision.cli import main

if __name__ == "__main__":
    main()
