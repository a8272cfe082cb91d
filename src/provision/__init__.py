# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Idempotent, rollback-capable provisioning orchestrator."""

__version__ = "0.3.0"
