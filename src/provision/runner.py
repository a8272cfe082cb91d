"""
Command runner for provision.

Executes external commands (package managers, docker, git, gh) with variable
substitution, bounded timeouts and error classification. The runner treats
every collaborator as an opaque process: exit code plus captured output.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import re
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Any, Collection, List, Mapping, Optional, Union

from provision.errors import FatalStepError, TransientStepError

Command = Union[str, List[str]]


def _tail(text: Optional[str], lines: int = 10) -> str:
    if not text:
        return ""
    return "\n".join(text.strip().split("\n")[-lines:])


class CommandRunner:
    """Executes external commands with variable substitution."""

    def __init__(self, verbose: bool = False, env: Optional[Mapping[str, str]] = None):
        """
        Initialize command runner.

        Args:
            verbose: Log command stdout at debug level
            env: Extra environment variables for every command
        """
        self.verbose = verbose
        self.env = dict(env or {})
        self.logger = logging.getLogger(__name__)

    def substitute_variables(self, command: str, variables: Mapping[str, Any]) -> str:
        """
        Substitute variables in command string.

        Supports escaping with double braces: {{text}} becomes {text}

        Args:
            command: Command template with {variable} placeholders
            variables: Mapping of variable name -> value

        Returns:
            Command with variables substituted

        Example:
            >>> substitute_variables("git clone {STARTER_REPO}", {"STARTER_REPO": "https://x"})
            'git clone https://x'
        """
        escape_open = "\x00ESCAPED_OPEN\x00"
        escape_close = "\x00ESCAPED_CLOSE\x00"
        result = command.replace("{{", escape_open).replace("}}", escape_close)

        for key, value in variables.items():
            placeholder = f"{{{key}}}"
            if placeholder in result:
                result = result.replace(placeholder, "" if value is None else str(value))

        remaining = re.findall(r"\{(\w+)\}", result)
        if remaining:
            self.logger.warning(f"Unsubstituted variables: {remaining}")

        return result.replace(escape_open, "{").replace(escape_close, "}")

    def run(
        self,
        command: Command,
        variables: Optional[Mapping[str, Any]] = None,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        transient_exit_codes: Collection[int] = (),
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """
        Execute a command.

        String commands run through the shell; lists run directly.

        Args:
            command: Command to execute (may contain {variable} placeholders)
            variables: Mapping of variables to substitute
            cwd: Working directory
            env: Extra environment variables for this command
            timeout: Seconds before the command is killed
            check: Raise on non-zero exit code
            transient_exit_codes: Exit codes that indicate a retryable failure
            input: Text passed to stdin

        Returns:
            CompletedProcess with captured stdout/stderr

        Raises:
            TransientStepError: On timeout or a transient exit code
            FatalStepError: On any other non-zero exit or a missing executable
        """
        variables = variables or {}
        if isinstance(command, str):
            final: Command = self.substitute_variables(command, variables)
            display = final
        else:
            final = [self.substitute_variables(str(part), variables) for part in command]
            display = shlex.join(final)

        if len(display) > 100:
            self.logger.info(f"Executing: {display[:100]}...")
        else:
            self.logger.info(f"Executing: {display}")

        proc_env = os.environ.copy()
        proc_env.update(self.env)
        if env:
            proc_env.update(env)

        try:
            result = subprocess.run(
                final,
                shell=isinstance(final, str),
                cwd=str(cwd) if cwd else None,
                env=proc_env,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
            )
        except subprocess.TimeoutExpired as e:
            self.logger.error(f"Command timed out after {timeout}s: {display}")
            raise TransientStepError(f"Command timed out after {timeout}s: {display}", cause=e)
        except FileNotFoundError as e:
            raise FatalStepError(f"Executable not found: {display}", cause=e)

        if self.verbose and result.stdout:
            self.logger.debug(f"STDOUT:\n{result.stdout}")

        if result.returncode != 0 and check:
            self.logger.error(f"Command failed with exit code {result.returncode}")
            if result.stderr:
                self.logger.error(f"STDERR:\n{_tail(result.stderr)}")
            message = f"Command exited with code {result.returncode}: {display}"
            stderr_tail = _tail(result.stderr, 3)
            if stderr_tail:
                message += f"\n{stderr_tail}"
            if result.returncode in transient_exit_codes:
                raise TransientStepError(message)
            raise FatalStepError(message)

        return result

    def probe(
        self,
        command: Command,
        cwd: Optional[Union[str, Path]] = None,
        timeout: float = 30.0,
    ) -> bool:
        """
        Run a read-only check command.

        Returns:
            True if the command exits 0, False on failure, timeout or a
            missing executable.
        """
        try:
            result = subprocess.run(
                command,
                shell=isinstance(command, str),
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            self.logger.debug(f"Probe failed: {command}: {e}")
            return False
        return result.returncode == 0

    def output(
        self,
        command: Command,
        cwd: Optional[Union[str, Path]] = None,
        timeout: float = 30.0,
    ) -> Optional[str]:
        """Return stripped stdout of a read-only command, or None on failure."""
        try:
            result = subprocess.run(
                command,
                shell=isinstance(command, str),
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    @staticmethod
    def which(tool: str) -> Optional[str]:
        """Locate an executable on PATH."""
        return shutil.which(tool)
