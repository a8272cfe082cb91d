# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Exclusive run lock per target root.

The lock file holds the owning process id, hostname and acquisition time.
A lock whose process is gone is reclaimed with a warning; a live one makes
the new run fail fast.

Checking the owner and replacing a stale lock happen while holding an
flock on a sidecar guard file, so two runs reclaiming the same stale lock
cannot both win. The owner record is written to a temp file and moved into
place, so the lock file is never seen empty.
"""

import fcntl
import json
import logging
import os
import socket
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from provision.errors import ConcurrentRunError

logger = logging.getLogger(__name__)

# Seconds to wait for another process to finish checking the lock
GUARD_WAIT = 10.0


def pid_alive(pid: int) -> bool:
    """Check whether a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class RunLock:
    """Lock file guarding one target root against concurrent runs.

    Usage:
        with RunLock(path):
            ...
    """

    def __init__(self, path: Path, wait: float = GUARD_WAIT):
        self.path = Path(path)
        self.guard_path = self.path.with_name(self.path.name + ".guard")
        self.wait = wait
        self._held = False

    def read_owner(self) -> Optional[Dict[str, Any]]:
        """Return the lock file content, or None if missing or unreadable."""
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _is_stale(self, owner: Dict[str, Any]) -> bool:
        pid = owner.get("pid")
        if not isinstance(pid, int):
            return True
        host = owner.get("host")
        if host and host != socket.gethostname():
            # Cannot check a process on another host; assume it is alive
            return False
        return not pid_alive(pid)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Hold the guard flock; it is released when the descriptor closes."""
        fd = os.open(self.guard_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            deadline = time.monotonic() + self.wait
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise ConcurrentRunError(f"Another run is acquiring the lock: {self.path}")
                    time.sleep(0.05)
            yield
        finally:
            os.close(fd)

    def _write_owner(self) -> None:
        payload = json.dumps({
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        })
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload + "\n")
            os.chmod(temp_path, 0o644)
            os.replace(temp_path, self.path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise

    def acquire(self) -> None:
        """
        Acquire the lock.

        Raises:
            ConcurrentRunError: If a live process holds the lock, or another
                process keeps the guard longer than ``wait`` seconds
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        with self._guard():
            owner = self.read_owner()
            if owner is not None:
                if not self._is_stale(owner):
                    raise ConcurrentRunError(
                        f"Another run (pid {owner.get('pid')} on {owner.get('host', 'unknown host')}, "
                        f"started {owner.get('acquired_at', 'unknown')}) holds the lock: {self.path}"
                    )
                logger.warning(f"Reclaiming stale run lock {self.path} (owner: {owner or 'unreadable'})")
            self._write_owner()
        self._held = True

    def release(self) -> None:
        """Release the lock if this process holds it."""
        if not self._held:
            return
        owner = self.read_owner()
        if owner and owner.get("pid") == os.getpid():
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
