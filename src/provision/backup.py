# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Backup and rollback for destructive steps.

Before a step mutates a path, the path is copied into run-scoped temporary
storage. A failed run restores every snapshot in reverse order, so nested
and overlapping paths unwind correctly. A successful run discards them.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from provision.errors import RestoreError, SnapshotError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupHandle:
    """One (original path, snapshot path) pair of a run's BackupSet.

    A null handle (``snapshot is None``) records that the path did not exist
    before the run; restoring it removes the path again.
    """

    original: Path
    snapshot: Optional[Path]
    is_dir: bool = False

    @property
    def existed(self) -> bool:
        return self.snapshot is not None


@dataclass
class RollbackReport:
    """Outcome of replaying a BackupSet."""

    restored: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)
    snapshot_dir: Optional[Path] = None

    @property
    def clean(self) -> bool:
        return not self.failed

    @property
    def unrestored(self) -> List[str]:
        return [str(path) for path, _ in self.failed]


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _copy(src: Path, dest: Path, is_dir: bool) -> None:
    if is_dir:
        shutil.copytree(src, dest, symlinks=True)
    else:
        shutil.copy2(src, dest, follow_symlinks=False)


class BackupManager:
    """Owns the BackupSet of a single run."""

    def __init__(self, root: Optional[Path] = None, run_id: str = ""):
        """
        Initialize the manager.

        Args:
            root: Parent directory for snapshot storage (system temp if None)
            run_id: Used in the storage directory name
        """
        self.root = Path(root) if root else None
        self.run_id = run_id
        self._dir: Optional[Path] = None
        self._handles: List[BackupHandle] = []

    @property
    def handles(self) -> List[BackupHandle]:
        """Snapshots taken so far, in chronological order."""
        return list(self._handles)

    @property
    def storage_dir(self) -> Optional[Path]:
        return self._dir

    def _storage(self) -> Path:
        if self._dir is None:
            if self.root is not None:
                self.root.mkdir(parents=True, exist_ok=True)
            prefix = f"provision-{self.run_id[:8]}-" if self.run_id else "provision-"
            self._dir = Path(tempfile.mkdtemp(prefix=prefix, dir=self.root))
        return self._dir

    def snapshot(self, path: Union[str, Path]) -> BackupHandle:
        """
        Copy a file or directory tree into run-scoped storage.

        Snapshotting a path that is already protected in this run returns
        the earlier handle, since that copy holds the pre-run state.

        Args:
            path: File or directory to protect

        Returns:
            BackupHandle (a null handle if the path does not exist)

        Raises:
            SnapshotError: If the source cannot be read
        """
        original = Path(path).expanduser().absolute()
        for handle in self._handles:
            if handle.original == original:
                return handle

        if not os.path.lexists(original):
            handle = BackupHandle(original=original, snapshot=None)
            self._handles.append(handle)
            logger.debug(f"Nothing to snapshot, {original} does not exist yet")
            return handle

        is_dir = original.is_dir() and not original.is_symlink()
        dest = self._storage() / f"{len(self._handles):04d}-{original.name or 'root'}"
        try:
            _copy(original, dest, is_dir)
        except (OSError, shutil.Error) as e:
            if os.path.lexists(dest):
                _remove(dest)
            raise SnapshotError(f"Cannot snapshot {original}: {e}") from e

        handle = BackupHandle(original=original, snapshot=dest, is_dir=is_dir)
        self._handles.append(handle)
        logger.info(f"Snapshot taken: {original}")
        return handle

    def _restore(self, handle: BackupHandle) -> None:
        original = handle.original
        try:
            if os.path.lexists(original):
                _remove(original)
            if handle.snapshot is None:
                return
            original.parent.mkdir(parents=True, exist_ok=True)
            _copy(handle.snapshot, original, handle.is_dir)
        except (OSError, shutil.Error) as e:
            raise RestoreError(f"Cannot restore {original}: {e}") from e

    def rollback_all(self) -> RollbackReport:
        """
        Restore every snapshot, latest first.

        A failed restore is logged and rollback continues with the rest.
        Snapshot storage is kept when anything failed so the operator can
        recover by hand.

        Returns:
            RollbackReport listing restored and unrestored paths.
        """
        report = RollbackReport(snapshot_dir=self._dir)
        for handle in reversed(self._handles):
            try:
                self._restore(handle)
            except RestoreError as e:
                logger.error(f"Restore failed for {handle.original}: {e}")
                report.failed.append((handle.original, str(e)))
                continue
            report.restored.append(handle.original)
            if handle.existed:
                logger.info(f"Restored {handle.original}")
            else:
                logger.info(f"Removed {handle.original} (did not exist before the run)")

        self._handles = []
        if report.clean:
            self._discard()
        else:
            logger.error(f"Snapshots kept for manual recovery: {self._dir}")
        return report

    def commit(self) -> None:
        """Discard all snapshots of a successful run."""
        self._handles = []
        self._discard()

    def _discard(self) -> None:
        if self._dir is not None and self._dir.exists():
            shutil.rmtree(self._dir, ignore_errors=True)
        self._dir = None
