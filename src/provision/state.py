"""Step completion state.

Keyed, hash-versioned record of which steps completed, rewritten atomically
on every change so a crash mid-write never corrupts earlier records.

File layout, one record per line (tab separated):

    step_id    input_hash    completed_at_iso8601

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from provision.schemas import StateRecord

logger = logging.getLogger(__name__)

HEADER = "# provision state v1: step_id<TAB>input_hash<TAB>completed_at\n"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_line(line: str) -> Optional[StateRecord]:
    """Parse one state line, returning None if it is malformed."""
    parts = line.split("\t")
    if len(parts) != 3:
        return None
    step_id, input_hash, completed_at = (p.strip() for p in parts)
    if not step_id or not input_hash or not completed_at:
        return None
    try:
        datetime.fromisoformat(completed_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    return StateRecord(step_id=step_id, input_hash=input_hash, completed_at=completed_at)


class StateStore:
    """Durable record of step completion for one workflow and target."""

    def __init__(self, path: Path):
        """
        Initialize the store.

        Args:
            path: State file path. Created on first write.
        """
        self.path = Path(path)
        self._records: Optional[Dict[str, StateRecord]] = None

    @property
    def _data(self) -> Dict[str, StateRecord]:
        if self._records is None:
            self._records = self.load()
        return self._records

    def load(self) -> Dict[str, StateRecord]:
        """
        Load records from disk.

        Malformed lines are logged and ignored. A malformed line that still
        names a step drops any earlier record for that step, so only that
        step is treated as not done.

        Returns:
            Mapping of step id to its latest valid record.
        """
        records: Dict[str, StateRecord] = {}
        if not self.path.exists():
            return records

        content = self.path.read_text(encoding="utf-8", errors="replace")
        for lineno, raw in enumerate(content.splitlines(), 1):
            line = raw.rstrip("\n")
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            record = _parse_line(line)
            if record is None:
                step_id = line.split("\t", 1)[0].strip()
                logger.warning(
                    f"Ignoring corrupt state record at {self.path}:{lineno}"
                    + (f" (step '{step_id}' will be treated as not done)" if step_id else "")
                )
                if step_id:
                    records.pop(step_id, None)
                continue
            records[record.step_id] = record
        return records

    def reload(self) -> None:
        """Drop cached records so the next query reads the file again."""
        self._records = None

    def get(self, step_id: str) -> Optional[StateRecord]:
        return self._data.get(step_id)

    def records(self) -> List[StateRecord]:
        return list(self._data.values())

    def is_done(self, step_id: str, input_hash: str) -> bool:
        """True only if a record exists for the step with exactly this hash."""
        record = self._data.get(step_id)
        return record is not None and record.input_hash == input_hash

    def mark_done(self, step_id: str, input_hash: str, timestamp: Optional[str] = None) -> StateRecord:
        """
        Record successful completion of a step, replacing any earlier record.

        Args:
            step_id: Step identifier
            input_hash: Hash of the step's declared inputs
            timestamp: ISO 8601 completion time (defaults to now, UTC)

        Returns:
            The stored record.
        """
        record = StateRecord(
            step_id=step_id,
            input_hash=input_hash,
            completed_at=timestamp or _utcnow_iso(),
        )
        self._data[step_id] = record
        self._save()
        return record

    def clear(self, step_id: str) -> bool:
        """
        Remove the record for a step.

        Returns:
            True if a record was removed.
        """
        if step_id not in self._data:
            return False
        del self._data[step_id]
        self._save()
        return True

    def clear_all(self) -> int:
        """Remove every record. Returns the number of records removed."""
        count = len(self._data)
        self._data.clear()
        self._save()
        return count

    def _save(self) -> None:
        """Rewrite the state file atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}-",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(HEADER)
                for record in self._data.values():
                    f.write(f"{record.step_id}\t{record.input_hash}\t{record.completed_at}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
