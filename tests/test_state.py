# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for step completion state."""

import logging

from provision.state import HEADER, StateStore


class TestStateStore:
    """Tests for StateStore queries and updates."""

    def test_missing_file_means_nothing_done(self, tmp_path):
        """A store without a file has no records."""
        store = StateStore(tmp_path / "wf.state")

        assert store.is_done("a", "h1") is False
        assert store.records() == []

    def test_mark_done_then_is_done(self, tmp_path):
        """is_done should be true only for exactly the recorded hash."""
        store = StateStore(tmp_path / "wf.state")
        store.mark_done("a", "h1")

        assert store.is_done("a", "h1") is True
        assert store.is_done("a", "h2") is False
        assert store.is_done("b", "h1") is False

    def test_mark_done_overwrites(self, tmp_path):
        """A new record replaces the earlier one for the same step."""
        store = StateStore(tmp_path / "wf.state")
        store.mark_done("a", "h1")
        store.mark_done("a", "h2")

        assert store.is_done("a", "h2") is True
        assert store.is_done("a", "h1") is False
        assert len(store.records()) == 1

    def test_records_persist(self, tmp_path):
        """A fresh store reads what an earlier one wrote."""
        path = tmp_path / "state" / "wf.state"
        StateStore(path).mark_done("a", "h1", timestamp="2025-01-01T00:00:00+00:00")

        record = StateStore(path).get("a")
        assert record is not None
        assert record.input_hash == "h1"
        assert record.completed_at == "2025-01-01T00:00:00+00:00"

    def test_file_layout(self, tmp_path):
        """One tab separated line per record after the header."""
        path = tmp_path / "wf.state"
        StateStore(path).mark_done("a", "h1", timestamp="2025-01-01T00:00:00+00:00")

        assert path.read_text() == HEADER + "a\th1\t2025-01-01T00:00:00+00:00\n"

    def test_no_temp_files_left(self, tmp_path):
        """Atomic rewrite leaves only the state file behind."""
        path = tmp_path / "wf.state"
        store = StateStore(path)
        store.mark_done("a", "h1")
        store.mark_done("b", "h2")

        assert [p.name for p in tmp_path.iterdir()] == ["wf.state"]

    def test_clear_and_clear_all(self, tmp_path):
        """clear() removes one record, clear_all() every record."""
        store = StateStore(tmp_path / "wf.state")
        store.mark_done("a", "h1")
        store.mark_done("b", "h2")
        store.mark_done("c", "h3")

        assert store.clear("a") is True
        assert store.clear("a") is False
        assert StateStore(tmp_path / "wf.state").is_done("a", "h1") is False
        assert store.clear_all() == 2
        assert StateStore(tmp_path / "wf.state").records() == []


class TestCorruption:
    """Corrupt records only affect the step they belong to."""

    def test_corrupt_line_is_skipped(self, tmp_path, caplog):
        """Unparsable lines are ignored with a warning."""
        path = tmp_path / "wf.state"
        path.write_text(
            HEADER
            + "a\th1\t2025-01-01T00:00:00+00:00\n"
            + "garbage line without tabs\n"
            + "b\th2\t2025-01-01T00:00:00+00:00\n"
        )

        with caplog.at_level(logging.WARNING):
            store = StateStore(path)
            assert store.is_done("a", "h1") is True
            assert store.is_done("b", "h2") is True
        assert "corrupt state record" in caplog.text

    def test_corrupt_record_drops_step(self, tmp_path):
        """A corrupt line naming a step makes only that step not done."""
        path = tmp_path / "wf.state"
        path.write_text(
            "a\th1\t2025-01-01T00:00:00+00:00\n"
            "b\th2\t2025-01-01T00:00:00+00:00\n"
            "a\th1\tnot-a-timestamp\n"
        )

        store = StateStore(path)
        assert store.is_done("a", "h1") is False
        assert store.is_done("b", "h2") is True

    def test_rewrite_after_corruption(self, tmp_path):
        """The next write drops corrupt lines and keeps valid records."""
        path = tmp_path / "wf.state"
        path.write_text("a\th1\t2025-01-01T00:00:00+00:00\nbroken\n")

        store = StateStore(path)
        store.mark_done("c", "h3")

        content = path.read_text()
        assert "broken" not in content
        assert "a\th1\t" in content
        assert "c\th3\t" in content
