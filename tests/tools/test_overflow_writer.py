"""Tests for tools/overflow_writer.py - overflow directory resolution and writes."""

import re
from datetime import datetime
from unittest.mock import patch

import pytest

from tools.errors import PersistenceFailure
from tools.overflow_writer import OverflowDirectory, OverflowWriter


class TestOverflowDirectory:
    def test_no_configured_dir_uses_default(self, tmp_path):
        directory = OverflowDirectory.resolve(None, default=tmp_path)
        assert directory.effective == tmp_path
        assert directory.is_default
        assert directory.error is None

    def test_missing_dir_is_created(self, tmp_path):
        target = tmp_path / "a" / "b"
        directory = OverflowDirectory.resolve(target, default=tmp_path / "tmp")
        assert directory.effective == target
        assert target.is_dir()
        assert not directory.is_default

    def test_write_check_file_is_removed(self, tmp_path):
        target = tmp_path / "custom"
        OverflowDirectory.resolve(target, default=tmp_path)
        assert list(target.iterdir()) == []

    def test_file_instead_of_dir_falls_back(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        directory = OverflowDirectory.resolve(blocker, default=tmp_path / "tmp")
        assert directory.effective == tmp_path / "tmp"
        assert directory.configured == blocker
        assert directory.error

    def test_default_is_system_temp_dir(self):
        import tempfile
        directory = OverflowDirectory.resolve()
        assert str(directory.effective) == tempfile.gettempdir()


class TestFilenames:
    def test_filename_shape(self):
        name = OverflowWriter.make_filename("stdout", when=datetime(2024, 5, 6, 7, 8, 9, 123456))
        assert re.fullmatch(r"stdout-20240506-070809-123456-[0-9a-f]{6}\.log", name)

    def test_unsafe_characters_are_replaced(self):
        name = OverflowWriter.make_filename("bg-my server/../x-stdout")
        assert "/" not in name
        assert " " not in name
        assert name.startswith("bg-my_server_.._x-stdout-")

    def test_filenames_are_unique(self):
        when = datetime.now()
        names = {OverflowWriter.make_filename("response", when=when) for _ in range(50)}
        assert len(names) == 50


class TestWrite:
    def test_writes_to_effective_dir(self, tmp_path):
        custom = tmp_path / "custom"
        writer = OverflowWriter(OverflowDirectory.resolve(custom, default=tmp_path / "tmp"))
        path = writer.write("out.log", "hello")
        assert path == custom / "out.log"
        assert path.read_text() == "hello"

    def test_custom_dir_failure_retries_under_default(self, tmp_path):
        custom = tmp_path / "custom"
        default = tmp_path / "tmp"
        writer = OverflowWriter(OverflowDirectory.resolve(custom, default=default))

        real_write = OverflowWriter._write_file

        def flaky(path, payload):
            if path.parent == custom:
                raise OSError("read-only file system")
            real_write(path, payload)

        with patch.object(OverflowWriter, "_write_file", side_effect=flaky):
            path = writer.write("out.log", b"data")

        assert path == default / "out.log"
        assert path.read_bytes() == b"data"

    def test_both_failures_raise_persistence_failure(self, tmp_path):
        writer = OverflowWriter(OverflowDirectory.resolve(tmp_path / "custom", default=tmp_path / "tmp"))
        with patch.object(OverflowWriter, "_write_file", side_effect=OSError("no space")):
            with pytest.raises(PersistenceFailure):
                writer.write("out.log", "x")

    def test_default_dir_failure_is_not_retried(self, tmp_path):
        writer = OverflowWriter(OverflowDirectory.resolve(None, default=tmp_path))
        with patch.object(OverflowWriter, "_write_file", side_effect=OSError("no space")) as mocked:
            with pytest.raises(PersistenceFailure):
                writer.write("out.log", "x")
        assert mocked.call_count == 1
