"""
Tests for tools/process_registry.py - named background processes.

These spawn real (short) shell commands; nothing needs network access.
"""

import os
import signal
import subprocess
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from tools.errors import AlreadyRunning, NotFound, RuntimeFailure, SpawnFailure
from tools.overflow_writer import OverflowDirectory, OverflowWriter
from tools.process_registry import ProcessRegistry, ProcessState, split_returncode


def wait_until(predicate, timeout=10.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def exited(registry, name):
    return next((rec for rec in registry.recently_exited() if rec["name"] == name), None)


@pytest.fixture()
def make_registry(overflow_dir):
    created = []

    def _make(**kwargs):
        writer = OverflowWriter(OverflowDirectory.resolve(overflow_dir))
        registry = ProcessRegistry(writer, **kwargs)
        created.append(registry)
        return registry

    yield _make
    for registry in created:
        registry.kill_all()


@pytest.fixture()
def registry(make_registry):
    return make_registry()


class TestRegister:
    def test_register_starts_running_process(self, registry):
        managed = registry.register("w1", "sleep 5")
        assert managed.pid > 0
        assert managed.state == ProcessState.RUNNING
        assert managed.running

        [entry] = registry.snapshot()
        assert entry["name"] == "w1"
        assert entry["pid"] == managed.pid
        assert entry["command"] == "sleep 5"
        assert entry["running"] is True
        assert entry["startTime"].endswith("Z")
        assert "exitCode" not in entry

    def test_duplicate_name_is_rejected_and_original_kept(self, registry):
        first = registry.register("x", "sleep 5")
        with pytest.raises(AlreadyRunning) as exc:
            registry.register("x", "sleep 6")
        assert "already running" in str(exc.value)
        assert registry.lookup("x") is first
        assert [e["command"] for e in registry.snapshot()] == ["sleep 5"]

    def test_spawn_failure_leaves_registry_empty(self, registry, tmp_path):
        with pytest.raises(SpawnFailure):
            registry.register("bad", "echo hi", cwd=str(tmp_path / "does-not-exist"))
        assert registry.names() == []

    def test_uses_given_cwd(self, registry, tmp_path):
        registry.register("pwd", "pwd; sleep 5", cwd=str(tmp_path))
        assert wait_until(lambda: registry.snapshot()[0]["recentOutput"].strip() != "")
        entry = registry.snapshot()[0]
        assert entry["cwd"] == str(tmp_path)
        assert Path(entry["recentOutput"].strip()).resolve() == tmp_path.resolve()


class TestOutput:
    def test_stdout_and_stderr_are_separate(self, registry):
        registry.register("io", "echo out; echo err 1>&2; sleep 5")
        assert wait_until(lambda: registry.snapshot()[0]["errorSize"] == 4)
        entry = registry.snapshot()[0]
        assert entry["recentOutput"] == "out\n"
        assert entry["recentErrors"] == "err\n"
        assert entry["outputSize"] == 4

    def test_preview_is_capped(self, make_registry):
        registry = make_registry(preview_bytes=100)
        registry.register("big", "head -c 5000 /dev/zero | tr '\\0' a; sleep 5")
        assert wait_until(lambda: registry.snapshot()[0]["outputSize"] == 5000)
        preview = registry.snapshot()[0]["recentOutput"]
        assert preview.startswith("a" * 100)
        assert "[Output truncated - exceeded size limit]" in preview
        assert len(preview) < 200


class TestExit:
    def test_natural_exit_removes_entry_and_leaves_record(self, registry):
        registry.register("quick", "echo hi")
        assert wait_until(lambda: exited(registry, "quick") is not None)
        assert registry.names() == []
        with pytest.raises(NotFound):
            registry.lookup("quick")

        record = exited(registry, "quick")
        assert record["state"] == "exited"
        assert record["running"] is False
        assert record["exitCode"] == 0
        assert record["recentOutput"] == "hi\n"
        assert record["endTime"].endswith("Z")

    def test_nonzero_exit_code_is_recorded(self, registry):
        registry.register("fails", "exit 3")
        assert wait_until(lambda: exited(registry, "fails") is not None)
        assert exited(registry, "fails")["exitCode"] == 3

    def test_exit_by_signal_is_recorded(self, registry):
        registry.register("sig", "kill -TERM $$")
        assert wait_until(lambda: exited(registry, "sig") is not None)
        record = exited(registry, "sig")
        assert record["exitSignal"] == "SIGTERM"
        assert "exitCode" not in record

    def test_exited_name_can_be_reused(self, registry):
        registry.register("again", "true")
        assert wait_until(lambda: exited(registry, "again") is not None)
        managed = registry.register("again", "sleep 5")
        assert registry.lookup("again") is managed

    def test_exited_records_are_bounded(self, make_registry):
        registry = make_registry(max_exited=1)
        registry.register("a", "true")
        assert wait_until(lambda: exited(registry, "a") is not None)
        registry.register("b", "true")
        assert wait_until(lambda: exited(registry, "b") is not None)
        assert [rec["name"] for rec in registry.recently_exited()] == ["b"]


class TestOverflow:
    def test_overflow_is_saved_on_exit(self, make_registry, overflow_dir):
        registry = make_registry(max_output_size=100)
        registry.register("flood", "head -c 5000 /dev/zero | tr '\\0' x")
        assert wait_until(lambda: exited(registry, "flood") is not None)

        info = exited(registry, "flood")["stdoutOverflow"]
        assert info["overflow"] is True
        assert info["saved"] is True
        saved = Path(info["file"])
        assert saved.parent == overflow_dir
        assert saved.name.startswith("bg-flood-stdout-")
        content = saved.read_bytes()
        assert content and set(content) == {ord("x")}
        assert "stderrOverflow" not in exited(registry, "flood")

    def test_overflow_path_visible_while_running(self, make_registry, overflow_dir):
        registry = make_registry(max_output_size=100)
        registry.register("flood", "head -c 5000 /dev/zero | tr '\\0' x; sleep 5")
        assert wait_until(lambda: "stdoutOverflow" in registry.snapshot()[0])

        info = registry.snapshot()[0]["stdoutOverflow"]
        assert info["overflow"] is True
        path = Path(info["file"])
        assert path.parent == overflow_dir
        assert not path.exists()

        report = registry.kill("flood")
        assert report["stdoutOverflow"]["file"] == info["file"]

    def test_reader_error_marks_errored_without_saving(self, make_registry, overflow_dir):
        registry = make_registry(max_output_size=10)
        managed = registry.register("err", "echo 0123456789abcdef; sleep 5")
        assert wait_until(lambda: managed.stdout.overflowed)

        registry._on_error(managed, "stdout read failed: boom")
        assert registry.names() == []
        record = exited(registry, "err")
        assert record["state"] == "errored"
        assert record["error"] == "stdout read failed: boom"
        assert record["stdoutOverflow"]["saved"] is False

        # A late exit event does not leave the terminal state
        registry._on_exit(managed, 0)
        assert managed.state == ProcessState.ERRORED
        assert list(overflow_dir.iterdir()) == []
        os.killpg(managed.pid, signal.SIGKILL)


class TestKill:
    def test_kill_then_list(self, registry):
        managed = registry.register("x", "sleep 5")
        report = registry.kill("x")
        assert report["pid"] == managed.pid
        assert report["forced"] is False
        assert "x" not in [e["name"] for e in registry.snapshot()]
        assert wait_until(lambda: managed.process.poll() is not None)
        assert managed.process.returncode < 0

    def test_kill_reaches_children_after_shell_exits(self, registry):
        managed = registry.register("orphan", "sleep 30 & true")
        assert wait_until(lambda: managed.process.poll() is not None)
        # The shell is gone but sleep still holds the pipes open
        assert registry.lookup("orphan") is managed

        started = time.monotonic()
        report = registry.kill("orphan")
        assert report["forced"] is False
        assert wait_until(lambda: exited(registry, "orphan") is not None, timeout=3.0)
        assert time.monotonic() - started < 3.0
        assert all(not reader.is_alive() for reader in managed._readers)

    def test_signal_to_finished_group_is_quiet(self):
        proc = subprocess.Popen("true", shell=True, start_new_session=True)
        proc.wait()
        ProcessRegistry._signal(proc, signal.SIGTERM)

    def test_kill_unknown_name(self, registry):
        with pytest.raises(NotFound) as exc:
            registry.kill("ghost")
        assert "ghost" in str(exc.value)

    def test_kill_falls_back_to_sigkill(self, registry):
        managed = registry.register("stubborn", "sleep 5")
        real_signal = ProcessRegistry._signal

        def term_fails(proc, sig):
            if sig == signal.SIGTERM:
                raise OSError("operation not permitted")
            real_signal(proc, sig)

        with patch.object(ProcessRegistry, "_signal", side_effect=term_fails):
            report = registry.kill("stubborn")

        assert report["forced"] is True
        assert registry.names() == []
        assert wait_until(lambda: managed.process.poll() is not None)
        assert managed.process.returncode == -signal.SIGKILL

    def test_kill_reports_failure_when_both_signals_fail(self, registry):
        managed = registry.register("immortal", "sleep 5")
        with patch.object(ProcessRegistry, "_signal", side_effect=OSError("no such process")):
            with pytest.raises(RuntimeFailure) as exc:
                registry.kill("immortal")
        assert exc.value.pid == managed.pid
        assert registry.lookup("immortal") is managed

    def test_kill_all(self, registry):
        for i in range(3):
            registry.register(f"p{i}", "sleep 5")
        assert registry.kill_all() == 3
        assert registry.snapshot() == []


class TestRemove:
    def test_remove_is_identity_conditional(self, registry):
        first = registry.register("r", "sleep 5")
        other = registry.register("other", "sleep 5")
        assert registry.remove("r", other) is None
        assert registry.lookup("r") is first
        assert registry.remove("r") is first
        assert "r" not in registry.names()
        os.killpg(first.pid, signal.SIGKILL)

    def test_remove_missing_name(self, registry):
        assert registry.remove("nothing") is None


class TestSplitReturncode:
    def test_values(self):
        assert split_returncode(None) == (None, None)
        assert split_returncode(0) == (0, None)
        assert split_returncode(2) == (2, None)
        assert split_returncode(-9) == (None, "SIGKILL")
