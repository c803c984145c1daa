"""Tests for tools/environments/local.py - synchronous command execution."""

import time
import unittest
from dataclasses import fields

from tools.environments.local import ExecutionOutcome, LocalEnvironment


class TestLocalEnvironment(unittest.TestCase):
    def setUp(self):
        self.env = LocalEnvironment(timeout_ms=10000)

    def test_success_captures_stdout(self):
        outcome = self.env.execute("echo hello")
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.stdout, "hello\n")
        self.assertEqual(outcome.stderr, "")
        self.assertEqual(outcome.code, 0)
        self.assertIsNone(outcome.signal)

    def test_outcome_carries_only_reported_fields(self):
        names = {f.name for f in fields(ExecutionOutcome)}
        self.assertEqual(
            names,
            {"command", "stdout", "stderr", "code", "signal", "timed_out", "error", "error_type"},
        )

    def test_small_explicit_timeout_is_honoured(self):
        started = time.monotonic()
        outcome = self.env.execute("sleep 2", timeout_ms=1)
        self.assertLess(time.monotonic() - started, 1.9)
        self.assertTrue(outcome.timed_out)
        self.assertEqual(outcome.error, "Command timed out after 1ms")

    def test_stderr_is_separate(self):
        outcome = self.env.execute("echo out; echo err 1>&2")
        self.assertEqual(outcome.stdout, "out\n")
        self.assertEqual(outcome.stderr, "err\n")

    def test_nonzero_exit(self):
        outcome = self.env.execute("false")
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.code, 1)
        self.assertIsNone(outcome.signal)
        self.assertIn("exit code 1", outcome.error)
        self.assertEqual(outcome.stdout, "")

    def test_killed_by_signal(self):
        outcome = self.env.execute("kill -KILL $$")
        self.assertFalse(outcome.success)
        self.assertIsNone(outcome.code)
        self.assertEqual(outcome.signal, "SIGKILL")

    def test_timeout_kills_and_keeps_output(self):
        start = time.monotonic()
        outcome = self.env.execute("echo before; sleep 10", timeout_ms=300)
        self.assertLess(time.monotonic() - start, 5)
        self.assertFalse(outcome.success)
        self.assertTrue(outcome.timed_out)
        self.assertEqual(outcome.signal, "SIGTERM")
        self.assertIsNone(outcome.code)
        self.assertEqual(outcome.error_type, "Timeout")
        self.assertEqual(outcome.error, "Command timed out after 300ms")
        self.assertEqual(outcome.stdout, "before\n")

    def test_timeout_escalates_when_sigterm_is_ignored(self):
        start = time.monotonic()
        outcome = self.env.execute("trap '' TERM; sleep 10", timeout_ms=200)
        self.assertLess(time.monotonic() - start, 8)
        self.assertTrue(outcome.timed_out)

    def test_max_buffer_ceiling(self):
        env = LocalEnvironment(max_buffer=1000)
        outcome = env.execute("yes")
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error, "stdout maxBuffer length exceeded")
        self.assertEqual(outcome.error_type, "RuntimeFailure")
        self.assertEqual(len(outcome.stdout), 1000)

    def test_cwd(self):
        outcome = self.env.execute("pwd", cwd="/")
        self.assertEqual(outcome.stdout, "/\n")

    def test_missing_cwd_is_spawn_failure(self):
        outcome = self.env.execute("echo hi", cwd="/definitely/not/here")
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_type, "SpawnFailure")

    def test_stdin_is_closed(self):
        outcome = self.env.execute("cat")
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.stdout, "")

    def test_extra_env(self):
        env = LocalEnvironment(env={"BASHKEEPER_TEST_VAR": "42"})
        outcome = env.execute("echo $BASHKEEPER_TEST_VAR")
        self.assertEqual(outcome.stdout, "42\n")


if __name__ == "__main__":
    unittest.main()
