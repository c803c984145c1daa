"""
Process Registry -- In-memory registry for named background processes.

Tracks processes launched via run_background(), providing:
  - Per-stream output accumulation (last 100 chunks, byte totals, overflow)
  - Deferred overflow persistence when the process exits
  - Point-in-time snapshots for list_background()
  - Graceful-then-forceful killing
  - Short-lived records of processes that already exited

Lifecycle of a ManagedProcess:

    spawning -> running -> exited(code, signal)
                        \\-> errored(reason)

Exited and errored processes are removed from the registry. Their final
snapshot is kept in ``recently_exited()`` for a while so an overflow file
path is not lost when a process finishes on its own.

Usage:
    registry = ProcessRegistry(writer, max_output_size=51200)

    managed = registry.register("web", "python -m http.server")
    registry.snapshot()
    registry.kill("web")
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from tools.errors import AlreadyRunning, NotFound, PersistenceFailure, RuntimeFailure, SpawnFailure, ToolError
from tools.output_buffer import DEFAULT_MAX_CHUNKS, OutputAccumulator
from tools.overflow_writer import OverflowWriter
from tools.truncation import DEFAULT_MAX_OUTPUT_SIZE, cap_text

logger = logging.getLogger(__name__)

# Limits
READ_CHUNK_SIZE = 4096
RECENT_CHUNKS = 10              # Chunks per stream shown by snapshot()
PREVIEW_BYTES = 1000            # Cap on each snapshot preview
EXITED_TTL_SECONDS = 600        # Keep exited records for 10 minutes
MAX_EXITED = 64                 # Max exited records kept (oldest pruned)
READER_JOIN_TIMEOUT = 5


class ProcessState(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({ProcessState.EXITED, ProcessState.ERRORED})


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def split_returncode(returncode: Optional[int]):
    """Popen returncode -> (exit code, signal name). Negative codes mean a signal."""
    if returncode is None:
        return None, None
    if returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, f"SIG{-returncode}"
    return returncode, None


@dataclass
class ManagedProcess:
    """A named background process with its two output accumulators."""
    name: str                                       # Registry key (caller-supplied)
    command: str                                    # Original command string
    cwd: Optional[str] = None                       # Working directory
    process: Optional[subprocess.Popen] = None      # Popen handle, owned by the registry entry
    pid: Optional[int] = None                       # OS process ID
    started_at: float = 0.0                         # time.time() of spawn
    ended_at: Optional[float] = None                # Set on exit or error
    state: ProcessState = ProcessState.SPAWNING
    exit_code: Optional[int] = None                 # Only after exit
    exit_signal: Optional[str] = None               # Only after exit by signal
    error: Optional[str] = None                     # Only in ERRORED
    stdout: Optional[OutputAccumulator] = None
    stderr: Optional[OutputAccumulator] = None
    saved_files: Dict[str, str] = field(default_factory=dict)   # stream -> path actually written
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _readers: List[threading.Thread] = field(default_factory=list, repr=False)

    @property
    def running(self) -> bool:
        return self.ended_at is None

    def streams(self) -> List[OutputAccumulator]:
        return [acc for acc in (self.stdout, self.stderr) if acc is not None]

    def overflow_descriptors(self) -> Dict[str, Dict[str, Any]]:
        """``{"stdoutOverflow": {...}, ...}`` for every stream that overflowed."""
        descriptors = {}
        with self._lock:
            for acc in self.streams():
                if not acc.overflowed:
                    continue
                info: Dict[str, Any] = {"overflow": True}
                if acc.overflow_path is not None:
                    info["file"] = str(acc.overflow_path)
                if self.state in TERMINAL_STATES:
                    saved = self.saved_files.get(acc.stream)
                    info["saved"] = saved is not None
                    if saved:
                        info["file"] = saved
                descriptors[f"{acc.stream}Overflow"] = info
        return descriptors

    def snapshot(self, recent_chunks: int = RECENT_CHUNKS, preview_bytes: int = PREVIEW_BYTES) -> Dict[str, Any]:
        """Point-in-time view, copied under the process lock."""
        with self._lock:
            entry: Dict[str, Any] = {
                "name": self.name,
                "pid": self.pid,
                "command": self.command,
                "cwd": self.cwd,
                "startTime": _iso(self.started_at),
                "running": self.running,
            }
            if self.exit_code is not None:
                entry["exitCode"] = self.exit_code
            out_text = self.stdout.recent_text(recent_chunks)
            err_text = self.stderr.recent_text(recent_chunks)
            entry["outputSize"] = self.stdout.total_bytes
            entry["errorSize"] = self.stderr.total_bytes
            entry.update(self.overflow_descriptors())
        entry["recentOutput"] = cap_text(out_text, preview_bytes)
        entry["recentErrors"] = cap_text(err_text, preview_bytes)
        return entry

    def final_snapshot(self, recent_chunks: int = RECENT_CHUNKS, preview_bytes: int = PREVIEW_BYTES) -> Dict[str, Any]:
        """Snapshot plus terminal-state fields, used for exited records."""
        entry = self.snapshot(recent_chunks, preview_bytes)
        with self._lock:
            entry["state"] = self.state.value
            entry["endTime"] = _iso(self.ended_at)
            if self.exit_signal is not None:
                entry["exitSignal"] = self.exit_signal
            if self.error is not None:
                entry["error"] = self.error
        return entry


class ProcessRegistry:
    """
    Registry of running background processes, keyed by caller-chosen name.

    Thread-safe. The registry lock only guards the name -> process mapping
    and is never held across spawn, signal delivery or file I/O. Each
    ManagedProcess has its own lock shared with its accumulators. Accessed
    from:
      - Tool handler threads (run_background, kill_background, list_background)
      - Per-process reader threads (stdout, stderr)
      - Per-process exit watcher threads
    """

    def __init__(
        self,
        writer: OverflowWriter,
        max_output_size: int = DEFAULT_MAX_OUTPUT_SIZE,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        recent_chunks: int = RECENT_CHUNKS,
        preview_bytes: int = PREVIEW_BYTES,
        exited_ttl_seconds: float = EXITED_TTL_SECONDS,
        max_exited: int = MAX_EXITED,
    ):
        self.writer = writer
        self.max_output_size = max_output_size
        self.max_chunks = max_chunks
        self.recent_chunks = recent_chunks
        self.preview_bytes = preview_bytes
        self.exited_ttl_seconds = exited_ttl_seconds
        self.max_exited = max_exited
        self._processes: Dict[str, ManagedProcess] = {}
        self._exited: Dict[str, Tuple[float, Dict[str, Any]]] = {}   # name -> (ended_at, final snapshot)
        self._lock = threading.Lock()

    # ----- Spawn -----

    def register(self, name: str, command: str, cwd: Optional[str] = None) -> ManagedProcess:
        """
        Spawn *command* under *name* and start supervising it.

        Raises:
            AlreadyRunning: *name* is already registered (the existing entry is kept)
            SpawnFailure: the OS refused to start the process
        """
        with self._lock:
            if name in self._processes:
                raise AlreadyRunning(name)

        managed = ManagedProcess(
            name=name,
            command=command,
            cwd=cwd or os.getcwd(),
            started_at=time.time(),
        )
        managed.stdout = self._make_accumulator(managed, "stdout")
        managed.stderr = self._make_accumulator(managed, "stderr")

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=managed.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning("Failed to spawn background process '%s': %s", name, e)
            raise SpawnFailure(str(e)) from e

        managed.process = proc
        managed.pid = proc.pid
        managed.state = ProcessState.RUNNING

        with self._lock:
            taken = name in self._processes
            if not taken:
                self._processes[name] = managed

        if taken:
            # Lost a race with a concurrent register() for the same name.
            self._signal(proc, signal.SIGKILL)
            proc.wait()
            proc.stdout.close()
            proc.stderr.close()
            raise AlreadyRunning(name)

        self._start_threads(managed)
        logger.info("Started background process '%s' (pid %d): %s", name, proc.pid, command[:200])
        return managed

    def _make_accumulator(self, managed: ManagedProcess, stream: str) -> OutputAccumulator:
        return OutputAccumulator(
            stream=stream,
            max_output_size=self.max_output_size,
            max_chunks=self.max_chunks,
            path_factory=lambda s: self.writer.path_for(f"bg-{managed.name}-{s}"),
            lock=managed._lock,
        )

    def _start_threads(self, managed: ManagedProcess):
        proc = managed.process
        for pipe, accumulator in ((proc.stdout, managed.stdout), (proc.stderr, managed.stderr)):
            reader = threading.Thread(
                target=self._reader_loop,
                args=(managed, pipe, accumulator),
                daemon=True,
                name=f"bg-{accumulator.stream}-{managed.name}",
            )
            managed._readers.append(reader)
            reader.start()

        threading.Thread(
            target=self._exit_watcher,
            args=(managed,),
            daemon=True,
            name=f"bg-exit-{managed.name}",
        ).start()

    # ----- Reader / Watcher Threads -----

    def _reader_loop(self, managed: ManagedProcess, pipe, accumulator: OutputAccumulator):
        """Background thread: feed one pipe into its accumulator until EOF."""
        try:
            while True:
                chunk = pipe.read1(READ_CHUNK_SIZE)
                if not chunk:
                    break
                if accumulator.append(chunk):
                    logger.info(
                        "Background process '%s' %s exceeded %d bytes; retained output will be saved to %s",
                        managed.name, accumulator.stream, accumulator.max_output_size, accumulator.overflow_path,
                    )
        except (OSError, ValueError) as e:
            self._on_error(managed, f"{accumulator.stream} read failed: {e}")
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def _exit_watcher(self, managed: ManagedProcess):
        """Background thread: wait for exit, let readers drain, then finalize."""
        returncode = managed.process.wait()
        for reader in managed._readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)
        self._on_exit(managed, returncode)

    def _on_exit(self, managed: ManagedProcess, returncode: int):
        with managed._lock:
            if managed.state in TERMINAL_STATES:
                return
            managed.state = ProcessState.EXITED
            managed.ended_at = time.time()
            managed.exit_code, managed.exit_signal = split_returncode(returncode)
            pending = [
                (acc.stream, acc.overflow_path, acc.retained())
                for acc in managed.streams()
                if acc.overflowed and acc.overflow_path is not None
            ]

        for stream, path, data in pending:
            try:
                saved = self.writer.write(path.name, data)
            except PersistenceFailure as e:
                logger.warning("Could not save %s overflow for '%s': %s", stream, managed.name, e)
                continue
            with managed._lock:
                managed.saved_files[stream] = str(saved)

        self.remove(managed.name, managed)
        self._record_exited(managed)
        logger.info(
            "Background process '%s' (pid %s) exited (code=%s, signal=%s)",
            managed.name, managed.pid, managed.exit_code, managed.exit_signal,
        )

    def _on_error(self, managed: ManagedProcess, message: str):
        with managed._lock:
            if managed.state in TERMINAL_STATES:
                return
            managed.state = ProcessState.ERRORED
            managed.ended_at = time.time()
            managed.error = message
        self.remove(managed.name, managed)
        self._record_exited(managed)
        logger.error("Background process '%s' (pid %s) errored: %s", managed.name, managed.pid, message)

    # ----- Query Methods -----

    def lookup(self, name: str) -> ManagedProcess:
        """Get a registered process. Raises NotFound."""
        with self._lock:
            managed = self._processes.get(name)
        if managed is None:
            raise NotFound(name)
        return managed

    def remove(self, name: str, process: Optional[ManagedProcess] = None) -> Optional[ManagedProcess]:
        """
        Drop *name* from the registry.

        When *process* is given the entry is only removed if it is still that
        process, so a late exit event cannot evict a newer process that reused
        the name.
        """
        with self._lock:
            current = self._processes.get(name)
            if current is None or (process is not None and current is not process):
                return None
            return self._processes.pop(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._processes)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Point-in-time view of every registered process."""
        with self._lock:
            entries = list(self._processes.values())
        return [m.snapshot(self.recent_chunks, self.preview_bytes) for m in entries]

    def recently_exited(self) -> List[Dict[str, Any]]:
        """Final snapshots of processes that exited or errored recently, oldest first."""
        with self._lock:
            self._prune_exited()
            return [record for _, record in self._exited.values()]

    # ----- Kill -----

    def kill(self, name: str) -> Dict[str, Any]:
        """
        Terminate a background process: SIGTERM first, SIGKILL if that fails.

        The entry is removed as soon as a signal was delivered, without waiting
        for the exit event. Returns ``{"name", "pid", "forced", **overflow}``.

        Raises:
            NotFound: no process registered under *name*
            RuntimeFailure: neither signal could be delivered
        """
        managed = self.lookup(name)
        proc = managed.process
        forced = False
        try:
            self._signal(proc, signal.SIGTERM)
        except OSError as term_error:
            logger.warning("SIGTERM to '%s' (pid %s) failed: %s; sending SIGKILL", name, managed.pid, term_error)
            try:
                self._signal(proc, signal.SIGKILL)
            except OSError as kill_error:
                raise RuntimeFailure(str(kill_error), pid=managed.pid) from kill_error
            forced = True

        self.remove(name, managed)
        logger.info("%s background process '%s' (pid %s)", "Force killed" if forced else "Killed", name, managed.pid)
        return {
            "name": name,
            "pid": managed.pid,
            "forced": forced,
            **managed.overflow_descriptors(),
        }

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int):
        """Signal the process group, falling back to the process itself.

        Children can outlive the shell and keep the pipes open, so the group
        is signalled even after the shell has exited.
        """
        try:
            # start_new_session makes the shell's pid the group id
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            proc.send_signal(sig)

    def kill_all(self) -> int:
        """Best-effort SIGTERM to every registered process. Returns count killed."""
        killed = 0
        for name in self.names():
            try:
                self.kill(name)
                killed += 1
            except ToolError as e:
                logger.warning("Could not kill background process '%s': %s", name, e)
        return killed

    # ----- Exited records -----

    def _record_exited(self, managed: ManagedProcess):
        record = managed.final_snapshot(self.recent_chunks, self.preview_bytes)
        with self._lock:
            self._exited.pop(managed.name, None)
            self._exited[managed.name] = (managed.ended_at or time.time(), record)
            self._prune_exited()

    def _prune_exited(self):
        """Drop expired and excess exited records. Must hold _lock."""
        now = time.time()
        expired = [
            name for name, (ended_at, _) in self._exited.items()
            if now - ended_at > self.exited_ttl_seconds
        ]
        for name in expired:
            del self._exited[name]

        while len(self._exited) > self.max_exited:
            oldest = next(iter(self._exited))
            del self._exited[oldest]
