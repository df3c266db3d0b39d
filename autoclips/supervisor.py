"""
Supervised execution of the external encoder.

Every outcome (exit code, spawn error, timeout) is folded into a boolean.
Stall detection only warns; the hard timeout is the only thing that kills.
"""

from __future__ import annotations

import logging
import math
import os
import re
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Sequence

log = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2})")
_READ_SIZE = 4096
_STDOUT_TAIL_CHARS = 300


def parse_progress_seconds(chunk: str) -> int | None:
    """Return the last ``time=HH:MM:SS`` marker in `chunk` as whole seconds."""
    matches = _PROGRESS_RE.findall(chunk)
    if not matches:
        return None
    hours, minutes, seconds = matches[-1]
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds)


def progress_percent(elapsed: float, expected_duration: float | None) -> int | None:
    if not expected_duration or expected_duration <= 0:
        return None
    # half-up rounding, capped at 100
    return min(100, int(math.floor(elapsed / expected_duration * 100 + 0.5)))


def _tail(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    return text[-limit:]


@dataclass
class ProcessState:
    """
    State of one supervised process. Reader threads update it while the
    process runs; callers should only read it after `run_with_state` returns.
    """

    label: str
    started_at: float = field(default_factory=time.monotonic)
    last_activity: float = 0.0
    pid: int | None = None
    exit_code: int | None = None
    timed_out: bool = False
    spawn_error: str | None = None
    stall_warnings: int = 0
    progress: int | None = None
    output_tail: str = ""
    stdout_tail: str = ""
    finished_at: float | None = None

    def __post_init__(self) -> None:
        if not self.last_activity:
            self.last_activity = self.started_at

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.spawn_error is None and self.exit_code == 0

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def touch(self) -> None:
        self.last_activity = time.monotonic()


class ProcessSupervisor:
    """
    Runs one command at a time per call; a single instance may be shared by
    concurrent callers since all per-run data lives in `ProcessState`.
    """

    def __init__(
        self,
        stall_threshold: float = 15.0,
        check_interval: float = 10.0,
        tail_chars: int = 500,
    ):
        self.stall_threshold = stall_threshold
        self.check_interval = check_interval
        self.tail_chars = tail_chars

    def run(
        self,
        cmd: Sequence[str],
        timeout: float,
        expected_duration: float | None = None,
        label: str | None = None,
        capture_stdout: bool = False,
    ) -> bool:
        return self.run_with_state(
            cmd,
            timeout,
            expected_duration=expected_duration,
            label=label,
            capture_stdout=capture_stdout,
        ).ok

    def run_with_state(
        self,
        cmd: Sequence[str],
        timeout: float,
        expected_duration: float | None = None,
        label: str | None = None,
        capture_stdout: bool = False,
    ) -> ProcessState:
        cmd = [str(c) for c in cmd]
        state = ProcessState(label=label or Path(cmd[0]).name)
        log.debug("%s: %s", state.label, shlex.join(cmd))

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if capture_stdout else subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                # own process group, so a timeout also kills anything the encoder spawned
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            state.spawn_error = str(exc)
            state.finished_at = time.monotonic()
            log.warning("%s: failed to start %s after %.1fs: %s", state.label, cmd[0], state.elapsed, exc)
            return state

        state.pid = proc.pid
        stop = threading.Event()
        exited = threading.Event()
        timer = threading.Timer(timeout, self._on_timeout, args=(proc, state, timeout, exited))
        timer.daemon = True
        monitor = threading.Thread(target=self._watch_stall, args=(state, stop), daemon=True)
        stdout_reader: threading.Thread | None = None
        if capture_stdout and proc.stdout is not None:
            stdout_reader = threading.Thread(target=self._drain_stdout, args=(proc.stdout, state), daemon=True)

        timer.start()
        monitor.start()
        if stdout_reader is not None:
            stdout_reader.start()
        try:
            if proc.stderr is not None:
                self._read_diagnostics(proc.stderr, state, expected_duration)
            state.exit_code = proc.wait()
            exited.set()
        except BaseException:
            self._kill_group(proc)
            proc.wait()
            raise
        finally:
            timer.cancel()
            stop.set()
            if stdout_reader is not None:
                stdout_reader.join()
            monitor.join()
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()
            state.finished_at = time.monotonic()

        self._log_outcome(state)
        return state

    def _read_diagnostics(self, stream: IO[bytes], state: ProcessState, expected_duration: float | None) -> None:
        while True:
            data = stream.read1(_READ_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            state.touch()
            chunk = data.decode("utf-8", errors="replace")
            state.output_tail = _tail(state.output_tail + chunk, self.tail_chars)
            elapsed = parse_progress_seconds(chunk)
            if elapsed is None:
                continue
            pct = progress_percent(elapsed, expected_duration)
            if pct is not None:
                state.progress = pct
                log.debug("%s: %d%% (%ds/%.1fs)", state.label, pct, elapsed, expected_duration)

    def _drain_stdout(self, stream: IO[bytes], state: ProcessState) -> None:
        while True:
            data = stream.read1(_READ_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            state.touch()
            state.stdout_tail = _tail(state.stdout_tail + data.decode("utf-8", errors="replace"), _STDOUT_TAIL_CHARS)

    def _watch_stall(self, state: ProcessState, stop: threading.Event) -> None:
        while not stop.wait(self.check_interval):
            idle = time.monotonic() - state.last_activity
            if idle > self.stall_threshold:
                state.stall_warnings += 1
                log.warning(
                    "%s: no encoder output for %.1fs (running %.1fs)",
                    state.label,
                    idle,
                    state.elapsed,
                )

    @classmethod
    def _on_timeout(
        cls,
        proc: subprocess.Popen,
        state: ProcessState,
        timeout: float,
        exited: threading.Event,
    ) -> None:
        # the leader may be gone while a child still holds stderr open; kill the whole group anyway
        if exited.is_set():
            return
        state.timed_out = True
        log.warning("%s: timed out after %gs, killing process group %s", state.label, timeout, proc.pid)
        cls._kill_group(proc)

    @staticmethod
    def _kill_group(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass
        try:
            proc.kill()
        except OSError:
            pass

    @staticmethod
    def _log_outcome(state: ProcessState) -> None:
        if state.ok:
            log.info("%s: done in %.1fs", state.label, state.elapsed)
            return
        if state.timed_out:
            log.warning("%s: killed on timeout after %.1fs; stderr tail: %s", state.label, state.elapsed, state.output_tail)
            return
        log.warning(
            "%s: exited with code %s after %.1fs; stderr tail: %s",
            state.label,
            state.exit_code,
            state.elapsed,
            state.output_tail,
        )
        if state.stdout_tail:
            log.warning("%s: stdout tail: %s", state.label, state.stdout_tail)
