import logging
import subprocess
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)

_STDERR_MAX_LINES = 200


def kill_process(proc):
    """Forcibly stop ``proc``; the extraction tool gets no cooperative signal."""
    if proc is None:
        return
    try:
        if proc.poll() is not None:
            return
        proc.kill()
    except (ProcessLookupError, OSError):
        return


class ProcessRun:
    """Child process with stderr drained on a thread and a kill watchdog.

    ``stdout`` is passed to Popen unchanged (PIPE for streaming, DEVNULL for
    file mode). The watchdog kills the child once its deadline passes while it
    is still running; ``timed_out`` records that it did. The deadline starts
    at ``timeout_seconds`` and can be moved with ``rearm``.
    """

    def __init__(self, argv, *, stdout, timeout_seconds, label="child"):
        self.label = label
        self.timed_out = False
        self._stderr_lines = deque(maxlen=_STDERR_MAX_LINES)
        self._deadline_changed = threading.Condition()
        self._deadline = time.monotonic() + timeout_seconds
        self._finished = False
        self.proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
        self._reader = threading.Thread(
            target=self._drain_stderr,
            name=f"{label}-stderr-reader",
            daemon=True,
        )
        self._reader.start()
        self._watchdog = threading.Thread(
            target=self._watch,
            name=f"{label}-watchdog",
            daemon=True,
        )
        self._watchdog.start()

    def _drain_stderr(self):
        stream = self.proc.stderr
        if stream is None:
            return
        try:
            for raw_line in iter(stream.readline, b""):
                self._stderr_lines.append(raw_line.decode("utf-8", errors="replace"))
        except (OSError, ValueError):
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _watch(self):
        with self._deadline_changed:
            while not self._finished:
                remaining = self._deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._deadline_changed.wait(remaining)
            if self._finished:
                return
        self._on_timeout()

    def _on_timeout(self):
        if self.proc.poll() is None:
            self.timed_out = True
            logger.warning("%s exceeded its time limit; killing pid=%s", self.label, self.proc.pid)
            kill_process(self.proc)

    def rearm(self, timeout_seconds):
        """Move the kill deadline to ``timeout_seconds`` from now."""
        with self._deadline_changed:
            self._deadline = time.monotonic() + timeout_seconds
            self._deadline_changed.notify_all()

    @property
    def stdout(self):
        return self.proc.stdout

    @property
    def stderr_text(self):
        return "".join(self._stderr_lines)

    def kill(self):
        kill_process(self.proc)

    def wait(self):
        returncode = self.proc.wait()
        with self._deadline_changed:
            self._finished = True
            self._deadline_changed.notify_all()
        self._reader.join(timeout=1)
        return returncode
