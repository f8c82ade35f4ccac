"""
Cross-process locking.

KeyedLock is an exclusive flock on a sidecar file, scoped to one cache key
or one environment. SharedResourceGuard is a reference count of live
processes using a resource; when the last one leaves, a teardown runs.
"""

import fcntl
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Type

import psutil

from ..errors import CacheBusy, CellarError

logger = logging.getLogger("winecellar.locks")


class KeyedLock:
    """Exclusive lock on ``path``, waiting at most ``timeout`` seconds.

    The lock file itself is never removed, so a holder never races a
    process that is about to open it.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = 600.0,
        poll_interval: float = 0.1,
        error: Type[CellarError] = CacheBusy,
        artifact: Optional[str] = None,
        phase: str = "lock",
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.error = error
        self.artifact = artifact
        self.phase = phase
        self._handle = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")
        start = time.monotonic()
        waited = False
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if not waited:
                    logger.info("Waiting for lock %s", self.path)
                    waited = True
                if time.monotonic() - start >= self.timeout:
                    handle.close()
                    raise self.error(
                        f"Timed out after {self.timeout:.0f}s waiting for {self.path}",
                        artifact=self.artifact, phase=self.phase,
                    )
                time.sleep(self.poll_interval)
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def __enter__(self) -> "KeyedLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Blocking exclusive lock on a ``.lock`` sidecar of path."""
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class SharedResourceGuard:
    """
    Reference-counted guard keyed by resource identity.

    Holders are recorded as PIDs (one line per acquisition) in a holders
    file. Dead PIDs are pruned on every access, so a killed process never
    leaks a reference. ``on_last_release`` runs under the file lock when
    the count drops to zero, including when a new acquirer finds only
    dead holders left behind.
    """

    def __init__(
        self,
        holders_file: Path,
        on_last_release: Optional[Callable[[], None]] = None,
        pid: Optional[int] = None,
    ):
        self.holders_file = Path(holders_file)
        self.on_last_release = on_last_release
        self.pid = pid if pid is not None else os.getpid()
        self._held = False

    def _read(self) -> List[int]:
        if not self.holders_file.exists():
            return []
        pids = []
        for line in self.holders_file.read_text().splitlines():
            line = line.strip()
            if line.isdigit():
                pids.append(int(line))
        return pids

    def _write(self, pids: List[int]) -> None:
        if pids:
            atomic_write_text(self.holders_file, "".join(f"{p}\n" for p in pids))
        elif self.holders_file.exists():
            self.holders_file.unlink()

    @staticmethod
    def _alive(pids: List[int]) -> List[int]:
        return [p for p in pids if psutil.pid_exists(p)]

    def holders(self) -> List[int]:
        with _locked_file(self.holders_file):
            return self._alive(self._read())

    def acquire(self) -> int:
        """Register this process; returns the number of live holders."""
        with _locked_file(self.holders_file):
            recorded = self._read()
            alive = self._alive(recorded)
            if recorded and not alive:
                logger.info("Only dead holders left in %s, running teardown", self.holders_file)
                self._teardown()
            alive.append(self.pid)
            self._write(alive)
            self._held = True
            return len(alive)

    def release(self) -> int:
        """Drop this process's reference; returns the number of live holders left."""
        if not self._held:
            return len(self.holders())
        with _locked_file(self.holders_file):
            alive = self._alive(self._read())
            if self.pid in alive:
                alive.remove(self.pid)
            self._held = False
            try:
                if not alive:
                    self._teardown()
            finally:
                self._write(alive)
            return len(alive)

    def _teardown(self) -> None:
        if self.on_last_release is not None:
            self.on_last_release()

    def __enter__(self) -> "SharedResourceGuard":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
