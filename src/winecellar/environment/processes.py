"""Forced termination of wine processes bound to a prefix."""

import logging
import os
from pathlib import Path
from typing import Callable, List

import psutil

logger = logging.getLogger("winecellar.processes")


def find_prefix_processes(prefix: Path) -> List[psutil.Process]:
    """Processes (other than this one) whose WINEPREFIX is prefix."""
    target = os.path.realpath(prefix)
    found = []
    for proc in psutil.process_iter(["pid", "name"]):
        if proc.pid == os.getpid():
            continue
        try:
            wineprefix = proc.environ().get("WINEPREFIX")
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if wineprefix and os.path.realpath(wineprefix) == target:
            found.append(proc)
    return found


def sweep_prefix(prefix: Path, timeout: float = 5.0, log: Callable[[str], None] = print) -> int:
    """
    Terminate every process running in prefix, killing those that linger.

    Returns:
        Number of processes signalled.
    """
    procs = find_prefix_processes(prefix)
    if not procs:
        return 0

    for proc in procs:
        try:
            log(f"[winecellar] Terminating {proc.info.get('name') or proc.pid} ({proc.pid}) in {prefix}")
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            logger.warning("Killing %s (%d), still alive after %.0fs", proc.info.get("name"), proc.pid, timeout)
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    return len(procs)
