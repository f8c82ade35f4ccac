"""
Prefix reconciliation.

Brings a prefix in line with its declared state. Every step checks the
current state first and does nothing when it is already satisfied:

    1. initialize the prefix if it has never completed initialization
    2. replace user-profile symlinks that leave the prefix with empty dirs
    3. point dosdevices/<letter>: at the declared host paths
    4. apply fix-up verbs missing from the applied log
    5. run pre-launch hooks in order
"""

import logging
import os
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Type

from ..config.types import EnvironmentSpec
from ..errors import CellarError, FixupFailed, HookFailed, InitFailed, MountFailed
from ..runner import CommandRunner, WineRuntime, wine_command
from .prefix import EnvironmentHandle

logger = logging.getLogger("winecellar.reconcile")


@dataclass
class ReconcileReport:
    initialized: bool = False
    normalized: List[str] = field(default_factory=list)
    mounts_changed: List[str] = field(default_factory=list)
    fixups_applied: List[str] = field(default_factory=list)
    hooks_run: int = 0


def _within(path: Path, root: Path) -> bool:
    try:
        Path(os.path.realpath(path)).relative_to(os.path.realpath(root))
        return True
    except ValueError:
        return False


class EnvironmentReconciler:
    def __init__(
        self,
        runner: CommandRunner,
        runtime: WineRuntime,
        winetricks: Optional[Path] = None,
        log: Callable[[str], None] = print,
    ):
        self.runner = runner
        self.runtime = runtime
        self.winetricks = winetricks
        self.log = log
        self._ran_external = False

    # -------------------------------------------------------------------------
    # Command helpers
    # -------------------------------------------------------------------------

    def _run(self, argv: Sequence[str], error: Type[CellarError], phase: str, what: str,
             cwd: Optional[Path] = None, prefix: Optional[str] = None) -> None:
        self._ran_external = True
        try:
            code = self.runner.run(argv, cwd=cwd)
        except (OSError, subprocess.SubprocessError) as e:
            raise error(f"{what} could not run: {e}", artifact=prefix, phase=phase) from e
        if code != 0:
            raise error(f"{what} exited with status {code}", artifact=prefix, phase=phase)

    def wait_server(self) -> None:
        """Block until the prefix's wineserver has exited."""
        try:
            code = self.runner.run([self.runtime.wineserver, "--wait"])
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("wineserver --wait failed: %s", e)
            return
        if code != 0:
            logger.warning("wineserver --wait exited with status %d", code)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def initialize(self, handle: EnvironmentHandle) -> bool:
        """Run the one-time initializer. Returns True if it ran."""
        if handle.initialized:
            return False
        self.log(f"[winecellar] Initializing prefix {handle.name} at {handle.root}")
        handle.root.mkdir(parents=True, exist_ok=True)
        self._run(wine_command(self.runtime, ["wineboot", "--init"]), InitFailed, "init",
                  "Prefix initializer", prefix=handle.name)
        self.wait_server()
        if not handle.initialized:
            raise InitFailed(f"Prefix {handle.root} is still missing system.reg after initialization",
                             artifact=handle.name, phase="init")
        return True

    def normalize_user_dirs(self, handle: EnvironmentHandle) -> List[str]:
        """Replace symlinks under drive_c/users/*/ that point outside the prefix."""
        replaced = []
        if not handle.users_dir.is_dir():
            return replaced
        for user in sorted(handle.users_dir.iterdir()):
            if user.is_symlink() or not user.is_dir():
                continue
            for entry in sorted(user.iterdir()):
                if not entry.is_symlink() or _within(entry, handle.root):
                    continue
                logger.info("Replacing %s -> %s with a directory", entry, os.readlink(entry))
                entry.unlink()
                entry.mkdir()
                replaced.append(str(entry.relative_to(handle.root)))
        return replaced

    def apply_mounts(self, handle: EnvironmentHandle, mounts: Dict[str, str]) -> List[str]:
        """Realize drive mounts; returns the letters whose symlink changed."""
        table = handle.mount_table
        recorded = table.read()
        changed = []

        for letter, target in sorted(mounts.items()):
            link = handle.dosdevices / f"{letter}:"
            if link.is_symlink():
                if os.readlink(link) == target:
                    continue
            elif os.path.lexists(link):
                raise MountFailed(f"{link} exists and is not a symlink", artifact=handle.name, phase="mount")
            handle.dosdevices.mkdir(parents=True, exist_ok=True)
            tmp = handle.dosdevices / f".{letter}-{uuid.uuid4().hex}"
            try:
                os.symlink(target, tmp)
                os.replace(tmp, link)
            except OSError as e:
                raise MountFailed(f"Could not mount {letter}: -> {target}: {e}",
                                  artifact=handle.name, phase="mount") from e
            logger.info("Mounted %s: -> %s", letter, target)
            changed.append(letter)

        # Mounts this tool created earlier but no longer declared
        for letter, target in sorted(recorded.items()):
            if letter in mounts:
                continue
            link = handle.dosdevices / f"{letter}:"
            if link.is_symlink() and os.readlink(link) == target:
                link.unlink()
                logger.info("Unmounted %s: (was %s)", letter, target)
                changed.append(letter)

        if recorded != mounts:
            table.write(mounts)
        return changed

    def apply_fixups(self, handle: EnvironmentHandle, verbs: List[str]) -> List[str]:
        """Apply verbs missing from the applied log, logging each right after it succeeds."""
        fix_log = handle.fix_log
        applied = set(fix_log.entries())
        done = []
        for verb in verbs:
            if verb in applied:
                continue
            if self.winetricks is None:
                raise FixupFailed(f"winetricks is not available to apply {verb}",
                                  artifact=handle.name, phase="fixup")
            self.log(f"[winecellar] Applying {verb} to {handle.name}")
            self._run([str(self.winetricks), "-q", verb], FixupFailed, "fixup",
                      f"Fix-up {verb}", prefix=handle.name)
            fix_log.append(verb)
            applied.add(verb)
            done.append(verb)
        return done

    def run_hooks(self, handle: EnvironmentHandle, hooks: List[List[str]], cwd: Optional[Path] = None) -> int:
        count = 0
        for hook in hooks:
            if not hook:
                continue
            self.log(f"[winecellar] Running hook: {' '.join(hook)}")
            self._run(hook, HookFailed, "hook", f"Hook {hook[0]}", cwd=cwd, prefix=handle.name)
            count += 1
        return count

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def reconcile(self, handle: EnvironmentHandle, desired: EnvironmentSpec,
                  cwd: Optional[Path] = None) -> ReconcileReport:
        """
        Bring handle to desired.

        Raises:
            InitFailed, MountFailed, FixupFailed, HookFailed: The failing step
            aborts the pass. Progress of earlier steps is kept.
        """
        self._ran_external = False
        report = ReconcileReport()
        report.initialized = self.initialize(handle)
        report.normalized = self.normalize_user_dirs(handle)
        report.mounts_changed = self.apply_mounts(handle, desired.mounts)
        report.fixups_applied = self.apply_fixups(handle, desired.fixups)
        report.hooks_run = self.run_hooks(handle, desired.hooks, cwd=cwd)
        if self._ran_external:
            self.wait_server()
        return report
