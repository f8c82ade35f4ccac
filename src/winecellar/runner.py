"""
Wine runtime location, environment layering and external command execution.

Environment precedence (lowest to highest):
    [env] defaults  <  unit env  <  engine-computed variables

Engine-computed: WINEPREFIX, PATH (runtime bin and tool dir first),
WINEDLLOVERRIDES (native overrides of installed DLLs, winemenubuilder
always disabled) and artifact env_paths such as WINEDLLPATH.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config.types import ArtifactDescriptor, CachedArtifact
from .errors import ConfigError

logger = logging.getLogger("winecellar.runner")

MENUBUILDER_OVERRIDE = "winemenubuilder.exe="


@dataclass
class WineRuntime:
    wine: Path
    version: Optional[str] = None  # None for system wine

    @property
    def bin_dir(self) -> Path:
        return self.wine.parent

    @property
    def wineserver(self) -> str:
        candidate = self.bin_dir / "wineserver"
        return str(candidate) if candidate.exists() else "wineserver"


def find_system_wine(path: Optional[str] = None) -> WineRuntime:
    """Locate wine on PATH, or inside ``path`` when given."""
    search = str(Path(path).expanduser()) if path else None
    found = shutil.which("wine", path=search)
    if not found:
        where = path or "PATH"
        raise ConfigError(f"System wine runtime not found in {where}", phase="runtime")
    return WineRuntime(wine=Path(found))


def runtime_from_artifact(descriptor: ArtifactDescriptor, artifact: CachedArtifact) -> WineRuntime:
    wine = artifact.path / (descriptor.bin_dir or "bin") / "wine"
    if not wine.exists():
        raise ConfigError(
            f"Runtime {descriptor.name} has no wine at {wine}",
            artifact=descriptor.name, version=artifact.version, phase="runtime",
        )
    return WineRuntime(wine=wine, version=artifact.version)


def _join_paths(*parts: Optional[str]) -> str:
    return ":".join(p for p in parts if p)


def build_environment(
    prefix: Path,
    runtime: WineRuntime,
    unit_env: Optional[Mapping[str, str]] = None,
    overrides: Iterable[str] = (),
    env_paths: Iterable[Tuple[str, Path]] = (),
    tool_dir: Optional[Path] = None,
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Compute the variables a unit runs with (on top of the inherited environment)."""
    base = os.environ if base is None else base
    env = dict(unit_env or {})

    env["PATH"] = _join_paths(
        str(runtime.bin_dir),
        str(tool_dir) if tool_dir else None,
        env.get("PATH") or base.get("PATH"),
    )

    dll_overrides = []
    native = list(dict.fromkeys(overrides))
    if native:
        dll_overrides.append(",".join(native) + "=n")
    user = env.get("WINEDLLOVERRIDES") or base.get("WINEDLLOVERRIDES") or ""
    dll_overrides.extend(p for p in user.split(";") if p and p != MENUBUILDER_OVERRIDE)
    dll_overrides.append(MENUBUILDER_OVERRIDE)
    env["WINEDLLOVERRIDES"] = ";".join(dll_overrides)

    for var, path in env_paths:
        env[var] = _join_paths(env.get(var) or base.get(var), str(path))

    env["WINEPREFIX"] = str(prefix)
    return env


class CommandRunner:
    """Runs external commands with a fixed set of environment overrides."""

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        base: Optional[Mapping[str, str]] = None,
    ):
        self.env = dict(env or {})
        self.timeout = timeout
        self.base = base

    def full_env(self) -> Dict[str, str]:
        env = dict(os.environ if self.base is None else self.base)
        env.update(self.env)
        return env

    def run(self, argv: Sequence[str], cwd: Optional[Path] = None) -> int:
        """Run argv to completion and return its exit code.

        Raises:
            OSError: The executable could not be started.
            subprocess.TimeoutExpired: The command outlived the timeout.
        """
        argv = [str(a) for a in argv]
        logger.debug("Running %s", " ".join(argv))
        result = subprocess.run(
            argv,
            env=self.full_env(),
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            logger.debug("%s exited with %d", argv[0], result.returncode)
        return result.returncode


def wine_command(runtime: WineRuntime, args: Sequence[str]) -> List[str]:
    return [str(runtime.wine)] + list(args)
