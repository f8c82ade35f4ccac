"""
Wine prefix handle and its persistent state.

State lives in <prefix>/.winecellar/:
    fixups.log      applied fix-up verbs, one per line, append-only
    mounts.toml     drive letter -> host path of realized mounts
    installed.toml  install records keyed by artifact
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import tomli
import tomli_w

from ..config.types import InstallRecord
from ..errors import CacheBusy
from .locks import KeyedLock, atomic_write_text

STATE_DIR = ".winecellar"

_SYSTEM_DIRS = {"x64": "system32", "x86": "syswow64"}


class AppliedFixLog:
    """Ordered, append-only set of applied fix-up verbs."""

    def __init__(self, path: Path):
        self.path = path

    def entries(self) -> List[str]:
        if not self.path.exists():
            return []
        seen = []
        for line in self.path.read_text().splitlines():
            verb = line.strip()
            if verb and verb not in seen:
                seen.append(verb)
        return seen

    def __contains__(self, verb: str) -> bool:
        return verb in self.entries()

    def append(self, verb: str) -> None:
        """Durably record verb. Recording an already-logged verb is a no-op."""
        if verb in self:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(f"{verb}\n")
            f.flush()
            os.fsync(f.fileno())


class MountTable:
    """Drive letter -> host path of the mount symlinks currently realized."""

    def __init__(self, path: Path):
        self.path = path

    def read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "rb") as f:
            data = tomli.load(f)
        return {str(k): str(v) for k, v in data.get("mounts", {}).items()}

    def write(self, mounts: Dict[str, str]) -> None:
        atomic_write_text(self.path, tomli_w.dumps({"mounts": dict(sorted(mounts.items()))}))


class InstallRecordStore:
    def __init__(self, path: Path):
        self.path = path

    def read(self) -> Dict[str, InstallRecord]:
        if not self.path.exists():
            return {}
        with open(self.path, "rb") as f:
            data = tomli.load(f)
        return {
            key: InstallRecord(
                key=key,
                version=str(entry.get("version", "")),
                signature=str(entry.get("signature", "")),
                installed_at=str(entry.get("installed_at", "")),
            )
            for key, entry in data.get("installed", {}).items()
        }

    def get(self, key: str) -> Optional[InstallRecord]:
        return self.read().get(key)

    def put(self, record: InstallRecord) -> None:
        records = self.read()
        records[record.key] = record
        data = {
            "installed": {
                key: {"version": r.version, "signature": r.signature, "installed_at": r.installed_at}
                for key, r in sorted(records.items())
            }
        }
        atomic_write_text(self.path, tomli_w.dumps(data))


@dataclass
class EnvironmentHandle:
    """One prefix directory, exclusively owned by one environment name."""
    name: str
    root: Path
    lock_path: Optional[Path] = None

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR

    @property
    def drive_c(self) -> Path:
        return self.root / "drive_c"

    @property
    def users_dir(self) -> Path:
        return self.drive_c / "users"

    @property
    def dosdevices(self) -> Path:
        return self.root / "dosdevices"

    @property
    def initialized(self) -> bool:
        return self.root.is_dir() and (self.root / "system.reg").is_file()

    @property
    def fix_log(self) -> AppliedFixLog:
        return AppliedFixLog(self.state_dir / "fixups.log")

    @property
    def mount_table(self) -> MountTable:
        return MountTable(self.state_dir / "mounts.toml")

    @property
    def install_records(self) -> InstallRecordStore:
        return InstallRecordStore(self.state_dir / "installed.toml")

    def system_dir(self, arch: str) -> Path:
        return self.drive_c / "windows" / _SYSTEM_DIRS[arch]

    def lock(self, timeout: float = 600.0) -> KeyedLock:
        """Per-environment exclusive lock for reconciliation."""
        path = self.lock_path or self.root.parent / ".locks" / f"{self.name}.lock"
        return KeyedLock(path, timeout=timeout, error=CacheBusy, artifact=f"prefix:{self.name}", phase="prefix-lock")
