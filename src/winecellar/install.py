"""
Installing cached artifacts into a prefix.

Whether an artifact is already installed is decided by comparing a content
signature of its payload with the install record stored in the prefix, not
by inspecting the files the procedure produced.
"""

import hashlib
import logging
import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Sequence

from .config.types import (
    ARTIFACT_METADATA_FILE,
    ArtifactDescriptor,
    CachedArtifact,
    InstallKind,
    InstallOutcome,
    InstallRecord,
)
from .environment.prefix import EnvironmentHandle
from .errors import InstallFailed
from .runner import CommandRunner

logger = logging.getLogger("winecellar.install")


def _payload_files(root: Path, patterns: Sequence[str]) -> List[Path]:
    if patterns:
        files = set()
        for pattern in patterns:
            files.update(p for p in root.glob(pattern) if p.is_file() or p.is_symlink())
    else:
        files = {p for p in root.rglob("*") if p.is_file() or p.is_symlink()}
    files.discard(root / ARTIFACT_METADATA_FILE)
    return sorted(files, key=lambda p: p.relative_to(root).as_posix())


def compute_signature(artifact: CachedArtifact, patterns: Sequence[str] = ()) -> str:
    """SHA256 over relative paths and contents of the payload files."""
    h = hashlib.sha256()
    files = _payload_files(artifact.path, patterns)
    if not files:
        h.update(f"empty:{artifact.key}:{artifact.version}".encode())
    for path in files:
        h.update(path.relative_to(artifact.path).as_posix().encode())
        h.update(b"\0")
        if path.is_symlink():
            h.update(b"->" + os.readlink(path).encode())
        else:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    h.update(chunk)
        h.update(b"\0")
    return h.hexdigest()


class Installer:
    def __init__(self, runner: CommandRunner, log: Callable[[str], None] = print):
        self.runner = runner
        self.log = log

    def ensure_installed(
        self,
        artifact: CachedArtifact,
        descriptor: ArtifactDescriptor,
        target: EnvironmentHandle,
    ) -> InstallOutcome:
        """
        Apply descriptor's install procedure to target unless already installed.

        Raises:
            InstallFailed: The procedure failed. The install record is left
                unchanged so the next run retries.
        """
        procedure = descriptor.install
        if procedure.kind is InstallKind.NONE:
            return InstallOutcome.NOTHING_TO_INSTALL

        signature = compute_signature(artifact, descriptor.payload)
        record = target.install_records.get(artifact.key)
        if record is not None and record.signature == signature:
            logger.debug("%s %s already installed in %s", artifact.key, artifact.version, target.name)
            return InstallOutcome.ALREADY_INSTALLED

        self.log(f"[winecellar] Installing {artifact.key} {artifact.version} into {target.name}")
        if procedure.kind is InstallKind.SCRIPT:
            self._run_script(artifact, descriptor, target)
        elif procedure.kind is InstallKind.COPY_DLLS:
            self._copy_dlls(artifact, descriptor, target)

        target.install_records.put(InstallRecord(
            key=artifact.key,
            version=artifact.version,
            signature=signature,
            installed_at=datetime.now().isoformat(),
        ))
        return InstallOutcome.INSTALLED

    def _run_script(self, artifact: CachedArtifact, descriptor: ArtifactDescriptor,
                    target: EnvironmentHandle) -> None:
        argv = descriptor.install.command(artifact.path)
        script = Path(argv[0])
        if not script.is_file():
            raise InstallFailed(f"Install script {script} not found", artifact=artifact.key,
                                version=artifact.version, phase="install")
        try:
            code = self.runner.run(argv, cwd=artifact.path)
        except (OSError, subprocess.SubprocessError) as e:
            raise InstallFailed(f"Install script could not run: {e}", artifact=artifact.key,
                                version=artifact.version, phase="install") from e
        if code != 0:
            raise InstallFailed(f"Install script exited with status {code}", artifact=artifact.key,
                                version=artifact.version, phase="install")

    def _copy_dlls(self, artifact: CachedArtifact, descriptor: ArtifactDescriptor,
                   target: EnvironmentHandle) -> None:
        for entry in descriptor.install.dlls:
            source_dir = artifact.path / entry.source
            dest_dir = target.system_dir(entry.arch)
            for name in entry.files:
                source = source_dir / name
                dest = dest_dir / (name[:-3] if name.endswith(".so") else name)
                if not source.is_file():
                    raise InstallFailed(f"{entry.source}/{name} missing from artifact", artifact=artifact.key,
                                        version=artifact.version, phase="install")
                logger.debug("Copying %s to %s", source, dest)
                try:
                    dest_dir.mkdir(parents=True, exist_ok=True)
                    # Wine ships builtin DLLs as symlinks into its own tree
                    if dest.is_symlink():
                        dest.unlink()
                    shutil.copyfile(source, dest)
                except OSError as e:
                    raise InstallFailed(f"Could not copy {name}: {e}", artifact=artifact.key,
                                        version=artifact.version, phase="install") from e
