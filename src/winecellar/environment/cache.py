"""
Artifact cache.

Artifacts are stored in <home>/cache/<key>/<version>/ and published with a
single directory rename, so a version directory is either absent or
complete. Each published tree carries a metadata file written before the
rename; a directory without it is not considered published.
"""

import logging
import os
import shutil
import time
import uuid
from datetime import datetime
from http.client import HTTPException
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import tomli
import tomli_w

from ..config.types import (
    ARTIFACT_METADATA_FILE,
    ArtifactDescriptor,
    CachedArtifact,
    ResolvedVersion,
    ToolDescriptor,
    VersionRequest,
)
from ..errors import CellarError, CorruptArtifact, FetchFailed
from ..resolver import VersionResolver
from ..sources.http import Deadline, HttpClient, is_transient, with_retries
from .archive import extract_archive, extract_member, strip_single_root
from .locks import KeyedLock, atomic_write_text
from .paths import LATEST_ALIAS, STAGING_PREFIX, CellarPaths, sanitize_name

logger = logging.getLogger("winecellar.cache")


def read_metadata(version_dir: Path) -> Optional[Dict[str, Any]]:
    """Read the metadata file of a version dir, None if invalid/missing."""
    marker = version_dir / ARTIFACT_METADATA_FILE
    if not marker.is_file():
        return None
    try:
        with open(marker, "rb") as f:
            return tomli.load(f)
    except (OSError, tomli.TOMLDecodeError):
        return None


def _retry_fetch(e: BaseException) -> bool:
    return is_transient(e) or isinstance(e, CorruptArtifact)


class ArtifactCache:
    def __init__(
        self,
        paths: CellarPaths,
        resolver: VersionResolver,
        http: HttpClient,
        lock_timeout: float = 600.0,
        retries: int = 3,
        backoff: float = 1.0,
        deadline: Optional[Deadline] = None,
        latest_ttl: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        self.paths = paths
        self.resolver = resolver
        self.http = http
        self.lock_timeout = lock_timeout
        self.retries = retries
        self.backoff = backoff
        self.deadline = deadline
        self.latest_ttl = latest_ttl
        self.clock = clock

    # -------------------------------------------------------------------------
    # Reads (no lock)
    # -------------------------------------------------------------------------

    def published(self, key: str, version: str) -> Optional[CachedArtifact]:
        """Return the published artifact for (key, version), or None."""
        version_dir = self.paths.version_dir(key, version)
        if not version_dir.is_dir():
            return None
        metadata = read_metadata(version_dir)
        if metadata is None:
            return None
        return CachedArtifact(key=key, version=version, path=version_dir, metadata=metadata)

    def latest_version(self, key: str) -> Optional[str]:
        """Version the latest alias points at, None if absent or dangling."""
        alias = self.paths.latest_alias(key)
        if not alias.is_symlink():
            return None
        version = Path(os.readlink(alias)).name
        if self.published(key, version) is None:
            return None
        return version

    def _fresh_latest(self, key: str) -> Optional[CachedArtifact]:
        if self.latest_ttl <= 0:
            return None
        version = self.latest_version(key)
        if version is None:
            return None
        confirmed = self.paths.latest_alias(key).lstat().st_mtime
        if self.clock() - confirmed > self.latest_ttl:
            return None
        logger.debug("Reusing %s latest -> %s (confirmed %.0fs ago)", key, version, self.clock() - confirmed)
        return self.published(key, version)

    # -------------------------------------------------------------------------
    # Materialize
    # -------------------------------------------------------------------------

    def materialize(self, descriptor: ArtifactDescriptor, request: VersionRequest) -> CachedArtifact:
        """
        Make (descriptor, request) available in the cache.

        A literal version that is already published is returned without
        network access or locking. Anything else serializes on the key lock,
        re-checks, resolves, fetches into a staging dir and publishes with a
        rename. Latest requests repoint the alias afterwards.
        """
        key = descriptor.name
        found = self._satisfied(key, request)
        if found is not None:
            return found

        with KeyedLock(self.paths.key_lock(key), timeout=self.lock_timeout, artifact=key, phase="lock"):
            self._heal(key)
            found = self._satisfied(key, request)
            if found is not None:
                return found

            resolved = self.resolver.resolve(descriptor.source, request, artifact=key)
            artifact = self.published(key, resolved.version)
            if artifact is None:
                artifact = self._fetch_and_publish(descriptor, resolved)
            else:
                logger.info("%s %s already cached", key, resolved.version)

            if request.is_latest:
                self._point_latest(key, resolved.version)
            return artifact

    def _satisfied(self, key: str, request: VersionRequest) -> Optional[CachedArtifact]:
        if request.is_latest:
            return self._fresh_latest(key)
        return self.published(key, request.tag)

    def _heal(self, key: str) -> None:
        """Remove leftovers of killed processes. Caller holds the key lock."""
        key_dir = self.paths.key_dir(key)
        if not key_dir.is_dir():
            return
        for entry in key_dir.iterdir():
            if entry.name.startswith(STAGING_PREFIX) or entry.name.startswith(f".{LATEST_ALIAS}-"):
                logger.warning("Removing stale staging entry %s", entry)
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry, ignore_errors=True)
                else:
                    entry.unlink()
            elif entry.name.startswith(".") or entry.name == LATEST_ALIAS:
                continue
            elif entry.is_dir() and read_metadata(entry) is None:
                logger.warning("Removing incomplete version dir %s", entry)
                shutil.rmtree(entry)

        alias = self.paths.latest_alias(key)
        if alias.is_symlink() and self.latest_version(key) is None:
            logger.warning("Removing dangling alias %s", alias)
            alias.unlink()

    def _fetch_and_publish(self, descriptor: ArtifactDescriptor, resolved: ResolvedVersion) -> CachedArtifact:
        key = descriptor.name
        key_dir = self.paths.key_dir(key)
        key_dir.mkdir(parents=True, exist_ok=True)
        version_dir = self.paths.version_dir(key, resolved.version)

        def attempt() -> None:
            staging = key_dir / f"{STAGING_PREFIX}{uuid.uuid4().hex}"
            staging.mkdir()
            try:
                archive = staging / sanitize_name(resolved.filename)
                logger.info("Downloading %s %s from %s", key, resolved.version, resolved.url)
                self.http.download(resolved.url, archive, deadline=self.deadline)

                extracted = staging / "tree"
                extract_archive(archive, extracted, resolved.filename)
                tree = strip_single_root(extracted)

                install = descriptor.install
                if install.script_url:
                    script = tree / install.script
                    script.parent.mkdir(parents=True, exist_ok=True)
                    self.http.download(install.script_url, script, deadline=self.deadline)
                    script.chmod(0o755)

                self._write_metadata(tree, descriptor, resolved)
                os.rename(tree, version_dir)
            finally:
                shutil.rmtree(staging, ignore_errors=True)

        try:
            with_retries(
                attempt,
                attempts=self.retries,
                backoff=self.backoff,
                deadline=self.deadline,
                describe=f"fetch {key} {resolved.version}",
                retry_on=_retry_fetch,
            )
        except CellarError as e:
            e.artifact = e.artifact or key
            e.version = e.version or resolved.version
            raise
        except (OSError, HTTPException) as e:
            raise FetchFailed(
                f"Could not download {resolved.url}: {e}",
                artifact=key, version=resolved.version, phase="fetch",
            ) from e

        logger.info("Published %s %s at %s", key, resolved.version, version_dir)
        artifact = self.published(key, resolved.version)
        artifact.fetched = True
        return artifact

    @staticmethod
    def _write_metadata(tree: Path, descriptor: ArtifactDescriptor, resolved: ResolvedVersion) -> None:
        metadata = {
            "artifact": {
                "key": descriptor.name,
                "version": resolved.version,
                "source": str(descriptor.source),
                "url": resolved.url,
                "filename": resolved.filename,
                "fetched_at": datetime.now().isoformat(),
            }
        }
        atomic_write_text(tree / ARTIFACT_METADATA_FILE, tomli_w.dumps(metadata))

    def _point_latest(self, key: str, version: str) -> None:
        """Swap the alias with a rename so readers see the old or the new target."""
        alias = self.paths.latest_alias(key)
        tmp = alias.parent / f".{LATEST_ALIAS}-{uuid.uuid4().hex}"
        os.symlink(sanitize_name(version), tmp)
        os.replace(tmp, alias)
        logger.info("%s latest -> %s", key, version)

    # -------------------------------------------------------------------------
    # Helper tools
    # -------------------------------------------------------------------------

    def ensure_tool(self, tool: ToolDescriptor) -> Path:
        """Fetch a helper executable into <cache>/.bin once."""
        target = self.paths.bin_dir / sanitize_name(tool.name)
        if target.is_file() and os.access(target, os.X_OK):
            return target

        bin_dir = self.paths.bin_dir
        bin_dir.mkdir(parents=True, exist_ok=True)
        with KeyedLock(self.paths.tool_lock(tool.name), timeout=self.lock_timeout, artifact=tool.name,
                       phase="lock"):
            if target.is_file() and os.access(target, os.X_OK):
                return target

            staging_glob = f"{STAGING_PREFIX}{sanitize_name(tool.name)}-*"
            for stale in bin_dir.glob(staging_glob):
                shutil.rmtree(stale, ignore_errors=True)

            def attempt() -> None:
                staging = bin_dir / f"{STAGING_PREFIX}{sanitize_name(tool.name)}-{uuid.uuid4().hex}"
                staging.mkdir()
                try:
                    download = staging / "download"
                    logger.info("Downloading %s from %s", tool.name, tool.url)
                    self.http.download(tool.url, download, deadline=self.deadline)
                    staged = staging / sanitize_name(tool.name)
                    if tool.member:
                        filename = f"{tool.name}{tool.archive}" if tool.archive else tool.url.rsplit("/", 1)[-1]
                        extract_member(download, tool.member, staged, filename)
                    else:
                        os.replace(download, staged)
                    staged.chmod(0o755)
                    os.replace(staged, target)
                finally:
                    shutil.rmtree(staging, ignore_errors=True)

            try:
                with_retries(attempt, attempts=self.retries, backoff=self.backoff, deadline=self.deadline,
                             describe=f"fetch {tool.name}", retry_on=_retry_fetch)
            except CellarError as e:
                e.artifact = e.artifact or tool.name
                raise
            except (OSError, HTTPException) as e:
                raise FetchFailed(f"Could not download {tool.url}: {e}", artifact=tool.name,
                                  phase="fetch") from e
        return target

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def list_cached(self) -> List[Dict[str, Any]]:
        """Summaries of every cached key: published versions and latest alias."""
        cache_dir = self.paths.cache_dir
        if not cache_dir.is_dir():
            return []
        entries = []
        for key_dir in sorted(cache_dir.iterdir()):
            if key_dir.name.startswith(".") or not key_dir.is_dir():
                continue
            versions = sorted(
                d.name for d in key_dir.iterdir()
                if not d.name.startswith(".") and d.name != LATEST_ALIAS and read_metadata(d) is not None
            )
            entries.append({
                "key": key_dir.name,
                "versions": versions,
                "latest": self.latest_version(key_dir.name),
                "path": str(key_dir),
            })
        return entries

    def list_tools(self) -> List[str]:
        bin_dir = self.paths.bin_dir
        if not bin_dir.is_dir():
            return []
        return sorted(p.name for p in bin_dir.iterdir() if not p.name.startswith(".") and p.is_file())
