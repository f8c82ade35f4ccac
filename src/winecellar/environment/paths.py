"""On-disk layout of a winecellar home.

    <home>/cache/<key>/<version>/        published, immutable artifact trees
    <home>/cache/<key>/latest            symlink to the newest resolved version
    <home>/cache/<key>/.lock             per-key publish lock
    <home>/cache/.bin/                   helper tools (winetricks, cabextract)
    <home>/prefixes/<name>/              one wine prefix per environment
    <home>/prefixes/.locks/<name>.lock   per-environment reconcile lock
    <home>/.locks/<resource>.holders     reference-counted session guards
"""

import re
from dataclasses import dataclass
from pathlib import Path

LATEST_ALIAS = "latest"
LOCK_FILE = ".lock"
STAGING_PREFIX = ".tmp-"
BIN_DIR = ".bin"

_UNSAFE = re.compile(r"[^A-Za-z0-9._+-]")


def sanitize_name(name: str) -> str:
    """Sanitize a name for use as a single path component."""
    name = _UNSAFE.sub("_", name.strip())
    if name in ("", ".", ".."):
        raise ValueError(f"Invalid name for a path component: {name!r}")
    return name


@dataclass(frozen=True)
class CellarPaths:
    home: Path

    @property
    def cache_dir(self) -> Path:
        return self.home / "cache"

    @property
    def bin_dir(self) -> Path:
        return self.cache_dir / BIN_DIR

    @property
    def prefixes_dir(self) -> Path:
        return self.home / "prefixes"

    @property
    def locks_dir(self) -> Path:
        return self.home / ".locks"

    def key_dir(self, key: str) -> Path:
        return self.cache_dir / sanitize_name(key)

    def version_dir(self, key: str, version: str) -> Path:
        return self.key_dir(key) / sanitize_name(version)

    def latest_alias(self, key: str) -> Path:
        return self.key_dir(key) / LATEST_ALIAS

    def key_lock(self, key: str) -> Path:
        return self.key_dir(key) / LOCK_FILE

    def tool_lock(self, name: str) -> Path:
        return self.bin_dir / f".{sanitize_name(name)}.lock"

    def prefix_dir(self, name: str) -> Path:
        return self.prefixes_dir / sanitize_name(name)

    def prefix_lock(self, name: str) -> Path:
        return self.prefixes_dir / ".locks" / f"{sanitize_name(name)}.lock"

    def holders_file(self, resource: str) -> Path:
        return self.locks_dir / f"{sanitize_name(resource)}.holders"

