"""Test builders: fake HTTP transport, archive builders, recording runner."""

import io
import os
import tarfile
import threading
import time
import urllib.error
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import zstandard

from winecellar.runner import CommandRunner

Content = Union[str, bytes]


# =============================================================================
# Archives
# =============================================================================

def tar_bytes(files: Dict[str, Content], root: Optional[str] = "pkg", mode: str = "w:gz",
              executable: tuple = (), symlinks: Optional[Dict[str, str]] = None) -> bytes:
    """Build a tarball in memory. Paths are placed under root unless root is None."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode) as tar:
        if root:
            info = tarfile.TarInfo(root)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{root}/{name}" if root else name)
            info.size = len(data)
            info.mode = 0o755 if name in executable else 0o644
            tar.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(f"{root}/{name}" if root else name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return buf.getvalue()


def tar_zst_bytes(files: Dict[str, Content], root: Optional[str] = "pkg") -> bytes:
    return zstandard.ZstdCompressor().compress(tar_bytes(files, root=root, mode="w"))


def zip_bytes(files: Dict[str, Content], executable: tuple = ()) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            info = zipfile.ZipInfo(name)
            mode = 0o755 if name in executable else 0o644
            info.external_attr = (0o100000 | mode) << 16
            zf.writestr(info, content)
    return buf.getvalue()


# =============================================================================
# HTTP
# =============================================================================

def http_error(url: str, code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, code, f"HTTP {code}", hdrs=None, fp=None)


class FakeHttpClient:
    """
    In-memory stand-in for HttpClient.

    json[url] and files[url] hold responses; a response may be an exception
    (raised), a list (consumed one item per call) or a callable.
    """

    def __init__(self):
        self.json: Dict[str, object] = {}
        self.files: Dict[str, object] = {}
        self.json_calls: List[str] = []
        self.download_calls: List[str] = []
        self.download_delay = 0.0
        self._lock = threading.Lock()

    @staticmethod
    def _next(table: Dict[str, object], url: str):
        if url not in table:
            raise http_error(url, 404)
        value = table[url]
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if callable(value) and not isinstance(value, type):
            value = value()
        if isinstance(value, BaseException):
            raise value
        return value

    def get_json(self, url, headers=None, deadline=None):
        with self._lock:
            self.json_calls.append(url)
            return self._next(self.json, url)

    def download(self, url, dest, headers=None, deadline=None):
        with self._lock:
            self.download_calls.append(url)
            data = self._next(self.files, url)
        if self.download_delay:
            time.sleep(self.download_delay)
        Path(dest).write_bytes(data)
        return dest

    @property
    def calls(self) -> int:
        return len(self.json_calls) + len(self.download_calls)


def github_release(repository: str, tag: str, assets: List[str], base: str = "https://dl.example") -> dict:
    return {
        "tag_name": tag,
        "assets": [
            {"name": name, "browser_download_url": f"{base}/{repository}/{tag}/{name}"}
            for name in assets
        ],
    }


def serve_github(http: FakeHttpClient, repository: str, tag: str, archive: bytes,
                 asset: Optional[str] = None, latest: bool = True) -> str:
    """Register a GitHub release with one asset; returns the asset download URL."""
    asset = asset or f"{repository.split('/')[-1]}-{tag.lstrip('v')}.tar.gz"
    release = github_release(repository, tag, [asset])
    http.json[f"https://api.github.com/repos/{repository}/releases/tags/{tag}"] = release
    if latest:
        http.json[f"https://api.github.com/repos/{repository}/releases/latest"] = release
    url = release["assets"][0]["browser_download_url"]
    http.files[url] = archive
    return url


# =============================================================================
# Commands
# =============================================================================

class FakeRunner(CommandRunner):
    """Records commands instead of running them.

    handlers maps a command word (any argv element's basename) to a callable
    taking argv and returning an exit code.
    """

    def __init__(self, env=None, handlers: Optional[Dict[str, Callable[[List[str]], int]]] = None):
        super().__init__(env)
        self.handlers = handlers or {}
        self.calls: List[List[str]] = []

    def run(self, argv, cwd=None) -> int:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        for word in argv:
            handler = self.handlers.get(os.path.basename(word))
            if handler is not None:
                return handler(argv)
        return 0

    def commands(self, word: str) -> List[List[str]]:
        return [c for c in self.calls if any(os.path.basename(a) == word for a in c)]


def fake_wineboot(root: Path, user: str = "steamuser") -> Callable[[List[str]], int]:
    """Handler emulating what wineboot --init leaves behind."""
    def handler(argv):
        (root / "drive_c" / "users" / user).mkdir(parents=True, exist_ok=True)
        (root / "drive_c" / "windows" / "system32").mkdir(parents=True, exist_ok=True)
        (root / "dosdevices").mkdir(parents=True, exist_ok=True)
        (root / "system.reg").write_text("WINE REGISTRY Version 2\n")
        return 0
    return handler


def tree_snapshot(root: Path) -> Dict[str, tuple]:
    """Map of relative path -> (size, mtime_ns, link target) for change detection."""
    snapshot = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            st = path.lstat()
            target = os.readlink(path) if path.is_symlink() else None
            snapshot[str(path.relative_to(root))] = (st.st_size, st.st_mtime_ns, target)
    return snapshot
