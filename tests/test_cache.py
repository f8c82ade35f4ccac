"""Tests for the artifact cache: idempotence, atomic publish, concurrency, self-healing."""

import os
import threading
from http.client import IncompleteRead

import pytest

from tests.helpers import http_error, serve_github, tar_zst_bytes
from winecellar.config.types import (
    ARTIFACT_METADATA_FILE,
    ArtifactDescriptor,
    InstallKind,
    InstallProcedure,
    ReleaseSource,
    ToolDescriptor,
    VersionRequest,
)
from winecellar.environment.cache import ArtifactCache
from winecellar.environment.locks import KeyedLock
from winecellar.errors import CacheBusy, CorruptArtifact, FetchFailed, NotFound
from winecellar.resolver import VersionResolver


def make_cache(paths, http, **kwargs) -> ArtifactCache:
    kwargs.setdefault("lock_timeout", 5.0)
    kwargs.setdefault("backoff", 0.0)
    resolver = VersionResolver(http, retries=kwargs.get("retries", 3), backoff=0.0)
    return ArtifactCache(paths, resolver, http, **kwargs)


@pytest.fixture
def cache(paths, http):
    return make_cache(paths, http)


def visible_entries(paths, key):
    return sorted(p.name for p in paths.key_dir(key).iterdir() if p.name != ".lock")


class TestMaterialize:
    def test_literal_fetches_once_and_strips_root(self, cache, http, paths, dxvk, dxvk_archive):
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)

        first = cache.materialize(dxvk, VersionRequest.literal("v2.3"))
        calls = http.calls
        second = cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert first.fetched and not second.fetched
        assert first.path == second.path == paths.version_dir("dxvk", "v2.3")
        assert (first.path / "x64" / "d3d11.dll").read_text() == "x64 d3d11"
        assert (first.path / ARTIFACT_METADATA_FILE).is_file()
        assert first.metadata["artifact"]["version"] == "v2.3"
        assert http.calls == calls
        assert len(http.download_calls) == 1

    def test_latest_then_literal_is_pure_read(self, cache, http, paths, dxvk, dxvk_archive):
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)

        latest = cache.materialize(dxvk, VersionRequest.latest())
        assert latest.version == "v2.3"
        assert os.readlink(paths.latest_alias("dxvk")) == "v2.3"
        assert cache.latest_version("dxvk") == "v2.3"

        calls = http.calls
        literal = cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert literal.path == latest.path
        assert http.calls == calls

    def test_latest_re_resolves_but_downloads_once(self, cache, http, dxvk, dxvk_archive):
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)

        cache.materialize(dxvk, VersionRequest.latest())
        cache.materialize(dxvk, VersionRequest.latest())

        assert len(http.json_calls) == 2
        assert len(http.download_calls) == 1

    def test_latest_moves_alias_to_new_release(self, cache, http, paths, dxvk, dxvk_archive):
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)
        cache.materialize(dxvk, VersionRequest.latest())

        serve_github(http, "doitsujin/dxvk", "v2.4", dxvk_archive)
        newer = cache.materialize(dxvk, VersionRequest.latest())

        assert newer.version == "v2.4"
        assert os.readlink(paths.latest_alias("dxvk")) == "v2.4"
        assert cache.published("dxvk", "v2.3") is not None

    def test_latest_ttl_skips_resolution(self, paths, http, dxvk, dxvk_archive):
        cache = make_cache(paths, http, latest_ttl=3600)
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)

        cache.materialize(dxvk, VersionRequest.latest())
        calls = http.calls
        again = cache.materialize(dxvk, VersionRequest.latest())

        assert again.version == "v2.3"
        assert http.calls == calls

    def test_latest_never_falls_back_to_stale_alias(self, cache, http, dxvk, dxvk_archive):
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)
        cache.materialize(dxvk, VersionRequest.latest())

        del http.json["https://api.github.com/repos/doitsujin/dxvk/releases/latest"]
        with pytest.raises(NotFound):
            cache.materialize(dxvk, VersionRequest.latest())

    def test_script_url_is_fetched_into_version(self, cache, http, paths, dxvk_archive):
        descriptor = ArtifactDescriptor(
            name="dxvk-nvapi",
            source=ReleaseSource(repository="jp7677/dxvk-nvapi", asset_pattern=r"\.tar\.gz$"),
            install=InstallProcedure(kind=InstallKind.SCRIPT, script="setup_dxvk_nvapi.sh",
                                     verb="install", script_url="https://aur.example/setup_dxvk_nvapi.sh"),
        )
        serve_github(http, "jp7677/dxvk-nvapi", "v0.7", dxvk_archive)
        http.files["https://aur.example/setup_dxvk_nvapi.sh"] = b"#!/bin/sh\nexit 0\n"

        artifact = cache.materialize(descriptor, VersionRequest.literal("v0.7"))

        script = artifact.path / "setup_dxvk_nvapi.sh"
        assert script.read_bytes().startswith(b"#!/bin/sh")
        assert os.access(script, os.X_OK)


class TestFailures:
    def test_corrupt_archive_publishes_nothing(self, cache, http, paths, dxvk):
        serve_github(http, "doitsujin/dxvk", "v2.3", b"this is not a tarball")

        with pytest.raises(CorruptArtifact) as exc:
            cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert exc.value.artifact == "dxvk"
        assert exc.value.version == "v2.3"
        assert len(http.download_calls) == 3
        assert visible_entries(paths, "dxvk") == []

    def test_server_errors_exhaust_into_fetch_failed(self, cache, http, paths, dxvk):
        url = serve_github(http, "doitsujin/dxvk", "v2.3", b"")
        http.files[url] = http_error(url, 502)

        with pytest.raises(FetchFailed):
            cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert len(http.download_calls) == 3
        assert visible_entries(paths, "dxvk") == []

    def test_missing_asset_is_not_retried(self, cache, http, dxvk):
        url = serve_github(http, "doitsujin/dxvk", "v2.3", b"")
        http.files[url] = http_error(url, 404)

        with pytest.raises(FetchFailed):
            cache.materialize(dxvk, VersionRequest.literal("v2.3"))
        assert len(http.download_calls) == 1

    def test_recovers_after_transient_download_error(self, cache, http, dxvk, dxvk_archive):
        url = serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)
        http.files[url] = [http_error(url, 500), dxvk_archive]

        artifact = cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert (artifact.path / "x32" / "dxgi.dll").exists()
        assert len(http.download_calls) == 2

    def test_truncated_download_is_retried(self, cache, http, paths, dxvk, dxvk_archive):
        url = serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)
        http.files[url] = [IncompleteRead(b"partial", 100), dxvk_archive]

        artifact = cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert (artifact.path / "x64" / "d3d11.dll").read_text() == "x64 d3d11"
        assert len(http.download_calls) == 2
        assert visible_entries(paths, "dxvk") == ["v2.3"]

    def test_persistent_truncation_raises_fetch_failed(self, cache, http, paths, dxvk):
        url = serve_github(http, "doitsujin/dxvk", "v2.3", b"")
        http.files[url] = IncompleteRead(b"partial", 100)

        with pytest.raises(FetchFailed) as exc:
            cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert exc.value.artifact == "dxvk"
        assert exc.value.version == "v2.3"
        assert exc.value.phase == "fetch"
        assert len(http.download_calls) == 3
        assert visible_entries(paths, "dxvk") == []

    def test_busy_lock_times_out(self, paths, http, dxvk, dxvk_archive):
        cache = make_cache(paths, http, lock_timeout=0.2)
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)

        with KeyedLock(paths.key_lock("dxvk")):
            with pytest.raises(CacheBusy) as exc:
                cache.materialize(dxvk, VersionRequest.literal("v2.3"))

        assert exc.value.retryable
        assert http.calls == 0


class TestSelfHealing:
    def test_leftovers_of_killed_run_are_cleaned(self, cache, http, paths, dxvk, dxvk_archive):
        key_dir = paths.key_dir("dxvk")
        # Staging dir of a process killed mid-extract
        (key_dir / ".tmp-0123abcd" / "tree" / "dxvk-2.3" / "x64").mkdir(parents=True)
        # Version dir without metadata and an alias pointing nowhere
        (key_dir / "v2.2").mkdir()
        (key_dir / "v2.2" / "partial.dll").write_text("half")
        os.symlink("v2.1", key_dir / "latest")

        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)
        artifact = cache.materialize(dxvk, VersionRequest.latest())

        assert artifact.version == "v2.3"
        assert visible_entries(paths, "dxvk") == ["latest", "v2.3"]
        assert os.readlink(paths.latest_alias("dxvk")) == "v2.3"

    def test_dangling_alias_reads_as_absent(self, cache, paths):
        paths.key_dir("dxvk").mkdir(parents=True)
        os.symlink("v9.9", paths.latest_alias("dxvk"))

        assert cache.latest_version("dxvk") is None

    def test_version_without_metadata_is_not_published(self, cache, paths):
        paths.version_dir("dxvk", "v2.3").mkdir(parents=True)

        assert cache.published("dxvk", "v2.3") is None


class TestConcurrency:
    def test_concurrent_materialize_downloads_once(self, paths, http, dxvk, dxvk_archive):
        serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)
        http.download_delay = 0.2
        workers = 8
        barrier = threading.Barrier(workers)
        results, errors = [], []

        def run():
            cache = make_cache(paths, http)
            barrier.wait()
            try:
                results.append(cache.materialize(dxvk, VersionRequest.literal("v2.3")).path)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(http.download_calls) == 1
        assert len(set(results)) == 1
        assert len(results) == workers

    def test_different_keys_do_not_contend(self, paths, http, dxvk, dxvk_archive):
        other = ArtifactDescriptor(
            name="vkd3d-proton",
            source=ReleaseSource(repository="HansKristian-Work/vkd3d-proton", asset_pattern=r"\.tar\.zst$"),
        )
        serve_github(http, "HansKristian-Work/vkd3d-proton", "v2.13",
                     tar_zst_bytes({"x64/d3d12.dll": "d3d12"}, root="vkd3d-proton-2.13"),
                     asset="vkd3d-proton-2.13.tar.zst")
        cache = make_cache(paths, http, lock_timeout=0.2)

        with KeyedLock(paths.key_lock("dxvk")):
            artifact = cache.materialize(other, VersionRequest.literal("v2.13"))

        assert (artifact.path / "x64" / "d3d12.dll").read_text() == "d3d12"


class TestTools:
    def test_raw_tool_is_fetched_once(self, cache, http, paths):
        tool = ToolDescriptor(name="winetricks", url="https://raw.example/winetricks")
        http.files[tool.url] = b"#!/bin/sh\necho winetricks\n"

        first = cache.ensure_tool(tool)
        second = cache.ensure_tool(tool)

        assert first == second == paths.bin_dir / "winetricks"
        assert os.access(first, os.X_OK)
        assert http.download_calls == [tool.url]
        assert cache.list_tools() == ["winetricks"]

    def test_truncated_tool_download_raises_fetch_failed(self, cache, http, paths):
        tool = ToolDescriptor(name="winetricks", url="https://raw.example/winetricks")
        http.files[tool.url] = IncompleteRead(b"#!/bin/sh", 4096)

        with pytest.raises(FetchFailed) as exc:
            cache.ensure_tool(tool)

        assert exc.value.artifact == "winetricks"
        assert len(http.download_calls) == 3
        assert not (paths.bin_dir / "winetricks").exists()

    def test_tool_member_is_extracted_from_package(self, cache, http, paths):
        tool = ToolDescriptor(name="cabextract", url="https://pkgs.example/cabextract/download/",
                              member="usr/bin/cabextract", archive=".tar.zst")
        http.files[tool.url] = tar_zst_bytes({
            ".PKGINFO": "pkgname = cabextract",
            "usr/bin/cabextract": "ELF",
            "usr/share/man/man1/cabextract.1": "man",
        }, root=None)

        path = cache.ensure_tool(tool)

        assert path.read_text() == "ELF"
        assert os.access(path, os.X_OK)
        assert sorted(p.name for p in paths.bin_dir.iterdir() if not p.name.endswith(".lock")) == ["cabextract"]


def test_list_cached(cache, http, dxvk, dxvk_archive):
    serve_github(http, "doitsujin/dxvk", "v2.3", dxvk_archive)
    cache.materialize(dxvk, VersionRequest.latest())

    [entry] = cache.list_cached()

    assert entry["key"] == "dxvk"
    assert entry["versions"] == ["v2.3"]
    assert entry["latest"] == "v2.3"
