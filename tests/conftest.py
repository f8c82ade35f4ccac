"""Shared fixtures."""

from pathlib import Path

import pytest

from tests.helpers import FakeHttpClient, tar_bytes
from winecellar.config.settings import Settings
from winecellar.config.types import ArtifactDescriptor, ReleaseSource
from winecellar.environment.paths import CellarPaths


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def home(tmp_path) -> Path:
    return tmp_path / "home"


@pytest.fixture
def settings(home) -> Settings:
    return Settings(home=home, lock_timeout=5.0, retries=3, backoff=0.0, run_timeout=0.0)


@pytest.fixture
def paths(home) -> CellarPaths:
    return CellarPaths(home)


@pytest.fixture
def http() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def dxvk() -> ArtifactDescriptor:
    return ArtifactDescriptor(
        name="dxvk",
        source=ReleaseSource(repository="doitsujin/dxvk", asset_pattern=r"^(?!.*sniper).*\.tar\.gz$"),
    )


@pytest.fixture
def dxvk_archive() -> bytes:
    return tar_bytes({
        "x64/d3d11.dll": "x64 d3d11",
        "x64/dxgi.dll": "x64 dxgi",
        "x32/d3d11.dll": "x32 d3d11",
        "x32/dxgi.dll": "x32 dxgi",
    }, root="dxvk-2.3")
