"""
winecellar - Reproducible, isolated wine prefixes.

Features:
- Release resolution against GitHub releases and GitLab trees
- A shared artifact cache with at-most-one fetch per version
- Signature-checked installs of DXVK, VKD3D-Proton and friends
- Idempotent prefix reconciliation (mounts, winetricks verbs, hooks)
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("winecellar")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"


# =============================================================================
# Primary API (what most users need)
# =============================================================================

from .pipeline import LaunchPlan, ReconciliationPipeline


# =============================================================================
# Config Layer
# =============================================================================

from .config import (
    ArtifactDescriptor,
    CachedArtifact,
    EnvironmentSpec,
    InstallOutcome,
    ManifestConfig,
    ReleaseSource,
    ResolvedVersion,
    Settings,
    UnitConfig,
    VersionRequest,
    load_config,
    discover_config,
    CONFIG_FILE_NAME,
)


# =============================================================================
# Engine
# =============================================================================

from .resolver import VersionResolver
from .install import Installer, compute_signature
from .environment import (
    ArtifactCache,
    CellarPaths,
    EnvironmentHandle,
    EnvironmentReconciler,
    SharedResourceGuard,
    sweep_prefix,
)
from .errors import (
    CellarError,
    ConfigError,
    ResolutionUnavailable,
    NotFound,
    AssetMissing,
    FetchFailed,
    CorruptArtifact,
    CacheBusy,
    InstallFailed,
    InitFailed,
    MountFailed,
    FixupFailed,
    HookFailed,
)


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Pipeline
    "LaunchPlan",
    "ReconciliationPipeline",
    # Config
    "ArtifactDescriptor",
    "CachedArtifact",
    "EnvironmentSpec",
    "InstallOutcome",
    "ManifestConfig",
    "ReleaseSource",
    "ResolvedVersion",
    "Settings",
    "UnitConfig",
    "VersionRequest",
    "load_config",
    "discover_config",
    "CONFIG_FILE_NAME",
    # Engine
    "VersionResolver",
    "Installer",
    "compute_signature",
    "ArtifactCache",
    "CellarPaths",
    "EnvironmentHandle",
    "EnvironmentReconciler",
    "SharedResourceGuard",
    "sweep_prefix",
    # Errors
    "CellarError",
    "ConfigError",
    "ResolutionUnavailable",
    "NotFound",
    "AssetMissing",
    "FetchFailed",
    "CorruptArtifact",
    "CacheBusy",
    "InstallFailed",
    "InitFailed",
    "MountFailed",
    "FixupFailed",
    "HookFailed",
]
