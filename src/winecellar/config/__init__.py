"""Config layer - Manifest parsing, settings and data model types."""

from .types import (
    LATEST,
    ArtifactDescriptor,
    CachedArtifact,
    EnvironmentSpec,
    InstallKind,
    InstallOutcome,
    InstallProcedure,
    InstallRecord,
    ManifestConfig,
    ReleaseSource,
    ResolvedVersion,
    RuntimeSpec,
    ToolDescriptor,
    UnitConfig,
    VersionRequest,
)
from .parser import (
    CONFIG_FILE_NAME,
    load_config,
    discover_config,
    parse_config,
)
from .settings import Settings, is_debug

__all__ = [
    "LATEST",
    "ArtifactDescriptor",
    "CachedArtifact",
    "EnvironmentSpec",
    "InstallKind",
    "InstallOutcome",
    "InstallProcedure",
    "InstallRecord",
    "ManifestConfig",
    "ReleaseSource",
    "ResolvedVersion",
    "RuntimeSpec",
    "ToolDescriptor",
    "UnitConfig",
    "VersionRequest",
    "CONFIG_FILE_NAME",
    "load_config",
    "discover_config",
    "parse_config",
    "Settings",
    "is_debug",
]
