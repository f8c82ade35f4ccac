"""Configuration and data model types for winecellar."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

LATEST = "latest"

# Written into every published version directory, last thing before the rename
ARTIFACT_METADATA_FILE = ".winecellar-artifact.toml"

# Version strings that mean "resolve the newest release"
LATEST_ALIASES = ("latest", "*")


@dataclass(frozen=True)
class VersionRequest:
    """Either Latest (tag is None) or a literal release tag."""
    tag: Optional[str] = None

    @classmethod
    def latest(cls) -> "VersionRequest":
        return cls(None)

    @classmethod
    def literal(cls, tag: str) -> "VersionRequest":
        if not tag or tag.lower() in LATEST_ALIASES:
            raise ValueError(f"Not a literal version tag: {tag!r}")
        return cls(tag)

    @classmethod
    def parse(cls, value: Any) -> "VersionRequest":
        text = str(value).strip()
        if not text or text.lower() in LATEST_ALIASES:
            return cls.latest()
        return cls(text)

    @property
    def is_latest(self) -> bool:
        return self.tag is None

    def __str__(self) -> str:
        return LATEST if self.tag is None else self.tag


@dataclass(frozen=True)
class ReleaseSource:
    """Where releases of an artifact are published.

    provider is "github" (releases API) or "gitlab" (files in a repository tree).
    asset_pattern is a regular expression matched against asset file names;
    for gitlab it must carry a ``(?P<version>...)`` group.
    """
    repository: str  # "owner/repo"
    asset_pattern: str
    provider: str = "github"
    tree_path: Optional[str] = None  # gitlab only
    ref: str = "main"  # gitlab only

    def __str__(self) -> str:
        return f"{self.provider}:{self.repository}"


@dataclass(frozen=True)
class ResolvedVersion:
    """A pinned release: concrete tag plus the asset to download."""
    version: str
    url: str
    filename: str


@dataclass(frozen=True)
class DllCopy:
    """DLLs copied from an artifact subdirectory into the prefix."""
    source: str  # directory relative to the artifact root
    arch: str  # "x64" -> system32, "x86" -> syswow64
    files: Tuple[str, ...] = ()


class InstallKind(str, Enum):
    NONE = "none"
    SCRIPT = "script"
    COPY_DLLS = "copy-dlls"


@dataclass(frozen=True)
class InstallProcedure:
    """How a cached artifact gets applied to a prefix.

    The verb passed to a setup script is declared here per artifact; some
    scripts want "install", others take no argument at all.
    """
    kind: InstallKind = InstallKind.NONE
    script: Optional[str] = None
    verb: Optional[str] = None
    script_url: Optional[str] = None
    dlls: Tuple[DllCopy, ...] = ()

    def command(self, artifact_dir: Path) -> List[str]:
        argv = [str(artifact_dir / self.script)]
        if self.verb:
            argv.append(self.verb)
        return argv

    def overrides(self) -> List[str]:
        """DLL names (without extension) that must load as native."""
        names = []
        for entry in self.dlls:
            for dll in entry.files:
                name = dll[:-3] if dll.endswith(".so") else dll
                name = name[:-4] if name.endswith(".dll") else name
                if name not in names:
                    names.append(name)
        return names


@dataclass
class ArtifactDescriptor:
    """A named, downloadable runtime or library."""
    name: str
    source: ReleaseSource
    kind: str = "library"  # library | runtime
    install: InstallProcedure = field(default_factory=InstallProcedure)
    payload: Tuple[str, ...] = ()  # globs forming the install signature; empty = whole tree
    env_paths: Dict[str, str] = field(default_factory=dict)
    bin_dir: Optional[str] = None  # runtimes: directory with wine/wineserver


@dataclass
class ToolDescriptor:
    """A single helper executable fetched once into the cache bin dir."""
    name: str
    url: str
    member: Optional[str] = None  # path inside a package archive, if not a raw file
    archive: Optional[str] = None  # archive suffix when the URL does not carry one


@dataclass
class CachedArtifact:
    """A fully published, immutable version directory."""
    key: str
    version: str
    path: Path
    metadata: Dict[str, Any] = field(default_factory=dict)
    fetched: bool = False  # True when this call performed the download


@dataclass
class InstallRecord:
    key: str
    version: str
    signature: str
    installed_at: str = ""


class InstallOutcome(str, Enum):
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already-installed"
    NOTHING_TO_INSTALL = "nothing-to-install"


@dataclass
class RuntimeSpec:
    """Which wine to use: the system one or a cached runtime artifact."""
    kind: str = "system"
    path: Optional[str] = None  # system only: directory containing wine
    version: VersionRequest = field(default_factory=VersionRequest.latest)

    @property
    def is_system(self) -> bool:
        return self.kind == "system"


@dataclass
class EnvironmentSpec:
    """Desired state of a prefix."""
    mounts: Dict[str, str] = field(default_factory=dict)  # drive letter -> host path
    fixups: List[str] = field(default_factory=list)  # winetricks verbs
    hooks: List[List[str]] = field(default_factory=list)  # pre-launch commands
    env: Dict[str, str] = field(default_factory=dict)  # unit-level overrides
    defaults: Dict[str, str] = field(default_factory=dict)  # process-wide defaults

    def merged_env(self) -> Dict[str, str]:
        """Process-wide defaults overlaid by the unit's own variables."""
        merged = dict(self.defaults)
        merged.update(self.env)
        return merged


@dataclass
class UnitConfig:
    key: str
    name: str
    prefix: str
    command: List[str] = field(default_factory=list)
    cd: Optional[str] = None
    wrapper: List[str] = field(default_factory=list)
    runtime: RuntimeSpec = field(default_factory=RuntimeSpec)
    libraries: Dict[str, VersionRequest] = field(default_factory=dict)
    environment: EnvironmentSpec = field(default_factory=EnvironmentSpec)


@dataclass
class ManifestConfig:
    """Parsed winecellar.toml."""
    home: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, ArtifactDescriptor] = field(default_factory=dict)
    units: Dict[str, UnitConfig] = field(default_factory=dict)
