"""
Configuration parsing for winecellar.

Loads winecellar.toml and provides typed config objects. Artifact
descriptors use the same schema here and in the built-in registry.
"""

import copy
import os
import re
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli

from ..errors import ConfigError
from .types import (
    ArtifactDescriptor,
    DllCopy,
    EnvironmentSpec,
    InstallKind,
    InstallProcedure,
    ManifestConfig,
    ReleaseSource,
    RuntimeSpec,
    ToolDescriptor,
    UnitConfig,
    VersionRequest,
)

CONFIG_FILE_NAME = "winecellar.toml"

_DRIVE_LETTER = re.compile(r"^[a-z]$")


def load_config(path: Path) -> ManifestConfig:
    """
    Load config from a TOML file.

    Args:
        path: Path to winecellar.toml file.

    Returns:
        Parsed ManifestConfig.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ConfigError: If the file is not valid TOML or has invalid sections.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "rb") as f:
        try:
            data = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}", phase="config") from e
    return parse_config(data)


def discover_config(directory: Path) -> Optional[ManifestConfig]:
    """Find and load winecellar.toml from a directory, None if absent."""
    config_path = Path(directory) / CONFIG_FILE_NAME
    if config_path.exists():
        return load_config(config_path)
    return None


def parse_config(data: Dict[str, Any]) -> ManifestConfig:
    """
    Parse TOML data into ManifestConfig.

    [defaults] is deep-merged under every unit before the unit is parsed.
    """
    data = copy.deepcopy(data)

    paths = data.pop("paths", {})
    home = paths.get("home")

    env = _str_dict(data.pop("env", {}), "env")
    defaults = data.pop("defaults", {})

    artifacts = {
        name: parse_artifact(name, value)
        for name, value in data.pop("artifacts", {}).items()
    }

    units = {}
    for key, value in data.pop("units", {}).items():
        if not isinstance(value, dict):
            raise ConfigError(f"[units.{key}] must be a table", phase="config")
        units[key] = parse_unit(key, _deep_merge(defaults, value), env)

    return ManifestConfig(
        home=Path(home).expanduser() if home else None,
        env=env,
        artifacts=artifacts,
        units=units,
    )


def parse_unit(key: str, data: Dict[str, Any], defaults_env: Optional[Dict[str, str]] = None) -> UnitConfig:
    """Parse one [units.<key>] table."""
    name = str(data.get("name", key))

    mounts = {}
    for letter, target in data.get("mounts", {}).items():
        letter = str(letter).lower().rstrip(":")
        if not _DRIVE_LETTER.match(letter):
            raise ConfigError(f"Invalid drive letter {letter!r} in unit {key}", phase="config")
        mounts[letter] = os.path.expanduser(str(target))

    hooks = []
    for hook in data.get("before", []):
        if isinstance(hook, str):
            hook = shlex.split(hook)
        if hook:
            hooks.append([str(part) for part in hook])

    environment = EnvironmentSpec(
        mounts=mounts,
        fixups=[str(v) for v in _ensure_list(data.get("winetricks", []))],
        hooks=hooks,
        env=_str_dict(data.get("env", {}), f"units.{key}.env"),
        defaults=dict(defaults_env or {}),
    )

    libraries = {
        str(lib): VersionRequest.parse(version)
        for lib, version in data.get("libraries", {}).items()
    }

    return UnitConfig(
        key=key,
        name=name,
        prefix=str(data.get("prefix") or key),
        command=[str(v) for v in _ensure_list(data.get("command", []))],
        cd=data.get("cd"),
        wrapper=[str(v) for v in _ensure_list(data.get("wrapper", []))],
        runtime=parse_runtime(data.get("runtime", {})),
        libraries=libraries,
        environment=environment,
    )


def parse_runtime(data: Any) -> RuntimeSpec:
    if isinstance(data, str):
        data = {"kind": data}
    kind = str(data.get("kind", "system"))
    if kind == "system":
        return RuntimeSpec(kind="system", path=data.get("path"))
    return RuntimeSpec(kind=kind, version=VersionRequest.parse(data.get("version", "latest")))


def parse_artifact(name: str, data: Dict[str, Any]) -> ArtifactDescriptor:
    """Parse an artifact descriptor (registry entry or [artifacts.<name>])."""
    source_data = data.get("source")
    if not isinstance(source_data, dict):
        raise ConfigError(f"Artifact {name} has no [source] table", artifact=name, phase="config")
    try:
        source = ReleaseSource(
            repository=str(source_data["repository"]),
            asset_pattern=str(source_data["asset_pattern"]),
            provider=str(source_data.get("provider", "github")),
            tree_path=source_data.get("tree_path"),
            ref=str(source_data.get("ref", "main")),
        )
    except KeyError as e:
        raise ConfigError(f"Artifact {name} source is missing {e}", artifact=name, phase="config") from e

    if source.provider not in ("github", "gitlab"):
        raise ConfigError(f"Unknown release provider {source.provider!r}", artifact=name, phase="config")
    try:
        pattern = re.compile(source.asset_pattern)
    except re.error as e:
        raise ConfigError(f"Invalid asset_pattern: {e}", artifact=name, phase="config") from e
    if source.provider == "gitlab" and "version" not in pattern.groupindex:
        raise ConfigError("gitlab asset_pattern needs a (?P<version>...) group", artifact=name, phase="config")

    return ArtifactDescriptor(
        name=name,
        source=source,
        kind=str(data.get("kind", "library")),
        install=parse_install(name, data.get("install", {})),
        payload=tuple(str(p) for p in _ensure_list(data.get("payload", []))),
        env_paths=_str_dict(data.get("env_paths", {}), f"artifacts.{name}.env_paths"),
        bin_dir=data.get("bin_dir"),
    )


def parse_install(name: str, data: Dict[str, Any]) -> InstallProcedure:
    try:
        kind = InstallKind(data.get("kind", "none"))
    except ValueError:
        raise ConfigError(f"Unknown install kind {data.get('kind')!r}", artifact=name, phase="config")

    if kind is InstallKind.SCRIPT:
        if not data.get("script"):
            raise ConfigError("Script install needs a 'script' path", artifact=name, phase="config")
        return InstallProcedure(
            kind=kind,
            script=str(data["script"]),
            verb=data.get("verb") or None,
            script_url=data.get("script_url"),
        )

    if kind is InstallKind.COPY_DLLS:
        dlls = []
        for entry in data.get("dlls", []):
            arch = str(entry.get("arch", "x64"))
            if arch not in ("x64", "x86"):
                raise ConfigError(f"Unknown arch {arch!r}", artifact=name, phase="config")
            dlls.append(DllCopy(
                source=str(entry.get("source", ".")),
                arch=arch,
                files=tuple(str(f) for f in entry.get("files", [])),
            ))
        return InstallProcedure(kind=kind, dlls=tuple(dlls))

    return InstallProcedure()


def parse_tool(name: str, data: Dict[str, Any]) -> ToolDescriptor:
    if "url" not in data:
        raise ConfigError(f"Tool {name} has no url", artifact=name, phase="config")
    return ToolDescriptor(
        name=name,
        url=str(data["url"]),
        member=data.get("member"),
        archive=data.get("archive"),
    )


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dicts, override wins for conflicts."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _str_dict(value: Any, where: str) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise ConfigError(f"[{where}] must be a table", phase="config")
    return {str(k): str(v) for k, v in value.items()}


def _ensure_list(value) -> List:
    """Ensure value is a list."""
    if isinstance(value, list):
        return value
    if value:
        return [value]
    return []
