"""Built-in registry of runtimes, libraries and helper tools.

This module loads descriptors from artifacts.yml and provides lookup
functions for the pipeline. Descriptors declared in a manifest's
[artifacts.<name>] tables take precedence over the built-in ones.
"""

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .config.parser import parse_artifact, parse_tool
from .config.types import ArtifactDescriptor, ToolDescriptor
from .errors import ConfigError


def _load_artifact_sources() -> Dict[str, Dict[str, Any]]:
    """Load the registry from artifacts.yml."""
    yml_path = Path(__file__).parent / "artifacts.yml"
    with open(yml_path, "r") as f:
        return yaml.safe_load(f) or {}


_RAW = _load_artifact_sources()

# Load registry at module import time
ARTIFACT_REGISTRY: Dict[str, ArtifactDescriptor] = {
    name: parse_artifact(name, data) for name, data in _RAW.get("artifacts", {}).items()
}

TOOL_REGISTRY: Dict[str, ToolDescriptor] = {
    name: parse_tool(name, data) for name, data in _RAW.get("tools", {}).items()
}


def get_artifact(
    name: str,
    overrides: Optional[Mapping[str, ArtifactDescriptor]] = None,
) -> ArtifactDescriptor:
    """Look up an artifact descriptor by name.

    Args:
        name: Artifact name (case-insensitive)
        overrides: Manifest-declared descriptors, consulted first

    Raises:
        ConfigError: If no descriptor with that name exists
    """
    key = name.lower()
    if overrides:
        for candidate, descriptor in overrides.items():
            if candidate.lower() == key:
                return descriptor
    if key in ARTIFACT_REGISTRY:
        return ARTIFACT_REGISTRY[key]
    raise ConfigError(f"Unknown artifact {name!r}", artifact=name, phase="config")


def get_tool(name: str) -> ToolDescriptor:
    return TOOL_REGISTRY[name]


def list_artifacts(kind: Optional[str] = None) -> Dict[str, str]:
    """Map artifact name to its release source, optionally filtered by kind."""
    return {
        name: str(descriptor.source)
        for name, descriptor in ARTIFACT_REGISTRY.items()
        if kind is None or descriptor.kind == kind
    }
