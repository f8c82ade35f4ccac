"""
Error taxonomy for winecellar.

Every failure the engine surfaces carries enough context (artifact key,
version, phase) to be diagnosed from the message alone.
"""

from typing import Optional


class CellarError(RuntimeError):
    """Base class for all provisioning and reconciliation failures."""

    # Transient failures: the caller may retry the whole run later.
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        artifact: Optional[str] = None,
        version: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.artifact = artifact
        self.version = version
        self.phase = phase

    def __str__(self) -> str:
        context = []
        if self.phase:
            context.append(f"phase={self.phase}")
        if self.artifact:
            context.append(f"artifact={self.artifact}")
        if self.version:
            context.append(f"version={self.version}")
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class ConfigError(CellarError):
    """Manifest or descriptor is invalid."""


class ResolutionUnavailable(CellarError):
    """Release metadata could not be fetched after all retries."""
    retryable = True


class NotFound(CellarError):
    """The requested release tag does not exist upstream."""


class AssetMissing(CellarError):
    """The release exists but no asset matches the declared pattern."""


class FetchFailed(CellarError):
    """Downloading an asset failed after all retries."""
    retryable = True


class CorruptArtifact(CellarError):
    """The downloaded archive could not be extracted. Nothing was published."""
    retryable = True


class CacheBusy(CellarError):
    """Timed out waiting for another process holding the artifact lock."""
    retryable = True


class InstallFailed(CellarError):
    """An artifact's install procedure failed against the target prefix."""


class InitFailed(CellarError):
    """The prefix initializer did not complete."""


class MountFailed(CellarError):
    """A drive mount could not be realized."""


class FixupFailed(CellarError):
    """A fix-up verb failed. Verbs applied before it remain logged."""


class HookFailed(CellarError):
    """A pre-launch hook exited with an error."""
