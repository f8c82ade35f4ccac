"""
Version resolution: pin a VersionRequest to a concrete release asset.

Resolution is never cached across runs; the cache decides whether it
needs to resolve at all.
"""

import logging
from http.client import HTTPException
from typing import Dict, Optional

from .config.types import ReleaseSource, ResolvedVersion, VersionRequest
from .errors import CellarError, ConfigError, ResolutionUnavailable
from .sources.github import GithubProvider
from .sources.gitlab import GitlabProvider
from .sources.http import Deadline, HttpClient, with_retries

logger = logging.getLogger("winecellar.resolver")


class VersionResolver:
    def __init__(
        self,
        http: HttpClient,
        retries: int = 3,
        backoff: float = 1.0,
        deadline: Optional[Deadline] = None,
    ):
        self.http = http
        self.retries = retries
        self.backoff = backoff
        self.deadline = deadline
        self.providers: Dict[str, object] = {
            "github": GithubProvider(http),
            "gitlab": GitlabProvider(http),
        }

    def resolve(
        self,
        source: ReleaseSource,
        request: VersionRequest,
        artifact: Optional[str] = None,
    ) -> ResolvedVersion:
        """
        Pin request against source.

        Raises:
            NotFound: The literal tag does not exist upstream.
            AssetMissing: No asset matches the source pattern.
            ResolutionUnavailable: Transport kept failing or the run deadline passed.
        """
        provider = self.providers.get(source.provider)
        if provider is None:
            raise ConfigError(f"Unknown release provider {source.provider!r}", artifact=artifact, phase="resolve")

        try:
            resolved = with_retries(
                lambda: provider.lookup(source, request, deadline=self.deadline),
                attempts=self.retries,
                backoff=self.backoff,
                deadline=self.deadline,
                describe=f"resolve {artifact or source} {request}",
            )
        except CellarError as e:
            if e.artifact is None:
                e.artifact = artifact
            raise
        except (OSError, HTTPException, ValueError) as e:
            raise ResolutionUnavailable(
                f"Could not fetch release metadata from {source}: {e}",
                artifact=artifact, version=str(request), phase="resolve",
            ) from e

        logger.info("Resolved %s %s -> %s (%s)", artifact or source, request, resolved.version, resolved.filename)
        return resolved
