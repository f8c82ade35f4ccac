"""GitHub releases provider."""

import logging
import re
import urllib.error
from typing import Optional
from urllib.parse import quote

from ..config.types import ReleaseSource, ResolvedVersion, VersionRequest
from ..errors import AssetMissing, NotFound
from .http import Deadline, HttpClient

logger = logging.getLogger("winecellar.sources")

GITHUB_API = "https://api.github.com"
ACCEPT_HEADER = "application/vnd.github.v3+json"


def release_url(source: ReleaseSource, request: VersionRequest) -> str:
    if request.is_latest:
        return f"{GITHUB_API}/repos/{source.repository}/releases/latest"
    return f"{GITHUB_API}/repos/{source.repository}/releases/tags/{quote(request.tag, safe='')}"


class GithubProvider:
    name = "github"

    def __init__(self, http: HttpClient):
        self.http = http

    def lookup(
        self,
        source: ReleaseSource,
        request: VersionRequest,
        deadline: Optional[Deadline] = None,
    ) -> ResolvedVersion:
        """One attempt at pinning request to a tag and a matching asset."""
        url = release_url(source, request)
        logger.info("Fetching %s release metadata from %s", request, url)
        try:
            data = self.http.get_json(url, headers={"Accept": ACCEPT_HEADER}, deadline=deadline)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise NotFound(
                    f"No release {request} in {source}",
                    version=str(request), phase="resolve",
                ) from e
            raise

        tag = data.get("tag_name")
        if not tag:
            raise NotFound(f"Release metadata for {source} has no tag", version=str(request), phase="resolve")

        pattern = re.compile(source.asset_pattern)
        for asset in data.get("assets", []):
            name = asset.get("name", "")
            if pattern.search(name):
                return ResolvedVersion(version=tag, url=asset["browser_download_url"], filename=name)

        available = [a.get("name", "") for a in data.get("assets", [])[:10]]
        raise AssetMissing(
            f"No asset of {source} matches {source.asset_pattern!r} (have: {', '.join(available) or 'none'})",
            version=tag, phase="resolve",
        )
