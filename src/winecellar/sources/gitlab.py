"""GitLab provider: releases published as files in a repository tree."""

import logging
import re
import urllib.error
from typing import Optional
from urllib.parse import quote

from ..config.types import ReleaseSource, ResolvedVersion, VersionRequest
from ..errors import AssetMissing, NotFound
from .http import Deadline, HttpClient

logger = logging.getLogger("winecellar.sources")

GITLAB = "https://gitlab.com"


def tree_url(source: ReleaseSource) -> str:
    project = quote(source.repository, safe="")
    url = f"{GITLAB}/api/v4/projects/{project}/repository/tree?ref={quote(source.ref, safe='')}&per_page=100"
    if source.tree_path:
        url += f"&path={quote(source.tree_path, safe='')}"
    return url


def raw_url(source: ReleaseSource, path: str) -> str:
    return f"{GITLAB}/{source.repository}/-/raw/{source.ref}/{quote(path)}?inline=false"


class GitlabProvider:
    name = "gitlab"

    def __init__(self, http: HttpClient):
        self.http = http

    def lookup(
        self,
        source: ReleaseSource,
        request: VersionRequest,
        deadline: Optional[Deadline] = None,
    ) -> ResolvedVersion:
        """
        List the tree and pick a file.

        Latest is the lexicographically greatest matching file name. A literal
        tag selects the file whose extracted version equals the tag.
        """
        url = tree_url(source)
        logger.info("Listing %s files from %s", source, url)
        try:
            entries = self.http.get_json(url, deadline=deadline)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise NotFound(f"Repository tree of {source} not found", version=str(request),
                               phase="resolve") from e
            raise

        pattern = re.compile(source.asset_pattern)
        candidates = []
        for entry in entries:
            if entry.get("type", "blob") != "blob":
                continue
            match = pattern.search(entry.get("name", ""))
            if match:
                candidates.append((entry["name"], entry.get("path", entry["name"]), match.group("version")))

        if not candidates:
            raise AssetMissing(f"No file in {source} matches {source.asset_pattern!r}",
                               version=str(request), phase="resolve")

        if request.is_latest:
            name, path, version = max(candidates, key=lambda c: c[0])
        else:
            found = [c for c in candidates if c[2] == request.tag]
            if not found:
                raise NotFound(f"No release {request.tag} in {source}", version=request.tag, phase="resolve")
            name, path, version = found[0]

        return ResolvedVersion(version=version, url=raw_url(source, path), filename=name)
