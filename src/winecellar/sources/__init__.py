"""Sources layer - HTTP transport and release providers."""

from .http import (
    USER_AGENT,
    Deadline,
    HttpClient,
    is_transient,
    with_retries,
)
from .github import GithubProvider
from .gitlab import GitlabProvider

__all__ = [
    "USER_AGENT",
    "Deadline",
    "HttpClient",
    "is_transient",
    "with_retries",
    "GithubProvider",
    "GitlabProvider",
]
