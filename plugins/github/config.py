"""GitHub endpoints, OAuth settings and instance configuration."""

import os
from typing import Optional

from pydantic import Field, field_validator

from core.integrations.oauth_manager import OAuthConfig
from patterns.domain_config import InstanceConfig

GITHUB_API_BASE = "https://api.github.com"
GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_SCOPES = ["repo", "read:user"]
GITHUB_API_VERSION = "2022-11-28"

# Configured label -> GitHub event type
EVENT_TYPES = {
    "push": "PushEvent",
    "pull_request": "PullRequestEvent",
    "issue": "IssuesEvent",
}


class GitHubInstanceConfig(InstanceConfig):
    repositories: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=lambda: list(EVENT_TYPES))
    per_page: int = Field(default=100, ge=1, le=100)

    @field_validator("repositories")
    @classmethod
    def _check_repositories(cls, value: list[str]) -> list[str]:
        cleaned = [repo.strip() for repo in value if repo.strip()]
        for repo in cleaned:
            owner, _, name = repo.partition("/")
            if not owner or not name or "/" in name:
                raise ValueError(f"repository must be owner/name, got {repo!r}")
        return cleaned

    @property
    def allowed_types(self) -> set[str]:
        return {EVENT_TYPES.get(label, label) for label in self.events}


def oauth_config_from_env() -> Optional[OAuthConfig]:
    client_id = os.getenv("GITHUB_CLIENT_ID")
    if not client_id:
        return None
    return OAuthConfig(
        provider_name="github",
        authorize_url=GITHUB_AUTHORIZE_URL,
        token_url=GITHUB_TOKEN_URL,
        client_id=client_id,
        client_secret=os.getenv("GITHUB_CLIENT_SECRET", ""),
        redirect_uri=os.getenv("GITHUB_REDIRECT_URI", "http://localhost:8000/oauth/github/callback"),
        scopes=list(GITHUB_SCOPES),
        supports_refresh=False,
    )
