"""Outline endpoints and instance configuration."""

from typing import Optional

from pydantic import Field, field_validator

from patterns.domain_config import InstanceConfig

DEFAULT_API_URL = "https://app.getoutline.com"
DOCUMENTS_LIST_PATH = "/api/documents.list"
COLLECTIONS_LIST_PATH = "/api/collections.list"
AUTH_INFO_PATH = "/api/auth.info"

INSTANCE_TYPES = ("recent_documents", "recent_daynotes")


class OutlineInstanceConfig(InstanceConfig):
    """Outline is self-hostable, so the API URL is per instance."""

    api_url: str = DEFAULT_API_URL
    daynotes_collection_id: Optional[str] = None
    page_size: int = Field(default=100, ge=1, le=100)

    @field_validator("api_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("api_url must be an http(s) URL")
        return value
