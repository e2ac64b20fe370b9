"""Oura endpoints, OAuth settings and instance configuration."""

import os
from typing import Optional

from pydantic import Field

from core.integrations.oauth_manager import OAuthConfig
from patterns.domain_config import InstanceConfig

OURA_API_BASE = "https://api.ouraring.com/v2"
OURA_AUTHORIZE_URL = "https://cloud.ouraring.com/oauth/authorize"
OURA_TOKEN_URL = "https://api.ouraring.com/oauth/token"
OURA_SCOPES = ["email", "personal", "daily", "heartrate", "workout", "tag", "session", "spo2", "stress", "resilience"]

# instance_type -> collection path
ENDPOINTS: dict[str, str] = {
    "activity": "/usercollection/daily_activity",
    "sleep": "/usercollection/daily_sleep",
    "readiness": "/usercollection/daily_readiness",
    "resilience": "/usercollection/daily_resilience",
    "stress": "/usercollection/daily_stress",
    "spo2": "/usercollection/daily_spo2",
    "sleep_records": "/usercollection/sleep",
    "workouts": "/usercollection/workout",
    "sessions": "/usercollection/session",
    "tags": "/usercollection/tag",
    "heartrate": "/usercollection/heartrate",
}
PERSONAL_INFO_PATH = "/usercollection/personal_info"


class OuraInstanceConfig(InstanceConfig):
    """Oura instances re-request ``days_back`` of history in windows."""

    window_days: int = Field(default=30, ge=1, le=30)
    heartrate_window_days: int = Field(default=7, ge=1, le=30)


def oauth_config_from_env() -> Optional[OAuthConfig]:
    client_id = os.getenv("OURA_CLIENT_ID")
    if not client_id:
        return None
    return OAuthConfig(
        provider_name="oura",
        authorize_url=OURA_AUTHORIZE_URL,
        token_url=OURA_TOKEN_URL,
        client_id=client_id,
        client_secret=os.getenv("OURA_CLIENT_SECRET", ""),
        redirect_uri=os.getenv("OURA_REDIRECT_URI", "http://localhost:8000/oauth/oura/callback"),
        scopes=list(OURA_SCOPES),
        use_pkce=True,
    )
