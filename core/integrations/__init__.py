"""
Provider integration primitives.

Shared by every plugin:
- ProviderClient: outbound HTTP with timeouts, network retries and sanitized logging
- OAuthManager / TokenRefresher: authorize, callback and lazy refresh
- Drafts and numeric encoding for normalized records
- The error taxonomy and Result values
"""
from core.integrations.api_logging import ApiLogEntry, ApiLogger
from core.integrations.errors import (
    ConfigError,
    ErrorKind,
    OAuthExchangeError,
    OAuthStateError,
    ProviderDataError,
    Result,
    SyncError,
)
from core.integrations.http_client import (
    ApiRequest,
    ApiResponse,
    AuthScheme,
    Credential,
    ProviderClient,
)
from core.integrations.normalizer import (
    BlockDraft,
    EventDraft,
    NormalizedRecord,
    ObjectDraft,
    encode_numeric_value,
)
from core.integrations.oauth_manager import (
    CsrfStore,
    OAuthConfig,
    OAuthManager,
    OAuthState,
    StateSigner,
    TokenRefresher,
)

__all__ = [
    # Logging
    "ApiLogEntry",
    "ApiLogger",
    # Errors
    "ConfigError",
    "ErrorKind",
    "OAuthExchangeError",
    "OAuthStateError",
    "ProviderDataError",
    "Result",
    "SyncError",
    # HTTP
    "ApiRequest",
    "ApiResponse",
    "AuthScheme",
    "Credential",
    "ProviderClient",
    # Normalization
    "BlockDraft",
    "EventDraft",
    "NormalizedRecord",
    "ObjectDraft",
    "encode_numeric_value",
    # OAuth
    "CsrfStore",
    "OAuthConfig",
    "OAuthManager",
    "OAuthState",
    "StateSigner",
    "TokenRefresher",
]
