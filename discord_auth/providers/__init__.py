"""
OAuth provider adapter for the Discord Auth Proxy.

This package wraps the third-party OAuth2 client library behind a narrow
adapter interface so the flow controller never touches it directly.
"""

from .base_provider import (
    BaseProvider, ExternalProfile, ExtraCallResult,
    ProviderConfigurationError, OAuthFlowError, TokenExchangeError, ProfileFetchError
)
from .discord_provider import DiscordProvider

__all__ = [
    'BaseProvider',
    'DiscordProvider',
    'ExternalProfile',
    'ExtraCallResult',
    'ProviderConfigurationError',
    'OAuthFlowError',
    'TokenExchangeError',
    'ProfileFetchError'
]
