"""
Discord OAuth 2.0 provider implementation.

This module implements the Discord client adapter on top of Authlib's
requests-based OAuth2Session, handling authorization URL generation,
token exchange, profile retrieval and the administrator-configured
extra API calls.
"""

from typing import Dict, Any, Optional, Tuple
from urllib.parse import urljoin, urlparse
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session
from requests.exceptions import RequestException, ConnectionError, Timeout

from ..config import Settings
from .base_provider import (
    BaseProvider, ExternalProfile, ExtraCallResult,
    ProfileFetchError, ProviderConfigurationError, TokenExchangeError
)


class DiscordProvider(BaseProvider):
    """
    Discord OAuth 2.0 provider implementation.

    Every operation opens a short-lived Authlib session with a bounded timeout
    and makes a single attempt; failures are translated into the adapter's
    error types.
    """

    name = 'discord'
    display_name = 'Discord'

    AUTHORIZE_URL = 'https://discord.com/oauth2/authorize'
    API_BASE_URL = 'https://discord.com/api/v10/'
    TOKEN_URL = 'https://discord.com/api/v10/oauth2/token'
    USER_URL = 'https://discord.com/api/v10/users/@me'

    DEFAULT_SCOPES = ('identify', 'email')
    API_HOSTS = ('discord.com', 'discordapp.com')
    EXTRA_CALL_METHODS = ('GET', 'POST')

    def __init__(self, timeout: float = 10, proxies: Optional[Dict[str, str]] = None):
        """
        Initialize the Discord provider.

        Args:
            timeout: Per-request timeout in seconds
            proxies: Optional requests-style proxy mapping for outbound calls

        Raises:
            ProviderConfigurationError: If the timeout is not positive
        """
        super().__init__()
        if timeout is None or timeout <= 0:
            raise ProviderConfigurationError(f"timeout must be positive for {self.name} provider")
        self.timeout = timeout
        self.proxies = proxies or {}

    def _create_session(self, settings: Optional[Settings] = None, redirect_uri: Optional[str] = None,
                        access_token: Optional[str] = None) -> OAuth2Session:
        kwargs = {}
        if settings is not None:
            kwargs.update(
                client_id=settings.client_id,
                client_secret=settings.client_secret,
                scope=self.get_scopes(settings),
                token_endpoint_auth_method='client_secret_post'
            )
        if redirect_uri:
            kwargs['redirect_uri'] = redirect_uri
        if access_token:
            kwargs['token'] = {'access_token': access_token, 'token_type': 'Bearer'}

        client = OAuth2Session(**kwargs)
        if self.proxies:
            client.proxies.update(self.proxies)
        return client

    def get_scopes(self, settings: Settings) -> list:
        """Default scopes followed by configured ones, without duplicates."""
        scopes = []
        for scope in self.DEFAULT_SCOPES + tuple(settings.scopes):
            if scope and scope not in scopes:
                scopes.append(scope)
        return scopes

    def build_authorization_request(self, settings: Settings, redirect_uri: str) -> Tuple[str, str]:
        state = self.generate_state()
        with self._create_session(settings, redirect_uri) as client:
            auth_url, state = client.create_authorization_url(self.AUTHORIZE_URL, state=state)

        self.logger.debug(f"Generated Discord authorization URL with scopes: {' '.join(self.get_scopes(settings))}")
        return auth_url, state

    def exchange_code_for_token(self, settings: Settings, redirect_uri: str, code: str) -> str:
        if not code:
            raise TokenExchangeError('Authorization code missing')

        self.logger.debug("Exchanging authorization code for Discord access token")
        try:
            with self._create_session(settings, redirect_uri) as client:
                token_response = client.fetch_token(
                    self.TOKEN_URL,
                    code=code,
                    grant_type='authorization_code',
                    timeout=self.timeout
                )
        except AuthlibBaseError as e:
            self.logger.error(f"Discord rejected token exchange: {e}")
            raise TokenExchangeError(f"Token exchange failed: {e}")
        except (ConnectionError, Timeout) as e:
            self.logger.error(f"Network error during Discord token exchange: {e}")
            raise TokenExchangeError(f"Network request failed: {e}")
        except (RequestException, ValueError) as e:
            self.logger.error(f"Discord token exchange failed: {e}", exc_info=True)
            raise TokenExchangeError(f"Token exchange failed: {e}")

        if not self.validate_token_response(dict(token_response or {})):
            raise TokenExchangeError('Invalid token response from Discord')

        self.logger.info("Successfully exchanged code for Discord access token")
        return token_response['access_token']

    def fetch_profile(self, access_token: str) -> ExternalProfile:
        self.logger.debug("Retrieving Discord user information")
        try:
            with self._create_session(access_token=access_token) as client:
                response = client.get(self.USER_URL, timeout=self.timeout)
                if response.status_code != 200:
                    raise ProfileFetchError(f"User info request failed: HTTP {response.status_code}")
                data = response.json()
        except ProfileFetchError as e:
            self.logger.error(f"Discord user info request failed: {e}")
            raise
        except (AuthlibBaseError, RequestException, ValueError) as e:
            self.logger.error(f"Error during Discord user info retrieval: {e}", exc_info=True)
            raise ProfileFetchError(f"User info retrieval failed: {e}")

        if not isinstance(data, dict) or not data.get('id') or not data.get('username'):
            self.logger.error("Malformed Discord user info payload")
            raise ProfileFetchError('Malformed user info payload')

        profile = ExternalProfile(
            external_id=str(data['id']),
            display_name=data['username'],
            email=data.get('email') or None,
            avatar_ref=data.get('avatar') or None
        )
        self.logger.info(f"Successfully retrieved Discord user info for user: {profile.external_id}")
        return profile

    def resolve_endpoint(self, endpoint_spec: str) -> Tuple[str, str]:
        """
        Parse an extra-call specifier of the form ``[METHOD ]path-or-url``.

        Relative paths resolve against the Discord API base URL; absolute URLs
        must point at a Discord API host.

        Returns:
            Tuple of (method, url)

        Raises:
            ValueError: If the specifier is empty, uses an unsupported method,
                or targets a non-Discord host
        """
        parts = (endpoint_spec or '').strip().split(None, 1)
        if not parts:
            raise ValueError('Empty endpoint specifier')

        method = 'GET'
        if len(parts) == 2 and parts[0].upper() in self.EXTRA_CALL_METHODS:
            method, target = parts[0].upper(), parts[1].strip()
        else:
            target = ' '.join(parts)

        if target.startswith(('http://', 'https://')):
            url = target
        else:
            url = urljoin(self.API_BASE_URL, target.lstrip('/'))

        parsed = urlparse(url)
        if parsed.scheme != 'https' or parsed.hostname not in self.API_HOSTS:
            raise ValueError(f"Endpoint is not a Discord API URL: {target}")

        return method, url

    def call_extra_endpoint(self, access_token: str, endpoint_spec: str) -> ExtraCallResult:
        try:
            method, url = self.resolve_endpoint(endpoint_spec)
        except ValueError as e:
            self.logger.warning(f"Skipping extra API call '{endpoint_spec}': {e}")
            return ExtraCallResult(endpoint=endpoint_spec, success=False)

        try:
            with self._create_session(access_token=access_token) as client:
                response = client.request(method, url, timeout=self.timeout)
                if response.status_code >= 400:
                    self.logger.warning(f"Extra API call '{endpoint_spec}' failed: HTTP {response.status_code}")
                    return ExtraCallResult(endpoint=endpoint_spec, success=False)
                if response.status_code == 204 or not response.content:
                    return ExtraCallResult(endpoint=endpoint_spec, success=True)
                data = response.json()
        except (AuthlibBaseError, RequestException, ValueError) as e:
            self.logger.warning(f"Extra API call '{endpoint_spec}' failed: {e}")
            return ExtraCallResult(endpoint=endpoint_spec, success=False)

        return ExtraCallResult(endpoint=endpoint_spec, success=True, data=data)
