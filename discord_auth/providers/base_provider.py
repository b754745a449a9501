"""
Base provider interface for the Discord OAuth 2.0 client adapter.

This module defines the abstract adapter contract used by the auth flow
controller, the normalized profile and extra-call result types, and common
utilities for CSRF state handling and OAuth error parsing.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple
import hmac
import logging
import secrets

from ..config import Settings


class ProviderConfigurationError(Exception):
    """Raised when provider configuration is invalid."""
    pass


class OAuthFlowError(Exception):
    """Raised when OAuth flow encounters an error."""
    pass


class TokenExchangeError(OAuthFlowError):
    """Raised when an authorization code cannot be exchanged for an access token."""
    pass


class ProfileFetchError(OAuthFlowError):
    """Raised when the user profile cannot be retrieved or parsed."""
    pass


@dataclass(frozen=True)
class ExternalProfile:
    """Normalized identity returned by the provider."""
    external_id: str
    display_name: str
    email: Optional[str] = None
    avatar_ref: Optional[str] = None

    @property
    def avatar_url(self) -> Optional[str]:
        if not self.avatar_ref:
            return None
        extension = 'gif' if self.avatar_ref.startswith('a_') else 'png'
        return f"https://cdn.discordapp.com/avatars/{self.external_id}/{self.avatar_ref}.{extension}"


@dataclass(frozen=True)
class ExtraCallResult:
    """Outcome of a single configured extra API call."""
    endpoint: str
    success: bool
    data: Any = ''

    def to_dict(self) -> Dict[str, Any]:
        return {'endpoint': self.endpoint, 'success': self.success, 'data': self.data}


class BaseProvider(ABC):
    """
    Abstract base class for the OAuth 2.0 client adapter.

    Implementations wrap a third-party OAuth2 client library behind the four
    operations the auth flow controller needs.
    """

    name = 'oauth2'
    display_name = 'OAuth2'

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.name}")

    def generate_state(self) -> str:
        """
        Generate a secure state parameter for CSRF protection.

        Returns:
            Cryptographically secure state parameter
        """
        return secrets.token_urlsafe(32)

    def validate_state(self, received_state: Optional[str], stored_state: Optional[str]) -> bool:
        """
        Validate OAuth state parameter to prevent CSRF attacks.

        A missing stored state never matches, not even a missing received state.

        Args:
            received_state: State parameter received from OAuth callback
            stored_state: State parameter stored in session

        Returns:
            True if state is valid, False otherwise
        """
        if not received_state or not stored_state:
            self.logger.warning(f"Missing state parameter - received: {bool(received_state)}, stored: {bool(stored_state)}")
            return False

        if not hmac.compare_digest(received_state.encode('utf-8'), stored_state.encode('utf-8')):
            self.logger.warning(f"State mismatch - received: {received_state[:10]}..., expected: {stored_state[:10]}...")
            return False

        return True

    def parse_oauth_error(self, error: str, error_description: Optional[str] = None) -> Tuple[str, str]:
        """
        Parse and standardize OAuth error responses.

        Provider-supplied descriptions are logged but never returned to the user.

        Args:
            error: OAuth error code
            error_description: Optional error description

        Returns:
            Tuple of (error_code, user_friendly_message)
        """
        error_messages = {
            'access_denied': 'You could not be authenticated.',
            'invalid_request': 'Invalid authorization request. Please try again.',
            'unauthorized_client': 'Application not authorized. Contact site administrator.',
            'unsupported_response_type': 'Configuration error. Contact site administrator.',
            'invalid_scope': 'Invalid permissions requested. Contact site administrator.',
            'server_error': f'{self.display_name} server error. Please try again later.',
            'temporarily_unavailable': f'{self.display_name} is temporarily unavailable. Please try again later.'
        }

        user_message = error_messages.get(error, f'{self.display_name} login failed. Please try again later.')

        self.logger.warning(f"OAuth error for {self.name}: {error} - {error_description}")

        return error, user_message

    def validate_token_response(self, token_data: Dict[str, Any]) -> bool:
        """
        Validate OAuth token response.

        Args:
            token_data: Token response from OAuth provider

        Returns:
            True if token response is valid, False otherwise
        """
        if not token_data:
            self.logger.error(f"Empty token response from {self.name}")
            return False

        if not token_data.get('access_token'):
            self.logger.error(f"Missing access_token in response from {self.name}")
            return False

        return True

    @abstractmethod
    def build_authorization_request(self, settings: Settings, redirect_uri: str) -> Tuple[str, str]:
        """
        Generate the authorization URL and a fresh CSRF state.

        Args:
            settings: Client settings
            redirect_uri: Callback URL for OAuth flow

        Returns:
            Tuple of (authorization_url, csrf_state)

        Raises:
            OAuthFlowError: If URL generation fails
        """
        pass

    @abstractmethod
    def exchange_code_for_token(self, settings: Settings, redirect_uri: str, code: str) -> str:
        """
        Exchange an authorization code for an access token.

        Args:
            settings: Client settings
            redirect_uri: Callback URL used in the authorization request
            code: Authorization code from OAuth callback

        Returns:
            Access token

        Raises:
            TokenExchangeError: On transport failure or provider rejection
        """
        pass

    @abstractmethod
    def fetch_profile(self, access_token: str) -> ExternalProfile:
        """
        Retrieve the authenticated user's profile.

        Raises:
            ProfileFetchError: If the provider returns an error or a malformed payload
        """
        pass

    @abstractmethod
    def call_extra_endpoint(self, access_token: str, endpoint_spec: str) -> ExtraCallResult:
        """
        Issue an additional authenticated call.

        Failures are reported through ``ExtraCallResult.success`` and never raised.
        """
        pass

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}', display_name='{self.display_name}')"
