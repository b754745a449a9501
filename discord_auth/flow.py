"""
Discord login flow controller.

This module orchestrates the two HTTP-facing steps of the OAuth 2.0
authorization-code flow (initiate and callback), owns CSRF state
verification and hands the resulting identity to an IdentityBinder.
It is independent of the web framework: callers pass the session mapping
and the callback query parameters, and render the returned FlowResult.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, MutableMapping, Optional
import json
import logging

from .audit_logger import AuditEventType, AuditLogger, get_audit_logger
from .config import ConfigurationError, Settings, SettingsStore
from .identity import IdentityBinder, IdentityBindingError
from .providers.base_provider import (
    BaseProvider, ExternalProfile, ExtraCallResult, OAuthFlowError, ProfileFetchError, TokenExchangeError
)


class FlowStatus(Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class FailureKind(Enum):
    CONFIGURATION_ERROR = "configuration_error"
    USER_CANCELLED = "user_cancelled"
    AUTHORIZATION_ERROR = "authorization_error"
    CSRF_MISMATCH = "csrf_mismatch"
    TOKEN_EXCHANGE_ERROR = "token_exchange_error"
    PROFILE_FETCH_ERROR = "profile_fetch_error"
    BINDING_ERROR = "binding_error"


CONFIGURATION_MESSAGE = 'Discord login is not configured properly. Contact site administrator.'
CANCELLED_MESSAGE = 'You could not be authenticated.'
CSRF_MESSAGE = 'Discord login failed. Invalid OAuth2 state.'
GENERIC_MESSAGE = 'Discord login failed. Please try again later.'


@dataclass
class FlowState:
    """
    Per-session ephemeral login state.

    Stored under flat session keys so it survives cookie-based sessions.
    """
    csrf_state: Optional[str] = None
    pending_destination: Optional[str] = None
    pending_access_token: Optional[str] = None

    STATE_KEY = 'oauth2state'
    DESTINATION_KEY = 'destination'
    ACCESS_TOKEN_KEY = 'access_token'

    @classmethod
    def load(cls, session: Mapping[str, Any]) -> 'FlowState':
        return cls(
            csrf_state=session.get(cls.STATE_KEY),
            pending_destination=session.get(cls.DESTINATION_KEY),
            pending_access_token=session.get(cls.ACCESS_TOKEN_KEY)
        )

    def save(self, session: MutableMapping[str, Any]) -> None:
        for key, value in ((self.STATE_KEY, self.csrf_state),
                           (self.DESTINATION_KEY, self.pending_destination),
                           (self.ACCESS_TOKEN_KEY, self.pending_access_token)):
            if value is None:
                session.pop(key, None)
            else:
                session[key] = value

    @classmethod
    def clear(cls, session: MutableMapping[str, Any]) -> None:
        for key in (cls.STATE_KEY, cls.DESTINATION_KEY, cls.ACCESS_TOKEN_KEY):
            session.pop(key, None)


@dataclass
class ExtraData:
    """Ordered results of the configured extra API calls."""
    results: List[ExtraCallResult] = field(default_factory=list)

    def append(self, result: ExtraCallResult) -> None:
        self.results.append(result)

    @property
    def values(self) -> List[Any]:
        """Call results in configured order, with ``""`` for failed calls."""
        return [result.data if result.success else '' for result in self.results]

    def to_blob(self) -> str:
        """Serialize for the identity binder, keeping each call's success flag."""
        return json.dumps([result.to_dict() for result in self.results])

    def __len__(self) -> int:
        return len(self.results)


@dataclass
class FlowResult:
    """Outcome of a flow step, rendered by the web layer."""
    status: FlowStatus
    redirect_url: Optional[str] = None
    failure: Optional[FailureKind] = None
    message: Optional[str] = None
    response: Any = None
    destination: Optional[str] = None
    extra_data: Optional[ExtraData] = None
    profile: Optional[ExternalProfile] = None

    @property
    def succeeded(self) -> bool:
        return self.status == FlowStatus.AUTHENTICATED


def is_local_destination(destination: Optional[str]) -> bool:
    """Only same-site absolute paths are accepted as post-login destinations."""
    return bool(destination) and destination.startswith('/') and not destination.startswith('//') \
        and '\\' not in destination


class AuthFlowController:
    """
    Drives the Discord login state machine.

    ``initiate`` moves a session from IDLE to AWAITING_CALLBACK; ``callback``
    moves it to AUTHENTICATED or FAILED. Every FAILED transition clears the
    session's FlowState and redirects to the login entry point.
    """

    def __init__(self, settings_store: SettingsStore, provider: BaseProvider,
                 binder: IdentityBinder, redirect_uri: str, login_url: str = '/login',
                 audit_logger: Optional[AuditLogger] = None):
        self.settings_store = settings_store
        self.provider = provider
        self.binder = binder
        self.redirect_uri = redirect_uri
        self.login_url = login_url
        self.audit_logger = audit_logger or get_audit_logger()
        self.logger = logging.getLogger(__name__)

    def initiate(self, session: MutableMapping[str, Any], destination: Optional[str] = None,
                 client_info: Optional[Dict[str, Any]] = None) -> FlowResult:
        """
        Start a login: store a fresh CSRF state and redirect to Discord.

        Args:
            session: Session mapping for the current user agent
            destination: Optional path to return to after login
            client_info: Optional ``user_ip``/``user_agent`` for auditing

        Returns:
            AWAITING_CALLBACK result redirecting to the authorization URL,
            or a FAILED result redirecting to the login page
        """
        client_info = client_info or {}

        settings = self._load_settings()
        if settings is None:
            return self._fail(session, FailureKind.CONFIGURATION_ERROR, CONFIGURATION_MESSAGE, client_info)

        flow_state = FlowState()
        if destination:
            if is_local_destination(destination):
                flow_state.pending_destination = destination
            else:
                self.logger.warning(f"Ignoring non-local login destination: {destination[:100]}")

        try:
            authorization_url, csrf_state = self.provider.build_authorization_request(settings, self.redirect_uri)
        except OAuthFlowError as e:
            self.logger.error(f"Failed to build Discord authorization request: {e}")
            return self._fail(session, FailureKind.CONFIGURATION_ERROR, CONFIGURATION_MESSAGE, client_info)

        flow_state.csrf_state = csrf_state
        flow_state.save(session)

        self.audit_logger.log_event(
            AuditEventType.OAUTH_INITIATED,
            user_ip=client_info.get('user_ip'),
            user_agent=client_info.get('user_agent'),
            details={'has_destination': flow_state.pending_destination is not None}
        )
        self.logger.info("Initiating Discord OAuth authorization flow")

        return FlowResult(status=FlowStatus.AWAITING_CALLBACK, redirect_url=authorization_url)

    def callback(self, session: MutableMapping[str, Any], params: Mapping[str, Any],
                 client_info: Optional[Dict[str, Any]] = None) -> FlowResult:
        """
        Complete a login from Discord's redirect.

        Args:
            session: Session mapping for the current user agent
            params: Callback query parameters (``code``, ``state``, ``error``)
            client_info: Optional ``user_ip``/``user_agent`` for auditing

        Returns:
            AUTHENTICATED result carrying the binder's response, or a FAILED result
        """
        client_info = client_info or {}
        self.logger.info("Handling Discord OAuth callback")

        error = params.get('error')
        if error:
            error_code, user_message = self.provider.parse_oauth_error(error, params.get('error_description'))
            if error_code == 'access_denied':
                self.audit_logger.log_event(
                    AuditEventType.OAUTH_CANCELLED,
                    user_ip=client_info.get('user_ip'),
                    user_agent=client_info.get('user_agent'),
                    success=False
                )
                return self._fail(session, FailureKind.USER_CANCELLED, CANCELLED_MESSAGE, client_info, audit=False)
            return self._fail(session, FailureKind.AUTHORIZATION_ERROR, user_message, client_info,
                              details={'error': error_code})

        settings = self._load_settings()
        if settings is None:
            return self._fail(session, FailureKind.CONFIGURATION_ERROR, CONFIGURATION_MESSAGE, client_info)

        flow_state = FlowState.load(session)
        if not self.provider.validate_state(params.get('state'), flow_state.csrf_state):
            self.logger.warning("Discord login rejected: invalid OAuth2 state")
            self.audit_logger.log_event(
                AuditEventType.CSRF_MISMATCH,
                user_ip=client_info.get('user_ip'),
                user_agent=client_info.get('user_agent'),
                success=False
            )
            return self._fail(session, FailureKind.CSRF_MISMATCH, CSRF_MESSAGE, client_info, audit=False)

        # The state is single-use from here on.
        flow_state.csrf_state = None
        flow_state.save(session)

        try:
            access_token = self.provider.exchange_code_for_token(settings, self.redirect_uri, params.get('code'))
        except TokenExchangeError as e:
            self.logger.error(f"Discord token exchange failed: {e}")
            return self._fail(session, FailureKind.TOKEN_EXCHANGE_ERROR, GENERIC_MESSAGE, client_info)

        flow_state.pending_access_token = access_token
        flow_state.save(session)

        try:
            profile = self.provider.fetch_profile(access_token)
        except ProfileFetchError as e:
            self.logger.error(f"Discord profile fetch failed: {e}")
            return self._fail(session, FailureKind.PROFILE_FETCH_ERROR, GENERIC_MESSAGE, client_info)

        extra_data = ExtraData()
        if not self.binder.account_exists(profile.external_id):
            extra_data = self.collect_extra_data(settings, access_token)

        try:
            response = self.binder.authenticate_or_create(
                profile.display_name,
                profile.email,
                profile.external_id,
                access_token,
                profile.avatar_ref,
                extra_data.to_blob()
            )
        except IdentityBindingError as e:
            self.logger.error(f"Identity binding failed for Discord user {profile.external_id}: {e}")
            return self._fail(session, FailureKind.BINDING_ERROR, GENERIC_MESSAGE, client_info,
                              external_id=profile.external_id)

        FlowState.clear(session)

        self.audit_logger.log_event(
            AuditEventType.OAUTH_COMPLETED,
            external_id=profile.external_id,
            user_ip=client_info.get('user_ip'),
            user_agent=client_info.get('user_agent'),
            details={
                'extra_calls': len(extra_data),
                'extra_calls_failed': sum(1 for result in extra_data.results if not result.success)
            }
        )
        self.logger.info(f"Discord OAuth flow completed for user {profile.external_id}")

        return FlowResult(
            status=FlowStatus.AUTHENTICATED,
            response=response,
            destination=flow_state.pending_destination,
            extra_data=extra_data,
            profile=profile
        )

    def collect_extra_data(self, settings: Settings, access_token: str) -> ExtraData:
        """
        Run the configured extra API calls in declared order.

        A failing call is recorded as a failed entry and never aborts the sequence.
        """
        extra_data = ExtraData()
        for endpoint_spec in settings.extra_api_calls:
            try:
                result = self.provider.call_extra_endpoint(access_token, endpoint_spec)
            except Exception as e:
                self.logger.warning(f"Extra API call '{endpoint_spec}' raised: {e}", exc_info=True)
                result = ExtraCallResult(endpoint=endpoint_spec, success=False)
            extra_data.append(result)
        return extra_data

    def _load_settings(self) -> Optional[Settings]:
        try:
            return self.settings_store.get()
        except ConfigurationError as e:
            self.logger.error(f"Discord login is not configured: {e}")
            return None

    def _fail(self, session: MutableMapping[str, Any], failure: FailureKind, message: str,
              client_info: Dict[str, Any], audit: bool = True, external_id: Optional[str] = None,
              details: Optional[Dict[str, Any]] = None) -> FlowResult:
        FlowState.clear(session)

        if audit:
            event_details = {'failure': failure.value}
            event_details.update(details or {})
            self.audit_logger.log_event(
                AuditEventType.OAUTH_FAILED,
                external_id=external_id,
                user_ip=client_info.get('user_ip'),
                user_agent=client_info.get('user_agent'),
                success=False,
                details=event_details
            )

        return FlowResult(
            status=FlowStatus.FAILED,
            redirect_url=self.login_url,
            failure=failure,
            message=message
        )
