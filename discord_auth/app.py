"""
Flask application for the Discord Auth Proxy.

This module wires the settings store, the Discord client adapter, the
identity binder and the login flow controller into a Flask application with
session management, error handling, the login routes and the administrative
settings API.
"""

from flask import Flask, Response, current_app, render_template, request, redirect, url_for, session, flash
from functools import wraps
import hmac
import logging
import sys
from typing import Tuple, Dict, Any, Optional
from authlib.common.errors import AuthlibBaseError
from requests.exceptions import RequestException

from .config import Config, ConfigurationError, SettingsStore, SettingsValidationError, get_config
from .api_responses import APIResponse, ErrorCodes, create_flask_response, log_api_request
from .audit_logger import AuditEventType, AuditLogger, get_audit_logger
from .flow import AuthFlowController, FlowState, GENERIC_MESSAGE
from .identity import BindingResult, IdentityBinder, LocalIdentityBinder
from .providers import BaseProvider, DiscordProvider, ProviderConfigurationError


def create_app(config: Optional[Config] = None, settings_store: Optional[SettingsStore] = None,
               provider: Optional[BaseProvider] = None, binder: Optional[IdentityBinder] = None,
               audit_logger: Optional[AuditLogger] = None) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config: Application configuration (defaults to the global instance)
        settings_store: Discord settings store (defaults to the configured file)
        provider: Client adapter (defaults to DiscordProvider)
        binder: Identity binder (defaults to an in-memory LocalIdentityBinder)
        audit_logger: Audit logger (defaults to the global instance)

    Returns:
        Flask application instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app = Flask(__name__)

    config = config or get_config()
    flask_config = config.get_flask_config()
    discord_config = config.get_discord_config()

    app.config.update(flask_config)

    # Set up logging for OAuth debugging
    log_level = logging.DEBUG if flask_config.get('DEBUG', False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Set specific log levels for OAuth-related libraries
    logging.getLogger('authlib').setLevel(logging.DEBUG if flask_config.get('DEBUG', False) else logging.WARNING)
    logging.getLogger('requests').setLevel(logging.DEBUG if flask_config.get('DEBUG', False) else logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    settings_store = settings_store or config.create_settings_store()
    if provider is None:
        try:
            provider = DiscordProvider(
                timeout=discord_config['HTTP_TIMEOUT'],
                proxies=config.get_proxies()
            )
        except ProviderConfigurationError as e:
            raise ConfigurationError(str(e))
    binder = binder or LocalIdentityBinder()
    audit_logger = audit_logger or get_audit_logger()

    app.discord_config = config
    app.settings_store = settings_store
    app.identity_binder = binder
    app.audit_logger = audit_logger
    app.flow_controller = AuthFlowController(
        settings_store=settings_store,
        provider=provider,
        binder=binder,
        redirect_uri=config.get_callback_url(),
        login_url='/login',
        audit_logger=audit_logger
    )

    register_error_handlers(app)
    register_login_routes(app)
    register_admin_routes(app)

    app.logger.info("Flask application initialized successfully")
    return app


def _client_info() -> Dict[str, Any]:
    return {
        'user_ip': request.remote_addr,
        'user_agent': request.headers.get('User-Agent')
    }


def register_error_handlers(app: Flask) -> None:
    """
    Register error handling for the Flask application.

    Args:
        app: Flask application instance
    """

    def render_error(code: str, status_code: int, message: str):
        if request.path.startswith('/api/'):
            response_data = APIResponse.error(code, message, status_code=status_code)
            return create_flask_response(response_data, status_code)
        return render_template('error.html', error_code=status_code, error_message=message), status_code

    @app.errorhandler(404)
    def not_found_error(error) -> Tuple[str, int]:
        """Handle 404 Not Found errors."""
        app.logger.warning(f"404 error: {request.url}")
        return render_error(ErrorCodes.NOT_FOUND, 404, "The requested page was not found")

    @app.errorhandler(500)
    def internal_error(error) -> Tuple[str, int]:
        """Handle 500 Internal Server errors."""
        app.logger.error(f"500 error: {error} - URL: {request.url}", exc_info=True)
        return render_error(ErrorCodes.INTERNAL_ERROR, 500,
                            "An internal server error occurred. Please try again later.")

    @app.errorhandler(AuthlibBaseError)
    def handle_authlib_error(error) -> Tuple[str, int]:
        """Handle Authlib OAuth errors."""
        app.logger.error(f"Authlib OAuth error: {error} - URL: {request.url}", exc_info=True)
        return render_error(ErrorCodes.OAUTH_ERROR, 500, "OAuth authentication error. Please try again.")

    @app.errorhandler(RequestException)
    def handle_request_error(error) -> Tuple[str, int]:
        """Handle network errors that escaped the provider adapter."""
        app.logger.error(f"Request error: {error} - URL: {request.url}", exc_info=True)
        return render_error(ErrorCodes.NETWORK_ERROR, 502, "Network request failed. Please try again.")


def register_login_routes(app: Flask) -> None:
    """
    Register the login entry point and the two OAuth flow routes.

    Args:
        app: Flask application instance
    """

    @app.route('/')
    def index() -> str:
        return render_template('index.html',
                               user_id=session.get('user_id'),
                               display_name=session.get('display_name'),
                               avatar_url=session.get('avatar_url'))

    @app.route('/login')
    def login() -> str:
        return render_template('login.html')

    @app.route('/login/initiate')
    def login_initiate():
        """Redirect the user to Discord for authentication."""
        result = app.flow_controller.initiate(session, request.args.get('destination'), _client_info())
        if result.message:
            flash(result.message, 'error')
        return redirect(result.redirect_url or url_for('login'))

    @app.route('/login/callback')
    def login_callback():
        """Discord returns the user here after authentication."""
        try:
            result = app.flow_controller.callback(session, request.args, _client_info())
        except Exception as e:
            FlowState.clear(session)
            app.logger.error(f"Unexpected error during Discord callback: {e}", exc_info=True)
            flash(GENERIC_MESSAGE, 'error')
            return redirect(url_for('login'))

        if not result.succeeded:
            flash(result.message, 'error')
            return redirect(result.redirect_url or url_for('login'))

        binding = result.response
        if isinstance(binding, Response):
            # Host binders may render their own page or redirect.
            return binding

        if isinstance(binding, BindingResult):
            session['user_id'] = binding.account.user_id
            session['display_name'] = binding.account.display_name
            session['avatar_url'] = result.profile.avatar_url if result.profile else None
            if binding.created:
                app.audit_logger.log_event(
                    AuditEventType.ACCOUNT_CREATED,
                    external_id=binding.account.external_id,
                    user_ip=request.remote_addr,
                    user_agent=request.headers.get('User-Agent')
                )
            flash(f"Logged in as {binding.account.display_name}.", 'status')

        return redirect(result.destination or url_for('index'))

    @app.route('/logout')
    def logout():
        session.clear()
        flash('You have been logged out.', 'status')
        return redirect(url_for('login'))


def require_admin_token(view):
    """Require ``Authorization: Bearer <DISCORD_AUTH_ADMIN_TOKEN>`` on admin API routes."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        admin_token = current_app.discord_config.get_discord_config().get('ADMIN_TOKEN')
        if not admin_token:
            response_data = APIResponse.error(ErrorCodes.ADMIN_API_DISABLED,
                                              'Administrative API is disabled', status_code=403)
            return create_flask_response(response_data, 403)

        header = request.headers.get('Authorization', '')
        supplied = header[7:] if header.startswith('Bearer ') else ''
        if not supplied or not hmac.compare_digest(supplied.encode('utf-8'), admin_token.encode('utf-8')):
            current_app.logger.warning(f"Rejected admin API request from {request.remote_addr}")
            response_data = APIResponse.error(ErrorCodes.UNAUTHORIZED, 'Invalid admin token', status_code=401)
            return create_flask_response(response_data, 401)

        return view(*args, **kwargs)

    return wrapper


def register_admin_routes(app: Flask) -> None:
    """
    Register the settings and health API routes.

    Args:
        app: Flask application instance
    """

    def settings_payload(raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'client_id': raw.get('client_id', ''),
            'client_secret_set': bool(raw.get('client_secret')),
            'scopes': raw.get('scopes', ''),
            'api_calls': raw.get('api_calls', ''),
            'authorized_redirect_url': app.discord_config.get_callback_url()
        }

    @app.route('/api/settings', methods=['GET'])
    @require_admin_token
    def get_settings():
        try:
            raw = app.settings_store.raw()
        except ConfigurationError as e:
            app.logger.error(f"Failed to read Discord settings: {e}")
            response_data = APIResponse.error(ErrorCodes.PROVIDER_CONFIG_ERROR,
                                              'Settings could not be read', status_code=500)
            return create_flask_response(response_data, 500)

        log_api_request('/api/settings', 'GET', 200)
        return create_flask_response(APIResponse.success(data=settings_payload(raw)), 200)

    @app.route('/api/settings', methods=['PUT'])
    @require_admin_token
    def update_settings():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            response_data = APIResponse.error(ErrorCodes.INVALID_REQUEST,
                                              'Request body must be a JSON object', status_code=400)
            return create_flask_response(response_data, 400)

        try:
            app.settings_store.update(
                client_id=payload.get('client_id', ''),
                client_secret=payload.get('client_secret', ''),
                scopes=payload.get('scopes', ''),
                api_calls=payload.get('api_calls', '')
            )
        except SettingsValidationError as e:
            response_data = APIResponse.error(ErrorCodes.VALIDATION_ERROR, 'Invalid settings',
                                              details=e.errors, status_code=422)
            return create_flask_response(response_data, 422)
        except ConfigurationError as e:
            app.logger.error(f"Failed to save Discord settings: {e}")
            response_data = APIResponse.error(ErrorCodes.PROVIDER_CONFIG_ERROR,
                                              'Settings could not be saved', status_code=500)
            return create_flask_response(response_data, 500)

        app.audit_logger.log_event(
            AuditEventType.SETTINGS_UPDATED,
            user_ip=request.remote_addr,
            user_agent=request.headers.get('User-Agent')
        )
        log_api_request('/api/settings', 'PUT', 200)
        return create_flask_response(
            APIResponse.success(data=settings_payload(app.settings_store.raw()),
                                message='Settings saved'),
            200
        )

    @app.route('/api/health')
    def health_check():
        try:
            app.settings_store.get()
            configured = True
        except ConfigurationError:
            configured = False

        health_status = {
            'status': 'healthy',
            'provider': app.flow_controller.provider.name,
            'configured': configured,
            'audit': app.audit_logger.get_audit_statistics()
        }
        return create_flask_response(APIResponse.success(data=health_status), 200)
