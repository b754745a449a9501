"""
Configuration module for the Discord Auth Proxy.

This module handles environment variable loading, Flask application settings,
and the Discord client settings file (client credentials, extra scopes and
extra API calls) with environment variable reference support.
"""

import os
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple
from dotenv import load_dotenv


# Additional Discord scopes an administrator may request. The default scopes
# (identify, email) are always requested and are not accepted here.
VALID_SCOPES = ('', 'bot', 'gdm.join', 'messages.read', 'rpc', 'rpc.api',
                'rpc.notifications.read', 'webhook.incoming')

CALLBACK_PATH = '/login/callback'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class SettingsValidationError(ConfigurationError):
    """Raised when an administrative settings update is rejected."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = errors
        super().__init__('; '.join(f"{key}: {message}" for key, message in errors.items()))


@dataclass(frozen=True)
class Settings:
    """Discord client settings, loaded once per request."""
    client_id: str
    client_secret: str
    scopes: Tuple[str, ...] = field(default_factory=tuple)
    extra_api_calls: Tuple[str, ...] = field(default_factory=tuple)


def parse_scopes(text: Optional[str]) -> Tuple[str, ...]:
    """Split a space-delimited scope string, keeping declared order."""
    return tuple(scope for scope in (text or '').split(' ') if scope)


def parse_api_calls(text: Optional[str]) -> Tuple[str, ...]:
    """Split a newline-delimited list of endpoint specifiers, dropping blank lines."""
    return tuple(line.strip() for line in (text or '').splitlines() if line.strip())


def validate_scopes(text: Optional[str]) -> List[str]:
    """
    Check a space-delimited scope string against the allow-list.

    Args:
        text: Scope string as entered by an administrator

    Returns:
        List of scope tokens that are not allowed (empty if all are valid)
    """
    return [scope for scope in (text or '').split(' ') if scope not in VALID_SCOPES]


class SettingsStore:
    """
    JSON-file backed store for the Discord client settings.

    String values of the form ``env:NAME`` are resolved from the environment
    at read time, so secrets can stay out of the settings file.
    """

    def __init__(self, path: str):
        self.path = path
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def raw(self) -> Dict[str, Any]:
        """
        Get the stored settings without resolving environment references.

        Returns:
            Raw settings dictionary (empty values if the file does not exist)

        Raises:
            ConfigurationError: If the settings file cannot be parsed
        """
        data = {'client_id': '', 'client_secret': '', 'scopes': '', 'api_calls': ''}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                stored = json.load(f)
        except FileNotFoundError:
            return data
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError
            raise ConfigurationError(f"Invalid JSON in settings file {self.path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error reading settings file {self.path}: {e}")

        if not isinstance(stored, dict):
            raise ConfigurationError(f"Settings file {self.path} must contain a JSON object")

        data.update(stored)
        return data

    def get(self) -> Settings:
        """
        Load and validate the current settings.

        Returns:
            Immutable Settings value

        Raises:
            ConfigurationError: If client ID or client secret is missing
        """
        data = self.raw()
        client_id = self._resolve(data.get('client_id'))
        client_secret = self._resolve(data.get('client_secret'))

        if not client_id or not client_secret:
            self.logger.error('Define Client ID and Client Secret on module settings.')
            raise ConfigurationError('Discord client ID and client secret must be configured')

        return Settings(
            client_id=client_id,
            client_secret=client_secret,
            scopes=parse_scopes(self._resolve(data.get('scopes'))),
            extra_api_calls=parse_api_calls(self._resolve(data.get('api_calls')))
        )

    def update(self, client_id: str, client_secret: str, scopes: str = '',
               api_calls: str = '') -> Settings:
        """
        Validate and persist new settings.

        Args:
            client_id: Discord application client ID
            client_secret: Discord application client secret
            scopes: Space-delimited additional scopes
            api_calls: Newline-delimited endpoint specifiers

        Returns:
            The newly stored Settings

        Raises:
            SettingsValidationError: If any field is invalid
            ConfigurationError: If the settings file cannot be written
        """
        client_id = (client_id or '').strip()
        client_secret = (client_secret or '').strip()
        scopes = scopes or ''
        api_calls = api_calls or ''

        errors = {}
        if not client_id:
            errors['client_id'] = 'Client ID is required.'
        if not client_secret:
            errors['client_secret'] = 'Client Secret is required.'
        invalid_scopes = validate_scopes(scopes)
        if invalid_scopes:
            errors['scopes'] = (
                'You have entered an invalid scope, or the scope entered may already have been '
                f"set by default: {', '.join(invalid_scopes)}"
            )
        if errors:
            raise SettingsValidationError(errors)

        data = {
            'client_id': client_id,
            'client_secret': client_secret,
            'scopes': scopes,
            'api_calls': api_calls
        }

        with self._lock:
            tmp_path = f"{self.path}.tmp"
            try:
                with open(tmp_path, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except OSError as e:
                raise ConfigurationError(f"Error saving settings file {self.path}: {e}")

        self.logger.info(f"Saved Discord settings to {self.path}")
        return self.get()

    def _resolve(self, value: Any) -> str:
        if value is None:
            return ''
        if not isinstance(value, str):
            raise ConfigurationError(
                f"Settings file {self.path} values must be strings, got {type(value).__name__}"
            )
        if value.startswith('env:'):
            return os.getenv(value[4:], '')
        return value


class Config:
    """Configuration class for the Discord Auth Proxy application."""

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to a .env file

        Raises:
            ConfigurationError: If required environment variables are missing
        """
        load_dotenv(env_file)

        self._load_flask_config()
        self._load_discord_config()
        self._validate_required_env_vars()

    def _validate_required_env_vars(self) -> None:
        """Validate that all required environment variables are present."""
        if not self.FLASK_CONFIG['SECRET_KEY']:
            raise ConfigurationError(
                "Missing required environment variable: FLASK_SECRET_KEY\n"
                "Please ensure it is set in your .env file or environment."
            )

    def _load_flask_config(self) -> None:
        """Load Flask application configuration settings."""
        self.FLASK_CONFIG = {
            'SECRET_KEY': os.getenv('FLASK_SECRET_KEY'),
            'DEBUG': os.getenv('FLASK_DEBUG', 'False').lower() == 'true',
            'HOST': os.getenv('FLASK_HOST', '127.0.0.1'),
            'PORT': self._get_number('FLASK_PORT', '5000', int),
            'SESSION_COOKIE_SECURE': os.getenv('SESSION_COOKIE_SECURE', 'False').lower() == 'true',
            'SESSION_COOKIE_HTTPONLY': True,
            'SESSION_COOKIE_SAMESITE': 'Lax'
        }

    def _load_discord_config(self) -> None:
        """Load Discord integration settings."""
        self.DISCORD_CONFIG = {
            'BASE_URL': os.getenv('DISCORD_AUTH_BASE_URL',
                                  f"http://{self.FLASK_CONFIG['HOST']}:{self.FLASK_CONFIG['PORT']}"),
            'CALLBACK_URL_OVERRIDE': os.getenv('DISCORD_AUTH_CALLBACK_URL_OVERRIDE'),
            'SETTINGS_PATH': os.getenv('DISCORD_AUTH_SETTINGS_PATH', 'discord_settings.json'),
            'HTTP_TIMEOUT': self._get_number('DISCORD_AUTH_HTTP_TIMEOUT', '10', float),
            'HTTP_PROXY': os.getenv('DISCORD_AUTH_HTTP_PROXY'),
            'ADMIN_TOKEN': os.getenv('DISCORD_AUTH_ADMIN_TOKEN')
        }

        if self.DISCORD_CONFIG['HTTP_TIMEOUT'] <= 0:
            raise ConfigurationError('DISCORD_AUTH_HTTP_TIMEOUT must be a positive number of seconds')

    def _get_number(self, name: str, default: str, convert):
        value = os.getenv(name, default)
        try:
            return convert(value)
        except ValueError:
            raise ConfigurationError(f"Invalid value for {name}: {value!r}")

    def get_flask_config(self) -> Dict[str, Any]:
        """
        Get Flask application configuration.

        Returns:
            Flask configuration dictionary
        """
        return self.FLASK_CONFIG.copy()

    def get_discord_config(self) -> Dict[str, Any]:
        """
        Get Discord integration configuration.

        Returns:
            Discord configuration dictionary
        """
        return self.DISCORD_CONFIG.copy()

    def get_callback_url(self) -> str:
        """
        Get the OAuth callback URL, supporting an environment-specific override.

        Returns:
            Complete callback URL to register in the Discord application
        """
        if self.DISCORD_CONFIG['CALLBACK_URL_OVERRIDE']:
            return self.DISCORD_CONFIG['CALLBACK_URL_OVERRIDE']
        return f"{self.DISCORD_CONFIG['BASE_URL'].rstrip('/')}{CALLBACK_PATH}"

    def get_proxies(self) -> Optional[Dict[str, str]]:
        """Outbound proxy mapping for the provider transport, if configured."""
        proxy_url = self.DISCORD_CONFIG['HTTP_PROXY']
        if not proxy_url:
            return None
        return {'http': proxy_url, 'https': proxy_url}

    def is_admin_api_enabled(self) -> bool:
        return bool(self.DISCORD_CONFIG['ADMIN_TOKEN'])

    def create_settings_store(self) -> SettingsStore:
        return SettingsStore(self.DISCORD_CONFIG['SETTINGS_PATH'])


_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get the global configuration instance, creating it on first use.

    Returns:
        The global Config instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
