"""
Integration tests for the Flask application.

This module drives the login routes, the settings API and the health
endpoint through the Flask test client, with the Discord adapter replaced
by a mock.
"""

import unittest
import json
import os
import shutil
import sys
import tempfile
from unittest.mock import patch
from flask import redirect
from urllib.parse import urlparse

# Add the project root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from discord_auth.app import create_app
from discord_auth.audit_logger import AuditEventType, AuditLogger
from discord_auth.config import Config, ConfigurationError, SettingsStore
from discord_auth.flow import CANCELLED_MESSAGE, CONFIGURATION_MESSAGE, CSRF_MESSAGE, GENERIC_MESSAGE
from discord_auth.identity import IdentityBinder, LocalIdentityBinder
from mock_provider import MockProvider


ADMIN_TOKEN = 'test_admin_token'


class RedirectingBinder(IdentityBinder):
    """Host binder that answers with its own redirect."""

    def account_exists(self, external_id):
        return True

    def authenticate_or_create(self, display_name, email, external_id, access_token,
                               avatar_ref, extra_data_blob):
        return redirect(f"/host-profile/{external_id}")


class AppTestCase(unittest.TestCase):
    """Shared Flask app fixture."""

    admin_token = ADMIN_TOKEN

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.temp_dir = tempfile.mkdtemp()
        self.settings_path = os.path.join(self.temp_dir, 'discord_settings.json')

        env = {
            'FLASK_SECRET_KEY': 'test_secret_key',
            'DISCORD_AUTH_BASE_URL': 'https://example.com',
            'DISCORD_AUTH_SETTINGS_PATH': self.settings_path,
            'DISCORD_AUTH_ADMIN_TOKEN': self.admin_token or ''
        }
        with patch.dict(os.environ, env):
            os.environ.pop('DISCORD_AUTH_CALLBACK_URL_OVERRIDE', None)
            self.config = Config()

        self.settings_store = SettingsStore(self.settings_path)
        self.provider = MockProvider()
        self.binder = LocalIdentityBinder()
        self.audit_logger = AuditLogger()

        self.app = create_app(
            config=self.config,
            settings_store=self.settings_store,
            provider=self.provider,
            binder=self.binder,
            audit_logger=self.audit_logger
        )
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def configure(self, api_calls=''):
        self.settings_store.update('123456789', 'client_secret_value', '', api_calls)

    def flashed_messages(self):
        with self.client.session_transaction() as sess:
            return [message for _, message in sess.get('_flashes', [])]

    def start_login(self, destination=None):
        query = f"?destination={destination}" if destination else ''
        response = self.client.get(f"/login/initiate{query}")
        self.assertEqual(response.status_code, 302)
        with self.client.session_transaction() as sess:
            return sess['oauth2state']


class TestLoginRoutes(AppTestCase):
    """Test cases for the login entry point and OAuth routes."""

    def test_login_page(self):
        response = self.client.get('/login')

        self.assertEqual(response.status_code, 200)
        self.assertIn(b'/login/initiate', response.data)

    def test_initiate_redirects_to_discord(self):
        """Test that initiate redirects to Discord and stores the state."""
        self.configure()

        response = self.client.get('/login/initiate')

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.location.startswith('https://discord.com/oauth2/authorize'))
        with self.client.session_transaction() as sess:
            self.assertIsNotNone(sess.get('oauth2state'))
            self.assertIn(sess['oauth2state'], response.location)

    def test_initiate_not_configured(self):
        """Test that an unconfigured site redirects back to login with a message."""
        response = self.client.get('/login/initiate')

        self.assertEqual(response.status_code, 302)
        self.assertEqual(urlparse(response.location).path, '/login')
        self.assertIn(CONFIGURATION_MESSAGE, self.flashed_messages())
        self.assertEqual(self.provider.method_calls['build_authorization_request'], 0)

    def test_callback_success_logs_user_in(self):
        """Test a complete first login."""
        self.configure(api_calls='users/@me/guilds')
        self.provider.extra_responses = {'users/@me/guilds': [{'id': '1'}]}
        state = self.start_login()

        response = self.client.get(f"/login/callback?code=auth_code&state={state}")

        self.assertEqual(response.status_code, 302)
        self.assertEqual(urlparse(response.location).path, '/')
        with self.client.session_transaction() as sess:
            account = self.binder.registry.get('80351110224678912')
            self.assertEqual(sess['user_id'], account.user_id)
            self.assertEqual(sess['display_name'], 'nelly')
            self.assertTrue(sess['avatar_url'].startswith('https://cdn.discordapp.com/avatars/'))
            self.assertNotIn('oauth2state', sess)
            self.assertNotIn('access_token', sess)
        self.assertIn('Logged in as nelly.', self.flashed_messages())
        self.assertEqual(json.loads(account.extra_data)[0]['data'], [{'id': '1'}])

        created = self.audit_logger.get_recent_events(event_type=AuditEventType.ACCOUNT_CREATED)
        self.assertEqual(len(created), 1)

    def test_callback_redirects_to_destination(self):
        self.configure()
        state = self.start_login('/forum')

        response = self.client.get(f"/login/callback?code=auth_code&state={state}")

        self.assertEqual(urlparse(response.location).path, '/forum')

    def test_callback_returns_binder_response(self):
        """Test that a host binder's own response is returned unchanged."""
        self.app.flow_controller.binder = RedirectingBinder()
        self.configure()
        state = self.start_login('/forum')

        response = self.client.get(f"/login/callback?code=auth_code&state={state}")

        self.assertEqual(response.status_code, 302)
        self.assertEqual(urlparse(response.location).path, '/host-profile/80351110224678912')
        with self.client.session_transaction() as sess:
            self.assertNotIn('oauth2state', sess)
            self.assertNotIn('access_token', sess)

    def test_index_shows_avatar(self):
        self.configure()
        state = self.start_login()
        self.client.get(f"/login/callback?code=auth_code&state={state}")

        response = self.client.get('/')

        self.assertIn(b'https://cdn.discordapp.com/avatars/80351110224678912/'
                      b'8342729096ea3675442027381ff50dfe.png', response.data)

    def test_initiate_unreadable_settings_file(self):
        """Test that a settings file that is not UTF-8 is reported as misconfiguration."""
        with open(self.settings_path, 'wb') as f:
            f.write(b'{"client_id": "\xff\xfe", "client_secret": "secret"}')

        response = self.client.get('/login/initiate')

        self.assertEqual(response.status_code, 302)
        self.assertEqual(urlparse(response.location).path, '/login')
        self.assertIn(CONFIGURATION_MESSAGE, self.flashed_messages())

    def test_create_app_invalid_provider_timeout(self):
        self.config.DISCORD_CONFIG['HTTP_TIMEOUT'] = 0

        with self.assertRaises(ConfigurationError):
            create_app(config=self.config, settings_store=self.settings_store)

    def test_callback_access_denied(self):
        """Test that cancelling at Discord returns to login without a token exchange."""
        self.configure()
        self.start_login()

        response = self.client.get('/login/callback?error=access_denied&state=whatever')

        self.assertEqual(response.status_code, 302)
        self.assertEqual(urlparse(response.location).path, '/login')
        self.assertIn(CANCELLED_MESSAGE, self.flashed_messages())
        self.assertEqual(self.provider.method_calls['exchange_code_for_token'], 0)
        with self.client.session_transaction() as sess:
            self.assertNotIn('oauth2state', sess)

    def test_callback_state_mismatch(self):
        """Test that a forged callback is rejected."""
        self.configure()
        self.start_login()

        response = self.client.get('/login/callback?code=auth_code&state=forged')

        self.assertEqual(urlparse(response.location).path, '/login')
        self.assertIn(CSRF_MESSAGE, self.flashed_messages())
        self.assertEqual(self.provider.method_calls['exchange_code_for_token'], 0)
        with self.client.session_transaction() as sess:
            self.assertNotIn('oauth2state', sess)
            self.assertNotIn('user_id', sess)

    def test_callback_without_initiate(self):
        self.configure()

        response = self.client.get('/login/callback?code=auth_code&state=anything')

        self.assertEqual(urlparse(response.location).path, '/login')
        self.assertIn(CSRF_MESSAGE, self.flashed_messages())

    def test_callback_unexpected_error(self):
        """Test that an unexpected adapter exception is reported generically."""
        self.configure()
        self.provider.profile_error = RuntimeError('unexpected')
        state = self.start_login()

        response = self.client.get(f"/login/callback?code=auth_code&state={state}")

        self.assertEqual(urlparse(response.location).path, '/login')
        self.assertIn(GENERIC_MESSAGE, self.flashed_messages())
        with self.client.session_transaction() as sess:
            self.assertNotIn('access_token', sess)

    def test_flash_message_rendered_on_login_page(self):
        self.configure()
        self.start_login()

        response = self.client.get('/login/callback?error=access_denied', follow_redirects=True)

        self.assertEqual(response.status_code, 200)
        self.assertIn(CANCELLED_MESSAGE.encode('utf-8'), response.data)

    def test_logout(self):
        self.configure()
        state = self.start_login()
        self.client.get(f"/login/callback?code=auth_code&state={state}")

        response = self.client.get('/logout')

        self.assertEqual(urlparse(response.location).path, '/login')
        with self.client.session_transaction() as sess:
            self.assertNotIn('user_id', sess)

    def test_index(self):
        response = self.client.get('/')

        self.assertEqual(response.status_code, 200)

    def test_not_found(self):
        response = self.client.get('/nonexistent')

        self.assertEqual(response.status_code, 404)

    def test_api_not_found_is_json(self):
        response = self.client.get('/api/nonexistent')

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()['error']['code'], 'NOT_FOUND')


class TestSettingsAPI(AppTestCase):
    """Test cases for the administrative settings API."""

    def auth_headers(self, token=ADMIN_TOKEN):
        return {'Authorization': f"Bearer {token}"}

    def test_get_settings_requires_token(self):
        response = self.client.get('/api/settings')

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()['error']['code'], 'UNAUTHORIZED')

    def test_get_settings_wrong_token(self):
        response = self.client.get('/api/settings', headers=self.auth_headers('wrong'))

        self.assertEqual(response.status_code, 401)

    def test_get_settings(self):
        """Test that settings are returned without the client secret."""
        self.configure(api_calls='users/@me/guilds')

        response = self.client.get('/api/settings', headers=self.auth_headers())

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertEqual(data['client_id'], '123456789')
        self.assertTrue(data['client_secret_set'])
        self.assertEqual(data['api_calls'], 'users/@me/guilds')
        self.assertEqual(data['authorized_redirect_url'], 'https://example.com/login/callback')
        self.assertNotIn('client_secret_value', response.get_data(as_text=True))

    def test_update_settings(self):
        response = self.client.put('/api/settings', headers=self.auth_headers(), json={
            'client_id': '123456789',
            'client_secret': 'client_secret_value',
            'scopes': 'bot',
            'api_calls': 'users/@me/guilds\nusers/@me/connections'
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['data']['scopes'], 'bot')
        self.assertEqual(self.settings_store.get().extra_api_calls,
                         ('users/@me/guilds', 'users/@me/connections'))

        events = self.audit_logger.get_recent_events(event_type=AuditEventType.SETTINGS_UPDATED)
        self.assertEqual(len(events), 1)

    def test_update_settings_invalid_scope(self):
        """Test that default or unknown scopes are rejected."""
        response = self.client.put('/api/settings', headers=self.auth_headers(), json={
            'client_id': '123456789',
            'client_secret': 'client_secret_value',
            'scopes': 'identify'
        })

        self.assertEqual(response.status_code, 422)
        error = response.get_json()['error']
        self.assertEqual(error['code'], 'VALIDATION_ERROR')
        self.assertIn('scopes', error['details'])
        self.assertFalse(os.path.exists(self.settings_path))

    def test_update_settings_invalid_body(self):
        response = self.client.put('/api/settings', headers=self.auth_headers(),
                                   data='not json', content_type='application/json')

        self.assertEqual(response.status_code, 400)

    def test_health_check(self):
        response = self.client.get('/api/health')

        self.assertEqual(response.status_code, 200)
        data = response.get_json()['data']
        self.assertEqual(data['status'], 'healthy')
        self.assertFalse(data['configured'])

        self.configure()
        response = self.client.get('/api/health')
        self.assertTrue(response.get_json()['data']['configured'])


class TestSettingsAPIDisabled(AppTestCase):
    """The settings API is disabled when no admin token is configured."""

    admin_token = None

    def test_settings_api_disabled(self):
        response = self.client.get('/api/settings', headers={'Authorization': 'Bearer '})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()['error']['code'], 'ADMIN_API_DISABLED')


if __name__ == '__main__':
    unittest.main()
