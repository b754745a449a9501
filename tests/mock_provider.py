"""
Mock client adapter shared by the flow and application tests.

Records every call so tests can assert which provider operations a login
attempt reached, and lets each test choose the failure it wants.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from discord_auth.providers.base_provider import (
    BaseProvider, ExternalProfile, ExtraCallResult, TokenExchangeError
)


class MockProvider(BaseProvider):
    """In-memory client adapter with configurable responses."""

    name = 'mock'
    display_name = 'Discord'

    AUTHORIZE_URL = 'https://discord.com/oauth2/authorize'

    def __init__(self):
        super().__init__()
        self.method_calls = {
            'build_authorization_request': 0,
            'exchange_code_for_token': 0,
            'fetch_profile': 0,
            'call_extra_endpoint': 0
        }
        self.extra_calls = []
        self.states = []

        self.access_token = 'mock_access_token'
        self.profile = ExternalProfile(
            external_id='80351110224678912',
            display_name='nelly',
            email='nelly@example.com',
            avatar_ref='8342729096ea3675442027381ff50dfe'
        )
        # endpoint -> data, or an exception instance to raise
        self.extra_responses = {}

        self.authorization_error = None
        self.exchange_error = None
        self.profile_error = None

    def build_authorization_request(self, settings, redirect_uri):
        self.method_calls['build_authorization_request'] += 1
        if self.authorization_error:
            raise self.authorization_error

        state = self.generate_state()
        self.states.append(state)
        return f"{self.AUTHORIZE_URL}?client_id={settings.client_id}&state={state}", state

    def exchange_code_for_token(self, settings, redirect_uri, code):
        self.method_calls['exchange_code_for_token'] += 1
        if self.exchange_error:
            raise self.exchange_error
        if not code:
            raise TokenExchangeError('Authorization code missing')
        return self.access_token

    def fetch_profile(self, access_token):
        self.method_calls['fetch_profile'] += 1
        if self.profile_error:
            raise self.profile_error
        return self.profile

    def call_extra_endpoint(self, access_token, endpoint_spec):
        self.method_calls['call_extra_endpoint'] += 1
        self.extra_calls.append(endpoint_spec)

        response = self.extra_responses.get(endpoint_spec)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return ExtraCallResult(endpoint=endpoint_spec, success=False)
        return ExtraCallResult(endpoint=endpoint_spec, success=True, data=response)

