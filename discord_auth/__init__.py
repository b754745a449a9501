"""
Discord Auth Proxy.

Log users into a Flask site with Discord's OAuth 2.0 authorization-code flow
and bind the Discord identity to a local account.
"""

from .app import create_app
from .config import Config, ConfigurationError, Settings, SettingsStore
from .flow import AuthFlowController, FailureKind, FlowResult, FlowState, FlowStatus

__all__ = [
    'create_app',
    'Config',
    'ConfigurationError',
    'Settings',
    'SettingsStore',
    'AuthFlowController',
    'FailureKind',
    'FlowResult',
    'FlowState',
    'FlowStatus'
]
