#!/usr/bin/env python3
"""
Startup script for the Discord Auth Proxy.

This script initializes and runs the Flask application with proper error handling
and configuration validation.
"""

import sys
from discord_auth.app import create_app
from discord_auth.config import ConfigurationError


def main():
    """Main entry point for the application."""
    try:
        app = create_app()

        host = app.config.get('HOST', '127.0.0.1')
        port = app.config.get('PORT', 5000)
        debug = app.config.get('DEBUG', False)

        print(f"Starting Discord Auth Proxy at http://{host}:{port}")
        print(f"Authorized redirect URI: {app.discord_config.get_callback_url()}")
        print(f"Debug mode: {'ON' if debug else 'OFF'}")

        app.run(host=host, port=port, debug=debug, use_reloader=debug)

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        print("Copy .env.example to .env, set FLASK_SECRET_KEY and run the application again.", file=sys.stderr)
        sys.exit(1)

    except KeyboardInterrupt:
        print("\nShutting down Discord Auth Proxy...")
        sys.exit(0)


if __name__ == '__main__':
    main()
