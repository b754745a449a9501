"""
Standardized API response system for the Discord Auth Proxy.

This module provides consistent JSON response formatting for the
administrative and health endpoints.
"""

from typing import Dict, Any, Optional
from datetime import datetime, timezone
from flask import jsonify
import logging


class APIResponse:
    """
    Standardized API response builder for consistent responses across all endpoints.
    """

    # Current API version
    API_VERSION = "1.0"

    @staticmethod
    def success(data: Any = None, message: Optional[str] = None,
                metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a standardized success response.

        Args:
            data: Response data payload
            message: Optional success message
            metadata: Optional response metadata

        Returns:
            Standardized success response dictionary
        """
        response = {
            "success": True,
            "version": APIResponse.API_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "data": data
        }

        if message:
            response["message"] = message

        if metadata:
            response["metadata"] = metadata

        return response

    @staticmethod
    def error(code: str, message: str, details: Optional[Dict[str, Any]] = None,
              status_code: int = 400) -> Dict[str, Any]:
        """
        Create a standardized error response.

        Args:
            code: Error code identifier
            message: Human-readable error message
            details: Optional error details
            status_code: HTTP status code

        Returns:
            Standardized error response dictionary
        """
        response = {
            "success": False,
            "version": APIResponse.API_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "error": {
                "code": code,
                "message": message,
                "status_code": status_code
            }
        }

        if details:
            response["error"]["details"] = details

        return response


class ErrorCodes:
    """
    Standardized error codes for consistent error handling across the API.
    """

    UNAUTHORIZED = "UNAUTHORIZED"
    ADMIN_API_DISABLED = "ADMIN_API_DISABLED"

    OAUTH_ERROR = "OAUTH_ERROR"
    PROVIDER_CONFIG_ERROR = "PROVIDER_CONFIG_ERROR"

    NETWORK_ERROR = "NETWORK_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"

    INVALID_REQUEST = "INVALID_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"


def create_flask_response(response_data: Dict[str, Any], status_code: int = 200):
    """
    Create a Flask JSON response with proper headers and status code.

    Args:
        response_data: Response data dictionary
        status_code: HTTP status code

    Returns:
        Flask JSON response
    """
    response = jsonify(response_data)
    response.status_code = status_code
    response.headers['X-API-Version'] = APIResponse.API_VERSION
    return response


def log_api_request(endpoint: str, method: str, status_code: int):
    logger = logging.getLogger(__name__)
    logger.info(f"API Request: {method} {endpoint} -> {status_code}")
