"""
Uniform API response format
"""
from flask import jsonify
from typing import Any, Optional, Dict


class ApiResponse:
    """API response builder"""

    @staticmethod
    def success(data: Any = None, message: str = 'OK', code: int = 200) -> tuple:
        """
        Success response

        Args:
            data: Response payload
            message: Success message
            code: HTTP status code

        Returns:
            Tuple of Flask response and status code
        """
        response = {
            'success': True,
            'message': message,
        }
        if data is not None:
            response['data'] = data
        return jsonify(response), code

    @staticmethod
    def error(
        message: str,
        code: int = 400,
        error_code: str = 'BAD_REQUEST',
        details: Optional[Dict] = None
    ) -> tuple:
        """
        Error response

        Args:
            message: Error message
            code: HTTP status code
            error_code: Machine readable error code
            details: Extra error details

        Returns:
            Tuple of Flask response and status code
        """
        response = {
            'success': False,
            'error': {
                'code': error_code,
                'message': message,
            }
        }
        if details:
            response['error']['details'] = details
        return jsonify(response), code

    @staticmethod
    def not_found(message: str = 'Resource not found') -> tuple:
        """404 response"""
        return ApiResponse.error(message, 404, 'NOT_FOUND')

    @staticmethod
    def unauthorized(message: str = 'Unauthorized request') -> tuple:
        """401 response"""
        return ApiResponse.error(message, 401, 'UNAUTHORIZED')

    @staticmethod
    def validation_error(message: str, details: Optional[Dict] = None) -> tuple:
        """Validation error response"""
        return ApiResponse.error(message, 400, 'VALIDATION_ERROR', details)

    @staticmethod
    def server_error(message: str = 'Internal server error') -> tuple:
        """500 response"""
        return ApiResponse.error(message, 500, 'INTERNAL_ERROR')


def success_response(data: Any = None, message: str = 'OK') -> tuple:
    """Shortcut for a success response"""
    return ApiResponse.success(data, message)


def error_response(
    message: str,
    code: int = 400,
    error_code: str = 'BAD_REQUEST',
    details: Optional[Dict] = None
) -> tuple:
    """Shortcut for an error response"""
    return ApiResponse.error(message, code, error_code, details)
