"""
Exceptions for the printer integration layer.

Every error carries a machine-readable code, optional details and a remediation
hint so the API layer can report it without knowing where it came from.
"""
from typing import Any, Dict, Optional


class IntegrationError(Exception):
    """Base exception for integration errors."""

    http_status = 500

    def __init__(self, message: str, code: str = 'INTEGRATION_ERROR',
                 details: Optional[Dict[str, Any]] = None,
                 remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.remediation = remediation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details,
            'remediation': self.remediation,
        }


class ConnectorUnreachable(IntegrationError):
    """Network or authentication failure while talking to a device.

    This is an integration-layer failure, not a device-reported error state.
    """

    http_status = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 remediation: Optional[str] = None):
        super().__init__(
            message=message,
            code='CONNECTOR_UNREACHABLE',
            details=details,
            remediation=remediation or 'Check that the device is powered on, reachable and that its credentials are valid.'
        )


class QuotaExceeded(IntegrationError):
    """A billed job would push the user past their monthly or color limit."""

    http_status = 409

    def __init__(self, message: str, user_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code='QUOTA_EXCEEDED',
            details={**(details or {}), 'user_id': user_id},
            remediation='Request a quota increase or approval, then resubmit the capture for this user.'
        )
        self.user_id = user_id


class CaptureNotFound(IntegrationError):
    http_status = 404

    def __init__(self, capture_id: Any):
        super().__init__(
            message=f'Capture {capture_id} not found',
            code='CAPTURE_NOT_FOUND',
            details={'capture_id': capture_id},
        )


class CaptureAlreadyProcessed(IntegrationError):
    http_status = 409

    def __init__(self, capture_id: Any):
        super().__init__(
            message=f'Capture {capture_id} has already been processed',
            code='CAPTURE_ALREADY_PROCESSED',
            details={'capture_id': capture_id},
        )


class UserNotFound(IntegrationError):
    http_status = 404

    def __init__(self, user_id: Any):
        super().__init__(
            message=f'User {user_id} not found',
            code='USER_NOT_FOUND',
            details={'user_id': user_id},
        )


class IntegrationNotFound(IntegrationError):
    http_status = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code='INTEGRATION_NOT_FOUND', details=details)


class InvalidSignature(IntegrationError):
    """Webhook payload failed HMAC verification and was discarded."""

    http_status = 401

    def __init__(self, message: str = 'Invalid webhook signature'):
        super().__init__(
            message=message,
            code='INVALID_SIGNATURE',
            remediation='Sign the raw request body with HMAC-SHA256 and send it as "sha256=<hex>".'
        )


class IntegrationValidationError(IntegrationError):
    """Validation error for configuration or data."""

    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code='VALIDATION_ERROR',
            details={**(details or {}), 'field': field} if field else details,
            remediation='Please check the configuration values and try again.'
        )
        self.field = field
