"""
Custom Exception Classes

Defines application-specific exceptions for better error handling and logging.
Every exception carries the HTTP status it maps to when it escapes a request.
"""

from typing import Any, Dict, Optional


class MiddlewareException(Exception):
    """Base exception for all middleware errors"""

    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: str = "MIDDLEWARE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# Inbound webhook errors


class WebhookProtocolException(MiddlewareException):
    """Malformed or incomplete CloudEvents delivery"""

    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="PROTOCOL_ERROR", details=details)


class CloudEventsDecodeException(WebhookProtocolException):
    """Request body or headers could not be decoded into an event"""


class WebhookAuthException(MiddlewareException):
    """Missing or unusable webhook credentials"""

    http_status = 401

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="AUTH_ERROR", details=details)


class TokenVerificationException(WebhookAuthException):
    """Base class for webhook JWT verification failures"""

    reason = "invalid"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={**(details or {}), "reason": self.reason})


class MalformedTokenException(TokenVerificationException):
    reason = "malformed"


class SignatureInvalidException(TokenVerificationException):
    reason = "signature_invalid"


class TokenExpiredException(TokenVerificationException):
    reason = "expired"


class TokenNotYetValidException(TokenVerificationException):
    reason = "not_yet_valid"


class IssuerMismatchException(TokenVerificationException):
    reason = "issuer_mismatch"


class ClaimMismatchException(TokenVerificationException):
    reason = "claim_mismatch"


class SubscriptionNotFoundException(MiddlewareException):
    """No active subscription routes this delivery"""

    http_status = 404

    def __init__(
        self,
        message: str = "Subscription not found or inactive",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code="SUBSCRIPTION_NOT_FOUND", details=details)


class MethodNotAllowedException(MiddlewareException):
    http_status = 405

    def __init__(self, message: str = "Method not allowed"):
        super().__init__(message, error_code="METHOD_NOT_ALLOWED")


class RateLimitException(MiddlewareException):
    """Rate limit exceeded errors"""

    http_status = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if retry_after:
            details["retry_after"] = retry_after
        super().__init__(message, error_code="RATE_LIMIT_EXCEEDED", details=details)


class QueueException(MiddlewareException):
    """SQS queue operation errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="QUEUE_ERROR", details=details)


class ValidationException(MiddlewareException):
    """Data validation errors"""

    http_status = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="VALIDATION_ERROR", details=details)


class SinkEventGroupMismatchException(ValidationException):
    """Sink URL does not route to the subscription's account and event group"""

    def __init__(self, sink: str, expected_path: str):
        super().__init__(
            f"Webhook URL mismatch: sink must contain {expected_path}",
            details={"sink": sink, "expected_path": expected_path},
        )


# Provider API errors


class ProviderAPIException(MiddlewareException):
    """Fatture in Cloud API call errors"""

    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if status_code:
            details["status_code"] = status_code
        self.status_code = status_code
        self.body = body
        super().__init__(message, error_code="PROVIDER_API_ERROR", details=details)

    @property
    def is_transient(self) -> bool:
        """Transport failures and 5xx responses are worth another attempt"""
        return self.status_code is None or self.status_code >= 500


class ProviderAuthException(ProviderAPIException):
    """Access token rejected by the provider"""

    http_status = 401

    def __init__(self, message: str = "Access token expired or invalid", body: Optional[str] = None):
        super().__init__(message, status_code=401, body=body, details={"auth_failed": True})


class ProviderRateLimitException(ProviderAPIException):
    """Provider throttled the call"""

    http_status = 429

    def __init__(self, retry_after: int = 60, body: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded. Please retry after {retry_after} seconds.",
            status_code=429,
            body=body,
            details={"retry_after": retry_after},
        )

    @property
    def is_transient(self) -> bool:
        return True


class CredentialsUnavailableException(MiddlewareException):
    """Account has no usable access token and needs re-authorization"""

    http_status = 400

    def __init__(self, account_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"No access token available for account {account_id}",
            error_code="CREDENTIALS_UNAVAILABLE",
            details={"account_id": account_id},
        )


class ConfigurationException(MiddlewareException):
    """Configuration or environment errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="CONFIG_ERROR", details=details)


class RetryableException(MiddlewareException):
    """Exception that can be retried"""

    def __init__(
        self,
        message: str,
        retry_count: int = 0,
        max_retries: int = 3,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details.update({"retry_count": retry_count, "max_retries": max_retries})
        super().__init__(message, error_code="RETRYABLE_ERROR", details=details)

    @property
    def should_retry(self) -> bool:
        """Check if operation should be retried"""
        return self.details.get("retry_count", 0) < self.details.get("max_retries", 3)


class AdminAuthException(MiddlewareException):
    """Management endpoint called without a valid API key"""

    http_status = 401

    def __init__(self, message: str = "Invalid or missing API key"):
        super().__init__(message, error_code="ADMIN_AUTH_ERROR")
