"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Account errors (2xxx)
    ACCOUNT_NOT_FOUND = "ERR_2001"

    # Webhook errors (3xxx)
    WEBHOOK_PROCESSING_FAILED = "ERR_3001"
    INVALID_EVENT_TRANSITION = "ERR_3002"

    # Sync errors (4xxx)
    SYNC_FAILED = "ERR_4001"
    HISTORY_EXPIRED = "ERR_4002"

    # External service errors (5xxx)
    MAILBOX_API_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class AccountNotFoundError(NotFoundException):
    """Raised when an email account does not exist"""

    def __init__(self, account_id: int):
        super().__init__(
            resource="EmailAccount",
            identifier=account_id,
            error_code=ErrorCode.ACCOUNT_NOT_FOUND,
        )
        self.details["account_id"] = account_id


class WebhookProcessingError(AppException):
    """
    עיבוד התראת push נכשל אחרי שעברה dedup.

    event_recorded מציין אם נשמרה רשומת WebhookEvent במצב FAILED -
    כשהיא קיימת, ה-sweep השעתי אחראי לנסות שוב; אחרת צריך שהספק ישלח מחדש.
    """

    def __init__(
        self,
        notification_id: str,
        message: str,
        *,
        event_recorded: bool = False,
        account_id: int | None = None
    ):
        super().__init__(
            message=f"Webhook processing failed for {notification_id}: {message}",
            error_code=ErrorCode.WEBHOOK_PROCESSING_FAILED,
            status_code=503,
            details={"notification_id": notification_id}
        )
        self.notification_id = notification_id
        self.event_recorded = event_recorded
        self.account_id = account_id
        if account_id:
            self.details["account_id"] = account_id


class InvalidEventTransitionError(AppException):
    """Raised when a webhook event status change is not allowed"""

    def __init__(self, event_id: int | None, current_status: str, target_status: str):
        super().__init__(
            message=f"Invalid transition from '{current_status}' to '{target_status}'",
            error_code=ErrorCode.INVALID_EVENT_TRANSITION,
            status_code=409,
            details={
                "event_id": event_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class SyncError(AppException):
    """Raised when a sync run cannot complete"""

    def __init__(self, account_id: int, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.SYNC_FAILED,
            status_code=500,
            details=details
        )
        self.details["account_id"] = account_id


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class MailboxApiError(ExternalServiceException):
    """Raised when the Gmail API returns an error response"""

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="gmail",
            message=f"Gmail API error: {message}",
            error_code=ErrorCode.MAILBOX_API_ERROR,
            details=details
        )
        self.http_status = http_status

    @property
    def is_not_found(self) -> bool:
        return self.http_status == 404

    @property
    def is_client_error(self) -> bool:
        """4xx (חוץ מ-429) - בעיה בבקשה, לא בזמינות השירות"""
        return self.http_status is not None and 400 <= self.http_status < 500 and self.http_status != 429

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "MailboxApiError":
        """
        יצירת MailboxApiError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: history.list, messages.get)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            http_status=status_code,
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class HistoryExpiredError(MailboxApiError):
    """ה-cursor ישן מדי - Gmail כבר לא מחזיק היסטוריה ממנו (404 ב-history.list)"""

    def __init__(self, start_history_id: str):
        super().__init__(
            message=f"history {start_history_id} is no longer available",
            http_status=404,
            details={"start_history_id": start_history_id}
        )
        self.error_code = ErrorCode.HISTORY_EXPIRED
        self.start_history_id = start_history_id


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
