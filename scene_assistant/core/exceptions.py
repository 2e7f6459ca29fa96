"""Custom exceptions for the application."""
from typing import Optional


class ApplicationError(Exception):
    """Base application error."""
    pass

class ConfigError(ApplicationError):
    """Configuration-related errors."""
    pass

class ServiceError(ApplicationError):
    """Service operation errors."""
    pass

class AIServiceError(ServiceError):
    """AI service specific errors (provider not configured, client missing)."""
    pass

class RateLimitError(ServiceError):
    """A single candidate reported rate or quota exhaustion."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after

class ProviderError(ServiceError):
    """Malformed or empty provider output, or any non-rate failure.

    Raised by the model invoker once every candidate has failed, carrying the
    last observed error.
    """

    def __init__(self, message: str, last_error: Optional[BaseException] = None,
                 model: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.model = model
        self.attempts = attempts

class QuotaExhaustedError(ProviderError):
    """Every candidate failed with a rate or quota signal."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None,
                 model: Optional[str] = None, attempts: int = 0,
                 retry_after: Optional[int] = None):
        super().__init__(message, last_error=last_error, model=model, attempts=attempts)
        self.retry_after = retry_after

class InputCaptureError(ApplicationError):
    """No camera frame was available for the requested action."""
    pass

class UnsupportedCapabilityError(ApplicationError):
    """A platform capability (speech recognition or synthesis) is absent."""
    pass

class WebcamError(ApplicationError):
    """Webcam access errors."""
    pass
