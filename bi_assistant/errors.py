from typing import Optional


class AssistantError(Exception):
    """Base error for the delivery and reasoning pipeline"""
    kind = "internal"
    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class TransportError(AssistantError):
    """Network failure or timeout talking to an external service"""
    kind = "transport"


class AuthError(AssistantError):
    """Token exchange or credential rejection"""
    kind = "auth"


class QueryError(AssistantError):
    """The analytical engine rejected the query"""
    kind = "query"
    retryable = False


class ValidationError(AssistantError):
    """Required input is missing or malformed"""
    kind = "validation"
    retryable = False


class ExhaustedRetriesError(AssistantError):
    """Retry budget spent; nothing will retry this automatically"""
    kind = "exhausted"
    retryable = False

    def __init__(self, message: str, *, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
