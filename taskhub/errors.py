"""Domain errors raised by the service layer.

Each error carries the HTTP status it maps to and any extra fields that belong
in the JSON body. ``main`` registers one handler for the whole hierarchy.
"""
from fastapi import status


class TaskHubError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Request failed"

    def __init__(self, message: str = None, **extra):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.extra = extra

    def to_dict(self):
        return {"message": self.message, **self.extra}


class ValidationError(TaskHubError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    message = "Validation failed"

    def __init__(self, errors: dict, message: str = None):
        super().__init__(message, errors=errors)
        self.errors = errors


class Unauthenticated(TaskHubError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Unauthenticated."


class Forbidden(TaskHubError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Forbidden"


class NotFound(TaskHubError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Not found"


class InvalidCredentials(TaskHubError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Invalid credentials"


class VerificationRequired(TaskHubError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Please verify your email address before logging in."

    def __init__(self, user_id: int):
        super().__init__(requires_verification=True, user_id=user_id)


class InvalidToken(TaskHubError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid or expired verification link"


class AlreadyVerified(TaskHubError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Email is already verified"


class AdminNoVerificationNeeded(TaskHubError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Admin accounts do not require verification"


class TooManyRequests(TaskHubError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Too many login attempts. Please try again later."


class InternalError(TaskHubError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal server error"
