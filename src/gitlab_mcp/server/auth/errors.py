from typing import Literal

from pydantic import BaseModel, ValidationError

ErrorCode = Literal[
    "invalid_request",
    "invalid_client",
    "invalid_grant",
    "unauthorized_client",
    "unsupported_grant_type",
    "unsupported_response_type",
    "invalid_scope",
    "invalid_token",
    "access_denied",
    "server_error",
]


class ErrorResponse(BaseModel):
    error: ErrorCode
    error_description: str


class OAuthError(Exception):
    """
    Base class for all OAuth errors.
    """

    error_code: ErrorCode
    status_code: int = 400

    def __init__(self, error_description: str):
        super().__init__(error_description)
        self.error_description = error_description

    def error_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.error_code,
            error_description=self.error_description,
        )


class InvalidRequestError(OAuthError):
    error_code = "invalid_request"


class InvalidClientError(OAuthError):
    error_code = "invalid_client"
    status_code = 401


class InvalidGrantError(OAuthError):
    error_code = "invalid_grant"


class UnsupportedGrantTypeError(OAuthError):
    error_code = "unsupported_grant_type"


class UnsupportedResponseTypeError(OAuthError):
    error_code = "unsupported_response_type"


class InvalidTokenError(OAuthError):
    error_code = "invalid_token"
    status_code = 401


class ServerError(OAuthError):
    error_code = "server_error"
    status_code = 500


def stringify_pydantic_error(validation_error: ValidationError) -> str:
    return "\n".join(
        f"{'.'.join(str(loc) for loc in e['loc'])}: {e['msg']}"
        for e in validation_error.errors()
    )
