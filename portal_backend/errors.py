"""
Error taxonomy for the portal API.

Every error a handler can return maps to one of these classes. They are
HTTPExceptions so they can be raised from dependencies and handlers alike;
the app renders them as {"error": detail} bodies.
"""
from fastapi import HTTPException, status


class ConfigurationError(RuntimeError):
    """Required configuration is missing or malformed"""


class PortalError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal server error"

    def __init__(self, detail: str = None, headers: dict = None):
        super().__init__(
            status_code=self.status_code,
            detail=detail or self.default_detail,
            headers=headers
        )


class Unauthenticated(PortalError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Unauthorized"

    def __init__(self, detail: str = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(PortalError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Access denied"


class BadRequest(PortalError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Bad request"


class NotFound(PortalError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class UpstreamPermissionDenied(PortalError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Permission denied. Ensure the file is shared with the service account."


class UpstreamNotFound(PortalError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "File not found or ID is incorrect."


class UpstreamTimeout(PortalError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_detail = "File storage provider timed out"


class InternalError(PortalError):
    pass
