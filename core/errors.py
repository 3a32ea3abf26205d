"""
Error taxonomy shared by services and routers.

Policy outcomes (denied, forbidden, conflict) are returned as values by the
services; routers translate them to HTTP responses through ERROR_STATUS.
"""
import enum

from fastapi import status


class ErrorKind(str, enum.Enum):
    """Kinds of failure surfaced to API callers."""
    NOT_FOUND = "not_found"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED = "expired"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"
    STORE_ERROR = "store_error"
    ACTUATOR_ERROR = "actuator_error"


ERROR_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_CREDENTIAL: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.EXPIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.STORE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    # Never the cause of a failed response on its own
    ErrorKind.ACTUATOR_ERROR: status.HTTP_200_OK,
}


class ActuatorError(Exception):
    """Transport failure talking to a door relay."""

    def __init__(self, address: str, message: str):
        super().__init__(f"{address}: {message}")
        self.address = address
        self.message = message


class ConflictError(Exception):
    """A write collides with existing state (duplicate email, existing grant)."""
