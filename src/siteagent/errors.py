"""Error taxonomy for activities run against the Site Controller.

Every failure that leaves an activity is either retryable (left to the
activity's RetryPolicy) or non-retryable (surfaced immediately). The
category is decided here, as close to the RPC call as possible; the
orchestrator never re-interprets it.
"""

from __future__ import annotations

import grpc

ERR_TYPE_INVALID_REQUEST = "InvalidRequest"
ERR_TYPE_OBJECT_NOT_FOUND = "SiteControllerObjectNotFound"
ERR_TYPE_UNIMPLEMENTED = "SiteControllerUnimplemented"
ERR_TYPE_UNAVAILABLE = "SiteControllerUnavailable"
ERR_TYPE_DENIED = "SiteControllerDenied"
ERR_TYPE_ALREADY_EXISTS = "SiteControllerAlreadyExists"
ERR_TYPE_FAILED_PRECONDITION = "SiteControllerFailedPrecondition"
ERR_TYPE_INVALID_ARGUMENT = "SiteControllerInvalidArgument"

INVALID_REQUEST_MESSAGE = "invalid or empty request provided as activity argument"

# Controller status codes that will not change within one retry budget
NON_RETRYABLE_CODES: dict[grpc.StatusCode, str] = {
    grpc.StatusCode.NOT_FOUND: ERR_TYPE_OBJECT_NOT_FOUND,
    grpc.StatusCode.UNIMPLEMENTED: ERR_TYPE_UNIMPLEMENTED,
    grpc.StatusCode.UNAVAILABLE: ERR_TYPE_UNAVAILABLE,
    grpc.StatusCode.PERMISSION_DENIED: ERR_TYPE_DENIED,
    grpc.StatusCode.ALREADY_EXISTS: ERR_TYPE_ALREADY_EXISTS,
    grpc.StatusCode.FAILED_PRECONDITION: ERR_TYPE_FAILED_PRECONDITION,
    grpc.StatusCode.INVALID_ARGUMENT: ERR_TYPE_INVALID_ARGUMENT,
}

# Codes that mean the channel itself is down rather than the request being wrong
CONNECTIVITY_CODES: frozenset[grpc.StatusCode] = frozenset(
    {grpc.StatusCode.UNAVAILABLE, grpc.StatusCode.UNAUTHENTICATED}
)


class ActivityError(Exception):
    """Application error raised out of an activity.

    Attributes:
        error_type: Stable category name reported to the cloud.
        non_retryable: When True the retry runner stops immediately.
    """

    def __init__(self, message: str, error_type: str = "", *, non_retryable: bool = False) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.non_retryable = non_retryable

    @property
    def message(self) -> str:
        return str(self)


class ClientNotReadyError(Exception):
    """Raised when an RPC is attempted before any client has been created."""

    pass


class PublishError(Exception):
    """Raised when a result or inventory page cannot be delivered to the cloud."""

    pass


def invalid_request(message: str = INVALID_REQUEST_MESSAGE) -> ActivityError:
    """Build the non-retryable error for malformed or absent activity input."""
    return ActivityError(message, ERR_TYPE_INVALID_REQUEST, non_retryable=True)


def status_code_of(err: BaseException) -> grpc.StatusCode | None:
    """Return the gRPC status code carried by an error, if any."""
    if isinstance(err, grpc.RpcError):
        code = getattr(err, "code", None)
        if callable(code):
            try:
                result = code()
            except (AttributeError, TypeError):
                return None
            if isinstance(result, grpc.StatusCode):
                return result
    return None


def wrap_error(err: Exception) -> Exception:
    """Map a Site Controller error to its activity category.

    gRPC errors with a code in NON_RETRYABLE_CODES become non-retryable
    ActivityErrors chained to the original. Everything else is returned
    unchanged and stays retryable.
    """
    code = status_code_of(err)
    if code is None:
        return err

    error_type = NON_RETRYABLE_CODES.get(code)
    if error_type is None:
        return err

    wrapped = ActivityError(str(err), error_type, non_retryable=True)
    wrapped.__cause__ = err
    return wrapped


def is_non_retryable(err: BaseException) -> bool:
    return isinstance(err, ActivityError) and err.non_retryable


def is_connectivity_error(err: BaseException) -> bool:
    """True when the error says the channel is unusable (UNAVAILABLE/UNAUTHENTICATED)."""
    code = status_code_of(err)
    if code is None and err.__cause__ is not None:
        code = status_code_of(err.__cause__)
    return code in CONNECTIVITY_CODES
