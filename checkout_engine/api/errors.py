"""Mapping of checkout errors onto HTTP responses."""

from fastapi import HTTPException, status

from checkout_engine.domain.exceptions import CheckoutError, ErrorKind

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.STEP_INCOMPLETE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.COUPON_REJECTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INCOMPLETE_CHECKOUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.EMPTY_CART: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.PAYMENT_DECLINED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.AUTH_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.SUBMISSION_IN_PROGRESS: status.HTTP_409_CONFLICT,
    ErrorKind.STALE_RESPONSE: status.HTTP_409_CONFLICT,
    ErrorKind.PAYMENT_GATEWAY_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.ORDER_CREATION_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.NETWORK_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.GATEWAY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.SETTINGS_FETCH_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.TIMEOUT_ERROR: status.HTTP_504_GATEWAY_TIMEOUT,
}


def checkout_http_error(error: CheckoutError | None, redirect_path: str | None = None) -> HTTPException:
    """Build the HTTPException for a failed checkout operation.

    Args:
        error: Failure returned by the service.
        redirect_path: Where the buyer should be sent, if anywhere.

    Returns:
        HTTPException whose detail is rendered by the app's handler.
    """
    if error is None:
        error = CheckoutError(ErrorKind.NETWORK_ERROR, "Operation failed without a reason")
    return HTTPException(
        status_code=ERROR_STATUS[error.kind],
        detail={
            "error_code": error.kind.value,
            "message": error.message,
            "details": dict(error.details),
            "retryable": error.retryable,
            "retry_policy": error.kind.retry_policy.value,
            "redirect_path": redirect_path,
        },
    )
