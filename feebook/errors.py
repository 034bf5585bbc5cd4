class FeeBookError(Exception):
    """Base class for errors the REST layer maps onto an HTTP response."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message=None, **context):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.context = context


class ValidationError(FeeBookError):
    """Invalid or missing input"""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(FeeBookError):
    """Record not found"""

    status_code = 404
    code = "NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    """Order not found"""

    code = "ORDER_NOT_FOUND"


class ConflictError(FeeBookError):
    """Request conflicts with the current state"""

    status_code = 409
    code = "CONFLICT"


class AlreadyPaidError(ConflictError):
    """Fee plan is already paid"""

    code = "ALREADY_PAID"


class GatewayUnavailableError(FeeBookError):
    """Payment gateway is unavailable, try again"""

    status_code = 503
    code = "GATEWAY_UNAVAILABLE"


class InconsistentStateError(FeeBookError):
    """Payment data is inconsistent and has been flagged for review"""

    status_code = 500
    code = "INCONSISTENT_STATE"


class VerificationPendingError(FeeBookError):
    """Payment verification is pending, try again shortly"""

    status_code = 202
    code = "VERIFICATION_PENDING"
