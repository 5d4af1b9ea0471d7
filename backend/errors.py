"""Exception types shared by the API layer and the queue workers."""


class GatewayError(Exception):
    """An error that maps onto an API error response."""

    status_code = 500
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, description: str):
        super().__init__(description)
        self.description = description

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "description": self.description}}


class BadRequestError(GatewayError):
    status_code = 400
    code = "BAD_REQUEST_ERROR"


class InvalidVpaError(BadRequestError):
    code = "INVALID_VPA"


class InvalidCardError(BadRequestError):
    code = "INVALID_CARD"


class ExpiredCardError(BadRequestError):
    code = "EXPIRED_CARD"


class NotFoundError(GatewayError):
    status_code = 404
    code = "NOT_FOUND_ERROR"


class AuthenticationError(GatewayError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"


class DataConsistencyError(Exception):
    """A job referenced a row that must exist but does not.

    Rows are written before their job is enqueued, so this is a bug rather
    than a transient condition. Handlers let it propagate so the queue marks
    the job failed and does not retry it.
    """


class PaymentNotFoundError(DataConsistencyError):
    pass


class RefundNotFoundError(DataConsistencyError):
    pass


class WebhookLogNotFoundError(DataConsistencyError):
    pass
