"""Exceptions raised by the order and payment layer.

Route handlers translate these into HTTP status codes; nothing below the
HTTP layer knows about status codes.
"""


class OrderError(Exception):
    """Base class for order domain errors."""


class ValidationError(OrderError):
    pass


class ListingUnavailable(OrderError):
    pass


class ListingSold(OrderError):
    pass


class OrderNotFound(OrderError):
    pass


class PaymentNotInitialized(OrderError):
    """The order has no gateway correlation fields to poll with."""


class InvalidTransition(OrderError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"transition {from_status} -> {to_status} "
                         f"is not allowed")
        self.from_status = from_status
        self.to_status = to_status


class NotPaid(OrderError):
    pass


class AlreadyDelivered(OrderError):
    pass


class NotCancellable(OrderError):
    pass


class SignatureInvalid(OrderError):
    pass


class GatewayError(Exception):
    """Gateway unreachable, timed out or answered non-2xx."""


class GatewayResponseError(GatewayError):
    """Gateway answered with a body we do not recognize."""
