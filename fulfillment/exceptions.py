"""
Fulfillment Module - Error Taxonomy

Services raise these; the API views turn them into
{'error': message} responses with the matching HTTP status.
"""

from rest_framework import status


class FulfillmentError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Request could not be processed'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(FulfillmentError):
    """Missing or malformed input. Raised before any side effect."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Invalid request data'


class AuthorizationFailed(FulfillmentError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Not allowed to access this resource'


class NotFound(FulfillmentError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Resource not found'


class Conflict(FulfillmentError):
    """Duplicate active return, already refunded, illegal transition, out of stock."""
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Request conflicts with current state'


class UpstreamFailure(FulfillmentError):
    """Payment gateway or store unavailable. Aborts the step that failed."""
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = 'Upstream service failed'


class GatewayError(UpstreamFailure):
    default_message = 'Payment gateway request failed'
