"""
Membership lifecycle errors.

Services raise these; main.py maps them to HTTP responses. Validation and
state errors carry a message fit for the caller. Storage and gateway errors
carry detail for the log only.
"""

from typing import List, Optional


class MembershipError(Exception):
    """Base class for every error raised by the lifecycle services"""
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(MembershipError):
    """Raised when input is rejected before anything is written"""
    status_code = 422

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class NotFound(MembershipError):
    status_code = 404


class InvalidState(MembershipError):
    """Raised when an operation is not legal for the current status"""
    status_code = 409


class AmountMismatch(MembershipError):
    """Raised when a payment amount does not match the outstanding balance"""
    status_code = 409

    def __init__(self, expected, received, payment_id: Optional[int] = None):
        super().__init__(f"Payment amount {received} does not match amount due {expected}")
        self.expected = expected
        self.received = received
        self.payment_id = payment_id


class StorageFailure(MembershipError):
    """Raised when an attachment could not be persisted"""
    status_code = 502


class GatewayFailure(MembershipError):
    """Raised when a payment gateway call fails or times out"""
    status_code = 502


class AuthorizationError(MembershipError):
    status_code = 403
