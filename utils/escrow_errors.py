"""
Escrow domain errors

Every failure of an escrow operation surfaces as one of these typed errors.
They are raised before any mutation, or inside an atomic unit which then rolls
back every write it performed.
"""


class EscrowError(Exception):
    """Base escrow error with a machine-readable code"""

    error_code = "escrow_error"

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class InvalidArgument(EscrowError):
    """Malformed request: bad amount, empty conditions, sender equals receiver"""
    error_code = "invalid_argument"


class InsufficientFunds(EscrowError):
    """Balance too low for the requested movement - user-correctable"""
    error_code = "insufficient_funds"


class InvalidTransition(EscrowError):
    """Status guard failed - stale client state or a lost race"""
    error_code = "invalid_transition"

    def __init__(self, message: str, current_status: str = None, error_code: str = None):
        super().__init__(message, error_code)
        self.current_status = current_status


class NotAcceptedState(InvalidTransition):
    """Conditions may only change while the transaction is accepted"""
    error_code = "not_accepted_state"


class NotFound(EscrowError):
    """Unknown user or transaction id"""
    error_code = "not_found"


class PermissionDenied(EscrowError):
    """Acting user is not allowed to perform this operation"""
    error_code = "permission_denied"


__all__ = [
    "EscrowError",
    "InvalidArgument",
    "InsufficientFunds",
    "InvalidTransition",
    "NotAcceptedState",
    "NotFound",
    "PermissionDenied",
]
