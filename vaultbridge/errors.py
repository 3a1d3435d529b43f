"""Error taxonomy for the request-processing protocol.

ValidationError and AuthorizationError are raised at the request-ledger
boundary. CrossLedgerCallFailure wraps failures of position-service or bridge
calls. LedgerUpdateFailure marks a finalize call that failed after the
position side already changed, and SchedulingFailure a run that could not be
armed.
"""


class VaultBridgeError(Exception):
    """Base class for every protocol error."""


class ValidationError(VaultBridgeError):
    """Malformed or inadmissible request."""


class AuthorizationError(VaultBridgeError):
    """Caller is not allowed to perform the operation."""


class RequestNotFoundError(ValidationError):
    def __init__(self, request_id: int):
        super().__init__(f"Request {request_id} not found")
        self.request_id = request_id


class InvalidStatusError(VaultBridgeError):
    """Request is in the wrong status for the attempted transition."""

    def __init__(self, request_id: int, status, expected):
        super().__init__(f"Request {request_id} is {status}, expected {expected}")
        self.request_id = request_id
        self.status = status
        self.expected = expected


class RequestNotPendingError(InvalidStatusError):
    def __init__(self, request_id: int, status):
        super().__init__(request_id, status, "Pending")
        self.args = (f"Request {request_id} is not Pending (status={status})",)


class InsufficientFundsError(ValidationError):
    """Account balance does not cover the amount."""


class InsufficientCustodyError(VaultBridgeError):
    """The bridge account does not hold the funds needed for a refund."""


class CrossLedgerCallFailure(VaultBridgeError):
    """A position-service or bridge call failed."""

    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class LedgerUpdateFailure(VaultBridgeError):
    """Finalizing a request failed after its position-side effect happened.

    The two ledgers may disagree until an operator reconciles them.
    """

    def __init__(self, request_id: int, detail: str):
        super().__init__(f"Request {request_id}: ledger update failed: {detail}")
        self.request_id = request_id
        self.detail = detail


class SchedulingFailure(VaultBridgeError):
    """The next run could not be scheduled (e.g. prepaid fees exhausted)."""
