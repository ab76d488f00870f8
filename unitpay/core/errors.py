"""Error taxonomy shared by services, workers and the HTTP layer.

Every error carries a stable ``kind`` so callers can branch on it without
parsing messages. The HTTP layer renders ``kind``/``message``/``details``.
"""

from datetime import datetime


class UnitpayError(Exception):
    """Base class for all domain errors."""

    kind: str = "error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(UnitpayError):
    kind = "validation_error"
    status_code = 422


class NotFoundError(UnitpayError):
    kind = "not_found"
    status_code = 404


class PermissionDeniedError(UnitpayError):
    kind = "permission_denied"
    status_code = 403


class InvalidTransitionError(UnitpayError):
    """Raised when an intent transition is not allowed."""

    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, action: str, actor: str | None = None):
        self.current = current
        self.action = action
        self.actor = actor
        msg = f"Invalid transition: {current} + {action}"
        if actor:
            msg += f" by {actor}"
        super().__init__(msg, {"current": current, "action": action, "actor": actor})


class StaleStateError(UnitpayError):
    """The intent changed between read and write; retry the whole operation."""

    kind = "stale_state"
    status_code = 409
    retryable = True


class IntentNotClaimable(UnitpayError):
    kind = "intent_not_claimable"
    status_code = 409


class QuotaExceeded(UnitpayError):
    kind = "quota_exceeded"
    status_code = 409


class CancellationDenied(UnitpayError):
    kind = "cancellation_denied"
    status_code = 409


class TransientNetworkError(UnitpayError):
    kind = "transient_network_error"
    status_code = 503
    retryable = True


class OffchainTimeoutError(TransientNetworkError):
    kind = "offchain_timeout"
    status_code = 504


class VerificationMismatch(UnitpayError):
    kind = "verification_mismatch"
    status_code = 422


class ChainRevertError(UnitpayError):
    kind = "chain_revert"
    status_code = 502

    def __init__(self, operation: str, reason: str, tx_hash: str | None = None):
        self.operation = operation
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(
            f"{operation} reverted: {reason}",
            {"operation": operation, "reason": reason, "tx_hash": tx_hash},
        )


class ChainTimeoutError(UnitpayError):
    kind = "chain_timeout"
    status_code = 504
    # The transaction may still be mined; the watcher retries, never the task
    retryable = False

    def __init__(self, operation: str, tx_hash: str):
        self.operation = operation
        self.tx_hash = tx_hash
        super().__init__(
            f"{operation} not mined in time (tx {tx_hash})",
            {"operation": operation, "tx_hash": tx_hash},
        )


class EscrowNotReady(UnitpayError):
    kind = "escrow_not_ready"
    status_code = 409

    def __init__(self, message: str, ready_at: datetime | None = None):
        self.ready_at = ready_at
        super().__init__(message, {"ready_at": ready_at.isoformat() if ready_at else None})


class ReconciliationConflict(UnitpayError):
    kind = "reconciliation_conflict"
    status_code = 409


class WebhookSignatureError(UnitpayError):
    kind = "invalid_signature"
    status_code = 401
