"""Payment error taxonomy.

Every failure the payment core reports carries a machine readable ``kind``
and the HTTP status it maps to. Duplicate gateway events are not errors and
have no class here (see ``RecordOutcome.DUPLICATE``).
"""


class PaymentError(Exception):
    """Base class for structured payment failures."""

    kind = "payment_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "kind": self.kind, "message": self.message}


class NotFound(PaymentError):
    """Booking or ledger entry missing."""
    kind = "not_found"
    status_code = 404


class InvalidAmount(PaymentError):
    """Non-positive amount, or more than the refundable balance."""
    kind = "invalid_amount"
    status_code = 400


class InvalidTransition(PaymentError):
    """Ledger entry status change not allowed by the transition table."""
    kind = "invalid_transition"
    status_code = 409


class AlreadyRefunded(PaymentError):
    kind = "already_refunded"
    status_code = 409


class NotYetPaid(PaymentError):
    kind = "not_yet_paid"
    status_code = 409


class SignatureInvalid(PaymentError):
    """Webhook delivery rejected before any event is processed."""
    kind = "signature_invalid"
    status_code = 400


class GatewayUnavailable(PaymentError):
    """Gateway unreachable, misconfigured or erroring. Callers may retry."""
    kind = "gateway_unavailable"
    status_code = 502


class LedgerConflict(PaymentError):
    """Ledger write kept losing the version race."""
    kind = "ledger_conflict"
    status_code = 409
