"""Error taxonomy for the payment matching engine.

Every error the engine reports to a caller is a PaymentMatchError subclass.
The HTTP layer maps each class to a status code; the gateway records
ExtractionFailure on the delivery instead of propagating it.
"""

from __future__ import annotations


class PaymentMatchError(Exception):
    """Base class for all engine errors."""


class UnknownAccount(PaymentMatchError):
    """Delivery addressed to an unrecognized or inactive mailbox."""

    def __init__(self, recipient: str, reason: str = "unknown"):
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"No active bank account for address '{recipient}' ({reason})")


class InvalidSignature(PaymentMatchError):
    """Webhook body signature missing or wrong."""


class ValidationError(PaymentMatchError):
    """Malformed input: payload fields, amounts, currencies."""


class CurrencyMismatch(ValidationError):
    def __init__(self, txn_currency: str, invoice_currency: str):
        self.txn_currency = txn_currency
        self.invoice_currency = invoice_currency
        super().__init__(
            f"Transaction currency {txn_currency} does not match"
            f" invoice currency {invoice_currency}"
        )


class ExtractionFailure(PaymentMatchError):
    """Extractor unreachable, timed out, or returned unparseable output."""


class DuplicateDelivery(PaymentMatchError):
    """Raised when a delivery key was already recorded.

    Not an error for webhook senders: the gateway answers with the result
    of the first ingestion.
    """

    def __init__(self, delivery_key: str, existing_message_id: str | None = None):
        self.delivery_key = delivery_key
        self.existing_message_id = existing_message_id
        super().__init__(f"Delivery '{delivery_key}' already recorded")


class NotFound(PaymentMatchError):
    pass


class TransactionNotFound(NotFound):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class InvoiceNotFound(NotFound):
    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class AmountExceedsOutstanding(PaymentMatchError):
    """Applying the amount would over-apply one side of a match.

    Raised directly when the invoice's outstanding amount is too small.
    The subclasses narrow down which limit was hit.
    """

    def __init__(self, requested: int, available: int, message: str | None = None):
        self.requested = requested
        self.available = available
        super().__init__(
            message
            or f"Amount {requested} exceeds outstanding invoice amount {available}"
        )


class AmountExceedsInvoiceTotal(AmountExceedsOutstanding):
    def __init__(self, requested: int, available: int):
        super().__init__(
            requested, available,
            f"Amount {requested} would exceed invoice total (remaining {available})",
        )


class AmountExceedsTransaction(AmountExceedsOutstanding):
    def __init__(self, requested: int, available: int):
        super().__init__(
            requested, available,
            f"Amount {requested} exceeds unapplied transaction amount {available}",
        )
