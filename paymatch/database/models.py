"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table (api_usage is only touched through
Repository.increment_api_usage). Fields match column names exactly.
Primary keys are TEXT (UUID strings generated via uuid4()), except invoices,
whose ids come from the invoice system. Money columns hold integer minor
units (hundredths of the currency).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

# Transaction.match_status values
UNMATCHED = "unmatched"
PARTIALLY_MATCHED = "partially_matched"
MATCHED = "matched"

# Invoice.status values
SENT = "sent"
PARTIALLY_PAID = "partially_paid"
PAID = "paid"


def invoice_status(paid: int, total: int, settle: bool = False) -> str:
    """Status for an invoice with ``paid`` of ``total`` applied.

    ``settle`` marks a payment that closes the invoice with a remainder
    inside the amount tolerance.
    """
    if paid >= total or (settle and paid > 0):
        return PAID
    if paid > 0:
        return PARTIALLY_PAID
    return SENT


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class InboundMessage:
    delivery_key: str
    sender: str
    recipient: str
    subject: str
    body: str
    received_at: str
    id: str = field(default_factory=_new_id)
    account_id: str | None = None
    provider_delivery_id: str | None = None
    attachments: str | None = None  # JSON list of {filename, content, contentType}
    status: str = "received"  # received, processed, failed
    error_message: str | None = None
    processed_count: int = 0
    matched_count: int = 0
    review_count: int = 0
    created_at: str = field(default_factory=_now)
    completed_at: str | None = None


@dataclass
class Transaction:
    account_id: str
    company_id: str
    fingerprint: str
    amount: int
    currency: str
    value_date: str
    id: str = field(default_factory=_new_id)
    message_id: str | None = None
    direction: str = "incoming"
    counterparty_name: str | None = None
    counterparty_account: str | None = None
    reference_text: str | None = None
    variable_symbol: str | None = None
    constant_symbol: str | None = None
    specific_symbol: str | None = None
    bank_reference: str | None = None
    match_status: str = UNMATCHED
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class Match:
    transaction_id: str
    invoice_id: str
    amount: int
    confidence: float
    source: str  # "auto" or "manual"
    id: str = field(default_factory=_new_id)
    rule: str | None = None
    created_by: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class MatchSuggestion:
    transaction_id: str
    invoice_id: str
    confidence: float
    rule: str
    reason: str  # "low_confidence" or "ambiguous"
    id: str = field(default_factory=_new_id)
    status: str = "open"  # open, resolved, dismissed
    resolved_by: str | None = None
    resolved_at: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class AuditEntry:
    action: str  # auto_match, manual_match, unmatch, dismiss_suggestion
    actor: str
    id: str = field(default_factory=_new_id)
    match_id: str | None = None
    transaction_id: str | None = None
    invoice_id: str | None = None
    amount: int | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class Invoice:
    id: str
    invoice_number: str
    company_id: str
    total_amount: int
    currency: str
    customer_name: str | None = None
    variable_symbol: str | None = None
    paid_amount: int = 0
    status: str = SENT
    issue_date: str | None = None
    due_date: str | None = None
    paid_at: str | None = None
    created_at: str = field(default_factory=_now)
