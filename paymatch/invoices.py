"""Invoice collaborator: the open-invoice view and payment bookkeeping.

The matching engine never touches invoice rows itself. It reads
OpenInvoice projections from an InvoiceStore and tells the store about
applied or reversed amounts; the store owns the status transitions
(sent -> partially_paid -> paid).

SqliteInvoiceStore is the bundled implementation over the local
``invoices`` table, loaded from YAML with load_invoices().
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import yaml

from paymatch.database.models import (
    PAID,
    SENT,
    Invoice,
    _now,
    invoice_status,
)
from paymatch.database.repository import Repository
from paymatch.errors import AmountExceedsInvoiceTotal, InvoiceNotFound, ValidationError
from paymatch.extraction.base import normalize_currency, parse_value_date, to_minor

logger = logging.getLogger(__name__)


@dataclass
class OpenInvoice:
    """What the engine needs to know about one invoice."""
    id: str
    invoice_number: str
    company_id: str
    outstanding_amount: int
    currency: str
    total_amount: int
    counterparty_name: str | None = None
    variable_symbol: str | None = None
    issue_date: str | None = None
    due_date: str | None = None
    status: str = SENT

    @classmethod
    def from_invoice(cls, inv: Invoice) -> OpenInvoice:
        outstanding = 0 if inv.status == PAID else max(inv.total_amount - inv.paid_amount, 0)
        return cls(
            id=inv.id,
            invoice_number=inv.invoice_number,
            company_id=inv.company_id,
            outstanding_amount=outstanding,
            currency=inv.currency,
            total_amount=inv.total_amount,
            counterparty_name=inv.customer_name,
            variable_symbol=inv.variable_symbol,
            issue_date=inv.issue_date,
            due_date=inv.due_date,
            status=inv.status,
        )


class InvoiceStore(ABC):
    """Interface the engine uses to read and settle invoices."""

    @abstractmethod
    def open_invoices(self, company_id: str) -> list[OpenInvoice]:
        """Invoices of the company with a positive outstanding amount."""

    @abstractmethod
    def get_invoice(self, invoice_id: str) -> OpenInvoice | None:
        """Any invoice by id, open or not."""

    @abstractmethod
    def apply_payment(self, invoice_id: str, amount: int, settle: bool = False) -> OpenInvoice:
        """Record an applied amount; settle=True closes the invoice even if
        a remainder within tolerance is left."""

    @abstractmethod
    def reverse_payment(self, invoice_id: str, amount: int) -> OpenInvoice:
        """Undo a previously applied amount."""


class SqliteInvoiceStore(InvoiceStore):
    """InvoiceStore over the local invoices table.

    Called by the ledger inside its database transaction, so a refused
    update rolls back the match that triggered it.
    """

    def __init__(self, repo: Repository):
        self.repo = repo

    def open_invoices(self, company_id: str) -> list[OpenInvoice]:
        return [OpenInvoice.from_invoice(inv) for inv in self.repo.get_open_invoices(company_id)]

    def get_invoice(self, invoice_id: str) -> OpenInvoice | None:
        inv = self.repo.get_invoice(invoice_id)
        return OpenInvoice.from_invoice(inv) if inv else None

    def apply_payment(self, invoice_id: str, amount: int, settle: bool = False) -> OpenInvoice:
        if amount <= 0:
            raise ValidationError(f"Applied amount must be positive, got {amount}")
        with self.repo.transaction():
            inv = self.repo.get_invoice(invoice_id)
            if inv is None:
                raise InvoiceNotFound(invoice_id)
            paid = inv.paid_amount + amount
            if paid > inv.total_amount:
                raise AmountExceedsInvoiceTotal(amount, inv.total_amount - inv.paid_amount)
            status = invoice_status(paid, inv.total_amount, settle)
            paid_at = inv.paid_at
            if status == PAID and inv.status != PAID:
                paid_at = _now()
            self.repo.update_invoice_payment(inv.id, paid, status, paid_at)
        logger.info("Invoice %s: %s (paid %d/%d)", inv.invoice_number, status, paid, inv.total_amount)
        return self.get_invoice(invoice_id)

    def reverse_payment(self, invoice_id: str, amount: int) -> OpenInvoice:
        if amount <= 0:
            raise ValidationError(f"Reversed amount must be positive, got {amount}")
        with self.repo.transaction():
            inv = self.repo.get_invoice(invoice_id)
            if inv is None:
                raise InvoiceNotFound(invoice_id)
            if amount > inv.paid_amount:
                raise ValidationError(
                    f"Cannot reverse {amount} on invoice {inv.invoice_number}:"
                    f" only {inv.paid_amount} applied"
                )
            paid = inv.paid_amount - amount
            status = invoice_status(paid, inv.total_amount)
            paid_at = inv.paid_at if status == PAID else None
            self.repo.update_invoice_payment(inv.id, paid, status, paid_at)
        logger.info("Invoice %s reopened: %s (paid %d/%d)", inv.invoice_number, status, paid, inv.total_amount)
        return self.get_invoice(invoice_id)


# ── Loading ───────────────────────────────────────────────


def invoice_from_record(record: dict, default_currency: str = "CZK") -> Invoice:
    """Build an Invoice from a YAML/JSON record with major-unit amounts.

    Raises:
        ValidationError: Missing id, number, company or a non-positive total.
    """
    for key in ("id", "invoice_number", "company_id"):
        if not record.get(key):
            raise ValidationError(f"Invoice record missing '{key}': {record}")
    try:
        total = to_minor(record.get("total_amount", record.get("total")))
        paid = to_minor(record.get("paid_amount", 0) or 0)
    except ValueError as e:
        raise ValidationError(f"Invoice {record['id']}: {e}") from e
    if total <= 0:
        raise ValidationError(f"Invoice {record['id']}: total must be positive")
    if paid < 0 or paid > total:
        raise ValidationError(f"Invoice {record['id']}: paid amount out of range")

    vs = record.get("variable_symbol")
    return Invoice(
        id=str(record["id"]),
        invoice_number=str(record["invoice_number"]),
        company_id=str(record["company_id"]),
        total_amount=total,
        currency=normalize_currency(record.get("currency"), default_currency),
        customer_name=record.get("customer_name"),
        variable_symbol=str(vs) if vs is not None else None,
        paid_amount=paid,
        status=invoice_status(paid, total),
        issue_date=parse_value_date(record.get("issue_date")),
        due_date=parse_value_date(record.get("due_date")),
    )


def load_invoices(repo: Repository, source: Path | str | list[dict]) -> int:
    """Upsert invoices from a YAML file (``invoices:`` list) or a list of dicts.

    Returns the number of invoices written.
    """
    if isinstance(source, list):
        records = source
    else:
        path = Path(source)
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        records = (data or {}).get("invoices", []) if isinstance(data, dict) else (data or [])

    invoices = [invoice_from_record(r) for r in records]
    with repo.transaction():
        for inv in invoices:
            repo.upsert_invoice(inv)
    logger.info("Loaded %d invoice(s)", len(invoices))
    return len(invoices)
