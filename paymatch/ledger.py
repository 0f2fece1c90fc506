"""Match ledger: the only writer of matches, suggestions and audit rows.

Conservation is enforced here for both the automatic and the manual path:

    sum(match.amount for a transaction) <= transaction.amount
    sum(match.amount for an invoice)    <= invoice.total_amount

Mutations touching an invoice are serialized by a per-invoice lock and run
in one database transaction that re-reads both sides, so two concurrent
payments can never both see the same stale outstanding amount. The invoice
collaborator is notified inside that transaction; if it refuses, nothing is
written.
"""

from __future__ import annotations

import logging
import threading

from paymatch.database.models import (
    MATCHED,
    PARTIALLY_MATCHED,
    UNMATCHED,
    AuditEntry,
    Match,
    MatchSuggestion,
)
from paymatch.database.repository import Repository
from paymatch.errors import (
    AmountExceedsInvoiceTotal,
    AmountExceedsOutstanding,
    AmountExceedsTransaction,
    CurrencyMismatch,
    InvoiceNotFound,
    TransactionNotFound,
    ValidationError,
)
from paymatch.invoices import InvoiceStore

logger = logging.getLogger(__name__)

AUTO = "auto"
MANUAL = "manual"
SYSTEM_ACTOR = "system"


def match_status_for(applied: int, amount: int) -> str:
    if applied <= 0:
        return UNMATCHED
    if applied >= amount:
        return MATCHED
    return PARTIALLY_MATCHED


class MatchLedger:
    def __init__(self, repo: Repository, invoice_store: InvoiceStore):
        self.repo = repo
        self.invoice_store = invoice_store
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def invoice_lock(self, invoice_id: str) -> threading.Lock:
        """The lock serializing all ledger work on one invoice."""
        key = str(invoice_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    # ── Apply ───────────────────────────────────────────────

    def apply_match(
        self,
        transaction_id: str,
        invoice_id: str,
        amount: int,
        confidence: float,
        rule: str | None = None,
        source: str = AUTO,
        actor: str = SYSTEM_ACTOR,
        settle: bool = False,
    ) -> Match:
        """Record a match and notify the invoice collaborator.

        Raises:
            ValidationError: Non-positive amount.
            CurrencyMismatch: Transaction and invoice currencies differ.
            TransactionNotFound / InvoiceNotFound: Unknown ids.
            AmountExceedsTransaction: More than the transaction has left.
            AmountExceedsInvoiceTotal: Ledger sum would pass the invoice total.
            AmountExceedsOutstanding: More than the invoice has outstanding.
        """
        if amount <= 0:
            raise ValidationError(f"Applied amount must be positive, got {amount}")

        with self.invoice_lock(invoice_id), self.repo.transaction():
            txn = self.repo.get_transaction(transaction_id)
            if txn is None:
                raise TransactionNotFound(transaction_id)
            inv = self.invoice_store.get_invoice(invoice_id)
            if inv is None:
                raise InvoiceNotFound(invoice_id)
            if txn.currency != inv.currency:
                raise CurrencyMismatch(txn.currency, inv.currency)

            txn_applied = self.repo.sum_applied_for_transaction(txn.id)
            txn_remaining = txn.amount - txn_applied
            if amount > txn_remaining:
                raise AmountExceedsTransaction(amount, max(txn_remaining, 0))

            ledger_remaining = inv.total_amount - self.repo.sum_applied_for_invoice(inv.id)
            if amount > ledger_remaining:
                raise AmountExceedsInvoiceTotal(amount, max(ledger_remaining, 0))
            if amount > inv.outstanding_amount:
                raise AmountExceedsOutstanding(amount, inv.outstanding_amount)

            match = self.repo.insert_match(Match(
                transaction_id=txn.id,
                invoice_id=inv.id,
                amount=amount,
                confidence=confidence,
                source=source,
                rule=rule,
                created_by=actor,
            ))
            status = match_status_for(txn_applied + amount, txn.amount)
            self.repo.update_match_status(txn.id, status)
            if status == MATCHED:
                self.repo.close_suggestions(txn.id, "resolved", actor)
            else:
                self.repo.close_suggestions(txn.id, "resolved", actor, invoice_id=inv.id)
            self.repo.insert_audit(AuditEntry(
                action=f"{source}_match",
                actor=actor,
                match_id=match.id,
                transaction_id=txn.id,
                invoice_id=inv.id,
                amount=amount,
            ))
            self.invoice_store.apply_payment(inv.id, amount, settle=settle)

        logger.info(
            "%s match %s: transaction %s -> invoice %s (%d, confidence %.2f)",
            source.capitalize(), match.id, txn.id, inv.invoice_number, amount, confidence,
        )
        return match

    # ── Unmatch ─────────────────────────────────────────────

    def unmatch(self, match_id: str, actor: str = SYSTEM_ACTOR) -> bool:
        """Remove a match and reopen the invoice amount.

        Idempotent: returns False when the match no longer exists.
        """
        match = self.repo.get_match(match_id)
        if match is None:
            logger.info("Unmatch %s: already removed", match_id)
            return False

        with self.invoice_lock(match.invoice_id), self.repo.transaction():
            match = self.repo.get_match(match_id)
            if match is None:
                return False
            self.repo.delete_match(match.id)
            txn = self.repo.get_transaction(match.transaction_id)
            applied = self.repo.sum_applied_for_transaction(txn.id)
            self.repo.update_match_status(txn.id, match_status_for(applied, txn.amount))
            self.repo.insert_audit(AuditEntry(
                action="unmatch",
                actor=actor,
                match_id=match.id,
                transaction_id=match.transaction_id,
                invoice_id=match.invoice_id,
                amount=match.amount,
            ))
            self.invoice_store.reverse_payment(match.invoice_id, match.amount)

        logger.info("Unmatched %s (transaction %s, invoice %s) by %s",
                    match.id, match.transaction_id, match.invoice_id, actor)
        return True

    # ── Review queue ────────────────────────────────────────

    def record_suggestions(self, transaction_id: str, candidates, reason: str) -> list[MatchSuggestion]:
        """Queue candidate invoices for a human decision. Nothing is applied."""
        saved: list[MatchSuggestion] = []
        with self.repo.transaction():
            for cand in candidates:
                saved.append(self.repo.upsert_suggestion(MatchSuggestion(
                    transaction_id=transaction_id,
                    invoice_id=cand.invoice.id,
                    confidence=cand.confidence,
                    rule=cand.rule,
                    reason=reason,
                )))
        if saved:
            logger.info("Transaction %s queued for review (%s, %d candidate(s))",
                        transaction_id, reason, len(saved))
        return saved
