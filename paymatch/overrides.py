"""Manual overrides: a human attaches or detaches matches.

Manual actions go through the same ledger checks as automatic matching
and are recorded with the actor, so statistics can tell them apart.
"""

from __future__ import annotations

import logging

from paymatch.database.models import AuditEntry, Match
from paymatch.database.repository import Repository
from paymatch.errors import (
    AmountExceedsOutstanding,
    AmountExceedsTransaction,
    InvoiceNotFound,
    NotFound,
    TransactionNotFound,
)
from paymatch.ledger import MANUAL, MatchLedger

logger = logging.getLogger(__name__)


class ManualOverrides:
    def __init__(self, ledger: MatchLedger):
        self.ledger = ledger

    @property
    def repo(self) -> Repository:
        return self.ledger.repo

    def manual_match(
        self,
        transaction_id: str,
        invoice_id: str,
        applied_amount: int | None = None,
        actor_id: str = "admin",
    ) -> Match:
        """Attach a transaction to an invoice.

        Without an amount, applies everything both sides have left. An
        explicit amount larger than either side is rejected, never clamped.

        Raises:
            TransactionNotFound / InvoiceNotFound: Unknown ids.
            AmountExceedsTransaction: Transaction already fully applied, or
                the amount exceeds its remainder.
            AmountExceedsOutstanding: Invoice already covered, or the amount
                exceeds its outstanding amount.
        """
        txn = self.repo.get_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFound(transaction_id)
        inv = self.ledger.invoice_store.get_invoice(invoice_id)
        if inv is None:
            raise InvoiceNotFound(invoice_id)

        if applied_amount is None:
            txn_remaining = txn.amount - self.repo.sum_applied_for_transaction(txn.id)
            if txn_remaining <= 0:
                raise AmountExceedsTransaction(txn.amount, 0)
            if inv.outstanding_amount <= 0:
                raise AmountExceedsOutstanding(txn_remaining, 0)
            applied_amount = min(txn_remaining, inv.outstanding_amount)

        match = self.ledger.apply_match(
            txn.id, inv.id, applied_amount, 1.0,
            rule=MANUAL, source=MANUAL, actor=actor_id,
        )
        logger.info("Manual match by %s: %s -> %s", actor_id, txn.id, inv.invoice_number)
        return match

    def unmatch(self, match_id: str, actor_id: str = "admin") -> bool:
        """Detach a match. Unknown or already removed matches are a no-op."""
        return self.ledger.unmatch(match_id, actor_id)

    def dismiss_suggestion(self, suggestion_id: str, actor_id: str = "admin") -> bool:
        """Close a review item without matching.

        Returns False when the suggestion was already resolved or dismissed.
        """
        sug = self.repo.get_suggestion(suggestion_id)
        if sug is None:
            raise NotFound(f"Suggestion not found: {suggestion_id}")
        closed = self.repo.close_suggestion(suggestion_id, "dismissed", actor_id)
        if closed:
            self.repo.insert_audit(AuditEntry(
                action="dismiss_suggestion",
                actor=actor_id,
                transaction_id=sug.transaction_id,
                invoice_id=sug.invoice_id,
            ))
            logger.info("Suggestion %s dismissed by %s", suggestion_id, actor_id)
        return closed
