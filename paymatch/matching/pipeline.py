"""Matching pipeline: engine decision -> ledger effect for one transaction.

accept  -> Match written through the ledger, invoice notified
review  -> suggestions queued, transaction stays unmatched
none    -> nothing recorded
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from paymatch.database.models import Match, MatchSuggestion, Transaction
from paymatch.errors import AmountExceedsOutstanding
from paymatch.ledger import AUTO, MatchLedger
from paymatch.matching.engine import ACCEPT, NONE, REVIEW, MatchingEngine

logger = logging.getLogger(__name__)

# Review reason when the ledger refused an automatic match
CONFLICT = "conflict"


@dataclass
class MatchOutcome:
    """What happened to one transaction."""
    transaction_id: str
    action: str  # accept, review, none
    match: Match | None = None
    suggestions: list[MatchSuggestion] = field(default_factory=list)
    reason: str | None = None


def match_transaction(
    txn: Transaction,
    ledger: MatchLedger,
    engine: MatchingEngine,
) -> MatchOutcome:
    """Match one stored transaction against its company's open invoices."""
    remaining = txn.amount - ledger.repo.sum_applied_for_transaction(txn.id)
    if remaining <= 0:
        return MatchOutcome(txn.id, NONE, reason="fully_matched")

    invoices = ledger.invoice_store.open_invoices(txn.company_id)
    decision = engine.match(txn, invoices, txn.company_id, remaining)

    if decision.action == ACCEPT:
        best = decision.best
        try:
            match = ledger.apply_match(
                txn.id, best.invoice.id, best.applied_amount, best.confidence,
                rule=best.rule, source=AUTO, settle=best.settles,
            )
        except AmountExceedsOutstanding as e:
            # Another payment got to the invoice first
            logger.warning(
                "Auto-match of transaction %s to invoice %s refused: %s",
                txn.id, best.invoice.invoice_number, e,
            )
            suggestions = ledger.record_suggestions(txn.id, [best], CONFLICT)
            return MatchOutcome(txn.id, REVIEW, suggestions=suggestions, reason=CONFLICT)
        return MatchOutcome(txn.id, ACCEPT, match=match, reason=best.rule)

    if decision.action == REVIEW:
        suggestions = ledger.record_suggestions(txn.id, decision.suggestions, decision.reason)
        return MatchOutcome(txn.id, REVIEW, suggestions=suggestions, reason=decision.reason)

    logger.debug("No match for transaction %s (%s)", txn.id, decision.reason)
    return MatchOutcome(txn.id, NONE, reason=decision.reason)
