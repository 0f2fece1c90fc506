"""Matching engine: ranks open invoices for one transaction and decides.

Pure and deterministic: no I/O, and the result does not depend on the
order of the invoice list.

Ranking (best first):
  1. confidences of the rules that fired for the invoice, highest first,
     compared as a sequence (an invoice hit by two rules beats one hit by
     only the stronger of them)
  2. |due_date - value_date| in days, closest first
  3. invoice id, numeric ids compared as numbers

Decision:
  top >= auto_accept_threshold, unique at the top   -> accept
  top >= review_threshold (or a tie at the top)     -> review
  otherwise                                          -> none
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from paymatch.database.models import Transaction
from paymatch.invoices import OpenInvoice
from paymatch.matching.rules import (
    PRIMARY_RULES,
    MatchingSettings,
    RuleHit,
    amount_only,
)

logger = logging.getLogger(__name__)

ACCEPT = "accept"
REVIEW = "review"
NONE = "none"

AMBIGUOUS = "ambiguous"
LOW_CONFIDENCE = "low_confidence"
NO_CANDIDATES = "no_candidates"

_FAR_AWAY = 10 ** 6


@dataclass
class MatchCandidate:
    invoice: OpenInvoice
    hits: list[RuleHit]

    @property
    def confidence(self) -> float:
        return self.hits[0].confidence

    @property
    def score(self) -> tuple[float, ...]:
        return tuple(h.confidence for h in self.hits)

    @property
    def rule(self) -> str:
        return self.hits[0].rule

    @property
    def applied_amount(self) -> int:
        return self.hits[0].applied_amount

    @property
    def settles(self) -> bool:
        return self.hits[0].settles


@dataclass
class MatchDecision:
    action: str
    best: MatchCandidate | None = None
    candidates: list[MatchCandidate] = field(default_factory=list)
    ambiguous: bool = False
    reason: str | None = None

    @property
    def suggestions(self) -> list[MatchCandidate]:
        """Candidates to put in front of a reviewer."""
        if self.action != REVIEW:
            return []
        if self.ambiguous:
            top = self.candidates[0].score
            return [c for c in self.candidates if c.score == top]
        return self.candidates[:1]


def _days_between(a: str | None, b: str | None) -> int:
    if not a or not b:
        return _FAR_AWAY
    try:
        return abs((date.fromisoformat(a[:10]) - date.fromisoformat(b[:10])).days)
    except ValueError:
        return _FAR_AWAY


def _id_key(invoice_id: str) -> tuple:
    s = str(invoice_id)
    return (0, int(s), s) if s.isdigit() else (1, 0, s)


class MatchingEngine:
    """Rule cascade over a company's open invoices."""

    def __init__(self, settings: MatchingSettings | None = None):
        self.settings = settings or MatchingSettings()

    def match(
        self,
        txn: Transaction,
        open_invoices: list[OpenInvoice],
        company_id: str | None = None,
        remaining: int | None = None,
    ) -> MatchDecision:
        """Decide what to do with one transaction.

        Args:
            txn: The transaction to match.
            open_invoices: Candidate invoices; invoices of other companies,
                and invoices with nothing outstanding, are ignored.
            company_id: Owning company, defaults to the transaction's.
            remaining: Unapplied part of the transaction, defaults to its
                full amount.
        """
        company_id = str(company_id if company_id is not None else txn.company_id)
        remaining = txn.amount if remaining is None else remaining
        if remaining <= 0:
            return MatchDecision(NONE, reason=NO_CANDIDATES)

        invoices = [
            inv for inv in open_invoices
            if str(inv.company_id) == company_id and inv.outstanding_amount > 0
        ]

        candidates: list[MatchCandidate] = []
        for inv in invoices:
            hits = [h for h in (rule(txn, inv, remaining, self.settings) for rule in PRIMARY_RULES) if h]
            if hits:
                candidates.append(MatchCandidate(inv, self._sorted_hits(hits)))

        if not candidates:
            for inv in invoices:
                hit = amount_only(txn, inv, remaining, self.settings)
                if hit:
                    candidates.append(MatchCandidate(inv, [hit]))

        if not candidates:
            return MatchDecision(NONE, reason=NO_CANDIDATES)

        candidates.sort(key=lambda c: self._rank_key(c, txn))
        return self._decide(candidates)

    @staticmethod
    def _sorted_hits(hits: list[RuleHit]) -> list[RuleHit]:
        return sorted(hits, key=lambda h: -h.confidence)

    @staticmethod
    def _rank_key(cand: MatchCandidate, txn: Transaction) -> tuple:
        return (
            # trailing 0 sorts a candidate with an extra hit ahead of its prefix
            tuple(-h.confidence for h in cand.hits) + (0,),
            _days_between(cand.invoice.due_date, txn.value_date),
            _id_key(cand.invoice.id),
        )

    def _decide(self, candidates: list[MatchCandidate]) -> MatchDecision:
        best = candidates[0]
        top = best.confidence
        tied = sum(1 for c in candidates if c.score == best.score)
        ambiguous = tied > 1

        if top < self.settings.review_threshold:
            return MatchDecision(NONE, candidates=candidates, reason=LOW_CONFIDENCE)
        if ambiguous:
            return MatchDecision(
                REVIEW, best=best, candidates=candidates, ambiguous=True, reason=AMBIGUOUS,
            )
        if top >= self.settings.auto_accept_threshold:
            return MatchDecision(ACCEPT, best=best, candidates=candidates)
        return MatchDecision(REVIEW, best=best, candidates=candidates, reason=LOW_CONFIDENCE)
