"""Transaction store: content fingerprints and insert-if-absent persistence.

The same real-world payment can arrive several times: a provider retry,
a statement digest repeating an earlier single-payment notice, or a
manual re-run. The fingerprint collapses all of them onto one row.
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass

from paymatch.database.models import Transaction
from paymatch.database.repository import Repository
from paymatch.extraction.base import CandidateTransaction

logger = logging.getLogger(__name__)


def _normalize_note(text: str | None) -> str:
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text)
    text = "".join(c for c in text if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", text).strip().lower()


def _normalize_account(account: str | None) -> str:
    if not account:
        return ""
    return re.sub(r"\s", "", account)


def compute_fingerprint(
    account_id: str,
    amount: int,
    currency: str,
    counterparty_account: str | None,
    value_date: str,
    variable_symbol: str | None = None,
    reference_text: str | None = None,
) -> str:
    """SHA-256 over the fields that identify one real-world payment.

    The reference part is the variable symbol without leading zeros plus
    the case/diacritics/whitespace-normalized note.
    """
    vs = (variable_symbol or "").lstrip("0")
    parts = [
        str(account_id),
        str(int(amount)),
        currency.upper(),
        _normalize_account(counterparty_account),
        value_date,
        vs,
        _normalize_note(reference_text),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


@dataclass
class PersistResult:
    transaction: Transaction
    is_new: bool


class TransactionStore:
    """Durable, deduplicated record of extracted transactions."""

    def __init__(self, repo: Repository):
        self.repo = repo

    def persist(
        self,
        candidate: CandidateTransaction,
        account,
        message_id: str | None = None,
    ) -> PersistResult:
        """Insert the candidate unless its fingerprint is already stored.

        Concurrent calls for the same payment converge on one row: the
        unique fingerprint column decides the winner and the loser fetches
        the stored transaction.
        """
        fingerprint = compute_fingerprint(
            account.id,
            candidate.amount,
            candidate.currency,
            candidate.counterparty_account,
            candidate.value_date,
            candidate.variable_symbol,
            candidate.reference_text,
        )
        txn = Transaction(
            account_id=account.id,
            company_id=account.company_id,
            fingerprint=fingerprint,
            amount=candidate.amount,
            currency=candidate.currency,
            value_date=candidate.value_date,
            message_id=message_id,
            direction=candidate.direction,
            counterparty_name=candidate.counterparty_name,
            counterparty_account=candidate.counterparty_account,
            reference_text=candidate.reference_text,
            variable_symbol=candidate.variable_symbol,
            constant_symbol=candidate.constant_symbol,
            specific_symbol=candidate.specific_symbol,
            bank_reference=candidate.bank_reference,
        )
        if self.repo.insert_transaction_if_absent(txn):
            logger.debug("Stored transaction %s (%s)", txn.id, fingerprint[:12])
            return PersistResult(txn, True)

        existing = self.repo.get_transaction_by_fingerprint(fingerprint)
        logger.info("Duplicate transaction %s, keeping %s", fingerprint[:12], existing.id)
        return PersistResult(existing, False)
