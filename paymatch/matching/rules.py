"""Individual matching rules and the text normalization they share.

Each rule looks at one (transaction, invoice) pair and returns a RuleHit
or None. Rules never look at other invoices; ambiguity and ranking are
the engine's job. All amounts are integer minor units.

Rules, highest precedence first:
1. exact_reference      variable symbol equals the invoice reference
2. fuzzy_reference      payment note contains the invoice number
3. amount_counterparty  amount equal within tolerance and payer name similar
4. amount_only          amount equal within tolerance
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from difflib import SequenceMatcher

from paymatch.database.models import Transaction
from paymatch.extraction.base import to_minor
from paymatch.invoices import OpenInvoice

EXACT_REFERENCE = "exact_reference"
FUZZY_REFERENCE = "fuzzy_reference"
AMOUNT_COUNTERPARTY = "amount_counterparty"
AMOUNT_ONLY = "amount_only"

_LEGAL_SUFFIXES = re.compile(
    r"\b(s\s?r\s?o|spol|a\s?s|v\s?o\s?s|k\s?s|z\s?s|o\s?p\s?s|se|gmbh|ltd|inc|llc|plc)\b"
)


@dataclass
class MatchingSettings:
    """Thresholds and per-rule confidences (tolerance in minor units)."""
    amount_tolerance: int = 0
    auto_accept_threshold: float = 0.8
    review_threshold: float = 0.5
    name_similarity_threshold: float = 0.85
    invoice_number_pattern: re.Pattern = field(
        default_factory=lambda: re.compile(r"\b\d{4,10}\b")
    )
    confidence: dict = field(default_factory=lambda: {
        EXACT_REFERENCE: 1.0,
        FUZZY_REFERENCE: 0.85,
        AMOUNT_COUNTERPARTY: 0.7,
        AMOUNT_ONLY: 0.5,
    })

    @classmethod
    def from_config(cls, config, account=None) -> MatchingSettings:
        """Build settings from rules.yaml; an account tolerance overrides the global one."""
        m = config.matching
        tolerance = m["amount_tolerance"]
        if account is not None and getattr(account, "amount_tolerance", None) is not None:
            tolerance = account.amount_tolerance
        return cls(
            amount_tolerance=abs(to_minor(tolerance or 0)),
            auto_accept_threshold=float(m["auto_accept_threshold"]),
            review_threshold=float(m["review_threshold"]),
            name_similarity_threshold=float(m["name_similarity_threshold"]),
            invoice_number_pattern=re.compile(m["invoice_number_pattern"]),
            confidence={k: float(v) for k, v in m["confidence"].items()},
        )


@dataclass
class RuleHit:
    rule: str
    confidence: float
    applied_amount: int
    settles: bool  # invoice is covered (within tolerance) by this payment


# ── Normalization ─────────────────────────────────────────


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_name(name: str | None) -> str:
    """Case-, diacritics- and legal-form-insensitive company/person name.

    "Firma ABC s.r.o." -> "firma abc"
    """
    if not name:
        return ""
    s = strip_diacritics(name).lower()
    s = re.sub(r"[^\w\s]", " ", s)
    s = _LEGAL_SUFFIXES.sub(" ", s)
    return re.sub(r"\s+", " ", s).strip()


def name_similarity(a: str | None, b: str | None) -> float:
    """1.0 when one normalized name contains the other, else a ratio in [0, 1]."""
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    shorter, longer = sorted((na, nb), key=len)
    if len(shorter) >= 3 and re.search(rf"\b{re.escape(shorter)}\b", longer):
        return 1.0
    return SequenceMatcher(None, na, nb).ratio()


def normalize_reference(value: str | None) -> str:
    """Digits only, leading zeros dropped: "VS 002025001" -> "2025001"."""
    if not value:
        return ""
    return re.sub(r"\D", "", str(value)).lstrip("0")


def reference_tokens(text: str | None, pattern: re.Pattern) -> set[str]:
    """Invoice-number-like tokens in a free-text note, normalized."""
    if not text:
        return set()
    tokens = set()
    for m in pattern.finditer(text):
        ref = normalize_reference(m.group(0))
        if ref:
            tokens.add(ref)
    return tokens


def invoice_references(inv: OpenInvoice) -> set[str]:
    """Reference codes a payer may quote for an invoice."""
    refs = {normalize_reference(inv.variable_symbol), normalize_reference(inv.invoice_number)}
    refs.discard("")
    return refs


# ── Amount handling ───────────────────────────────────────


def amounts_equal(a: int, b: int, tolerance: int) -> bool:
    return abs(a - b) <= tolerance


def _reference_amount(remaining: int, inv: OpenInvoice, tolerance: int) -> tuple[int, bool]:
    """Applied amount for a reference match: the lesser of both sides.

    The invoice is settled when the payment covers it within tolerance.
    """
    applied = min(remaining, inv.outstanding_amount)
    settles = remaining >= inv.outstanding_amount or amounts_equal(
        remaining, inv.outstanding_amount, tolerance
    )
    return applied, settles


# ── Rules ─────────────────────────────────────────────────


def exact_reference(
    txn: Transaction, inv: OpenInvoice, remaining: int, settings: MatchingSettings,
) -> RuleHit | None:
    vs = normalize_reference(txn.variable_symbol)
    if not vs or txn.currency != inv.currency:
        return None
    if vs not in invoice_references(inv):
        return None
    applied, settles = _reference_amount(remaining, inv, settings.amount_tolerance)
    return RuleHit(EXACT_REFERENCE, settings.confidence[EXACT_REFERENCE], applied, settles)


def fuzzy_reference(
    txn: Transaction, inv: OpenInvoice, remaining: int, settings: MatchingSettings,
) -> RuleHit | None:
    note = txn.reference_text
    if not note or txn.currency != inv.currency:
        return None
    found = bool(reference_tokens(note, settings.invoice_number_pattern) & invoice_references(inv))
    if not found and len(inv.invoice_number) >= 4 and not inv.invoice_number.isdigit():
        # Alphanumeric numbers like FV-2025-001 quoted verbatim
        found = inv.invoice_number.lower() in note.lower()
    if not found:
        return None
    applied, settles = _reference_amount(remaining, inv, settings.amount_tolerance)
    return RuleHit(FUZZY_REFERENCE, settings.confidence[FUZZY_REFERENCE], applied, settles)


def amount_counterparty(
    txn: Transaction, inv: OpenInvoice, remaining: int, settings: MatchingSettings,
) -> RuleHit | None:
    if txn.currency != inv.currency:
        return None
    if not amounts_equal(remaining, inv.outstanding_amount, settings.amount_tolerance):
        return None
    similarity = name_similarity(txn.counterparty_name, inv.counterparty_name)
    if similarity < settings.name_similarity_threshold:
        return None
    return RuleHit(
        AMOUNT_COUNTERPARTY, settings.confidence[AMOUNT_COUNTERPARTY],
        min(remaining, inv.outstanding_amount), True,
    )


def amount_only(
    txn: Transaction, inv: OpenInvoice, remaining: int, settings: MatchingSettings,
) -> RuleHit | None:
    if txn.currency != inv.currency:
        return None
    if not amounts_equal(remaining, inv.outstanding_amount, settings.amount_tolerance):
        return None
    return RuleHit(
        AMOUNT_ONLY, settings.confidence[AMOUNT_ONLY],
        min(remaining, inv.outstanding_amount), True,
    )


# Rules 1-3 are evaluated per invoice; amount_only only when none of them fired
PRIMARY_RULES = (exact_reference, fuzzy_reference, amount_counterparty)
