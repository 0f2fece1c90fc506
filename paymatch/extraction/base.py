"""Base extractor: shared interface, data structures, and normalization helpers."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)

INCOMING = "incoming"
OUTGOING = "outgoing"

_CURRENCY_ALIASES = {
    "KČ": "CZK",
    "KC": "CZK",
    ",-": "CZK",
    "€": "EUR",
    "$": "USD",
}


@dataclass
class CandidateTransaction:
    """One payment extracted from a message, before it becomes durable."""
    amount: int            # minor units, always positive
    currency: str          # ISO 4217
    value_date: str        # YYYY-MM-DD
    direction: str = INCOMING
    counterparty_name: str | None = None
    counterparty_account: str | None = None
    reference_text: str | None = None
    variable_symbol: str | None = None
    constant_symbol: str | None = None
    specific_symbol: str | None = None
    bank_reference: str | None = None


class BaseExtractor(ABC):
    """Abstract base for extraction collaborators.

    Implementations return raw records (dicts with the CandidateTransaction
    keys, amounts in major units) and leave validation to
    normalize_candidate(). They raise ExtractionFailure when the backend is
    unreachable or its output cannot be understood at all.
    """

    name: str = "base"

    @abstractmethod
    def extract(self, text: str, account=None) -> list[dict]:
        """Extract payment records from one message body."""


# ── Amounts ───────────────────────────────────────────────


def to_minor(value) -> int:
    """Convert a major-unit amount to integer minor units.

    Accepts ints, floats, Decimals and bank-formatted strings:
        "25 000,00" -> 2500000
        "1,234.56"  -> 123456
        "1.234,56"  -> 123456
        "1.500"     -> 150000
        "25000"     -> 2500000
        "-1 500"    -> -150000

    Raises:
        ValueError: If the value cannot be read as a number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    if isinstance(value, int):
        return value * 100
    if isinstance(value, float):
        value = Decimal(repr(value))
    elif isinstance(value, str):
        value = _parse_amount_text(value)
    elif not isinstance(value, Decimal):
        raise ValueError(f"Not an amount: {value!r}")
    try:
        return int((value * 100).quantize(Decimal("1")))
    except InvalidOperation as e:
        raise ValueError(f"Not an amount: {value!r}") from e


def _parse_amount_text(text: str) -> Decimal:
    s = re.sub(r"(?i)(czk|kč|kc|eur|usd|,-)", "", text).strip()
    s = re.sub(r"[\s']", "", s)
    if not s:
        raise ValueError(f"Not an amount: {text!r}")
    if "," in s and "." in s:
        # The rightmost separator is the decimal one
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        head, _, tail = s.rpartition(",")
        # 1,234 and 1,234,567 are thousands groups; 25000,50 is a decimal comma
        if len(tail) == 3 and len(head.lstrip("+-")) <= 3 * s.count(","):
            s = s.replace(",", "")
        else:
            s = head.replace(",", "") + "." + tail
    elif s.count(".") > 1:
        s = s.replace(".", "")
    elif "." in s:
        head, _, tail = s.partition(".")
        # 1.500 and 25.000 are dot-grouped thousands, as in Czech statements
        if len(tail) == 3 and 1 <= len(head.lstrip("+-")) <= 3:
            s = head + tail
    try:
        return Decimal(s)
    except InvalidOperation as e:
        raise ValueError(f"Not an amount: {text!r}") from e


def from_minor(amount: int) -> float:
    """Minor units back to a major-unit float for display and JSON."""
    return amount / 100


def normalize_currency(value: str | None, default: str | None = None) -> str | None:
    if not value:
        return default
    code = value.strip().upper()
    code = _CURRENCY_ALIASES.get(code, code)
    if not re.fullmatch(r"[A-Z]{3}", code):
        return default
    return code


# ── Dates ─────────────────────────────────────────────────


def parse_value_date(value) -> str | None:
    """Parse a bank date into ISO YYYY-MM-DD.

    Handles ISO dates and timestamps, 15.01.2025, 15. 1. 2025, 15/01/2025
    and 20250115. Returns None for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = str(value).strip()
    if not s:
        return None

    m = re.match(r"^(\d{4})-(\d{1,2})-(\d{1,2})", s)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    m = re.match(r"^(\d{1,2})\s*[./]\s*(\d{1,2})\s*[./]\s*(\d{4})$", s)
    if m:
        return _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))

    m = re.match(r"^(\d{4})(\d{2})(\d{2})$", s)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    return None


def _safe_date(year: int, month: int, day: int) -> str | None:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


# ── Record validation ─────────────────────────────────────


def _clean_str(value) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _clean_symbol(value) -> str | None:
    s = _clean_str(value)
    if s is None:
        return None
    digits = re.sub(r"\D", "", s)
    return digits or None


def normalize_candidate(
    record: dict,
    default_currency: str = "CZK",
    default_date: str | None = None,
) -> CandidateTransaction | None:
    """Validate one raw extractor record into a CandidateTransaction.

    A negative amount marks an outgoing payment and is stored as its
    absolute value. Returns None for records without a usable amount or
    value date.
    """
    if not isinstance(record, dict):
        return None

    raw_amount = record.get("amount")
    if raw_amount is None or raw_amount == "":
        return None
    try:
        amount = to_minor(raw_amount)
    except ValueError:
        logger.debug("Dropping record with unreadable amount: %r", raw_amount)
        return None
    if amount == 0:
        return None

    direction = str(record.get("direction") or "").strip().lower()
    if direction in ("outgoing", "debit", "out"):
        direction = OUTGOING
    elif amount < 0:
        direction = OUTGOING
    else:
        direction = INCOMING
    amount = abs(amount)

    value_date = parse_value_date(
        record.get("value_date") or record.get("transactionDate") or record.get("date")
    ) or parse_value_date(default_date)
    if value_date is None:
        return None

    currency = normalize_currency(record.get("currency"), default_currency)
    if currency is None:
        return None

    return CandidateTransaction(
        amount=amount,
        currency=currency,
        value_date=value_date,
        direction=direction,
        counterparty_name=_clean_str(
            record.get("counterparty_name") or record.get("counterpartyName")
        ),
        counterparty_account=_clean_str(
            record.get("counterparty_account") or record.get("counterpartyAccount")
        ),
        reference_text=_clean_str(
            record.get("reference_text") or record.get("description")
        ),
        variable_symbol=_clean_symbol(
            record.get("variable_symbol") or record.get("variableSymbol")
        ),
        constant_symbol=_clean_symbol(
            record.get("constant_symbol") or record.get("constantSymbol")
        ),
        specific_symbol=_clean_symbol(
            record.get("specific_symbol") or record.get("specificSymbol")
        ),
        bank_reference=_clean_str(
            record.get("bank_reference") or record.get("bankReference")
        ),
    )
