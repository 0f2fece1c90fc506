"""Deterministic parser for Czech/English bank payment notifications.

Works on the plain text of one email. Every line that carries an amount
with a currency starts a payment block; the lines that follow (up to the
next blank line or the next amount line) are attached to that block and
searched for the date, symbols, counterparty and message. This covers both
single-payment notices:

    Připsána platba 25 000,00 CZK, VS 2025001, od Firma ABC

and statement digests:

    PŘÍCHOZÍ PLATBY:
    15.01.2025  25 000,00 CZK
    VS: 2025001  KS: 0308
    Protistrana: ABC s.r.o., 123456789/0800
    Popis: Platba faktury 2025001

A section header mentioning ODCHOZÍ / outgoing marks the following
blocks as outgoing payments until the next header.
"""

from __future__ import annotations

import logging
import re

from paymatch.extraction.base import INCOMING, OUTGOING, BaseExtractor

logger = logging.getLogger(__name__)

_AMOUNT_RE = re.compile(
    r"(?<![\w.,/-])(?P<sign>[-+−])?\s?"
    r"(?:(?P<grouped>\d{1,3}(?:[\s.']\d{3})+(?:,\d{1,2})?)"
    r"|(?P<english>\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?)"
    r"|(?P<plain>\d+(?:[.,]\d{1,2})?))"
    r"(?:,-)?\s*(?P<cur>CZK|Kč|Kc|EUR|USD|€)",
    re.IGNORECASE,
)

_DATE_RE = re.compile(
    r"\b(\d{4}-\d{2}-\d{2}|\d{1,2}\.\s?\d{1,2}\.\s?\d{4}|\d{1,2}/\d{1,2}/\d{4})\b"
)

_SYMBOL_RES = {
    "variable_symbol": re.compile(
        r"(?:\bVS\b|\bv\.\s?s\.|variabiln\w*\s+symbol|variable\s+symbol)[:.]?[ \t]*(\d{1,10})\b",
        re.IGNORECASE,
    ),
    "constant_symbol": re.compile(
        r"(?:\bKS\b|konstantn\w*\s+symbol|constant\s+symbol)[:.]?[ \t]*(\d{1,10})\b",
        re.IGNORECASE,
    ),
    "specific_symbol": re.compile(
        r"(?:\bSS\b|specifick\w*\s+symbol|specific\s+symbol)[:.]?[ \t]*(\d{1,10})\b",
        re.IGNORECASE,
    ),
}

_ACCOUNT_RE = re.compile(r"\b(\d{0,6}-?\d{2,10}/\d{4})\b")

_COUNTERPARTY_LABEL_RE = re.compile(
    r"(?:protistrana|plátce|platce|payer|counterparty|odesílatel)\s*:[ \t]*([^\n]+)",
    re.IGNORECASE,
)

_COUNTERPARTY_FROM_RE = re.compile(r"\b(?:from|od)[ \t]+([^,;\n]+)", re.IGNORECASE)

_ACCOUNT_LABEL_RE = re.compile(
    r"(?:z účtu|z uctu|účet|ucet|account)[:\s]+(\d{0,6}-?\d{2,10}/\d{4})",
    re.IGNORECASE,
)

_MESSAGE_RE = re.compile(
    r"(?:popis|zpráva pro příjemce|zprava pro prijemce|zpráva|zprava|note|message|description)"
    r"\s*:[ \t]*([^\n]+)",
    re.IGNORECASE,
)

_BANK_REF_RE = re.compile(
    r"(?:ID transakce|transaction id|ref(?:erence)?\.?\s*(?:no|č)?\.?)\s*:[ \t]*([A-Za-z0-9/-]+)",
    re.IGNORECASE,
)

_HEADER_LINE_RE = re.compile(r"^(from|to|subject|předmět)\s*:", re.IGNORECASE)

_OUTGOING_SECTION_RE = re.compile(r"odchoz|outgoing|debit", re.IGNORECASE)
_INCOMING_SECTION_RE = re.compile(r"přícho|pricho|incoming|credit", re.IGNORECASE)


def _section_direction(line: str) -> str | None:
    if _OUTGOING_SECTION_RE.search(line):
        return OUTGOING
    if _INCOMING_SECTION_RE.search(line):
        return INCOMING
    return None


class RegexExtractor(BaseExtractor):
    """Line-oriented extractor for plain-text bank notifications."""

    name = "regex"

    def extract(self, text: str, account=None) -> list[dict]:
        records: list[dict] = []
        direction = INCOMING
        block: list[str] = []
        block_match: re.Match | None = None
        block_direction = INCOMING

        def flush():
            if block_match is not None:
                records.append(self._parse_block(block, block_match, block_direction))

        for raw_line in (text or "").splitlines():
            line = raw_line.strip()
            if not line:
                flush()
                block, block_match = [], None
                continue
            if _HEADER_LINE_RE.match(line):
                continue

            amount = _AMOUNT_RE.search(line)
            if amount is None:
                section = _section_direction(line)
                if section is not None and (line.endswith(":") or line.isupper()):
                    flush()
                    block, block_match = [], None
                    direction = section
                    continue
                if block_match is not None:
                    block.append(line)
                continue

            flush()
            block, block_match = [line], amount
            block_direction = direction
        flush()

        logger.debug("Regex extractor found %d payment line(s)", len(records))
        return records

    @staticmethod
    def _parse_block(lines: list[str], amount: re.Match, direction: str) -> dict:
        text = "\n".join(lines)
        sign = amount.group("sign") or ""
        if sign in ("-", "−"):
            direction = OUTGOING

        if amount.group("grouped"):
            # 25 000,00 / 25.000,00: drop the group separators, keep the decimal comma
            number = re.sub(r"[\s.']", "", amount.group("grouped"))
        else:
            number = amount.group("english") or amount.group("plain")

        record: dict = {
            "amount": number,
            "currency": amount.group("cur"),
            "direction": direction,
        }

        date = _DATE_RE.search(text)
        if date:
            record["value_date"] = date.group(1)

        for key, pattern in _SYMBOL_RES.items():
            m = pattern.search(text)
            if m:
                record[key] = m.group(1)

        name, account_no = _parse_counterparty(text)
        if name:
            record["counterparty_name"] = name
        if account_no:
            record["counterparty_account"] = account_no

        m = _MESSAGE_RE.search(text)
        if m:
            record["reference_text"] = m.group(1).strip()

        m = _BANK_REF_RE.search(text)
        if m:
            record["bank_reference"] = m.group(1)

        return record


def _parse_counterparty(text: str) -> tuple[str | None, str | None]:
    """Find the payer name and account number in one block."""
    name = None
    account_no = None

    m = _COUNTERPARTY_LABEL_RE.search(text)
    if m:
        value = m.group(1).strip()
        acct = _ACCOUNT_RE.search(value)
        if acct:
            account_no = acct.group(1)
            value = value[: acct.start()] + value[acct.end():]
        name = value.strip(" ,;") or None
    else:
        m = _COUNTERPARTY_FROM_RE.search(text)
        if m:
            value = m.group(1).strip()
            acct = _ACCOUNT_RE.search(value)
            if acct:
                account_no = acct.group(1)
                value = value[: acct.start()]
            name = value.strip(" ,;.") or None

    if account_no is None:
        m = _ACCOUNT_LABEL_RE.search(text)
        if m:
            account_no = m.group(1)
    return name, account_no
