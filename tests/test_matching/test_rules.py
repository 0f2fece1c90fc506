"""Tests for individual matching rules and name/reference normalization."""

import re
from unittest.mock import MagicMock

import pytest

from paymatch.database.models import Transaction
from paymatch.invoices import OpenInvoice
from paymatch.matching.rules import (
    AMOUNT_COUNTERPARTY,
    AMOUNT_ONLY,
    EXACT_REFERENCE,
    FUZZY_REFERENCE,
    MatchingSettings,
    amount_counterparty,
    amount_only,
    exact_reference,
    fuzzy_reference,
    invoice_references,
    name_similarity,
    normalize_name,
    normalize_reference,
    reference_tokens,
)


def _txn(**kw) -> Transaction:
    defaults = dict(
        account_id="acct-main", company_id="100", fingerprint="fp",
        amount=2500000, currency="CZK", value_date="2025-01-15",
    )
    defaults.update(kw)
    return Transaction(**defaults)


def _inv(**kw) -> OpenInvoice:
    defaults = dict(
        id="9001", invoice_number="2025001", company_id="100",
        outstanding_amount=2500000, currency="CZK", total_amount=2500000,
        counterparty_name="Firma ABC s.r.o.", variable_symbol="2025001",
    )
    defaults.update(kw)
    return OpenInvoice(**defaults)


@pytest.fixture
def settings():
    return MatchingSettings()


class TestNormalization:
    def test_normalize_name_strips_legal_form(self):
        assert normalize_name("Firma ABC s.r.o.") == "firma abc"
        assert normalize_name("ACME, a.s.") == "acme"
        assert normalize_name("Příliš Žluťoučký kůň spol. s r.o.") == "prilis zlutoucky kun"

    def test_name_similarity_containment(self):
        assert name_similarity("Firma ABC", "FIRMA ABC s.r.o.") == 1.0
        assert name_similarity("ABC", "Firma ABC") == 1.0

    def test_name_similarity_unrelated(self):
        assert name_similarity("Firma ABC", "Novák Jan") < 0.5
        assert name_similarity(None, "x") == 0.0

    def test_normalize_reference(self):
        assert normalize_reference("VS 002025001") == "2025001"
        assert normalize_reference("FV-2025-001") == "2025001"
        assert normalize_reference(None) == ""

    def test_reference_tokens(self):
        pattern = re.compile(r"\b\d{4,10}\b")
        assert reference_tokens("Platba faktury 2025001 a 12", pattern) == {"2025001"}

    def test_invoice_references(self):
        refs = invoice_references(_inv(invoice_number="FV-2025-001", variable_symbol="0042"))
        assert refs == {"2025001", "42"}


class TestExactReference:
    def test_vs_match_full_amount(self, settings):
        hit = exact_reference(_txn(variable_symbol="2025001"), _inv(), 2500000, settings)
        assert hit.rule == EXACT_REFERENCE
        assert hit.confidence == 1.0
        assert hit.applied_amount == 2500000
        assert hit.settles is True

    def test_leading_zeros(self, settings):
        assert exact_reference(_txn(variable_symbol="0002025001"), _inv(), 2500000, settings)

    def test_partial_payment(self, settings):
        hit = exact_reference(_txn(variable_symbol="2025001", amount=1000000), _inv(), 1000000, settings)
        assert hit.applied_amount == 1000000
        assert hit.settles is False

    def test_overpayment_applies_outstanding(self, settings):
        hit = exact_reference(_txn(variable_symbol="2025001", amount=3000000), _inv(), 3000000, settings)
        assert hit.applied_amount == 2500000
        assert hit.settles is True

    def test_within_tolerance_settles(self):
        settings = MatchingSettings(amount_tolerance=100)
        hit = exact_reference(_txn(variable_symbol="2025001"), _inv(), 2499950, settings)
        assert hit.applied_amount == 2499950
        assert hit.settles is True

    def test_currency_mismatch(self, settings):
        assert exact_reference(_txn(variable_symbol="2025001", currency="EUR"), _inv(), 2500000, settings) is None

    def test_no_vs(self, settings):
        assert exact_reference(_txn(), _inv(), 2500000, settings) is None


class TestFuzzyReference:
    def test_invoice_number_in_note(self, settings):
        txn = _txn(reference_text="Uhrada fa c. 2025001, dekujeme")
        hit = fuzzy_reference(txn, _inv(), 2500000, settings)
        assert hit.rule == FUZZY_REFERENCE
        assert hit.confidence == 0.85

    def test_alphanumeric_number_verbatim(self, settings):
        txn = _txn(reference_text="payment fv-2025-002")
        inv = _inv(invoice_number="FV-2025-002", variable_symbol=None)
        assert fuzzy_reference(txn, inv, 2500000, settings) is not None

    def test_unrelated_note(self, settings):
        assert fuzzy_reference(_txn(reference_text="Nájem leden"), _inv(), 2500000, settings) is None


class TestAmountRules:
    def test_amount_counterparty(self, settings):
        txn = _txn(counterparty_name="FIRMA ABC")
        hit = amount_counterparty(txn, _inv(), 2500000, settings)
        assert hit.rule == AMOUNT_COUNTERPARTY
        assert hit.confidence == 0.7

    def test_amount_counterparty_name_too_different(self, settings):
        txn = _txn(counterparty_name="Novák Jan")
        assert amount_counterparty(txn, _inv(), 2500000, settings) is None

    def test_amount_counterparty_amount_differs(self, settings):
        txn = _txn(counterparty_name="Firma ABC")
        assert amount_counterparty(txn, _inv(), 2400000, settings) is None

    def test_amount_only(self, settings):
        hit = amount_only(_txn(), _inv(), 2500000, settings)
        assert hit.rule == AMOUNT_ONLY
        assert hit.confidence == 0.5

    def test_amount_only_uses_remaining(self, settings):
        assert amount_only(_txn(amount=5000000), _inv(), 2500000, settings) is not None
        assert amount_only(_txn(), _inv(outstanding_amount=1000000), 2500000, settings) is None


class TestSettingsFromConfig:
    def _config(self, **matching):
        config = MagicMock()
        config.matching = {
            "amount_tolerance": 1,
            "auto_accept_threshold": 0.9,
            "review_threshold": 0.4,
            "name_similarity_threshold": 0.8,
            "invoice_number_pattern": r"\d+",
            "confidence": {"exact_reference": 1.0, "fuzzy_reference": 0.8,
                           "amount_counterparty": 0.6, "amount_only": 0.4},
            **matching,
        }
        return config

    def test_tolerance_converted_to_minor(self):
        settings = MatchingSettings.from_config(self._config())
        assert settings.amount_tolerance == 100
        assert settings.auto_accept_threshold == 0.9

    def test_account_tolerance_overrides(self):
        acct = MagicMock(amount_tolerance=0.5)
        assert MatchingSettings.from_config(self._config(), acct).amount_tolerance == 50
