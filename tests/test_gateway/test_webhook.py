"""Tests for the webhook gateway: ingestion, idempotency, failures, reprocess."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
from pathlib import Path

import pytest

from paymatch.config import Config
from paymatch.database.models import PAID, InboundMessage, Invoice
from paymatch.database.repository import Repository
from paymatch.errors import ExtractionFailure, NotFound, UnknownAccount, ValidationError
from paymatch.extraction.base import BaseExtractor
from paymatch.extraction.extractor import TransactionExtractor
from paymatch.extraction.regex_parser import RegexExtractor
from paymatch.gateway.webhook import (
    FAILED,
    PROCESSED,
    WebhookDelivery,
    WebhookGateway,
    compose_email_text,
    compute_delivery_key,
    verify_signature,
)
from paymatch.invoices import SqliteInvoiceStore, load_invoices
from paymatch.ledger import MatchLedger
from tests.conftest import FIXTURE_CONFIG_DIR

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "paymatch" / "database" / "migrations"
FIXTURE_INVOICES = Path(__file__).parent.parent / "fixtures" / "invoices.yaml"

MAIN_ADDRESS = "bank.219819.b7a9415jfb@doklad.ai"


class _Failing(BaseExtractor):
    name = "claude"

    def extract(self, text, account=None):
        raise ExtractionFailure("model unavailable")


class _Hanging(BaseExtractor):
    name = "claude"

    def __init__(self):
        self.release = threading.Event()

    def extract(self, text, account=None):
        self.release.wait(5)
        return []


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    load_invoices(r, FIXTURE_INVOICES)
    yield r
    r.close()


@pytest.fixture
def make_gateway(repo):
    config = Config(FIXTURE_CONFIG_DIR)
    extractors = []

    def build(*chain, timeout_seconds=5):
        ex = TransactionExtractor(list(chain) or [RegexExtractor()], timeout_seconds=timeout_seconds)
        extractors.append(ex)
        ledger = MatchLedger(repo, SqliteInvoiceStore(repo))
        return WebhookGateway(repo, config, ex, ledger)

    yield build
    for ex in extractors:
        ex.close()


@pytest.fixture
def gateway(make_gateway):
    return make_gateway()


def _payload(**kw) -> dict:
    payload = {
        "from": "notifikace@bank.cz",
        "to": MAIN_ADDRESS,
        "subject": "Příchozí platba",
        "body": "25000 CZK, VS 2025001, from Firma ABC",
        "timestamp": "2025-01-15T10:00:00Z",
    }
    payload.update(kw)
    return payload


def _message_count(repo) -> int:
    return repo.conn.execute("SELECT COUNT(*) FROM inbound_messages").fetchone()[0]


def _transaction_count(repo) -> int:
    return repo.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]


class TestFromPayload:
    def test_valid(self):
        d = WebhookDelivery.from_payload(_payload(), delivery_id="abc")
        assert d.recipient == MAIN_ADDRESS
        assert d.received_at == "2025-01-15T10:00:00Z"
        assert d.delivery_id == "abc"

    def test_message_id_used_as_delivery_id(self):
        assert WebhookDelivery.from_payload(_payload(messageId="m-1")).delivery_id == "m-1"

    def test_missing_timestamp_uses_now(self):
        payload = _payload()
        del payload["timestamp"]
        d = WebhookDelivery.from_payload(payload)
        assert d.timestamp is None
        assert d.received_at

    @pytest.mark.parametrize("payload", [
        None,
        [],
        {"from": "a", "to": "b"},
        {"from": "a", "to": "b", "body": 12},
        {"from": "a", "to": "b", "body": "x", "attachments": "nope"},
        {"from": "a", "to": "b", "body": "x", "timestamp": "yesterday"},
    ])
    def test_invalid(self, payload):
        with pytest.raises(ValidationError):
            WebhookDelivery.from_payload(payload)


class TestDeliveryKey:
    def test_stable_and_case_insensitive_recipient(self):
        a = compute_delivery_key("x@bank.cz", MAIN_ADDRESS, "S", "2025-01-15")
        b = compute_delivery_key("X@bank.cz", MAIN_ADDRESS.upper(), "S", "2025-01-15")
        assert a == b

    def test_provider_id_wins(self):
        a = compute_delivery_key("x", MAIN_ADDRESS, "S", "t1", "id-1")
        b = compute_delivery_key("y", MAIN_ADDRESS, "T", "t2", "id-1")
        assert a == b

    def test_without_timestamp_body_decides(self):
        a = compute_delivery_key("x", MAIN_ADDRESS, "S", None, body="one")
        b = compute_delivery_key("x", MAIN_ADDRESS, "S", None, body="two")
        assert a != b
        assert a == compute_delivery_key("x", MAIN_ADDRESS, "S", None, body="one")


class TestSignature:
    def _sign(self, body: bytes, secret: str = "s3cret") -> str:
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    def test_valid(self):
        body = b'{"a": 1}'
        assert verify_signature(body, self._sign(body), "s3cret")
        assert verify_signature(body, "sha256=" + self._sign(body), "s3cret")

    def test_invalid(self):
        body = b'{"a": 1}'
        assert not verify_signature(body, self._sign(body, "other"), "s3cret")
        assert not verify_signature(body, None, "s3cret")
        assert not verify_signature(body + b" ", self._sign(body), "s3cret")


class TestComposeText:
    def test_text_attachments_appended(self):
        atts = [
            {"filename": "vypis.csv", "content": "datum;castka\n15.01.2025;100", "contentType": "text/csv"},
            {"filename": "logo.png", "content": "AAAA", "contentType": "image/png"},
            {"filename": "note.txt", "encoding": "base64",
             "content": base64.b64encode("VS 42".encode()).decode()},
        ]
        msg = InboundMessage("k", "a@b", MAIN_ADDRESS, "S", "body", "2025-01-15",
                             attachments=json.dumps(atts))
        text = compose_email_text(msg)
        assert "--- Attachment: vypis.csv ---" in text
        assert "logo.png" not in text
        assert "VS 42" in text
        assert "vypis.csv" not in compose_email_text(msg, include_attachments=False)


class TestIngest:
    def test_exact_reference_matched(self, repo, gateway):
        result = gateway.ingest(WebhookDelivery.from_payload(_payload()))
        assert result.success is True
        assert (result.processed, result.matched, result.review) == (1, 1, 0)
        assert result.duplicate is False
        assert repo.get_invoice("9001").status == PAID
        msg = repo.get_message(result.message_id)
        assert msg.status == PROCESSED
        assert msg.matched_count == 1

    def test_redelivery_is_duplicate(self, repo, gateway):
        first = gateway.ingest(WebhookDelivery.from_payload(_payload()))
        second = gateway.ingest(WebhookDelivery.from_payload(_payload()))
        assert second.duplicate is True
        assert second.message_id == first.message_id
        assert second.matched == 1
        assert _transaction_count(repo) == 1
        assert len(repo.get_matches_by_invoice("9001")) == 1

    def test_same_payment_in_second_email_not_stored_twice(self, repo, gateway):
        gateway.ingest(WebhookDelivery.from_payload(_payload()))
        other = gateway.ingest(WebhookDelivery.from_payload(
            _payload(subject="Výpis", timestamp="2025-01-15T18:00:00Z"),
        ))
        assert other.duplicate is False
        assert other.processed == 0
        assert _transaction_count(repo) == 1

    def test_ambiguous_amount_goes_to_review(self, repo, gateway):
        repo.upsert_invoice(Invoice("9101", "FV-101", "100", 1500000, "CZK"))
        repo.upsert_invoice(Invoice("9102", "FV-102", "100", 1500000, "CZK"))
        result = gateway.ingest(WebhookDelivery.from_payload(
            _payload(body="Připsána platba 15 000,00 CZK"),
        ))
        assert (result.processed, result.matched, result.review) == (1, 0, 1)
        suggestions = repo.get_open_suggestions()
        assert {s.invoice_id for s in suggestions} == {"9101", "9102"}
        assert repo.get_matches_by_invoice("9101") == []

    def test_no_payment_in_email(self, repo, gateway):
        result = gateway.ingest(WebhookDelivery.from_payload(_payload(body="Dobrý den, děkujeme.")))
        assert result.success is True
        assert result.processed == 0
        assert repo.get_message(result.message_id).status == PROCESSED

    def test_unknown_account_records_nothing(self, repo, gateway):
        with pytest.raises(UnknownAccount):
            gateway.ingest(WebhookDelivery.from_payload(_payload(to="bank.1.nobody@doklad.ai")))
        assert _message_count(repo) == 0

    def test_inactive_account(self, repo, gateway):
        with pytest.raises(UnknownAccount):
            gateway.ingest(WebhookDelivery.from_payload(_payload(to="bank.777001.q1w2e3r4t5@doklad.ai")))
        assert _message_count(repo) == 0

    def test_other_company_invoices_untouched(self, repo, gateway):
        result = gateway.ingest(WebhookDelivery.from_payload(
            _payload(to="bank.555001.zz11yy22xx@doklad.ai"),
        ))
        assert result.processed == 1
        assert result.matched == 0
        assert repo.get_invoice("9001").paid_amount == 0


class TestFailures:
    def test_extraction_failure_marks_failed(self, repo, make_gateway):
        gateway = make_gateway(_Failing())
        result = gateway.ingest(WebhookDelivery.from_payload(_payload()))
        assert result.success is False
        assert result.status == FAILED
        msg = repo.get_message(result.message_id)
        assert msg.status == FAILED
        assert "model unavailable" in msg.error_message
        assert _transaction_count(repo) == 0

    def test_timeout_then_reprocess(self, repo, make_gateway):
        hanging = _Hanging()
        slow = make_gateway(hanging, timeout_seconds=0.1)
        failed = slow.ingest(WebhookDelivery.from_payload(_payload()))
        hanging.release.set()
        assert failed.status == FAILED
        assert "timed out" in failed.errors[0]

        result = make_gateway().reprocess(failed.message_id)
        assert result.success is True
        assert result.matched == 1
        assert repo.get_message(failed.message_id).status == PROCESSED

    def test_redelivery_of_failed_message_runs_again(self, repo, make_gateway):
        failed = make_gateway(_Failing()).ingest(WebhookDelivery.from_payload(_payload()))
        result = make_gateway().ingest(WebhookDelivery.from_payload(_payload()))
        assert result.message_id == failed.message_id
        assert result.duplicate is False
        assert result.matched == 1

    def test_reprocess_processed_returns_stored_result(self, gateway):
        first = gateway.ingest(WebhookDelivery.from_payload(_payload()))
        again = gateway.reprocess(first.message_id)
        assert again.duplicate is True
        assert again.matched == 1

    def test_reprocess_unknown_message(self, gateway):
        with pytest.raises(NotFound):
            gateway.reprocess("nope")

    def test_reprocess_failed_batch(self, repo, make_gateway):
        make_gateway(_Failing()).ingest(WebhookDelivery.from_payload(_payload()))
        results = make_gateway().reprocess_failed()
        assert [r.matched for r in results] == [1]
        assert repo.get_messages_by_status(FAILED) == []


class TestProcessEmail:
    def test_explicit_account(self, repo, gateway):
        result = gateway.process_email("acct-main", "25000 CZK, VS 2025001, from Firma ABC")
        assert result.matched == 1
        assert repo.get_message(result.message_id).sender == "manual"

    def test_each_call_is_new_delivery(self, gateway):
        first = gateway.process_email("acct-main", "Platba 100 CZK VS 5")
        second = gateway.process_email("acct-main", "Platba 100 CZK VS 5")
        assert first.message_id != second.message_id
        assert second.duplicate is False
        assert second.processed == 0

    def test_unknown_or_inactive_account(self, gateway):
        with pytest.raises(UnknownAccount):
            gateway.process_email("nope", "Platba 100 CZK")
        with pytest.raises(UnknownAccount):
            gateway.process_email("acct-closed", "Platba 100 CZK")

    def test_empty_body(self, gateway):
        with pytest.raises(ValidationError):
            gateway.process_email("acct-main", "   ")
