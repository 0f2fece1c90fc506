"""Tests for Repository CRUD operations."""

import threading
from pathlib import Path

import pytest

from paymatch.database.models import (
    AuditEntry,
    InboundMessage,
    Invoice,
    Match,
    MatchSuggestion,
    Transaction,
)
from paymatch.database.repository import Repository
from paymatch.errors import DuplicateDelivery

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "paymatch" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


def _make_msg(**overrides) -> InboundMessage:
    defaults = dict(
        delivery_key="key-1",
        sender="notify@bank.cz",
        recipient="bank.219819.b7a9415jfb@doklad.ai",
        subject="Příchozí platba",
        body="25000 CZK, VS 2025001",
        received_at="2025-01-15T10:00:00+00:00",
        account_id="acct-main",
    )
    defaults.update(overrides)
    return InboundMessage(**defaults)


def _make_txn(**overrides) -> Transaction:
    defaults = dict(
        account_id="acct-main",
        company_id="100",
        fingerprint="fp-1",
        amount=2500000,
        currency="CZK",
        value_date="2025-01-15",
        variable_symbol="2025001",
    )
    defaults.update(overrides)
    return Transaction(**defaults)


def _make_invoice(**overrides) -> Invoice:
    defaults = dict(
        id="9001",
        invoice_number="2025001",
        company_id="100",
        total_amount=2500000,
        currency="CZK",
        variable_symbol="2025001",
        due_date="2025-01-31",
    )
    defaults.update(overrides)
    return Invoice(**defaults)


# ── Inbound messages ──────────────────────────────────────


class TestMessageCrud:
    def test_insert_and_get(self, repo):
        msg = repo.insert_message(_make_msg())
        found = repo.get_message(msg.id)
        assert found.subject == "Příchozí platba"
        assert found.status == "received"
        assert repo.get_message_by_key("key-1").id == msg.id

    def test_duplicate_key_raises_with_existing_id(self, repo):
        first = repo.insert_message(_make_msg())
        with pytest.raises(DuplicateDelivery) as exc:
            repo.insert_message(_make_msg())
        assert exc.value.existing_message_id == first.id

    def test_update_status_with_counts(self, repo):
        msg = repo.insert_message(_make_msg())
        repo.update_message_status(
            msg.id, "processed", processed_count=2, matched_count=1,
            review_count=1, completed_at="2025-01-15T10:00:05",
        )
        found = repo.get_message(msg.id)
        assert (found.status, found.processed_count, found.matched_count, found.review_count) == (
            "processed", 2, 1, 1,
        )

    def test_update_rejects_unknown_column(self, repo):
        msg = repo.insert_message(_make_msg())
        with pytest.raises(ValueError, match="Unknown columns"):
            repo.update_message_status(msg.id, "processed", body="x")

    def test_claim_failed_only_once(self, repo):
        msg = repo.insert_message(_make_msg())
        assert repo.claim_failed_message(msg.id) is False
        repo.update_message_status(msg.id, "failed", error_message="timeout")
        assert repo.claim_failed_message(msg.id) is True
        assert repo.claim_failed_message(msg.id) is False
        found = repo.get_message(msg.id)
        assert found.status == "received"
        assert found.error_message is None

    def test_get_by_status(self, repo):
        a = repo.insert_message(_make_msg(delivery_key="a"))
        repo.insert_message(_make_msg(delivery_key="b"))
        repo.update_message_status(a.id, "failed")
        assert [m.id for m in repo.get_messages_by_status("failed")] == [a.id]


# ── Transactions ──────────────────────────────────────────


class TestTransactionCrud:
    def test_insert_if_absent(self, repo):
        assert repo.insert_transaction_if_absent(_make_txn()) is True
        assert repo.insert_transaction_if_absent(_make_txn()) is False
        assert repo.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0] == 1

    def test_get_by_fingerprint(self, repo):
        txn = _make_txn()
        repo.insert_transaction_if_absent(txn)
        found = repo.get_transaction_by_fingerprint("fp-1")
        assert found.id == txn.id
        assert found.amount == 2500000
        assert found.match_status == "unmatched"

    def test_get_by_message(self, repo):
        msg = repo.insert_message(_make_msg())
        repo.insert_transaction_if_absent(_make_txn(message_id=msg.id))
        repo.insert_transaction_if_absent(_make_txn(fingerprint="fp-2", message_id=msg.id))
        assert len(repo.get_transactions_by_message(msg.id)) == 2

    def test_update_match_status(self, repo):
        txn = _make_txn()
        repo.insert_transaction_if_absent(txn)
        repo.update_match_status(txn.id, "matched")
        assert repo.get_transaction(txn.id).match_status == "matched"


# ── Matches & suggestions ─────────────────────────────────


class TestMatchCrud:
    def test_sums(self, repo):
        txn = _make_txn()
        repo.insert_transaction_if_absent(txn)
        repo.insert_match(Match(txn.id, "9001", 1000000, 1.0, "auto"))
        repo.insert_match(Match(txn.id, "9002", 500000, 0.7, "manual"))
        assert repo.sum_applied_for_transaction(txn.id) == 1500000
        assert repo.sum_applied_for_invoice("9001") == 1000000
        assert repo.sum_applied_for_invoice("nope") == 0

    def test_delete(self, repo):
        txn = _make_txn()
        repo.insert_transaction_if_absent(txn)
        m = repo.insert_match(Match(txn.id, "9001", 1000, 1.0, "auto"))
        assert repo.delete_match(m.id) is True
        assert repo.delete_match(m.id) is False
        assert repo.get_match(m.id) is None


class TestSuggestionCrud:
    def test_upsert_reopens_pair(self, repo):
        txn = _make_txn()
        repo.insert_transaction_if_absent(txn)
        first = repo.upsert_suggestion(MatchSuggestion(txn.id, "9001", 0.5, "amount_only", "low_confidence"))
        repo.close_suggestion(first.id, "dismissed", "admin")
        again = repo.upsert_suggestion(MatchSuggestion(txn.id, "9001", 0.7, "amount_counterparty", "ambiguous"))
        assert again.id == first.id
        assert again.status == "open"
        assert again.reason == "ambiguous"

    def test_close_for_one_invoice(self, repo):
        txn = _make_txn()
        repo.insert_transaction_if_absent(txn)
        repo.upsert_suggestion(MatchSuggestion(txn.id, "9001", 0.5, "amount_only", "ambiguous"))
        repo.upsert_suggestion(MatchSuggestion(txn.id, "9002", 0.5, "amount_only", "ambiguous"))
        assert repo.close_suggestions(txn.id, "resolved", "system", invoice_id="9001") == 1
        assert [s.invoice_id for s in repo.get_open_suggestions(txn.id)] == ["9002"]


class TestAuditAndUsage:
    def test_audit_roundtrip(self, repo):
        repo.insert_audit(AuditEntry("manual_match", "alice", transaction_id="t1", amount=100))
        entries = repo.get_audit_entries("t1")
        assert entries[0].actor == "alice"
        assert entries[0].amount == 100

    def test_api_usage_accumulates(self, repo):
        repo.increment_api_usage("2025-01", "claude_extract", cost_cents=2)
        repo.increment_api_usage("2025-01", "claude_extract", cost_cents=2)
        assert repo.get_monthly_cost("2025-01") == 4
        assert repo.get_monthly_cost("2025-02") == 0


# ── Invoices ──────────────────────────────────────────────


class TestInvoiceCrud:
    def test_upsert_keeps_payment_state(self, repo):
        repo.upsert_invoice(_make_invoice())
        repo.update_invoice_payment("9001", 1000000, "partially_paid", None)
        repo.upsert_invoice(_make_invoice(customer_name="Renamed"))
        inv = repo.get_invoice("9001")
        assert inv.customer_name == "Renamed"
        assert inv.paid_amount == 1000000
        assert inv.status == "partially_paid"

    def test_open_invoices_by_company(self, repo):
        repo.upsert_invoice(_make_invoice())
        repo.upsert_invoice(_make_invoice(id="9002", company_id="200"))
        repo.upsert_invoice(_make_invoice(id="9003", paid_amount=2500000, status="paid"))
        assert [i.id for i in repo.get_open_invoices("100")] == ["9001"]


# ── Unit of work ──────────────────────────────────────────


class TestTransactionScope:
    def test_rollback_on_error(self, repo):
        with pytest.raises(RuntimeError):
            with repo.transaction():
                repo.insert_transaction_if_absent(_make_txn())
                raise RuntimeError("boom")
        assert repo.get_transaction_by_fingerprint("fp-1") is None

    def test_nested_joins_outer(self, repo):
        with pytest.raises(RuntimeError):
            with repo.transaction():
                with repo.transaction():
                    repo.insert_transaction_if_absent(_make_txn())
                raise RuntimeError("boom")
        assert repo.get_transaction_by_fingerprint("fp-1") is None

    def test_commit_on_success(self, repo):
        with repo.transaction():
            repo.insert_transaction_if_absent(_make_txn())
        assert repo.get_transaction_by_fingerprint("fp-1") is not None

    def test_concurrent_inserts_converge(self, repo):
        results = []

        def insert():
            results.append(repo.insert_transaction_if_absent(_make_txn()))

        threads = [threading.Thread(target=insert) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert repo.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0] == 1
