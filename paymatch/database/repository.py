"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. Threads share the connection, so every statement
goes through a re-entrant lock; transaction() holds that lock for the whole
BEGIN..COMMIT span (other threads never read its uncommitted rows) and
suppresses the per-statement commits inside it.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from paymatch.errors import DuplicateDelivery, ValidationError

from .models import (
    PAID,
    AuditEntry,
    InboundMessage,
    Invoice,
    Match,
    MatchSuggestion,
    Transaction,
    _now,
    invoice_status,
)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path = MIGRATIONS_DIR):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        with self._lock:
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                "  version INTEGER PRIMARY KEY,"
                "  description TEXT,"
                "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
                ")"
            )
            self.conn.commit()

            row = self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ).fetchone()
            current = row[0] or 0

            for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
                version = int(sql_file.name.split("_")[0])
                if version > current:
                    try:
                        self.conn.execute("BEGIN")
                        # executescript auto-commits, so we split statements manually
                        sql_text = sql_file.read_text()
                        for statement in sql_text.split(";"):
                            statement = statement.strip()
                            if statement:
                                self.conn.execute(statement)
                        self.conn.execute(
                            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                            (version, sql_file.stem),
                        )
                        self.conn.commit()
                    except Exception:
                        self.conn.rollback()
                        raise

    # ── Transactions (unit of work) ─────────────────────────

    @contextmanager
    def transaction(self):
        """Run the enclosed writes as one atomic unit.

        Nested use joins the outer transaction. BEGIN IMMEDIATE takes the
        SQLite write lock up front so a second process cannot interleave.
        """
        with self._lock:
            if self._depth == 0:
                if self.conn.in_transaction:
                    self.conn.commit()
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self.conn.commit()

    @contextmanager
    def locked(self):
        """Hold the connection lock for a group of reads (see queries.py)."""
        with self._lock:
            yield self.conn

    def _commit(self):
        if self._depth == 0:
            self.conn.commit()

    def _write(self, sql: str, params=()) -> sqlite3.Cursor:
        with self._lock:
            cur = self.conn.execute(sql, params)
            self._commit()
            return cur

    def _fetchone(self, sql: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ── Inbound messages ────────────────────────────────────

    def insert_message(self, msg: InboundMessage) -> InboundMessage:
        """Record a webhook delivery.

        Raises:
            DuplicateDelivery: If the delivery key was already recorded.
                The unique constraint makes concurrent deliveries of the same
                message converge on one row.
        """
        try:
            self._write(
                "INSERT INTO inbound_messages"
                " (id, delivery_key, account_id, sender, recipient, subject,"
                "  body, received_at, provider_delivery_id, attachments, status,"
                "  error_message, processed_count, matched_count, review_count,"
                "  created_at, completed_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (msg.id, msg.delivery_key, msg.account_id, msg.sender,
                 msg.recipient, msg.subject, msg.body, msg.received_at,
                 msg.provider_delivery_id, msg.attachments, msg.status,
                 msg.error_message, msg.processed_count, msg.matched_count,
                 msg.review_count, msg.created_at, msg.completed_at),
            )
            return msg
        except sqlite3.IntegrityError as e:
            if "delivery_key" in str(e) or "UNIQUE constraint failed" in str(e):
                existing = self.get_message_by_key(msg.delivery_key)
                raise DuplicateDelivery(
                    msg.delivery_key,
                    existing.id if existing else None,
                ) from e
            raise

    def get_message(self, message_id: str) -> InboundMessage | None:
        row = self._fetchone(
            "SELECT * FROM inbound_messages WHERE id = ?", (message_id,)
        )
        return self._row_to_message(row) if row else None

    def get_message_by_key(self, delivery_key: str) -> InboundMessage | None:
        row = self._fetchone(
            "SELECT * FROM inbound_messages WHERE delivery_key = ?",
            (delivery_key,),
        )
        return self._row_to_message(row) if row else None

    def claim_failed_message(self, message_id: str) -> bool:
        """Atomically move a failed delivery back to 'received'.

        Returns False if the message is not in 'failed' state, so two
        concurrent reprocess requests cannot both run the pipeline.
        """
        cur = self._write(
            "UPDATE inbound_messages SET status = 'received', error_message = NULL"
            " WHERE id = ? AND status = 'failed'",
            (message_id,),
        )
        return cur.rowcount == 1

    _MESSAGE_UPDATE_COLS = frozenset({
        "error_message", "processed_count", "matched_count",
        "review_count", "completed_at",
    })

    def update_message_status(self, message_id: str, status: str, **kwargs):
        unknown = set(kwargs.keys()) - self._MESSAGE_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_message_status: {unknown}")

        sets = ["status = ?"]
        vals: list = [status]
        for col in sorted(kwargs):
            sets.append(f"{col} = ?")
            vals.append(kwargs[col])
        vals.append(message_id)
        self._write(
            f"UPDATE inbound_messages SET {', '.join(sets)} WHERE id = ?", vals
        )

    def get_messages_by_status(self, status: str, limit: int = 100) -> list[InboundMessage]:
        rows = self._fetchall(
            "SELECT * FROM inbound_messages WHERE status = ?"
            " ORDER BY created_at LIMIT ?",
            (status, limit),
        )
        return [self._row_to_message(r) for r in rows]

    # ── Transactions ────────────────────────────────────────

    def insert_transaction_if_absent(self, txn: Transaction) -> bool:
        """Insert unless a transaction with the same fingerprint exists.

        Returns True if the row was inserted.
        """
        cur = self._write(
            "INSERT INTO transactions"
            " (id, account_id, company_id, message_id, fingerprint, amount,"
            "  currency, direction, counterparty_name, counterparty_account,"
            "  reference_text, variable_symbol, constant_symbol, specific_symbol,"
            "  bank_reference, value_date, match_status, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)"
            " ON CONFLICT(fingerprint) DO NOTHING",
            (txn.id, txn.account_id, txn.company_id, txn.message_id,
             txn.fingerprint, txn.amount, txn.currency, txn.direction,
             txn.counterparty_name, txn.counterparty_account,
             txn.reference_text, txn.variable_symbol, txn.constant_symbol,
             txn.specific_symbol, txn.bank_reference, txn.value_date,
             txn.match_status, txn.created_at, txn.updated_at),
        )
        return cur.rowcount == 1

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self._fetchone(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        )
        return self._row_to_transaction(row) if row else None

    def get_transaction_by_fingerprint(self, fingerprint: str) -> Transaction | None:
        row = self._fetchone(
            "SELECT * FROM transactions WHERE fingerprint = ?", (fingerprint,)
        )
        return self._row_to_transaction(row) if row else None

    def get_transactions_by_message(self, message_id: str) -> list[Transaction]:
        rows = self._fetchall(
            "SELECT * FROM transactions WHERE message_id = ?"
            " ORDER BY value_date, rowid",
            (message_id,),
        )
        return [self._row_to_transaction(r) for r in rows]

    def update_match_status(self, txn_id: str, match_status: str):
        self._write(
            "UPDATE transactions SET match_status = ?, updated_at = ?"
            " WHERE id = ?",
            (match_status, _now(), txn_id),
        )

    # ── Matches ─────────────────────────────────────────────

    def insert_match(self, match: Match) -> Match:
        self._write(
            "INSERT INTO matches"
            " (id, transaction_id, invoice_id, amount, confidence, source,"
            "  rule, created_by, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?)",
            (match.id, match.transaction_id, match.invoice_id, match.amount,
             match.confidence, match.source, match.rule, match.created_by,
             match.created_at),
        )
        return match

    def get_match(self, match_id: str) -> Match | None:
        row = self._fetchone(
            "SELECT * FROM matches WHERE id = ?", (match_id,)
        )
        return self._row_to_match(row) if row else None

    def delete_match(self, match_id: str) -> bool:
        cur = self._write("DELETE FROM matches WHERE id = ?", (match_id,))
        return cur.rowcount == 1

    def get_matches_by_transaction(self, txn_id: str) -> list[Match]:
        rows = self._fetchall(
            "SELECT * FROM matches WHERE transaction_id = ?"
            " ORDER BY created_at, rowid",
            (txn_id,),
        )
        return [self._row_to_match(r) for r in rows]

    def get_matches_by_invoice(self, invoice_id: str) -> list[Match]:
        rows = self._fetchall(
            "SELECT * FROM matches WHERE invoice_id = ?"
            " ORDER BY created_at, rowid",
            (invoice_id,),
        )
        return [self._row_to_match(r) for r in rows]

    def sum_applied_for_transaction(self, txn_id: str) -> int:
        row = self._fetchone(
            "SELECT COALESCE(SUM(amount), 0) FROM matches WHERE transaction_id = ?",
            (txn_id,),
        )
        return row[0]

    def sum_applied_for_invoice(self, invoice_id: str) -> int:
        row = self._fetchone(
            "SELECT COALESCE(SUM(amount), 0) FROM matches WHERE invoice_id = ?",
            (invoice_id,),
        )
        return row[0]

    # ── Suggestions (review queue) ──────────────────────────

    def upsert_suggestion(self, sug: MatchSuggestion) -> MatchSuggestion:
        """Insert or re-open a review suggestion for a transaction/invoice pair."""
        self._write(
            "INSERT INTO match_suggestions"
            " (id, transaction_id, invoice_id, confidence, rule, reason,"
            "  status, resolved_by, resolved_at, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?)"
            " ON CONFLICT(transaction_id, invoice_id) DO UPDATE SET"
            "  confidence = excluded.confidence,"
            "  rule = excluded.rule,"
            "  reason = excluded.reason,"
            "  status = 'open',"
            "  resolved_by = NULL,"
            "  resolved_at = NULL",
            (sug.id, sug.transaction_id, sug.invoice_id, sug.confidence,
             sug.rule, sug.reason, sug.status, sug.resolved_by,
             sug.resolved_at, sug.created_at),
        )
        row = self._fetchone(
            "SELECT * FROM match_suggestions"
            " WHERE transaction_id = ? AND invoice_id = ?",
            (sug.transaction_id, sug.invoice_id),
        )
        return self._row_to_suggestion(row)

    def get_suggestion(self, suggestion_id: str) -> MatchSuggestion | None:
        row = self._fetchone(
            "SELECT * FROM match_suggestions WHERE id = ?", (suggestion_id,)
        )
        return self._row_to_suggestion(row) if row else None

    def get_open_suggestions(self, txn_id: str | None = None) -> list[MatchSuggestion]:
        sql = "SELECT * FROM match_suggestions WHERE status = 'open'"
        params: list = []
        if txn_id is not None:
            sql += " AND transaction_id = ?"
            params.append(txn_id)
        sql += " ORDER BY confidence DESC, created_at, rowid"
        rows = self._fetchall(sql, params)
        return [self._row_to_suggestion(r) for r in rows]

    def close_suggestions(
        self, txn_id: str, status: str, actor: str,
        invoice_id: str | None = None,
    ) -> int:
        """Close open suggestions of a transaction (optionally one invoice only)."""
        sql = (
            "UPDATE match_suggestions SET status = ?, resolved_by = ?, resolved_at = ?"
            " WHERE transaction_id = ? AND status = 'open'"
        )
        params: list = [status, actor, _now(), txn_id]
        if invoice_id is not None:
            sql += " AND invoice_id = ?"
            params.append(invoice_id)
        return self._write(sql, params).rowcount

    def close_suggestion(self, suggestion_id: str, status: str, actor: str) -> bool:
        cur = self._write(
            "UPDATE match_suggestions SET status = ?, resolved_by = ?, resolved_at = ?"
            " WHERE id = ? AND status = 'open'",
            (status, actor, _now(), suggestion_id),
        )
        return cur.rowcount == 1

    # ── Audit log ───────────────────────────────────────────

    def insert_audit(self, entry: AuditEntry) -> AuditEntry:
        self._write(
            "INSERT INTO audit_log"
            " (id, action, actor, match_id, transaction_id, invoice_id,"
            "  amount, created_at)"
            " VALUES (?,?,?,?,?,?,?,?)",
            (entry.id, entry.action, entry.actor, entry.match_id,
             entry.transaction_id, entry.invoice_id, entry.amount,
             entry.created_at),
        )
        return entry

    def get_audit_entries(self, txn_id: str) -> list[AuditEntry]:
        rows = self._fetchall(
            "SELECT * FROM audit_log WHERE transaction_id = ?"
            " ORDER BY created_at, rowid",
            (txn_id,),
        )
        return [self._row_to_audit(r) for r in rows]

    # ── Invoices ────────────────────────────────────────────

    def upsert_invoice(self, inv: Invoice) -> Invoice:
        """Insert an invoice or refresh its descriptive fields.

        Payment bookkeeping (paid_amount, paid_at) is never overwritten by
        an upsert. A changed total re-derives the status from the amount
        already applied.

        Raises:
            ValidationError: The new total is below the amount already
                applied to the invoice.
        """
        with self.transaction():
            existing = self.get_invoice(inv.id)
            if existing is None:
                self.conn.execute(
                    "INSERT INTO invoices"
                    " (id, invoice_number, company_id, customer_name, variable_symbol,"
                    "  currency, total_amount, paid_amount, status, issue_date,"
                    "  due_date, paid_at, created_at)"
                    " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (inv.id, inv.invoice_number, inv.company_id, inv.customer_name,
                     inv.variable_symbol, inv.currency, inv.total_amount,
                     inv.paid_amount, inv.status, inv.issue_date, inv.due_date,
                     inv.paid_at, inv.created_at),
                )
                return self.get_invoice(inv.id)

            applied = max(existing.paid_amount, self.sum_applied_for_invoice(inv.id))
            if inv.total_amount < applied:
                raise ValidationError(
                    f"Invoice {existing.invoice_number}: total {inv.total_amount}"
                    f" is below the {applied} already applied"
                )
            status, paid_at = existing.status, existing.paid_at
            if inv.total_amount != existing.total_amount:
                status = invoice_status(existing.paid_amount, inv.total_amount)
                if status != PAID:
                    paid_at = None
                elif existing.status != PAID:
                    paid_at = _now()
            self.conn.execute(
                "UPDATE invoices SET invoice_number = ?, company_id = ?,"
                " customer_name = ?, variable_symbol = ?, currency = ?,"
                " total_amount = ?, status = ?, issue_date = ?, due_date = ?,"
                " paid_at = ? WHERE id = ?",
                (inv.invoice_number, inv.company_id, inv.customer_name,
                 inv.variable_symbol, inv.currency, inv.total_amount, status,
                 inv.issue_date, inv.due_date, paid_at, inv.id),
            )
        return self.get_invoice(inv.id)

    def get_invoice(self, invoice_id: str) -> Invoice | None:
        row = self._fetchone(
            "SELECT * FROM invoices WHERE id = ?", (str(invoice_id),)
        )
        return self._row_to_invoice(row) if row else None

    def get_open_invoices(self, company_id: str) -> list[Invoice]:
        rows = self._fetchall(
            "SELECT * FROM invoices"
            " WHERE company_id = ? AND status != 'paid'"
            "   AND paid_amount < total_amount"
            " ORDER BY due_date, id",
            (str(company_id),),
        )
        return [self._row_to_invoice(r) for r in rows]

    def update_invoice_payment(
        self, invoice_id: str, paid_amount: int, status: str,
        paid_at: str | None,
    ):
        self._write(
            "UPDATE invoices SET paid_amount = ?, status = ?, paid_at = ?"
            " WHERE id = ?",
            (paid_amount, status, paid_at, str(invoice_id)),
        )

    # ── API Usage ───────────────────────────────────────────

    def increment_api_usage(
        self, month: str, service: str,
        requests: int = 1,
        tokens_in: int = 0, tokens_out: int = 0,
        cost_cents: int = 0,
    ):
        """Upsert api_usage row: increment counters for month+service."""
        self._write(
            "INSERT INTO api_usage"
            " (id, month, service, request_count, input_tokens,"
            "  output_tokens, estimated_cost_cents, updated_at)"
            " VALUES (hex(randomblob(16)), ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)"
            " ON CONFLICT(month, service) DO UPDATE SET"
            "  request_count = request_count + excluded.request_count,"
            "  input_tokens = input_tokens + excluded.input_tokens,"
            "  output_tokens = output_tokens + excluded.output_tokens,"
            "  estimated_cost_cents = estimated_cost_cents + excluded.estimated_cost_cents,"
            "  updated_at = CURRENT_TIMESTAMP",
            (month, service, requests, tokens_in, tokens_out, cost_cents),
        )

    def get_monthly_cost(self, month: str) -> int:
        """Total estimated cost in cents for a given month."""
        row = self._fetchone(
            "SELECT COALESCE(SUM(estimated_cost_cents), 0) FROM api_usage"
            " WHERE month = ?",
            (month,),
        )
        return row[0]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> InboundMessage:
        return InboundMessage(
            id=row["id"], delivery_key=row["delivery_key"],
            account_id=row["account_id"], sender=row["sender"],
            recipient=row["recipient"], subject=row["subject"],
            body=row["body"], received_at=row["received_at"],
            provider_delivery_id=row["provider_delivery_id"],
            attachments=row["attachments"], status=row["status"],
            error_message=row["error_message"],
            processed_count=row["processed_count"],
            matched_count=row["matched_count"],
            review_count=row["review_count"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], account_id=row["account_id"],
            company_id=row["company_id"], message_id=row["message_id"],
            fingerprint=row["fingerprint"], amount=row["amount"],
            currency=row["currency"], direction=row["direction"],
            counterparty_name=row["counterparty_name"],
            counterparty_account=row["counterparty_account"],
            reference_text=row["reference_text"],
            variable_symbol=row["variable_symbol"],
            constant_symbol=row["constant_symbol"],
            specific_symbol=row["specific_symbol"],
            bank_reference=row["bank_reference"],
            value_date=row["value_date"],
            match_status=row["match_status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_match(row: sqlite3.Row) -> Match:
        return Match(
            id=row["id"], transaction_id=row["transaction_id"],
            invoice_id=row["invoice_id"], amount=row["amount"],
            confidence=row["confidence"], source=row["source"],
            rule=row["rule"], created_by=row["created_by"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_suggestion(row: sqlite3.Row) -> MatchSuggestion:
        return MatchSuggestion(
            id=row["id"], transaction_id=row["transaction_id"],
            invoice_id=row["invoice_id"], confidence=row["confidence"],
            rule=row["rule"], reason=row["reason"], status=row["status"],
            resolved_by=row["resolved_by"], resolved_at=row["resolved_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_audit(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            id=row["id"], action=row["action"], actor=row["actor"],
            match_id=row["match_id"], transaction_id=row["transaction_id"],
            invoice_id=row["invoice_id"], amount=row["amount"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_invoice(row: sqlite3.Row) -> Invoice:
        return Invoice(
            id=row["id"], invoice_number=row["invoice_number"],
            company_id=row["company_id"], customer_name=row["customer_name"],
            variable_symbol=row["variable_symbol"], currency=row["currency"],
            total_amount=row["total_amount"], paid_amount=row["paid_amount"],
            status=row["status"], issue_date=row["issue_date"],
            due_date=row["due_date"], paid_at=row["paid_at"],
            created_at=row["created_at"],
        )
