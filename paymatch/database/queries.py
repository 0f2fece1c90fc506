"""Listing and reporting queries that span multiple tables.

These go beyond single-table CRUD: paginated listings for the HTTP API
and CLI, and the aggregate matching statistics. Callers pass a connection
obtained from Repository.locked().
"""

from __future__ import annotations

import sqlite3

MAX_PAGE_SIZE = 500


def _page(limit: int | None, offset: int | None) -> tuple[int, int]:
    limit = 50 if limit is None else max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = 0 if offset is None else max(0, int(offset))
    return limit, offset


def list_transactions(
    conn: sqlite3.Connection,
    match_status: str | None = None,
    account_id: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> dict:
    """Transactions newest first, with the amount already applied by matches."""
    limit, offset = _page(limit, offset)
    where = []
    params: list = []
    if match_status:
        where.append("t.match_status = ?")
        params.append(match_status)
    if account_id:
        where.append("t.account_id = ?")
        params.append(str(account_id))
    clause = f" WHERE {' AND '.join(where)}" if where else ""

    total = conn.execute(
        f"SELECT COUNT(*) FROM transactions t{clause}", params
    ).fetchone()[0]
    rows = conn.execute(
        "SELECT t.*,"
        "  (SELECT COALESCE(SUM(m.amount), 0) FROM matches m"
        "    WHERE m.transaction_id = t.id) AS applied_amount"
        f" FROM transactions t{clause}"
        " ORDER BY t.value_date DESC, t.created_at DESC, t.rowid DESC"
        " LIMIT ? OFFSET ?",
        params + [limit, offset],
    ).fetchall()
    return {
        "items": [dict(r) for r in rows],
        "total": total, "limit": limit, "offset": offset,
    }


def list_matches(
    conn: sqlite3.Connection,
    source: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> dict:
    """Accepted matches joined with their transaction and invoice."""
    limit, offset = _page(limit, offset)
    clause = ""
    params: list = []
    if source:
        clause = " WHERE m.source = ?"
        params.append(source)

    total = conn.execute(
        f"SELECT COUNT(*) FROM matches m{clause}", params
    ).fetchone()[0]
    rows = conn.execute(
        "SELECT m.*, t.value_date, t.currency, t.counterparty_name,"
        "  t.variable_symbol, t.amount AS transaction_amount,"
        "  i.invoice_number, i.customer_name"
        " FROM matches m"
        " JOIN transactions t ON t.id = m.transaction_id"
        " LEFT JOIN invoices i ON i.id = m.invoice_id"
        f"{clause}"
        " ORDER BY m.created_at DESC, m.rowid DESC"
        " LIMIT ? OFFSET ?",
        params + [limit, offset],
    ).fetchall()
    return {
        "items": [dict(r) for r in rows],
        "total": total, "limit": limit, "offset": offset,
    }


def list_review_items(conn: sqlite3.Connection, limit: int | None = None) -> list[dict]:
    """Open review suggestions with enough context to decide on them."""
    limit, _ = _page(limit, 0)
    rows = conn.execute(
        "SELECT s.*, t.amount, t.currency, t.value_date, t.counterparty_name,"
        "  t.reference_text, t.variable_symbol AS transaction_vs,"
        "  i.invoice_number, i.customer_name, i.total_amount, i.paid_amount"
        " FROM match_suggestions s"
        " JOIN transactions t ON t.id = s.transaction_id"
        " LEFT JOIN invoices i ON i.id = s.invoice_id"
        " WHERE s.status = 'open'"
        " ORDER BY s.created_at, s.transaction_id, s.confidence DESC, s.invoice_id"
        " LIMIT ?",
        (limit,),
    ).fetchall()
    return [dict(r) for r in rows]


def list_messages(
    conn: sqlite3.Connection,
    status: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> dict:
    """Inbound deliveries without their bodies."""
    limit, offset = _page(limit, offset)
    clause = ""
    params: list = []
    if status:
        clause = " WHERE status = ?"
        params.append(status)
    total = conn.execute(
        f"SELECT COUNT(*) FROM inbound_messages{clause}", params
    ).fetchone()[0]
    rows = conn.execute(
        "SELECT id, delivery_key, account_id, sender, recipient, subject,"
        "  received_at, status, error_message, processed_count,"
        "  matched_count, review_count, created_at, completed_at"
        f" FROM inbound_messages{clause}"
        " ORDER BY created_at DESC, rowid DESC"
        " LIMIT ? OFFSET ?",
        params + [limit, offset],
    ).fetchall()
    return {
        "items": [dict(r) for r in rows],
        "total": total, "limit": limit, "offset": offset,
    }


def get_matching_stats(conn: sqlite3.Connection, account_id: str | None = None) -> dict:
    """Match rate and auto vs manual counts, derived from the ledger."""
    txn_clause = ""
    params: list = []
    if account_id:
        txn_clause = " WHERE account_id = ?"
        params.append(str(account_id))

    row = conn.execute(
        "SELECT"
        "  COUNT(*) AS total,"
        "  COALESCE(SUM(match_status = 'matched'), 0) AS matched,"
        "  COALESCE(SUM(match_status = 'partially_matched'), 0) AS partially_matched,"
        "  COALESCE(SUM(match_status = 'unmatched'), 0) AS unmatched"
        f" FROM transactions{txn_clause}",
        params,
    ).fetchone()
    stats = dict(row)

    sources = conn.execute(
        "SELECT m.source, COUNT(*) AS n FROM matches m"
        " JOIN transactions t ON t.id = m.transaction_id"
        f"{txn_clause.replace('account_id', 't.account_id')}"
        " GROUP BY m.source",
        params,
    ).fetchall()
    by_source = {r["source"]: r["n"] for r in sources}
    stats["auto_matches"] = by_source.get("auto", 0)
    stats["manual_matches"] = by_source.get("manual", 0)

    msg_clause = " AND account_id = ?" if account_id else ""
    stats["open_review_items"] = conn.execute(
        "SELECT COUNT(DISTINCT s.transaction_id) FROM match_suggestions s"
        " JOIN transactions t ON t.id = s.transaction_id"
        f" WHERE s.status = 'open'{msg_clause.replace('account_id', 't.account_id')}",
        params,
    ).fetchone()[0]
    stats["failed_deliveries"] = conn.execute(
        f"SELECT COUNT(*) FROM inbound_messages WHERE status = 'failed'{msg_clause}",
        params,
    ).fetchone()[0]
    stats["last_processed_at"] = conn.execute(
        f"SELECT MAX(completed_at) FROM inbound_messages WHERE status = 'processed'{msg_clause}",
        params,
    ).fetchone()[0]

    matched_any = stats["matched"] + stats["partially_matched"]
    stats["match_rate"] = round(matched_any / stats["total"], 4) if stats["total"] else 0.0
    return stats
