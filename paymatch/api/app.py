"""Flask HTTP API under /api/payment-matching.

Webhook and manual-trigger endpoints drive the gateway; the manual
override endpoints drive the ledger; the listing endpoints are read-only
views. Amounts cross the HTTP boundary in major units (25000.0 CZK) and
are converted to minor units at once.
"""

from __future__ import annotations

import logging
from functools import wraps

from flask import Flask, jsonify, request

from paymatch.config import Config
from paymatch.database import queries
from paymatch.database.repository import Repository
from paymatch.errors import (
    AmountExceedsOutstanding,
    InvalidSignature,
    NotFound,
    PaymentMatchError,
    UnknownAccount,
    ValidationError,
)
from paymatch.extraction.base import from_minor, to_minor
from paymatch.gateway.webhook import FAILED, WebhookDelivery, WebhookGateway, verify_signature
from paymatch.overrides import ManualOverrides

logger = logging.getLogger(__name__)

API_PREFIX = "/api/payment-matching"

_MONEY_FIELDS = (
    "amount", "applied_amount", "transaction_amount", "total_amount", "paid_amount",
)

_STATUS_BY_ERROR = (
    (UnknownAccount, 404),
    (NotFound, 404),
    (InvalidSignature, 401),
    (AmountExceedsOutstanding, 409),
    (ValidationError, 400),
)


def _status_for(error: PaymentMatchError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(error, cls):
            return status
    return 400


def _error_kind(error: Exception) -> str:
    return type(error).__name__


def _money(row: dict) -> dict:
    out = dict(row)
    for key in _MONEY_FIELDS:
        if isinstance(out.get(key), int):
            out[key] = from_minor(out[key])
    return out


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _int_arg(name: str) -> int | None:
    value = request.args.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ValidationError(f"Query parameter '{name}' must be an integer") from e


def create_app(
    gateway: WebhookGateway,
    overrides: ManualOverrides,
    repo: Repository,
    config: Config,
) -> Flask:
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False

    @app.errorhandler(PaymentMatchError)
    def handle_engine_error(error: PaymentMatchError):
        status = _status_for(error)
        if status >= 500:
            logger.error("Request failed: %s", error)
        return jsonify({
            "success": False, "error": _error_kind(error), "message": str(error),
        }), status

    def admin_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            key = config.admin_key
            if key and request.headers.get("X-Api-Key") != key:
                return jsonify({
                    "success": False, "error": "Unauthorized", "message": "Invalid API key",
                }), 401
            return view(*args, **kwargs)
        return wrapper

    register_webhook_routes(app, gateway, config, admin_required)
    register_override_routes(app, overrides, admin_required)
    register_listing_routes(app, repo, admin_required)
    return app


# ── Webhook & manual trigger ──────────────────────────────


def register_webhook_routes(app: Flask, gateway: WebhookGateway, config: Config, admin_required):

    @app.route(f"{API_PREFIX}/webhook", methods=["POST"])
    def webhook():
        secret = config.webhook_secret
        if secret and not verify_signature(
            request.get_data(), request.headers.get("X-Webhook-Signature"), secret,
        ):
            raise InvalidSignature("Invalid webhook signature")

        delivery = WebhookDelivery.from_payload(
            request.get_json(silent=True),
            delivery_id=request.headers.get("X-Delivery-Id"),
        )
        result = gateway.ingest(delivery)
        # a non-2xx answer makes the sender redeliver
        status = 503 if result.status == FAILED else 200
        return jsonify(result.to_dict()), status

    @app.route(f"{API_PREFIX}/process-email", methods=["POST"])
    @admin_required
    def process_email():
        data = _json_body()
        content = data.get("emailContent")
        account_id = data.get("bankAccountId")
        if not content or account_id is None:
            raise ValidationError("emailContent and bankAccountId are required")
        result = gateway.process_email(str(account_id), content, subject=data.get("subject"))
        return jsonify(result.to_dict()), 200

    @app.route(f"{API_PREFIX}/messages/<message_id>/reprocess", methods=["POST"])
    @admin_required
    def reprocess(message_id):
        result = gateway.reprocess(message_id)
        return jsonify(result.to_dict()), 200


# ── Manual overrides ──────────────────────────────────────


def register_override_routes(app: Flask, overrides: ManualOverrides, admin_required):

    @app.route(f"{API_PREFIX}/manual-match", methods=["POST"])
    @admin_required
    def manual_match():
        data = _json_body()
        txn_id = data.get("transactionId")
        invoice_id = data.get("invoiceId")
        if not txn_id or invoice_id is None:
            raise ValidationError("transactionId and invoiceId are required")

        amount = None
        if data.get("amount") is not None:
            try:
                amount = to_minor(data["amount"])
            except ValueError as e:
                raise ValidationError(str(e)) from e
            if amount <= 0:
                raise ValidationError("amount must be positive")

        match = overrides.manual_match(
            str(txn_id), str(invoice_id), amount, actor_id=data.get("actorId") or "api",
        )
        return jsonify({
            "success": True,
            "match": {
                "id": match.id,
                "transactionId": match.transaction_id,
                "invoiceId": match.invoice_id,
                "amount": from_minor(match.amount),
                "confidence": match.confidence,
                "source": match.source,
                "createdBy": match.created_by,
                "createdAt": match.created_at,
            },
        }), 200

    @app.route(f"{API_PREFIX}/unmatch", methods=["POST"])
    @admin_required
    def unmatch():
        data = _json_body()
        match_id = data.get("matchId")
        if not match_id:
            raise ValidationError("matchId is required")
        removed = overrides.unmatch(str(match_id), actor_id=data.get("actorId") or "api")
        return jsonify({"success": True, "removed": removed}), 200

    @app.route(f"{API_PREFIX}/review/<suggestion_id>/dismiss", methods=["POST"])
    @admin_required
    def dismiss(suggestion_id):
        data = request.get_json(silent=True) or {}
        closed = overrides.dismiss_suggestion(suggestion_id, actor_id=data.get("actorId") or "api")
        return jsonify({"success": True, "dismissed": closed}), 200


# ── Listings & stats ──────────────────────────────────────


def register_listing_routes(app: Flask, repo: Repository, admin_required):

    @app.route(f"{API_PREFIX}/transactions", methods=["GET"])
    @admin_required
    def transactions():
        with repo.locked() as conn:
            page = queries.list_transactions(
                conn,
                match_status=request.args.get("status"),
                account_id=request.args.get("accountId"),
                limit=_int_arg("limit"),
                offset=_int_arg("offset"),
            )
        page["items"] = [_money(r) for r in page["items"]]
        return jsonify(page), 200

    @app.route(f"{API_PREFIX}/matches", methods=["GET"])
    @admin_required
    def matches():
        with repo.locked() as conn:
            page = queries.list_matches(
                conn,
                source=request.args.get("source"),
                limit=_int_arg("limit"),
                offset=_int_arg("offset"),
            )
        page["items"] = [_money(r) for r in page["items"]]
        return jsonify(page), 200

    @app.route(f"{API_PREFIX}/review", methods=["GET"])
    @admin_required
    def review():
        with repo.locked() as conn:
            items = queries.list_review_items(conn, limit=_int_arg("limit"))
        return jsonify({"items": [_money(r) for r in items]}), 200

    @app.route(f"{API_PREFIX}/messages", methods=["GET"])
    @admin_required
    def messages():
        with repo.locked() as conn:
            page = queries.list_messages(
                conn,
                status=request.args.get("status"),
                limit=_int_arg("limit"),
                offset=_int_arg("offset"),
            )
        return jsonify(page), 200

    @app.route(f"{API_PREFIX}/stats", methods=["GET"])
    @admin_required
    def stats():
        with repo.locked() as conn:
            data = queries.get_matching_stats(conn, account_id=request.args.get("accountId"))
        return jsonify(data), 200
