"""Webhook gateway: one inbound email delivery -> matched transactions.

Flow per delivery:
  authorize recipient -> record delivery (idempotent) -> compose text
  -> extract -> persist (dedup) -> match each new transaction
  -> mark delivery processed/failed with counts

The delivery row is written before any work starts, so every delivery is
kept for audit even when it yields no payments. A replay of the same
delivery returns the stored result of the first ingestion; a replay of a
failed delivery runs the pipeline again.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from paymatch.config import Config
from paymatch.database.models import InboundMessage, _now
from paymatch.database.repository import Repository
from paymatch.database.store import TransactionStore
from paymatch.errors import DuplicateDelivery, NotFound, UnknownAccount, ValidationError
from paymatch.extraction.base import parse_value_date
from paymatch.extraction.extractor import TransactionExtractor
from paymatch.gateway.accounts import Account, AccountDirectory
from paymatch.ledger import MatchLedger
from paymatch.matching.engine import ACCEPT, REVIEW, MatchingEngine
from paymatch.matching.pipeline import match_transaction
from paymatch.matching.rules import MatchingSettings

logger = logging.getLogger(__name__)

PROCESSED = "processed"
FAILED = "failed"

_TEXT_ATTACHMENT_TYPES = ("text/", "application/csv", "application/json")
_TEXT_ATTACHMENT_SUFFIXES = (".txt", ".csv", ".tsv", ".json")
MAX_ATTACHMENT_CHARS = 50000


@dataclass
class WebhookDelivery:
    """One email as posted by the mail provider."""
    sender: str
    recipient: str
    subject: str
    body: str
    received_at: str
    timestamp: str | None = None  # as sent by the provider, may be absent
    attachments: list[dict] = field(default_factory=list)
    delivery_id: str | None = None

    @classmethod
    def from_payload(cls, payload, delivery_id: str | None = None) -> WebhookDelivery:
        """Validate a webhook JSON payload.

        Raises:
            ValidationError: Missing or malformed fields.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object")

        missing = [k for k in ("from", "to", "body") if not payload.get(k)]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")
        for key in ("from", "to", "subject", "body"):
            value = payload.get(key)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"Field '{key}' must be a string")

        attachments = payload.get("attachments") or []
        if not isinstance(attachments, list) or not all(isinstance(a, dict) for a in attachments):
            raise ValidationError("Field 'attachments' must be a list of objects")

        timestamp = payload.get("timestamp")
        if timestamp is not None:
            timestamp = str(timestamp)
            if parse_value_date(timestamp) is None:
                raise ValidationError(f"Unreadable timestamp: {timestamp}")

        return cls(
            sender=payload["from"].strip(),
            recipient=payload["to"].strip(),
            subject=payload.get("subject") or "",
            body=payload["body"],
            received_at=timestamp or _now(),
            timestamp=timestamp,
            attachments=attachments,
            delivery_id=delivery_id or payload.get("deliveryId") or payload.get("messageId"),
        )


@dataclass
class IngestResult:
    success: bool
    processed: int = 0
    matched: int = 0
    review: int = 0
    duplicate: bool = False
    status: str = PROCESSED
    message_id: str | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "processed": self.processed,
            "matched": self.matched,
            "review": self.review,
            "duplicate": self.duplicate,
            "status": self.status,
            "messageId": self.message_id,
            "errors": self.errors,
        }


def compute_delivery_key(
    sender: str,
    recipient: str,
    subject: str,
    timestamp: str | None,
    provider_delivery_id: str | None = None,
    body: str | None = None,
) -> str:
    """Deterministic key recognizing a replayed delivery.

    A provider delivery id wins when present. Otherwise the key covers
    sender, recipient, subject and timestamp; without a timestamp the body
    is hashed in its place so replays still collapse.
    """
    recipient = recipient.strip().lower()
    if provider_delivery_id:
        raw = f"id|{recipient}|{provider_delivery_id.strip()}"
    else:
        when = timestamp or "body:" + hashlib.sha256((body or "").encode("utf-8")).hexdigest()
        raw = f"msg|{sender.strip().lower()}|{recipient}|{subject.strip()}|{when}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 hex signature (optionally prefixed 'sha256=')."""
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _attachment_text(att: dict) -> str | None:
    name = str(att.get("filename") or att.get("name") or "")
    ctype = str(att.get("contentType") or att.get("content_type") or "").lower()
    if not (ctype.startswith(_TEXT_ATTACHMENT_TYPES) or name.lower().endswith(_TEXT_ATTACHMENT_SUFFIXES)):
        return None
    content = att.get("content")
    if not isinstance(content, str) or not content:
        return None
    if str(att.get("encoding", "")).lower() == "base64":
        try:
            content = base64.b64decode(content).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            logger.warning("Skipping undecodable attachment %s", name)
            return None
    return content[:MAX_ATTACHMENT_CHARS]


def compose_email_text(msg: InboundMessage, include_attachments: bool = True) -> str:
    """Plain text handed to the extractor: headers, body, text attachments."""
    parts = [f"From: {msg.sender}", f"Subject: {msg.subject}", "", msg.body]
    if include_attachments and msg.attachments:
        for att in json.loads(msg.attachments):
            text = _attachment_text(att)
            if text:
                name = att.get("filename") or att.get("name") or "attachment"
                parts.extend(["", f"--- Attachment: {name} ---", text])
    return "\n".join(parts)


class WebhookGateway:
    """Drives extraction and matching for inbound deliveries."""

    def __init__(
        self,
        repo: Repository,
        config: Config,
        extractor: TransactionExtractor,
        ledger: MatchLedger,
        accounts: AccountDirectory | None = None,
    ):
        self.repo = repo
        self.config = config
        self.extractor = extractor
        self.ledger = ledger
        self.accounts = accounts or AccountDirectory(config)
        self.store = TransactionStore(repo)
        self._engines: dict[str, MatchingEngine] = {}

    def _engine_for(self, account: Account) -> MatchingEngine:
        engine = self._engines.get(account.id)
        if engine is None:
            engine = MatchingEngine(MatchingSettings.from_config(self.config, account))
            self._engines[account.id] = engine
        return engine

    # ── Entry points ────────────────────────────────────────

    def ingest(self, delivery: WebhookDelivery) -> IngestResult:
        """Process one webhook delivery.

        Raises:
            UnknownAccount: Recipient is not a known, active account. Nothing
                is recorded.
        """
        account = self.accounts.authorize(delivery.recipient)
        return self._ingest_for_account(delivery, account)

    def process_email(
        self,
        account_id: str,
        body: str,
        subject: str | None = None,
        sender: str = "manual",
    ) -> IngestResult:
        """Run the pipeline on a raw email body for an explicit account.

        Every call is a new delivery.
        """
        account = self.accounts.by_id(account_id)
        if account is None:
            raise UnknownAccount(str(account_id), "unknown")
        if not account.active:
            raise UnknownAccount(str(account_id), "inactive")
        if not body or not body.strip():
            raise ValidationError("Email content is empty")
        delivery = WebhookDelivery(
            sender=sender,
            recipient=account.inbound_email or account.id,
            subject=subject or "",
            body=body,
            received_at=_now(),
            delivery_id=f"manual-{uuid4()}",
        )
        return self._ingest_for_account(delivery, account)

    def reprocess(self, message_id: str) -> IngestResult:
        """Re-run a failed delivery. Other deliveries return their stored result."""
        msg = self.repo.get_message(message_id)
        if msg is None:
            raise NotFound(f"Message not found: {message_id}")
        if not self.repo.claim_failed_message(msg.id):
            logger.info("Message %s is %s, not reprocessing", msg.id, msg.status)
            return self._prior_result(self.repo.get_message(msg.id))
        account = self.accounts.by_id(msg.account_id)
        if account is None or not account.active:
            self.repo.update_message_status(
                msg.id, FAILED, error_message="account no longer active",
                completed_at=_now(),
            )
            raise UnknownAccount(msg.recipient, "inactive")
        logger.info("Reprocessing message %s", msg.id)
        return self._run(msg, account)

    def reprocess_failed(self, limit: int = 100) -> list[IngestResult]:
        results = []
        for msg in self.repo.get_messages_by_status(FAILED, limit=limit):
            try:
                results.append(self.reprocess(msg.id))
            except UnknownAccount as e:
                logger.warning("Cannot reprocess %s: %s", msg.id, e)
                results.append(IngestResult(
                    success=False, status=FAILED, message_id=msg.id, errors=[str(e)],
                ))
        return results

    # ── Internals ───────────────────────────────────────────

    def _ingest_for_account(self, delivery: WebhookDelivery, account: Account) -> IngestResult:
        key = compute_delivery_key(
            delivery.sender, delivery.recipient, delivery.subject,
            delivery.timestamp, delivery.delivery_id, delivery.body,
        )
        msg = InboundMessage(
            delivery_key=key,
            account_id=account.id,
            sender=delivery.sender,
            recipient=delivery.recipient,
            subject=delivery.subject,
            body=delivery.body,
            received_at=delivery.received_at,
            provider_delivery_id=delivery.delivery_id,
            attachments=json.dumps(delivery.attachments) if delivery.attachments else None,
        )
        try:
            self.repo.insert_message(msg)
        except DuplicateDelivery as e:
            existing = self.repo.get_message_by_key(e.delivery_key)
            if existing.status == FAILED and self.repo.claim_failed_message(existing.id):
                logger.info("Redelivery of failed message %s, processing again", existing.id)
                return self._run(existing, account)
            logger.info("Duplicate delivery of message %s ignored", existing.id)
            return self._prior_result(existing)

        logger.info("Received message %s for account %s", msg.id, account.id)
        return self._run(msg, account)

    @staticmethod
    def _prior_result(msg: InboundMessage) -> IngestResult:
        return IngestResult(
            success=msg.status != FAILED,
            processed=msg.processed_count,
            matched=msg.matched_count,
            review=msg.review_count,
            duplicate=True,
            status=msg.status,
            message_id=msg.id,
            errors=[msg.error_message] if msg.error_message else [],
        )

    def _run(self, msg: InboundMessage, account: Account) -> IngestResult:
        try:
            return self._extract_and_match(msg, account)
        except Exception as e:
            logger.exception("Processing failed for message %s", msg.id)
            self.repo.update_message_status(
                msg.id, FAILED, error_message=str(e), completed_at=_now(),
            )
            return IngestResult(success=False, status=FAILED, message_id=msg.id, errors=[str(e)])

    def _extract_and_match(self, msg: InboundMessage, account: Account) -> IngestResult:
        text = compose_email_text(msg, self.config.include_attachments)
        default_date = parse_value_date(msg.received_at) or datetime.now(timezone.utc).date().isoformat()
        extraction = self.extractor.run(text, account, default_date)

        if extraction.failed:
            logger.warning("Extraction failed for message %s: %s", msg.id, extraction.error)
            self.repo.update_message_status(
                msg.id, FAILED, error_message=extraction.error, completed_at=_now(),
            )
            return IngestResult(
                success=False, status=FAILED, message_id=msg.id, errors=[extraction.error],
            )

        engine = self._engine_for(account)
        processed = matched = review = 0
        errors: list[str] = []
        for cand in extraction.candidates:
            persisted = self.store.persist(cand, account, msg.id)
            if not persisted.is_new:
                continue
            processed += 1
            txn = persisted.transaction
            try:
                outcome = match_transaction(txn, self.ledger, engine)
            except Exception as e:
                logger.exception("Matching failed for transaction %s", txn.id)
                errors.append(f"transaction {txn.id}: {e}")
                continue
            if outcome.action == ACCEPT:
                matched += 1
            elif outcome.action == REVIEW:
                review += 1

        self.repo.update_message_status(
            msg.id, PROCESSED,
            processed_count=processed,
            matched_count=matched,
            review_count=review,
            error_message="; ".join(errors) or None,
            completed_at=_now(),
        )
        logger.info(
            "Message %s processed: %d candidate(s), %d new, %d matched, %d for review",
            msg.id, len(extraction.candidates), processed, matched, review,
        )
        return IngestResult(
            success=True,
            processed=processed,
            matched=matched,
            review=review,
            status=PROCESSED,
            message_id=msg.id,
            errors=errors,
        )
