"""Mail drop folder: PollingObserver feeding files into the gateway.

Some mail setups cannot call a webhook and deliver to a directory
instead (fetchmail, an SES-to-S3 sync, a NAS share). Two file shapes are
accepted:
  .json  the webhook payload ({from, to, subject, body, attachments, timestamp})
  .eml   a raw RFC 822 message

Files are processed once size and mtime are stable and the content is
complete. Uses PollingObserver as primary (not fallback) due to NAS/Docker
volume unreliability with inotify.
"""

from __future__ import annotations

import json
import logging
import time
from email import policy
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from pathlib import Path

from watchdog.events import FileSystemEventHandler

from paymatch.errors import PaymentMatchError, ValidationError
from paymatch.gateway.webhook import IngestResult, WebhookDelivery, WebhookGateway

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".json", ".eml"}

DEFAULT_STABILITY_SECONDS = 5
DEFAULT_CHECK_INTERVAL = 1.0
DEFAULT_POLL_INTERVAL = 30


class FileStabilityError(Exception):
    """Raised when a file fails post-stability validation."""


# ── File stability & validation ──────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: float = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Block until a dropped message has stopped changing.

    The create event can fire while the delivery agent is still writing, so
    the file only counts as written once its (size, mtime) signature has
    held for stability_seconds.

    Raises:
        TimeoutError: The file kept changing for max_wait seconds.
    """
    deadline = time.monotonic() + max_wait
    signature: tuple[int, int] | None = None
    unchanged_since = time.monotonic()

    while time.monotonic() <= deadline:
        st = filepath.stat()
        current = (st.st_size, st.st_mtime_ns)
        now = time.monotonic()
        if current != signature:
            signature, unchanged_since = current, now
        elif now - unchanged_since >= stability_seconds:
            return
        time.sleep(check_interval)

    raise TimeoutError(f"{filepath.name} still changing after {max_wait}s")


def validate_file_completeness(filepath: Path) -> None:
    """Post-stability validation.

    - JSON files: must parse as one JSON object
    - EML files: must be non-empty and have a header/body separator

    Raises:
        FileStabilityError: If file appears incomplete.
    """
    suffix = filepath.suffix.lower()
    data = filepath.read_bytes()
    if not data.strip():
        raise FileStabilityError(f"Empty file: {filepath}")

    if suffix == ".json":
        try:
            json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FileStabilityError(f"Incomplete JSON file {filepath}: {e}") from e
    elif suffix == ".eml":
        if b"\n\n" not in data.replace(b"\r\n", b"\n"):
            raise FileStabilityError(f"EML file has no message body: {filepath}")


# ── File -> delivery ──────────────────────────────────────


def delivery_from_eml(data: bytes, default_recipient: str | None = None) -> WebhookDelivery:
    """Turn a raw RFC 822 message into a webhook delivery."""
    msg = BytesParser(policy=policy.default).parsebytes(data)

    recipient = msg.get("Delivered-To") or msg.get("X-Original-To") or msg.get("To") or default_recipient
    if not recipient:
        raise ValidationError("Message has no recipient")
    # "Name <addr>" -> addr
    recipient = str(recipient).split(",")[0]
    if "<" in recipient:
        recipient = recipient.split("<", 1)[1].split(">", 1)[0]

    body_part = msg.get_body(preferencelist=("plain", "html"))
    body = body_part.get_content() if body_part is not None else ""

    attachments = []
    for part in msg.iter_attachments():
        ctype = part.get_content_type()
        if ctype.startswith("text/") or ctype == "application/csv":
            attachments.append({
                "filename": part.get_filename() or "attachment",
                "content": part.get_content(),
                "contentType": ctype,
            })

    timestamp = None
    if msg.get("Date"):
        try:
            timestamp = parsedate_to_datetime(str(msg["Date"])).isoformat()
        except (TypeError, ValueError):
            timestamp = None

    return WebhookDelivery.from_payload(
        {
            "from": str(msg.get("From") or "unknown"),
            "to": recipient.strip(),
            "subject": str(msg.get("Subject") or ""),
            "body": body or " ",
            "attachments": attachments,
            "timestamp": timestamp,
        },
        delivery_id=str(msg["Message-ID"]).strip() if msg.get("Message-ID") else None,
    )


def delivery_from_file(filepath: Path) -> WebhookDelivery:
    if filepath.suffix.lower() == ".eml":
        return delivery_from_eml(filepath.read_bytes())
    payload = json.loads(filepath.read_text(encoding="utf-8"))
    return WebhookDelivery.from_payload(payload)


# ── Watcher ───────────────────────────────────────────────


class MailDropWatcher(FileSystemEventHandler):
    """Watch a drop folder for delivered emails using PollingObserver.

    Processes files sequentially. Processed files are moved to
    ``processed/``, rejected ones to ``rejected/``, so a restart does not
    feed them again (the delivery key would make that harmless anyway).
    """

    def __init__(
        self,
        watch_dir: Path,
        gateway: WebhookGateway,
        stability_seconds: float = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.gateway = gateway
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self.poll_interval = poll_interval
        self._observer = None

    def start(self) -> None:
        from watchdog.observers.polling import PollingObserver

        self.watch_dir.mkdir(parents=True, exist_ok=True)
        self._observer = PollingObserver(timeout=self.poll_interval)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for delivered emails", self.watch_dir)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("Mail drop watcher stopped")

    def process_pending(self) -> list[IngestResult]:
        """Process files already sitting in the folder (e.g. at startup)."""
        results = []
        if not self.watch_dir.exists():
            return results
        for filepath in sorted(self.watch_dir.iterdir()):
            if filepath.is_file() and filepath.suffix.lower() in SUPPORTED_EXTENSIONS:
                result = self.process_file(filepath)
                if result is not None:
                    results.append(result)
        return results

    def on_created(self, event) -> None:
        if event.is_directory:
            return
        filepath = Path(event.src_path)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return
        logger.info("New mail file detected: %s", filepath.name)
        self.process_file(filepath)

    def process_file(self, filepath: Path) -> IngestResult | None:
        """Wait for stability, validate, then ingest. Returns None if rejected."""
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)
            delivery = delivery_from_file(filepath)
            result = self.gateway.ingest(delivery)
        except (FileStabilityError, TimeoutError) as e:
            logger.error("File validation failed: %s", e)
            self._move(filepath, "rejected")
            return None
        except PaymentMatchError as e:
            logger.warning("Rejected %s: %s", filepath.name, e)
            self._move(filepath, "rejected")
            return None
        except (OSError, ValueError):
            logger.exception("Could not read %s", filepath.name)
            self._move(filepath, "rejected")
            return None

        logger.info(
            "Ingest result for %s: %s (processed=%d, matched=%d, review=%d)",
            filepath.name, result.status, result.processed, result.matched, result.review,
        )
        self._move(filepath, "processed")
        return result

    def _move(self, filepath: Path, subdir: str) -> None:
        target_dir = self.watch_dir / subdir
        try:
            target_dir.mkdir(exist_ok=True)
            filepath.replace(target_dir / filepath.name)
        except OSError:
            logger.exception("Could not move %s to %s/", filepath.name, subdir)
