"""Tests for the mail drop folder watcher."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from paymatch.errors import UnknownAccount, ValidationError
from paymatch.gateway.watcher import (
    FileStabilityError,
    MailDropWatcher,
    delivery_from_eml,
    validate_file_completeness,
    wait_for_stable,
)
from paymatch.gateway.webhook import IngestResult

EML = b"""\
From: Banka <notifikace@bank.cz>
To: Firma <bank.219819.b7a9415jfb@doklad.ai>
Subject: Prichozi platba
Date: Wed, 15 Jan 2025 10:00:00 +0100
Message-ID: <abc123@bank.cz>

25000 CZK, VS 2025001, from Firma ABC
"""

PAYLOAD = {
    "from": "notifikace@bank.cz",
    "to": "bank.219819.b7a9415jfb@doklad.ai",
    "subject": "Platba",
    "body": "25000 CZK, VS 2025001, from Firma ABC",
}


@pytest.fixture
def gateway():
    gw = MagicMock()
    gw.ingest.return_value = IngestResult(success=True, processed=1, matched=1, message_id="m1")
    return gw


@pytest.fixture
def watcher(tmp_path, gateway):
    return MailDropWatcher(tmp_path, gateway, stability_seconds=0, check_interval=0)


class TestStability:
    def test_stable_file_returns(self, tmp_path):
        f = tmp_path / "a.json"
        f.write_text("{}")
        wait_for_stable(f, stability_seconds=0, check_interval=0)

    def test_timeout(self, tmp_path):
        f = tmp_path / "a.json"
        f.write_text("{}")
        with pytest.raises(TimeoutError):
            wait_for_stable(f, stability_seconds=10, check_interval=0.01, max_wait=0.05)

    def test_still_growing_file_waits(self, tmp_path):
        f = tmp_path / "a.eml"
        f.write_bytes(b"From: x\n")

        def agent_writes(_interval):
            if sleep.call_count == 1:
                with open(f, "ab") as fh:
                    fh.write(b"To: y\n\nbody\n")

        with patch("paymatch.gateway.watcher.time.sleep", side_effect=agent_writes) as sleep:
            wait_for_stable(f, stability_seconds=0, check_interval=0)
        # one poll sees the write, the next confirms it
        assert sleep.call_count == 2

    def test_truncated_json(self, tmp_path):
        f = tmp_path / "a.json"
        f.write_text('{"from": "x"')
        with pytest.raises(FileStabilityError):
            validate_file_completeness(f)

    def test_eml_without_body(self, tmp_path):
        f = tmp_path / "a.eml"
        f.write_bytes(b"From: x\nTo: y\n")
        with pytest.raises(FileStabilityError):
            validate_file_completeness(f)

    def test_empty_file(self, tmp_path):
        f = tmp_path / "a.eml"
        f.write_bytes(b"  \n")
        with pytest.raises(FileStabilityError):
            validate_file_completeness(f)


class TestDeliveryFromEml:
    def test_headers_mapped(self):
        d = delivery_from_eml(EML)
        assert d.recipient == "bank.219819.b7a9415jfb@doklad.ai"
        assert d.subject == "Prichozi platba"
        assert d.delivery_id == "<abc123@bank.cz>"
        assert d.timestamp.startswith("2025-01-15T10:00:00")
        assert "VS 2025001" in d.body

    def test_delivered_to_preferred(self):
        d = delivery_from_eml(b"Delivered-To: bank.1.tok@doklad.ai\n" + EML)
        assert d.recipient == "bank.1.tok@doklad.ai"

    def test_no_recipient(self):
        with pytest.raises(ValidationError):
            delivery_from_eml(b"From: x@y\nSubject: s\n\nbody\n")


class TestProcessFile:
    def test_json_processed_and_moved(self, tmp_path, watcher, gateway):
        f = tmp_path / "mail1.json"
        f.write_text(json.dumps(PAYLOAD))
        result = watcher.process_file(f)
        assert result.matched == 1
        delivery = gateway.ingest.call_args[0][0]
        assert delivery.recipient == PAYLOAD["to"]
        assert not f.exists()
        assert (tmp_path / "processed" / "mail1.json").exists()

    def test_eml_processed(self, tmp_path, watcher, gateway):
        f = tmp_path / "mail2.eml"
        f.write_bytes(EML)
        assert watcher.process_file(f) is not None
        assert gateway.ingest.call_args[0][0].delivery_id == "<abc123@bank.cz>"

    def test_unknown_account_rejected(self, tmp_path, watcher, gateway):
        gateway.ingest.side_effect = UnknownAccount("x@doklad.ai")
        f = tmp_path / "mail3.json"
        f.write_text(json.dumps(PAYLOAD))
        assert watcher.process_file(f) is None
        assert (tmp_path / "rejected" / "mail3.json").exists()

    def test_invalid_payload_rejected(self, tmp_path, watcher, gateway):
        f = tmp_path / "mail4.json"
        f.write_text(json.dumps({"from": "x"}))
        assert watcher.process_file(f) is None
        gateway.ingest.assert_not_called()
        assert (tmp_path / "rejected" / "mail4.json").exists()

    def test_process_pending_skips_other_files(self, tmp_path, watcher, gateway):
        (tmp_path / "a.json").write_text(json.dumps(PAYLOAD))
        (tmp_path / "notes.pdf").write_bytes(b"%PDF")
        results = watcher.process_pending()
        assert len(results) == 1
        assert (tmp_path / "notes.pdf").exists()

    def test_on_created_ignores_directories(self, watcher, gateway):
        event = MagicMock(is_directory=True, src_path="/tmp/x.json")
        watcher.on_created(event)
        gateway.ingest.assert_not_called()

    def test_process_pending_missing_dir(self, tmp_path, gateway):
        w = MailDropWatcher(Path(tmp_path / "missing"), gateway)
        assert w.process_pending() == []
