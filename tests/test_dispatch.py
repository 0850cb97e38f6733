"""Tests for the rate-limited dispatch queue."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from ejendom_agent.errors import NotFoundError, ValidationError
from ejendom_agent.outreach import (
    DispatchQueue, MessageKind, MessageStatus, OutreachStatus, PropertyRecord, PropertyStore,
    QueuedMessage,
)


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _ok_transport():
    transport = MagicMock()
    transport.send.return_value = {"success": True, "message_id": "<id@test>"}
    return transport


def _message(i=0, property_id=""):
    return QueuedMessage(property_id=property_id, to=f"ejer{i}@example.dk",
                         subject="Facade", body="Hej")


class TestEnqueue:
    def test_invalid_recipient(self):
        queue = DispatchQueue(_ok_transport())
        with pytest.raises(ValidationError):
            queue.enqueue(QueuedMessage(to="not-an-email", subject="s", body="b"))

    def test_negative_rate_limit(self):
        with pytest.raises(ValidationError):
            DispatchQueue(_ok_transport(), rate_limit_per_hour=-1)

    def test_duplicate_property_returns_existing(self):
        queue = DispatchQueue(_ok_transport())
        first = queue.enqueue(_message(1, property_id="prop-1"))
        second = queue.enqueue(_message(2, property_id="prop-1"))
        assert second is first
        assert queue.stats()["queued"] == 1

    def test_enqueue_property_requires_ready(self, tmp_path):
        store = PropertyStore(str(tmp_path / "p"))
        rec = store.create(PropertyRecord(
            address="Algade 1", contact_email="ejer@example.dk",
            email_draft_subject="Facade", email_draft_body="Hej",
        ))
        queue = DispatchQueue(_ok_transport(), property_store=store)
        with pytest.raises(ValidationError):
            queue.enqueue_property(rec)
        store.mark_ready(rec.id)
        msg = queue.enqueue_property(store.get(rec.id))
        assert msg.to == "ejer@example.dk"
        assert msg.status == MessageStatus.QUEUED

    def test_cancel(self):
        queue = DispatchQueue(_ok_transport())
        msg = queue.enqueue(_message())
        assert queue.cancel(msg.id) is True
        assert queue.stats()["queued"] == 0
        assert queue.cancel(msg.id) is False

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            DispatchQueue(_ok_transport()).get("msg-missing")


class TestDrain:
    def test_rate_limit_defers(self):
        clock = FakeClock()
        transport = _ok_transport()
        queue = DispatchQueue(transport, rate_limit_per_hour=200, clock=clock)
        for i in range(250):
            queue.enqueue(_message(i))

        result = queue.drain()
        assert result["sent"] == 200
        assert result["deferred"] == 50
        stats = queue.stats()
        assert stats["queued"] == 50
        assert stats["sentThisHour"] == 200
        assert transport.send.call_count == 200

        # Same window: nothing more goes out
        assert queue.drain()["sent"] == 0

        clock.advance(3601)
        assert queue.drain()["sent"] == 50
        assert queue.stats()["queued"] == 0

    def test_fifo_order(self):
        transport = _ok_transport()
        queue = DispatchQueue(transport, rate_limit_per_hour=2, clock=FakeClock())
        for i in range(3):
            queue.enqueue(_message(i))
        queue.drain()
        sent_to = [c.args[0].to for c in transport.send.call_args_list]
        assert sent_to == ["ejer0@example.dk", "ejer1@example.dk"]

    def test_override_limit(self):
        queue = DispatchQueue(_ok_transport(), rate_limit_per_hour=200, clock=FakeClock())
        for i in range(5):
            queue.enqueue(_message(i))
        assert queue.drain(rate_limit_per_hour=3)["sent"] == 3

    def test_retry_ceiling(self):
        transport = MagicMock()
        transport.send.return_value = {"success": False, "error": "SMTP down"}
        queue = DispatchQueue(transport, max_attempts=3, clock=FakeClock())
        msg = queue.enqueue(_message())

        assert queue.drain()["retried"] == 1
        assert queue.get(msg.id).attempts == 1
        assert queue.drain()["retried"] == 1
        result = queue.drain()
        assert result["failed"] == 1
        assert queue.get(msg.id).status == MessageStatus.FAILED
        assert queue.get(msg.id).attempts == 3
        assert queue.drain()["sent"] == 0
        assert transport.send.call_count == 3

    def test_failed_send_frees_window_slot(self):
        transport = MagicMock()
        transport.send.return_value = {"success": False, "error": "boom"}
        queue = DispatchQueue(transport, rate_limit_per_hour=1, clock=FakeClock())
        queue.enqueue(_message())
        queue.drain()
        assert queue.stats()["sentThisHour"] == 0

    def test_transport_exception_counts_as_failure(self):
        transport = MagicMock()
        transport.send.side_effect = RuntimeError("socket closed")
        queue = DispatchQueue(transport, max_attempts=1, clock=FakeClock())
        queue.enqueue(_message())
        assert queue.drain()["failed"] == 1

    def test_property_status_follows_outcome(self, tmp_path):
        store = PropertyStore(str(tmp_path / "p"))
        ok = store.create(PropertyRecord(address="Algade 1", contact_email="a@example.dk",
                                         email_draft_subject="s", email_draft_body="b"))
        store.mark_ready(ok.id)
        queue = DispatchQueue(_ok_transport(), property_store=store, clock=FakeClock())
        queue.enqueue_property(store.get(ok.id))
        queue.drain()
        assert store.get(ok.id).outreach_status == OutreachStatus.FOERSTE_MAIL_SENDT

    def test_first_send_records_sent_time(self, tmp_path):
        store = PropertyStore(str(tmp_path / "p"))
        rec = store.create(PropertyRecord(address="Algade 1", contact_email="a@example.dk",
                                          email_draft_subject="s", email_draft_body="b"))
        store.mark_ready(rec.id)
        queue = DispatchQueue(_ok_transport(), property_store=store, clock=FakeClock())
        message = queue.enqueue_property(store.get(rec.id))
        queue.drain()
        assert message.kind == MessageKind.FIRST
        assert store.get(rec.id).first_email_sent_at == message.sent_at

    def test_followup_send_moves_to_followup_sent(self, tmp_path):
        store = PropertyStore(str(tmp_path / "p"))
        rec = store.create(PropertyRecord(address="Algade 1", contact_email="a@example.dk",
                                          email_draft_subject="s", email_draft_body="b"))
        store.mark_ready(rec.id)
        store.set_status(rec.id, OutreachStatus.FOERSTE_MAIL_SENDT)
        store.update(rec.id, email_draft_subject="Opfølgning: s", email_draft_body="Hej igen",
                     email_draft_kind="followup")
        queue = DispatchQueue(_ok_transport(), property_store=store, clock=FakeClock())
        message = queue.enqueue_property(store.get(rec.id))
        assert message.kind == MessageKind.FOLLOWUP
        assert message.subject == "Opfølgning: s"
        queue.drain()
        assert store.get(rec.id).outreach_status == OutreachStatus.OPFOELGNING_SENDT

    def test_first_mail_draft_not_resent_as_followup(self, tmp_path):
        store = PropertyStore(str(tmp_path / "p"))
        rec = store.create(PropertyRecord(address="Algade 1", contact_email="a@example.dk",
                                          email_draft_subject="s", email_draft_body="b"))
        store.mark_ready(rec.id)
        store.set_status(rec.id, OutreachStatus.FOERSTE_MAIL_SENDT)
        queue = DispatchQueue(_ok_transport(), property_store=store)
        with pytest.raises(ValidationError) as exc:
            queue.enqueue_property(store.get(rec.id))
        assert "follow-up" in str(exc.value)

    def test_final_failure_moves_property_to_error(self, tmp_path):
        store = PropertyStore(str(tmp_path / "p"))
        rec = store.create(PropertyRecord(address="Algade 1", contact_email="a@example.dk",
                                          email_draft_subject="s", email_draft_body="b"))
        store.mark_ready(rec.id)
        transport = MagicMock()
        transport.send.return_value = {"success": False, "error": "rejected"}
        queue = DispatchQueue(transport, max_attempts=1, property_store=store, clock=FakeClock())
        queue.enqueue_property(store.get(rec.id))
        queue.drain()
        assert store.get(rec.id).outreach_status == OutreachStatus.FEJL


class TestStats:
    def test_shape(self):
        stats = DispatchQueue(_ok_transport(), rate_limit_per_hour=50).stats()
        assert stats == {"queued": 0, "sent": 0, "failed": 0, "sentThisHour": 0, "rateLimitPerHour": 50}
