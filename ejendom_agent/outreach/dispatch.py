"""
Dispatch Queue
==============
Rate-limited FIFO queue for outreach mail.

- At most `rate_limit_per_hour` sends inside any trailing 60-minute window.
  Messages over the limit stay queued for the next drain, never dropped.
- A failed send goes back to the queue with attempts + 1 until max_attempts,
  then it is marked failed.
- stats() reads plain counters and a window snapshot, so it never waits on a sender.
"""

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from ..errors import EjendomError, NotFoundError, RateLimitExceeded, ValidationError
from .status import OutreachStatus

log = logging.getLogger("ejendom.dispatch")

WINDOW_SECONDS = 3600
DEFAULT_RATE_LIMIT = 200
DEFAULT_MAX_ATTEMPTS = 3
MAX_HISTORY = 500


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class MessageKind(str, Enum):
    FIRST = "first"
    FOLLOWUP = "followup"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


@dataclass
class QueuedMessage:
    id: str = ""
    property_id: str = ""
    to: str = ""
    subject: str = ""
    body: str = ""
    contact_name: str = ""
    status: MessageStatus = MessageStatus.QUEUED
    queued_at: str = ""
    scheduled_at: str = ""
    sent_at: str = ""
    attempts: int = 0
    error: str = ""
    message_id: str = ""
    kind: MessageKind = MessageKind.FIRST

    def __post_init__(self):
        if not self.id:
            self.id = f"msg-{uuid.uuid4().hex[:8]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id, "property_id": self.property_id, "to": self.to,
            "subject": self.subject, "body": self.body, "contact_name": self.contact_name,
            "status": self.status.value, "queued_at": self.queued_at,
            "scheduled_at": self.scheduled_at, "sent_at": self.sent_at,
            "attempts": self.attempts, "error": self.error, "message_id": self.message_id,
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedMessage":
        data = dict(data)
        if "status" in data:
            data["status"] = MessageStatus(data["status"])
        if "kind" in data:
            data["kind"] = MessageKind(data["kind"])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class DispatchQueue:

    def __init__(
        self,
        transport,
        rate_limit_per_hour: int = DEFAULT_RATE_LIMIT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        property_store=None,
        clock: Callable[[], float] = time.time,
    ):
        if rate_limit_per_hour <= 0:
            raise ValidationError("rate_limit_per_hour must be positive")
        self.transport = transport
        self.rate_limit_per_hour = rate_limit_per_hour
        self.max_attempts = max_attempts
        self.property_store = property_store
        self._clock = clock
        self._lock = threading.Lock()
        self._queue: List[QueuedMessage] = []
        self._history: Deque[QueuedMessage] = deque(maxlen=MAX_HISTORY)
        self._send_times: Deque[float] = deque()
        # Read without the lock by stats()
        self._window_snapshot: tuple = ()
        self._queued = 0
        self._sent = 0
        self._failed = 0

    # --- Enqueue ---

    def enqueue(self, message: QueuedMessage) -> QueuedMessage:
        if not message.to or "@" not in message.to:
            raise ValidationError(f"Invalid recipient: {message.to!r}")
        if not message.subject or not message.body:
            raise ValidationError("A message needs a subject and a body")

        with self._lock:
            if message.property_id:
                for existing in self._queue:
                    if existing.property_id == message.property_id and existing.status == MessageStatus.QUEUED:
                        return existing
            now = self._clock()
            message.status = MessageStatus.QUEUED
            message.queued_at = message.queued_at or _iso(now)
            message.scheduled_at = message.scheduled_at or message.queued_at
            self._queue.append(message)
            self._queued += 1

        log.info(f"Queued {message.id} for {message.to} (property {message.property_id or '-'})")
        return message

    def enqueue_property(
        self,
        record,
        subject: Optional[str] = None,
        body: Optional[str] = None,
        to: Optional[str] = None,
    ) -> QueuedMessage:
        """
        Queue the stored draft of a property. KLAR_TIL_UDSENDELSE sends the first
        mail; FOERSTE_MAIL_SENDT sends a follow-up and needs a follow-up draft.
        """
        recipient = (to or record.contact_email or "").strip()
        if not recipient:
            raise ValidationError("No contact email on the property")
        if not (record.email_draft_subject and record.email_draft_body) and not (subject and body):
            raise ValidationError("No email draft on the property")
        if record.outreach_status == OutreachStatus.KLAR_TIL_UDSENDELSE:
            kind = MessageKind.FIRST
        elif record.outreach_status == OutreachStatus.FOERSTE_MAIL_SENDT:
            kind = MessageKind.FOLLOWUP
            if record.email_draft_kind != MessageKind.FOLLOWUP.value and not (subject and body):
                raise ValidationError("No follow-up draft on the property (prepare follow-ups first)")
        else:
            raise ValidationError(
                f"Wrong status {record.outreach_status.value} "
                f"(must be KLAR_TIL_UDSENDELSE or FOERSTE_MAIL_SENDT)"
            )
        return self.enqueue(QueuedMessage(
            property_id=record.id,
            to=recipient,
            subject=(subject or record.email_draft_subject).strip(),
            body=body if body is not None else record.email_draft_body,
            contact_name=record.contact_person,
            kind=kind,
        ))

    def cancel(self, message_id: str) -> bool:
        with self._lock:
            for i, message in enumerate(self._queue):
                if message.id == message_id and message.status == MessageStatus.QUEUED:
                    del self._queue[i]
                    self._queued -= 1
                    return True
        return False

    def get(self, message_id: str) -> QueuedMessage:
        for message in list(self._queue) + list(self._history):
            if message.id == message_id:
                return message
        raise NotFoundError("Message", message_id)

    # --- Drain ---

    def drain(self, rate_limit_per_hour: Optional[int] = None) -> Dict[str, int]:
        """
        Send what the window allows. Each queued message is attempted at most
        once per drain; anything over the limit waits for the next cycle.
        """
        limit = rate_limit_per_hour or self.rate_limit_per_hour
        result = {"sent": 0, "retried": 0, "failed": 0, "deferred": 0}

        with self._lock:
            pending = [m.id for m in self._queue if m.status == MessageStatus.QUEUED]

        for message_id in pending:
            message = self._claim(message_id)
            if message is None:
                continue
            try:
                slot = self._reserve_slot(limit)
            except RateLimitExceeded as e:
                self._release(message)
                result["deferred"] = self._queued
                log.info(f"{e}. {self._queued} messages deferred")
                break

            outcome = self._send(message)
            if outcome.get("success"):
                self._mark_sent(message, outcome)
                result["sent"] += 1
            else:
                self._free_slot(slot)
                if self._mark_failed_attempt(message, outcome.get("error", "Unknown error")):
                    result["failed"] += 1
                else:
                    result["retried"] += 1

        return result

    def stats(self) -> Dict[str, Any]:
        cutoff = self._clock() - WINDOW_SECONDS
        return {
            "queued": self._queued,
            "sent": self._sent,
            "failed": self._failed,
            "sentThisHour": sum(1 for t in self._window_snapshot if t > cutoff),
            "rateLimitPerHour": self.rate_limit_per_hour,
        }

    def items(self, limit: int = 50) -> List[QueuedMessage]:
        items = list(self._queue) + list(self._history)[-limit:]
        return sorted(items, key=lambda m: m.queued_at, reverse=True)

    # --- Internal ---

    def _claim(self, message_id: str) -> Optional[QueuedMessage]:
        with self._lock:
            for message in self._queue:
                if message.id == message_id and message.status == MessageStatus.QUEUED:
                    message.status = MessageStatus.SENDING
                    return message
        return None

    def _release(self, message: QueuedMessage):
        with self._lock:
            message.status = MessageStatus.QUEUED

    def _reserve_slot(self, limit: int) -> float:
        """Atomically check the window and take a slot in it."""
        with self._lock:
            now = self._clock()
            cutoff = now - WINDOW_SECONDS
            while self._send_times and self._send_times[0] <= cutoff:
                self._send_times.popleft()
            if len(self._send_times) >= limit:
                retry_after = self._send_times[0] + WINDOW_SECONDS - now
                raise RateLimitExceeded(limit, retry_after)
            self._send_times.append(now)
            self._window_snapshot = tuple(self._send_times)
            return now

    def _free_slot(self, slot: float):
        with self._lock:
            try:
                self._send_times.remove(slot)
            except ValueError:
                pass
            self._window_snapshot = tuple(self._send_times)

    def _send(self, message: QueuedMessage) -> Dict[str, Any]:
        try:
            return self.transport.send(message) or {"success": False, "error": "Empty transport result"}
        except Exception as e:
            log.warning(f"Transport error for {message.id}: {e}")
            return {"success": False, "error": str(e)}

    def _mark_sent(self, message: QueuedMessage, outcome: Dict[str, Any]):
        with self._lock:
            message.status = MessageStatus.SENT
            message.attempts += 1
            message.sent_at = _iso(self._clock())
            message.message_id = outcome.get("message_id", "") or ""
            message.error = ""
            self._move_to_history(message)
            self._sent += 1
        log.info(f"Sent {message.id} ({message.kind.value}) to {message.to}")
        if message.kind == MessageKind.FOLLOWUP:
            self._update_property(message.property_id, OutreachStatus.OPFOELGNING_SENDT)
        else:
            self._update_property(message.property_id, OutreachStatus.FOERSTE_MAIL_SENDT,
                                  first_email_sent_at=message.sent_at)

    def _mark_failed_attempt(self, message: QueuedMessage, error: str) -> bool:
        """Returns True when the retry budget is spent and the message failed."""
        with self._lock:
            message.attempts += 1
            message.error = error
            if message.attempts < self.max_attempts:
                message.status = MessageStatus.QUEUED
                log.warning(f"Send of {message.id} failed (attempt {message.attempts}/{self.max_attempts}): {error}")
                return False
            message.status = MessageStatus.FAILED
            self._move_to_history(message)
            self._failed += 1
        log.error(f"Giving up on {message.id} after {message.attempts} attempts: {error}")
        self._update_property(message.property_id, OutreachStatus.FEJL)
        return True

    def _move_to_history(self, message: QueuedMessage):
        if message in self._queue:
            self._queue.remove(message)
            self._queued -= 1
        self._history.append(message)

    def _update_property(self, property_id: str, status: OutreachStatus, **fields):
        if not self.property_store or not property_id:
            return
        try:
            self.property_store.set_status(property_id, status)
            if fields:
                self.property_store.update(property_id, **fields)
        except EjendomError as e:
            log.warning(f"Failed to update status for {property_id}: {e}")
