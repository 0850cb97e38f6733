"""
Outreach
========
CRM property records, the outreach status lifecycle, follow-up drafting and
the rate-limited mail queue that outreach messages pass through.
"""
from .status import OutreachStatus, TRANSITIONS, validate_transition, can_mark_ready
from .models import PropertyRecord, Contact
from .store import PropertyStore
from .dispatch import DispatchQueue, QueuedMessage, MessageStatus, MessageKind
from .followup import followup_candidates, prepare_followups

__all__ = [
    "OutreachStatus",
    "TRANSITIONS",
    "validate_transition",
    "can_mark_ready",
    "PropertyRecord",
    "Contact",
    "PropertyStore",
    "DispatchQueue",
    "QueuedMessage",
    "MessageStatus",
    "MessageKind",
    "followup_candidates",
    "prepare_followups",
]
