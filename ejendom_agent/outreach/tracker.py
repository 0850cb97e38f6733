"""
Tracker
=======
Inbox monitoring for outreach replies. Matches senders to properties that were
mailed, moves them to SVAR_MODTAGET, and closes opt-outs as lost.
"""

import logging
import re
from typing import Dict, List

from ..errors import EjendomError
from .status import OutreachStatus

log = logging.getLogger("ejendom.outreach.tracker")

OPT_OUT_PATTERNS = [
    r'\bunsubscribe\b',
    r'\bremove me\b',
    r'\bopt.?out\b',
    r'\bafmeld\b',
    r'\bikke interesseret\b',
    r'\bkontakt mig ikke\b',
    r'\bstop med at skrive\b',
]

_AWAITING_REPLY = (OutreachStatus.FOERSTE_MAIL_SENDT, OutreachStatus.OPFOELGNING_SENDT)


def is_opt_out(text: str) -> bool:
    lowered = (text or "").lower()
    return any(re.search(p, lowered) for p in OPT_OUT_PATTERNS)


def sync_replies(inbox, property_store) -> Dict[str, List[str]]:
    """Poll the inbox and advance matching properties. Returns the ids touched."""
    result: Dict[str, List[str]] = {"replied": [], "opted_out": []}
    if not inbox.is_configured():
        log.info("Inbox not configured, skipping reply sync")
        return result

    awaiting = {}
    for status in _AWAITING_REPLY:
        for record in property_store.list(status=status):
            if record.contact_email:
                awaiting[record.contact_email.lower()] = record

    for message in inbox.poll():
        record = awaiting.get(message["from"])
        if record is None:
            continue
        try:
            if is_opt_out(message["body"]):
                property_store.set_status(record.id, OutreachStatus.LUKKET_TABT, action="close_lost")
                result["opted_out"].append(record.id)
            else:
                property_store.set_status(record.id, OutreachStatus.SVAR_MODTAGET, action="reply_received")
                result["replied"].append(record.id)
        except EjendomError as e:
            log.warning(f"Could not record reply for {record.id}: {e}")

    if result["replied"] or result["opted_out"]:
        log.info(f"Reply sync: {len(result['replied'])} replies, {len(result['opted_out'])} opt-outs")
    return result
