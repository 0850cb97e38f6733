"""
Follow-ups
==========
Properties whose first mail went out a while ago without a reply get a short
follow-up draft. The draft replaces the first one on the property (kind
"followup"), and the dispatch queue moves the property to OPFOELGNING_SENDT
once it is sent.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..errors import EjendomError
from .status import OutreachStatus

log = logging.getLogger("ejendom.outreach.followup")

FOLLOWUP_AFTER_DAYS = 7
MAX_DAYS = 90
DEFAULT_PREPARE_LIMIT = 20
MAX_PREPARE_LIMIT = 50


def _bounded(value, low: int, high: int, default: int) -> int:
    try:
        return max(low, min(high, int(value)))
    except (TypeError, ValueError):
        return default


def _parse(ts: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(ts)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def followup_candidates(
    property_store,
    days: int = FOLLOWUP_AFTER_DAYS,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Properties in FOERSTE_MAIL_SENDT whose first mail is at least `days` old, oldest first."""
    days = _bounded(days, 1, MAX_DAYS, FOLLOWUP_AFTER_DAYS)
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)

    candidates = []
    for record in property_store.list(status=OutreachStatus.FOERSTE_MAIL_SENDT):
        sent_at = _parse(record.first_email_sent_at or record.updated_at)
        if sent_at is None or sent_at > cutoff:
            continue
        candidates.append({
            "property_id": record.id,
            "address": record.address,
            "contact_email": record.contact_email,
            "sent_at": sent_at.isoformat(),
            "days_ago": max(1, (now - sent_at).days),
            "draft_ready": record.email_draft_kind == "followup",
        })
    candidates.sort(key=lambda c: c["sent_at"])
    return candidates


def prepare_followups(
    property_store,
    analyst,
    days: int = FOLLOWUP_AFTER_DAYS,
    limit: int = DEFAULT_PREPARE_LIMIT,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Write a follow-up draft onto each candidate. One failing property does not stop the rest."""
    limit = _bounded(limit, 1, MAX_PREPARE_LIMIT, DEFAULT_PREPARE_LIMIT)
    candidates = followup_candidates(property_store, days=days, now=now)[:limit]

    results = []
    for candidate in candidates:
        property_id = candidate["property_id"]
        try:
            record = property_store.get(property_id)
            draft = analyst.draft_followup(record, candidate["days_ago"])
            property_store.update(
                property_id,
                email_draft_subject=draft.subject,
                email_draft_body=draft.body,
                email_draft_note=draft.internal_note,
                email_draft_kind="followup",
            )
            results.append({"property_id": property_id, "success": True})
        except (EjendomError, ValueError) as e:
            log.warning(f"Follow-up draft for {property_id} failed: {e}")
            results.append({"property_id": property_id, "success": False, "error": str(e)})

    prepared = sum(1 for r in results if r["success"])
    log.info(f"Prepared {prepared}/{len(candidates)} follow-up drafts")
    return {
        "prepared": prepared,
        "failed": len(results) - prepared,
        "total": len(candidates),
        "results": results,
    }
