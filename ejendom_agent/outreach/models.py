"""
Outreach Data Models
====================
The durable CRM property record and the contacts attached to it.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .status import OutreachStatus


@dataclass
class Contact:
    full_name: str = ""
    email: str = ""
    phone: str = ""
    role: str = ""            # ejer, administrator, advokat, direktor, anden
    source: str = ""
    confidence: float = 0.0   # 0.0 - 1.0
    relevance: str = "direct"  # direct | indirect
    relevance_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "full_name": self.full_name, "email": self.email, "phone": self.phone,
            "role": self.role, "source": self.source, "confidence": self.confidence,
            "relevance": self.relevance, "relevance_reason": self.relevance_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Contact":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class PropertyRecord:
    id: str = ""
    name: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    bfe: Optional[str] = None
    outreach_status: OutreachStatus = OutreachStatus.NY_KRAEVER_RESEARCH
    outdoor_score: Optional[float] = None
    owner_company_name: str = ""
    owner_company_cvr: str = ""
    research_summary: str = ""
    research_links: str = ""
    outdoor_potential_notes: str = ""
    contact_person: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    email_draft_subject: str = ""
    email_draft_body: str = ""
    email_draft_note: str = ""
    email_draft_kind: str = "first"
    first_email_sent_at: str = ""
    staged_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"prop-{uuid.uuid4().hex[:8]}"
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def display_name(self) -> str:
        return self.name or self.address or self.id

    @property
    def has_contact_email(self) -> bool:
        return bool(self.contact_email and "@" in self.contact_email)

    @property
    def has_email_draft(self) -> bool:
        return bool(self.email_draft_subject and self.email_draft_body)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id, "name": self.name, "address": self.address,
            "postal_code": self.postal_code, "city": self.city, "bfe": self.bfe,
            "outreach_status": self.outreach_status.value,
            "outdoor_score": self.outdoor_score,
            "owner_company_name": self.owner_company_name,
            "owner_company_cvr": self.owner_company_cvr,
            "research_summary": self.research_summary, "research_links": self.research_links,
            "outdoor_potential_notes": self.outdoor_potential_notes,
            "contact_person": self.contact_person, "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "email_draft_subject": self.email_draft_subject,
            "email_draft_body": self.email_draft_body,
            "email_draft_note": self.email_draft_note,
            "email_draft_kind": self.email_draft_kind,
            "first_email_sent_at": self.first_email_sent_at,
            "staged_id": self.staged_id,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PropertyRecord":
        data = dict(data)
        if "outreach_status" in data:
            data["outreach_status"] = OutreachStatus(data["outreach_status"])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
