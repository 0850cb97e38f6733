"""
Staging Models
==============
Discovered properties waiting for review, and the stage lifecycle they move through.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..identity import canonical_key


class Stage(str, Enum):
    NEW = "new"
    RESEARCHING = "researching"
    RESEARCHED = "researched"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUSHED = "pushed"


class Source(str, Enum):
    STREET_DISCOVERY = "street_discovery"
    SCAFFOLDING = "scaffolding"
    MANUAL = "manual"


STAGE_TRANSITIONS = {
    Stage.NEW: {Stage.RESEARCHING, Stage.REJECTED},
    Stage.RESEARCHING: {Stage.RESEARCHED, Stage.REJECTED},
    Stage.RESEARCHED: {Stage.APPROVED, Stage.REJECTED},
    Stage.APPROVED: {Stage.PUSHED},
    Stage.REJECTED: set(),
    Stage.PUSHED: set(),
}

TERMINAL_STAGES = {Stage.REJECTED, Stage.PUSHED}

# Fields that define where the property is; changing them re-derives the key
IDENTITY_FIELDS = ("address", "postal_code", "city", "bfe")


@dataclass
class StagedProperty:
    id: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    bfe: Optional[str] = None
    canonical_key: str = ""
    source: Source = Source.MANUAL
    stage: Stage = Stage.NEW
    outdoor_score: Optional[float] = None
    score_reason: str = ""
    estimated_traffic: Optional[int] = None
    traffic_source: str = ""
    notes: str = ""
    # Written by the research workflow
    owner_company: str = ""
    owner_cvr: str = ""
    contact_person: str = ""
    contact_email: str = ""
    research_summary: str = ""
    email_draft_subject: str = ""
    email_draft_body: str = ""
    data_quality: str = ""
    pushed_property_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"stg-{uuid.uuid4().hex[:8]}"
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()
        if not self.updated_at:
            self.updated_at = self.created_at
        if self.address and not self.canonical_key:
            self.canonical_key = canonical_key(self.address, self.bfe)

    @property
    def is_active(self) -> bool:
        return self.stage != Stage.REJECTED

    def has_research(self) -> bool:
        return bool(self.owner_company or self.contact_email or self.research_summary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id, "address": self.address, "postal_code": self.postal_code,
            "city": self.city, "bfe": self.bfe, "canonical_key": self.canonical_key,
            "source": self.source.value, "stage": self.stage.value,
            "outdoor_score": self.outdoor_score, "score_reason": self.score_reason,
            "estimated_traffic": self.estimated_traffic, "traffic_source": self.traffic_source,
            "notes": self.notes,
            "owner_company": self.owner_company, "owner_cvr": self.owner_cvr,
            "contact_person": self.contact_person, "contact_email": self.contact_email,
            "research_summary": self.research_summary,
            "email_draft_subject": self.email_draft_subject,
            "email_draft_body": self.email_draft_body,
            "data_quality": self.data_quality,
            "pushed_property_id": self.pushed_property_id,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StagedProperty":
        data = dict(data)
        if "source" in data:
            data["source"] = Source(data["source"])
        if "stage" in data:
            data["stage"] = Stage(data["stage"])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
