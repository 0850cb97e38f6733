"""
Discovery Models
================
Ephemeral candidates produced mid-scan and the summary of a scan run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class TrafficEstimate:
    estimated_daily_traffic: int = 0
    traffic_source: str = "estimate"  # vejdirektoratet | kommune | estimate
    confidence: float = 0.0


@dataclass
class CandidateRecord:
    """A raw building or permit with scoring attached. Never persisted as-is."""
    address: str = ""
    street_name: str = ""
    house_number: str = ""
    postal_code: str = ""
    city: str = ""
    bfe: Optional[str] = None
    dawa_id: str = ""
    source: str = "street_discovery"
    # BBR
    building_year: Optional[int] = None
    area: Optional[float] = None
    floors: Optional[int] = None
    units: Optional[int] = None
    usage_code: str = ""
    usage_text: str = ""
    # Traffic
    estimated_traffic: Optional[int] = None
    traffic_source: str = ""
    traffic_confidence: Optional[float] = None
    # Scaffolding permits
    permit_type: str = ""
    category: str = ""
    start_date: str = ""
    end_date: str = ""
    duration_weeks: Optional[float] = None
    facade_area: Optional[float] = None
    contractor: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    source_url: str = ""
    # Scoring
    outdoor_score: Optional[float] = None
    score_reason: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}

    @classmethod
    def from_dict(cls, data: dict) -> "CandidateRecord":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class DiscoveryResult:
    street: str = ""
    city: str = ""
    source: str = "street_discovery"
    total_addresses: int = 0
    after_pre_filter: int = 0
    after_scoring: int = 0
    after_traffic_filter: int = 0
    created: int = 0
    skipped: int = 0
    already_exists: int = 0
    candidates: List[CandidateRecord] = field(default_factory=list)
    created_ids: List[str] = field(default_factory=list)
    estimated_traffic: Optional[int] = None
    traffic_source: str = ""
    started_at: str = ""
    completed_at: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "street": self.street, "city": self.city, "source": self.source,
            "total_addresses": self.total_addresses,
            "after_pre_filter": self.after_pre_filter,
            "after_scoring": self.after_scoring,
            "after_traffic_filter": self.after_traffic_filter,
            "created": self.created, "skipped": self.skipped,
            "already_exists": self.already_exists,
            "candidates": [c.to_dict() for c in self.candidates],
            "created_ids": self.created_ids,
            "estimated_traffic": self.estimated_traffic,
            "traffic_source": self.traffic_source,
            "started_at": self.started_at, "completed_at": self.completed_at,
            "error": self.error,
        }
