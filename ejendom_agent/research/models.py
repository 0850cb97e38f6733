"""
Research Models
===============
Typed results of the registry lookups, the web collaborators and the LLM
analysis. All are plain dataclasses with to_dict() for the raw-research log.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ..outreach.models import Contact


@dataclass
class OisOwner:
    name: str
    is_primary: bool = False


@dataclass
class OisResult:
    bfe: str
    address: str = ""
    owners: List[OisOwner] = field(default_factory=list)
    administrators: List[OisOwner] = field(default_factory=list)
    property_type: str = ""
    ownership_text: str = ""
    kommune: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CvrResult:
    cvr: str
    company_name: str = ""
    address: str = ""
    status: str = "ukendt"
    company_type: str = ""
    owners: List[str] = field(default_factory=list)
    industry: str = ""
    employees: str = ""
    email: str = ""
    phone: str = ""
    website: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BbrResult:
    address: str
    building_year: Optional[int] = None
    area: Optional[int] = None
    usage: str = ""
    floors: Optional[int] = None
    units: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WebSearchResult:
    title: str
    url: str
    snippet: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WebsiteContent:
    url: str
    title: str = ""
    emails: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)
    snippets: List[str] = field(default_factory=list)
    contact_page_text: str = ""
    about_page_text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResearchAnalysis:
    owner_company_name: str = "Ukendt"
    owner_company_cvr: str = ""
    company_domain: str = ""
    company_website: str = ""
    recommended_contacts: List[Contact] = field(default_factory=list)
    outdoor_potential_score: float = 5
    key_insights: str = ""
    data_quality: str = "medium"  # high | medium | low
    data_quality_reason: str = ""

    @property
    def best_contact(self) -> Optional[Contact]:
        """First contact with an email, in ranking order."""
        for contact in self.recommended_contacts:
            if contact.email:
                return contact
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["recommended_contacts"] = [c.to_dict() for c in self.recommended_contacts]
        return data


@dataclass
class EmailDraft:
    subject: str = ""
    body: str = ""
    internal_note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResearchContext:
    """Everything gathered about one property during a workflow run."""
    property_ref: str = ""
    address: str = ""
    postal_code: str = ""
    city: str = ""
    outdoor_score: Optional[float] = None
    ois: Optional[OisResult] = None
    cvr: Optional[CvrResult] = None
    bbr: Optional[BbrResult] = None
    search_results: List[WebSearchResult] = field(default_factory=list)
    website: Optional[WebsiteContent] = None
    analysis: Optional[ResearchAnalysis] = None
    corrections: List[str] = field(default_factory=list)
    draft: Optional[EmailDraft] = None
    quality_gate_passed: bool = False
    quality_gate_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        def dump(value):
            return value.to_dict() if value is not None else None
        return {
            "property_ref": self.property_ref,
            "address": self.address,
            "postal_code": self.postal_code,
            "city": self.city,
            "outdoor_score": self.outdoor_score,
            "ois": dump(self.ois),
            "cvr": dump(self.cvr),
            "bbr": dump(self.bbr),
            "search_results": [r.to_dict() for r in self.search_results],
            "website": dump(self.website),
            "analysis": dump(self.analysis),
            "corrections": list(self.corrections),
            "draft": dump(self.draft),
            "quality_gate_passed": self.quality_gate_passed,
            "quality_gate_reason": self.quality_gate_reason,
        }
