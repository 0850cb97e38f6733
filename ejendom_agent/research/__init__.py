"""Research collaborators: registries, web, and LLM analysis."""

from .analysis import (
    ContactRelevanceTracker, ResearchAnalyst, quality_gate, validate_analysis,
)
from .models import (
    BbrResult, CvrResult, EmailDraft, OisOwner, OisResult, ResearchAnalysis,
    ResearchContext, WebSearchResult, WebsiteContent,
)
from .registries import BbrClient, CvrClient, OisClient

__all__ = [
    "ContactRelevanceTracker", "ResearchAnalyst", "quality_gate", "validate_analysis",
    "BbrResult", "CvrResult", "EmailDraft", "OisOwner", "OisResult", "ResearchAnalysis",
    "ResearchContext", "WebSearchResult", "WebsiteContent",
    "BbrClient", "CvrClient", "OisClient",
]
