"""Candidate discovery: street scans, scaffolding permits, scoring and staging."""

from .models import CandidateRecord, DiscoveryResult, TrafficEstimate
from .pipeline import DiscoveryPipeline
from .scoring import OutdoorScorer, pre_filter, score_scaffolding
from .sources import DawaClient, ScaffoldingSource
from .traffic import estimate_street_traffic, format_traffic, meets_traffic_threshold

__all__ = [
    "CandidateRecord", "DiscoveryResult", "TrafficEstimate",
    "DiscoveryPipeline", "OutdoorScorer", "pre_filter", "score_scaffolding",
    "DawaClient", "ScaffoldingSource",
    "estimate_street_traffic", "format_traffic", "meets_traffic_threshold",
]
