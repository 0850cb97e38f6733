"""
Discovery Pipeline
==================
Street scan or permit feed -> pre-filter -> traffic -> score -> stage.

Every scan returns a DiscoveryResult. Collaborator failures end the scan with
`error` set instead of raising, so a caller always gets the counters that were
reached before the failure.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from ..errors import ConflictError, EjendomError, ValidationError
from ..identity import clean_bfe, deduplicate, format_location
from .models import CandidateRecord, DiscoveryResult
from .scoring import pre_filter, scaffolding_reason, score_scaffolding
from .traffic import estimate_street_traffic, format_traffic, meets_traffic_threshold

log = logging.getLogger("ejendom.discovery")

# A low estimate only rejects a street when we trust it
TRAFFIC_GATE_CONFIDENCE = 0.5


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DiscoveryPipeline:

    def __init__(self, staging, dawa=None, scorer=None, scaffolding=None,
                 property_store=None, history: int = 50):
        self.staging = staging
        self.dawa = dawa
        self.scorer = scorer
        self.scaffolding = scaffolding
        self.property_store = property_store
        self._results = deque(maxlen=history)
        self._results_lock = threading.Lock()

    # --- Street ---

    def discover_street(
        self,
        street: str,
        city: str,
        min_score: float = 6,
        min_traffic: int = 10000,
    ) -> DiscoveryResult:
        street, city = (street or "").strip(), (city or "").strip()
        if not street or not city:
            raise ValidationError("street and city are required")

        result = DiscoveryResult(street=street, city=city, started_at=_now())
        try:
            meets, traffic = meets_traffic_threshold(street, city, min_traffic)
            result.estimated_traffic = traffic.estimated_daily_traffic
            result.traffic_source = traffic.traffic_source
            if not meets and traffic.confidence >= TRAFFIC_GATE_CONFIDENCE:
                result.error = (
                    f"{street} has ~{format_traffic(traffic.estimated_daily_traffic)} daily traffic, "
                    f"below the {format_traffic(min_traffic)} minimum"
                )
                log.info(f"Street rejected by traffic gate: {result.error}")
                return self._finish(result)

            if self.dawa is None:
                raise ValidationError("street discovery needs an address source")
            candidates = self.dawa.scan_street(street, city)
            result.total_addresses = len(candidates)

            candidates = pre_filter(candidates)
            result.after_pre_filter = len(candidates)

            for c in candidates:
                c.estimated_traffic = traffic.estimated_daily_traffic
                c.traffic_source = traffic.traffic_source
                c.traffic_confidence = traffic.confidence

            if self.scorer is not None:
                candidates = self.scorer.score(candidates, street, city)
            else:
                log.warning("No LLM configured; candidates get the neutral score 5")
                for c in candidates:
                    c.outdoor_score, c.score_reason = 5, "Ingen vurdering"
            result.after_scoring = len(candidates)
            result.candidates = candidates

            qualified = [c for c in candidates if (c.outdoor_score or 0) >= min_score]
            result.after_traffic_filter = len(qualified)
            for c in qualified:
                c.notes = self._street_notes(c)
            self._stage_into(result, qualified, "street_discovery")
        except ValidationError:
            raise
        except (EjendomError, ImportError) as e:
            log.warning(f"Street discovery for {street}, {city} failed: {e}")
            result.error = str(e)
        return self._finish(result)

    def discover_area(self, streets: Iterable[str], city: str, min_score: float = 6,
                      min_traffic: int = 10000) -> DiscoveryResult:
        """Run discover_street for each street and sum the counters."""
        streets = [s for s in (streets or []) if s and s.strip()]
        if not streets:
            raise ValidationError("at least one street is required")

        total = DiscoveryResult(street=", ".join(streets), city=city, started_at=_now())
        errors = []
        for street in streets:
            one = self.discover_street(street, city, min_score=min_score, min_traffic=min_traffic)
            for counter in ("total_addresses", "after_pre_filter", "after_scoring",
                            "after_traffic_filter", "created", "skipped", "already_exists"):
                setattr(total, counter, getattr(total, counter) + getattr(one, counter))
            total.candidates.extend(one.candidates)
            total.created_ids.extend(one.created_ids)
            if one.error:
                errors.append(f"{street}: {one.error}")
        total.error = "; ".join(errors)
        return self._finish(total)

    # --- Scaffolding ---

    def discover_scaffolding(
        self,
        city: str,
        min_score: float = 5,
        min_traffic: int = 0,
        permits: Optional[List[CandidateRecord]] = None,
    ) -> DiscoveryResult:
        """Score active scaffolding permits; `permits` skips the feed fetch."""
        result = DiscoveryResult(city=city, source="scaffolding", started_at=_now())
        try:
            if permits is None:
                if self.scaffolding is None:
                    raise ValidationError("scaffolding discovery needs a permit source")
                permits = self.scaffolding.fetch_permits(city)
            result.total_addresses = len(permits)

            for p in permits:
                p.source = "scaffolding"
                traffic = estimate_street_traffic(p.street_name or p.address, city)
                p.estimated_traffic = traffic.estimated_daily_traffic
                p.traffic_source = traffic.traffic_source
                p.traffic_confidence = traffic.confidence
                p.outdoor_score = score_scaffolding(p, traffic.estimated_daily_traffic)
                p.score_reason = scaffolding_reason(p, traffic.estimated_daily_traffic)
            permits = sorted(permits, key=lambda p: p.outdoor_score or 0, reverse=True)
            result.after_pre_filter = result.after_scoring = len(permits)
            result.candidates = permits

            qualified = [
                p for p in permits
                if (p.outdoor_score or 0) >= min_score and (p.estimated_traffic or 0) >= min_traffic
            ]
            result.after_traffic_filter = len(qualified)
            for p in qualified:
                p.notes = self._permit_notes(p)
            self._stage_into(result, qualified, "scaffolding")
        except ValidationError:
            raise
        except (EjendomError, ImportError) as e:
            log.warning(f"Scaffolding discovery for {city} failed: {e}")
            result.error = str(e)
        return self._finish(result)

    # --- Staging ---

    def stage_candidates(self, candidates: List[CandidateRecord], source: str = "street_discovery") -> DiscoveryResult:
        result = DiscoveryResult(source=source, started_at=_now())
        self._stage_into(result, candidates, source)
        result.completed_at = _now()
        return result

    def _stage_into(self, result: DiscoveryResult, candidates: List[CandidateRecord], source: str):
        unique = deduplicate(c for c in candidates if (c.address or "").strip() or clean_bfe(c.bfe))
        result.skipped += len(candidates) - len(unique)

        for c in unique:
            c.source = source
            # A BFE-bearing candidate is matched on its BFE by insert() alone
            if not clean_bfe(c.bfe) and self._known_address(c.address):
                result.already_exists += 1
                continue
            try:
                staged = self.staging.insert(c)
            except ConflictError:
                result.already_exists += 1
                continue
            except ValidationError as e:
                log.debug(f"Skipping candidate {c.address!r}: {e}")
                result.skipped += 1
                continue
            result.created += 1
            result.created_ids.append(staged.id)

        log.info(
            f"Staged {result.created} new, {result.already_exists} already known, "
            f"{result.skipped} skipped ({source})"
        )

    def _known_address(self, address: str) -> bool:
        if self.staging.exists_by_address(address):
            return True
        return bool(self.property_store and self.property_store.exists_by_address(address))

    # --- History ---

    def _finish(self, result: DiscoveryResult) -> DiscoveryResult:
        result.completed_at = _now()
        with self._results_lock:
            self._results.append(result)
        log.info(
            f"Discovery {result.source} {result.street or result.city}: "
            f"{result.total_addresses} found, {result.created} staged"
            + (f" (error: {result.error})" if result.error else "")
        )
        return result

    def recent_results(self, n: int = 10) -> List[DiscoveryResult]:
        with self._results_lock:
            items = list(self._results)
        return list(reversed(items))[:n]

    @staticmethod
    def _street_notes(c: CandidateRecord) -> str:
        parts = [f"Outdoor score: {c.outdoor_score:g}/10. {c.score_reason}"]
        if c.estimated_traffic:
            parts.append(f"Trafik: ~{format_traffic(c.estimated_traffic)}/dag ({c.traffic_source}).")
        details = []
        if c.area:
            details.append(f"{c.area} m2")
        if c.floors:
            details.append(f"{c.floors} etager")
        if c.usage_text:
            details.append(c.usage_text)
        if details:
            parts.append("BBR: " + ", ".join(details) + ".")
        return " ".join(parts)

    @staticmethod
    def _permit_notes(p: CandidateRecord) -> str:
        parts = [f"Outdoor score: {p.outdoor_score}/10. {p.score_reason}"]
        if p.postal_code or p.city:
            parts.append(f"Lokation: {format_location(p.postal_code, p.city)}.")
        if p.contact_email or p.contact_phone:
            parts.append(f"Kontakt: {p.contact_email or ''} {p.contact_phone or ''}".strip() + ".")
        return " ".join(parts)
