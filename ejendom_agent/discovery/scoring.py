"""
Outdoor Scoring
===============
Pre-filter raw buildings, batch-score them with the LLM, and score scaffolding
permits deterministically.
"""

import logging
from typing import List, Optional

from ..errors import TransientCollaboratorError
from .models import CandidateRecord
from .traffic import format_traffic

log = logging.getLogger("ejendom.discovery.scoring")

BATCH_SIZE = 15

# Garage, carport, shed, greenhouse, free-standing canopy, disused farm building
IRRELEVANT_USAGE_CODES = {"910", "920", "930", "940", "950", "960"}

OFFICIAL_SOURCES = {"kbhkort.kk.dk", "aarhus-kommune"}
PERMIT_GROUPS = ("Stilladsreklamer", "Stilladser")

SCORING_SYSTEM_PROMPT = """Du er ekspert i outdoor reklame, trafikdata og ejendomsvurdering i Danmark.

Din opgave er at vurdere bygninger for deres potentiale til outdoor reklame (facadereklame, stillads-reklame, bannere, digital signage, gavlreklame etc.).

VIGTIGSTE KRITERIUM: TRAFIK
- Veje med 20.000+ daglige trafikanter = meget attraktivt
- Veje med 10.000-20.000 = godt potentiale
- Under 10.000 = sjældent relevant

KRITERIER for høj score (7-10):
- Bygningen ligger ud til en befærdet vej med mange forbipasserende
- Stor, synlig facade mod vejen (gerne flere etager)
- Erhvervsejendomme, store boligforeninger, hjørneejendomme
- Store gavle der kan bruges til gavlreklame

KRITERIER for lav score (1-4):
- Små bygninger med lille eller tilbagetrukket facade
- Parcelhuse, rækkehuse, baghuse, sidebygninger
- Veje med meget lav trafik

Forklar ALTID specifikt HVORFOR du giver den score.
Du svarer ALTID i valid JSON-format."""


def pre_filter(candidates: List[CandidateRecord]) -> List[CandidateRecord]:
    """Drop buildings that can never carry outdoor advertising."""
    kept = []
    for c in candidates:
        if c.usage_code and str(c.usage_code) in IRRELEVANT_USAGE_CODES:
            continue
        if c.area and c.area < 100:
            continue
        if c.floors and c.floors <= 1 and c.area and c.area < 200:
            continue
        kept.append(c)
    return kept


def _clamp_score(value) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 5
    return max(1, min(10, score))


class OutdoorScorer:
    """Scores building candidates for outdoor advertising potential via the LLM."""

    def __init__(self, provider, batch_size: int = BATCH_SIZE):
        self.provider = provider
        self.batch_size = batch_size

    def score(self, candidates: List[CandidateRecord], street: str, city: str) -> List[CandidateRecord]:
        if not candidates:
            return []

        total_batches = (len(candidates) + self.batch_size - 1) // self.batch_size
        log.info(f"Scoring {len(candidates)} candidates in {total_batches} batches")

        scored: List[CandidateRecord] = []
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start:start + self.batch_size]
            scored.extend(self._score_batch(batch, street, city))

        scored.sort(key=lambda c: c.outdoor_score or 0, reverse=True)
        return scored

    def _score_batch(self, batch: List[CandidateRecord], street: str, city: str) -> List[CandidateRecord]:
        try:
            parsed = self.provider.complete_json(
                SCORING_SYSTEM_PROMPT,
                self._build_prompt(batch, street, city),
                temperature=0.3,
                max_tokens=2000,
            )
        except (TransientCollaboratorError, ValueError) as e:
            log.warning(f"Scoring batch failed, using defaults: {e}")
            for c in batch:
                c.outdoor_score, c.score_reason = 5, "Parse-fejl"
            return batch

        scores = []
        if isinstance(parsed, dict):
            scores = parsed.get("scores") or parsed.get("results") or []
        if not isinstance(scores, list):
            scores = []

        by_index = {}
        for entry in scores:
            if isinstance(entry, dict) and "index" in entry:
                try:
                    by_index[int(entry["index"])] = entry
                except (TypeError, ValueError):
                    continue

        for i, c in enumerate(batch):
            entry = by_index.get(i + 1)
            if entry is None:
                c.outdoor_score, c.score_reason = 5, "Ingen vurdering"
                continue
            c.outdoor_score = _clamp_score(entry.get("score", 5))
            c.score_reason = str(entry.get("reason") or entry.get("begrundelse") or "Ingen begrundelse")
        return batch

    @staticmethod
    def _build_prompt(batch: List[CandidateRecord], street: str, city: str) -> str:
        lines = []
        traffic = batch[0].estimated_traffic if batch else None
        if traffic:
            lines.append(
                f"Estimeret daglig trafik på {street}: ca. {traffic} køretøjer/dag "
                f"(kilde: {batch[0].traffic_source or 'estimat'})"
            )
            lines.append("")

        for i, c in enumerate(batch, 1):
            parts = [f"{i}. {c.address}, {c.postal_code} {c.city}"]
            if c.area:
                parts.append(f"   Areal: {c.area} m2")
            if c.floors:
                parts.append(f"   Etager: {c.floors}")
            if c.units:
                parts.append(f"   Boliger: {c.units}")
            if c.usage_text:
                parts.append(f"   Anvendelse: {c.usage_text}")
            if c.building_year:
                parts.append(f"   Byggeår: {c.building_year}")
            lines.append("\n".join(parts))

        return (
            f"Vurder følgende {len(batch)} bygninger på {street}, {city} for outdoor reklame-potentiale.\n\n"
            + "\n\n".join(lines)
            + '\n\nSvar i JSON: {"scores": [{"index": 1, "score": 7, "reason": "..."}]}\n'
            "Score fra 1 (intet potentiale) til 10 (perfekt til outdoor reklame)."
        )


def score_scaffolding(permit: CandidateRecord, daily_traffic: Optional[int]) -> int:
    """Deterministic 1-10 score for an active scaffolding permit."""
    traffic = daily_traffic or 0
    score = 5.0

    if traffic >= 40000:
        score += 3
    elif traffic >= 25000:
        score += 2
    elif traffic >= 10000:
        score += 1
    else:
        score -= 2

    if permit.permit_type in PERMIT_GROUPS:
        score += 2

    if permit.duration_weeks:
        if permit.duration_weeks >= 24:
            score += 2
        elif permit.duration_weeks >= 12:
            score += 1

    if permit.facade_area:
        if permit.facade_area >= 200:
            score += 1
        if permit.facade_area >= 500:
            score += 1

    if permit.contact_email or permit.contact_phone:
        score += 0.5

    if permit.source_url in OFFICIAL_SOURCES:
        score += 0.5

    # Half-up rounding; score never drops below 3 here
    return max(1, min(10, int(score + 0.5)))


def scaffolding_reason(permit: CandidateRecord, daily_traffic: Optional[int]) -> str:
    traffic = daily_traffic or 0
    parts = [f"{permit.permit_type}: {permit.category} på {permit.address}."]
    if traffic >= 10000:
        parts.append(f"God trafik (~{format_traffic(traffic)}/dag).")
    else:
        parts.append(f"Lav trafik (~{format_traffic(traffic)}/dag).")
    if permit.duration_weeks:
        parts.append(f"Varighed: ~{int(permit.duration_weeks)} uger.")
    if permit.start_date and permit.end_date:
        parts.append(f"Periode: {permit.start_date} → {permit.end_date}.")
    if permit.contractor:
        parts.append(f"Entreprenør: {permit.contractor}.")
    return " ".join(parts)
