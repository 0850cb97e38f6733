"""
Research Analysis
=================
Two-phase LLM analysis of gathered research, hard validation of its output
against the sources, cross-property relevance penalties, the quality gate,
and the outreach and follow-up drafts.

The LLM may only pick contacts from the list it is given (by index). Any email
it returns that no source contains is removed by validate_analysis().
"""

import copy
import logging
import threading
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from ..outreach.models import Contact
from .models import EmailDraft, ResearchAnalysis, ResearchContext
from .web import EMAIL_RE

log = logging.getLogger("ejendom.research.analysis")

DATA_QUALITIES = ("high", "medium", "low")
GENERIC_EMAIL_PREFIXES = {"info", "kontakt", "contact", "mail", "post", "kontor", "office", "hello", "admin"}
DEFAULT_SUBJECT = "Udendørsarealer – et uudnyttet potentiale?"

OWNER_SYSTEM_PROMPT = """Du er en præcis data-analytiker for dansk ejendomsdata.
DU MÅ ALDRIG OPFINDE DATA. Brug KUN informationen der er givet.
Hvis noget er uklart, skriv "Ukendt"."""

RANKING_SYSTEM_PROMPT = """Du er en streng kontakt-vurderingsassistent.
DU MÅ IKKE OPFINDE NYE EMAILS ELLER NAVNE.
DU MÅ KUN VÆLGE FRA DEN GIVNE LISTE VED INDEX-NUMMER.
Hvis ingen kontakt er god nok, returner en tom liste."""

DRAFT_SYSTEM_PROMPT = """Du er en dansk copywriter der skriver outreach-mails til ejendomsejere og administratorer om outdoor reklame-muligheder.

REGLER:
- Max 150 ord i brødteksten
- Start med noget SPECIFIKT om ejendommen der viser vi har gjort research
- Nævn konkrete fordele (trafiktal, facade-størrelse, beliggenhed)
- Afslut med et klart, lavt-forpligtende call-to-action
- Brug modtagerens navn og rolle naturligt

Du svarer ALTID i valid JSON med felterne: subject, body_text, short_internal_note."""

FOLLOWUP_SYSTEM_PROMPT = """Du skriver en kort, venlig opfølgning på dansk på en outreach-mail om outdoor reklame.
Vi har ikke hørt fra modtageren. Skriv KUN brødteksten (ingen emnefelt, ingen signatur), 2-4 sætninger.
Du svarer ALTID i valid JSON med feltet: body_text."""

FOLLOWUP_FALLBACK_BODY = (
    "Vi skrev til jer for nogle dage siden. Håber I har haft mulighed for at kigge på det – "
    "vi hører gerne fra jer."
)


def _clamp(value, low: float, high: float, default: float) -> float:
    try:
        return max(low, min(high, float(value)))
    except (TypeError, ValueError):
        return default


def _sort_contacts(contacts: List[Contact]):
    """Direct before indirect, then by confidence."""
    contacts.sort(key=lambda c: (c.relevance != "direct", -c.confidence))


def _names_overlap(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return bool(a and b) and (a[:6] in b or b[:6] in a)


# --- Source sets ---

def collect_allowed_emails(ctx: ResearchContext) -> Set[str]:
    """Every email that some research source actually contains."""
    allowed = set()
    if ctx.cvr and ctx.cvr.email:
        allowed.add(ctx.cvr.email.lower())
    if ctx.website:
        allowed.update(e.lower() for e in ctx.website.emails)
    for result in ctx.search_results:
        allowed.update(m.lower() for m in EMAIL_RE.findall(f"{result.title} {result.snippet}"))
    return allowed


def collect_known_names(ctx: ResearchContext) -> Set[str]:
    names = set()
    if ctx.ois:
        names.update(p.name.lower() for p in ctx.ois.owners + ctx.ois.administrators)
    if ctx.cvr:
        names.update(o.lower() for o in ctx.cvr.owners)
    return names


def raw_contacts(ctx: ResearchContext) -> List[Contact]:
    """Candidate contacts straight from the sources, in a stable order."""
    contacts: List[Contact] = []

    def has_email(email: str) -> bool:
        return any(c.email.lower() == email.lower() for c in contacts if c.email)

    if ctx.ois:
        for owner in ctx.ois.owners:
            contacts.append(Contact(full_name=owner.name, role="ejer", source="OIS.dk (officiel ejer)"))
        for admin in ctx.ois.administrators:
            contacts.append(Contact(full_name=admin.name, role="administrator", source="OIS.dk (administrator)"))

    if ctx.cvr:
        if ctx.cvr.email:
            contacts.append(Contact(
                full_name=ctx.cvr.owners[0] if ctx.cvr.owners else "",
                email=ctx.cvr.email, phone=ctx.cvr.phone, role="ejer",
                source=f"CVR {ctx.cvr.cvr} ({ctx.cvr.company_name})",
            ))
        for owner in ctx.cvr.owners:
            if not any(c.full_name.lower() == owner.lower() for c in contacts):
                contacts.append(Contact(full_name=owner, role="ejer", source=f"CVR ejer ({ctx.cvr.company_name})"))

    if ctx.website:
        for email in ctx.website.emails:
            if not has_email(email):
                contacts.append(Contact(email=email, role="anden", source=f"Website: {ctx.website.url}"))

    for result in ctx.search_results[:8]:
        for email in EMAIL_RE.findall(f"{result.title} {result.snippet}"):
            if not has_email(email):
                contacts.append(Contact(email=email.lower(), role="anden", source=f"Websøgning: {result.url}"))

    return contacts


# --- LLM ---

class ResearchAnalyst:
    """Owner assessment, contact ranking and outreach drafting via the LLM."""

    def __init__(self, provider):
        self.provider = provider

    def analyze(self, ctx: ResearchContext) -> ResearchAnalysis:
        owner = self.provider.complete_json(OWNER_SYSTEM_PROMPT, self._owner_prompt(ctx),
                                            temperature=0.1, max_tokens=1500)
        if not isinstance(owner, dict):
            raise ValueError("Owner assessment was not a JSON object")

        quality = str(owner.get("data_quality") or "medium").lower()
        analysis = ResearchAnalysis(
            owner_company_name=str(owner.get("owner_company_name") or "Ukendt"),
            owner_company_cvr=str(owner.get("owner_company_cvr") or ""),
            outdoor_potential_score=_clamp(owner.get("outdoor_potential_score"), 1, 10, 5),
            key_insights=str(owner.get("key_insights") or ""),
            data_quality=quality if quality in DATA_QUALITIES else "medium",
            data_quality_reason=str(owner.get("data_quality_reason") or ""),
        )

        candidates = raw_contacts(ctx)
        if candidates:
            analysis.recommended_contacts = self._rank(ctx, analysis, candidates)

        if ctx.cvr and ctx.cvr.website:
            website = ctx.cvr.website
            analysis.company_website = website if website.startswith("http") else f"https://{website}"
            host = urlparse(analysis.company_website).hostname or ""
            analysis.company_domain = host[4:] if host.startswith("www.") else host

        log.info(
            f"Analysis for {ctx.address}: owner={analysis.owner_company_name}, "
            f"quality={analysis.data_quality}, contacts={len(analysis.recommended_contacts)}"
        )
        return analysis

    def _rank(self, ctx: ResearchContext, analysis: ResearchAnalysis,
              candidates: List[Contact]) -> List[Contact]:
        listing = "\n".join(
            f"[{i}] Navn: {c.full_name or '?'} | Email: {c.email or 'INGEN'} | "
            f"Tlf: {c.phone or 'INGEN'} | Kilde: {c.source} | Rolle-hint: {c.role}"
            for i, c in enumerate(candidates)
        )
        prompt = (
            f"## Ejendom\n- Adresse: {ctx.address}, {ctx.postal_code} {ctx.city}\n"
            f"- Ejer: {analysis.owner_company_name}\n\n"
            f"## Kendte kontakter (DU MÅ KUN VÆLGE FRA DENNE LISTE)\n{listing}\n\n"
            "Rangér kontakterne efter relevans for DENNE ejendom. Svar i JSON:\n"
            '{"ranked_contacts": [{"index": 0, "confidence": 0.0, "relevance": "direct | indirect", '
            '"relevance_reason": "Hvorfor", "role": "ejer | administrator | anden"}]}\n'
            "confidence >= 0.7 KUN hvis personen er BEVIST ejer/formand OG har email. "
            "confidence <= 0.3 for generiske emails (info@, kontakt@)."
        )
        parsed = self.provider.complete_json(RANKING_SYSTEM_PROMPT, prompt, temperature=0.1, max_tokens=2000)

        ranked = []
        items = parsed.get("ranked_contacts", []) if isinstance(parsed, dict) else []
        for item in items if isinstance(items, list) else []:
            idx = item.get("index") if isinstance(item, dict) else None
            if not isinstance(idx, int) or not 0 <= idx < len(candidates):
                log.warning(f"LLM referenced invalid contact index {idx!r}")
                continue
            raw = candidates[idx]
            ranked.append(Contact(
                full_name=raw.full_name,
                email=raw.email,
                phone=raw.phone,
                role=str(item.get("role") or raw.role or "anden"),
                source=raw.source,
                confidence=_clamp(item.get("confidence"), 0, 1, 0.5),
                relevance="direct" if item.get("relevance") == "direct" else "indirect",
                relevance_reason=str(item.get("relevance_reason") or ""),
            ))
        return ranked

    @staticmethod
    def _owner_prompt(ctx: ResearchContext) -> str:
        sections = [
            f"## Ejendom\n- Adresse: {ctx.address}, {ctx.postal_code} {ctx.city}\n"
            f"- Outdoor score (discovery): {ctx.outdoor_score or 'Ikke vurderet'}"
        ]
        if ctx.ois:
            sections.append(
                "## OIS.dk – OFFICIELLE EJEROPLYSNINGER\n"
                f"- EJER: {', '.join(o.name for o in ctx.ois.owners) or 'Ingen'}\n"
                f"- ADMINISTRATOR: {', '.join(a.name for a in ctx.ois.administrators) or 'Ingen'}\n"
                f"- BFE: {ctx.ois.bfe}\n- Kommune: {ctx.ois.kommune or 'Ukendt'}"
            )
        else:
            sections.append("## OIS.dk – Ingen data tilgængelig")
        if ctx.cvr:
            sections.append(
                f"## CVR-data\n- CVR: {ctx.cvr.cvr}\n- Virksomhedsnavn: {ctx.cvr.company_name}\n"
                f"- Adresse: {ctx.cvr.address}\n- Status: {ctx.cvr.status}\n"
                f"- Ejere: {', '.join(ctx.cvr.owners) or 'Ukendt'}"
            )
        else:
            sections.append("## CVR-data – Ingen fundet")
        if ctx.bbr:
            sections.append(
                f"## BBR-data\n- Byggeår: {ctx.bbr.building_year or 'Ukendt'}\n"
                f"- Areal: {ctx.bbr.area or 'Ukendt'}\n- Anvendelse: {ctx.bbr.usage or 'Ukendt'}\n"
                f"- Etager: {ctx.bbr.floors or 'Ukendt'}"
            )
        sections.append(
            "## Instruktion\nBaseret KUN på data ovenfor, svar i JSON:\n"
            '{"owner_company_name": "navn eller Ukendt", "owner_company_cvr": "CVR eller null", '
            '"outdoor_potential_score": 1, "key_insights": "3-5 sætninger", '
            '"data_quality": "high | medium | low", "data_quality_reason": "kort"}\n'
            '"high" KUN hvis OIS + CVR begge bekræfter ejerskab. Opfind ALDRIG navne eller CVR-numre.'
        )
        return "\n\n".join(sections)

    def draft_email(self, ctx: ResearchContext, contact: Contact, analysis: ResearchAnalysis) -> EmailDraft:
        prompt = (
            f"## Ejendom\n- Adresse: {ctx.address}, {ctx.postal_code} {ctx.city}\n"
            f"- Outdoor score: {analysis.outdoor_potential_score:g}/10\n"
            f"- Nøgleindsigter: {analysis.key_insights}\n\n"
            f"## Kontaktperson\n- Navn: {contact.full_name or 'Ukendt'}\n- Rolle: {contact.role or 'Ukendt'}\n"
            f"- Virksomhed: {analysis.owner_company_name}\n\n"
            "Skriv en kort, personlig outreach-mail. Svar i JSON:\n"
            '{"subject": "emnelinje", "body_text": "brødtekst, max 150 ord", "short_internal_note": "note"}'
        )
        parsed = self.provider.complete_json(DRAFT_SYSTEM_PROMPT, prompt, temperature=0.7, max_tokens=1500)
        if not isinstance(parsed, dict):
            raise ValueError("Email draft was not a JSON object")
        draft = EmailDraft(
            subject=str(parsed.get("subject") or DEFAULT_SUBJECT),
            body=str(parsed.get("body_text") or parsed.get("body") or ""),
            internal_note=str(parsed.get("short_internal_note") or ""),
        )
        if not draft.body.strip():
            raise ValueError("Email draft has an empty body")
        return draft

    def draft_followup(self, record, days_ago: int) -> EmailDraft:
        """Follow-up on a first mail that got no reply. An empty LLM answer falls back to a stock text."""
        address = ", ".join(p for p in (record.address, record.postal_code, record.city) if p)
        contact = record.contact_person or record.owner_company_name or "modtager"
        previous = record.email_draft_subject or "udendørs reklame / outdoor"
        prompt = (
            f"Ejendom: {address}. Kontakt: {contact}. "
            f"Vi sendte den første mail for {days_ago} dage siden. Den handlede om: {previous}. "
            "Skriv en kort opfølgning der genopfrisker henvendelsen og inviterer til at vende tilbage."
        )
        parsed = self.provider.complete_json(FOLLOWUP_SYSTEM_PROMPT, prompt, temperature=0.3, max_tokens=300)
        body = ""
        if isinstance(parsed, dict):
            body = str(parsed.get("body_text") or parsed.get("body") or "").strip()
        return EmailDraft(
            subject=previous if previous.startswith("Opfølgning") else f"Opfølgning: {previous}",
            body=body or FOLLOWUP_FALLBACK_BODY,
            internal_note=f"Opfølgning genereret (sendt for {days_ago} dage siden)",
        )


# --- Validation ---

def validate_analysis(analysis: ResearchAnalysis, ctx: ResearchContext) -> Tuple[ResearchAnalysis, List[str]]:
    """
    Check LLM output against what the sources actually say. Returns a cleaned
    copy and a list of human-readable corrections.
    """
    cleaned = copy.deepcopy(analysis)
    corrections: List[str] = []
    allowed = collect_allowed_emails(ctx)
    known_names = collect_known_names(ctx)

    for contact in cleaned.recommended_contacts:
        if not contact.email:
            continue
        email = contact.email.lower()
        if email not in allowed:
            corrections.append(f"Removed unsourced email {contact.email!r} for {contact.full_name or '?'}")
            contact.email = ""
            contact.confidence = min(contact.confidence, 0.15)
        elif any(marker in email for marker in ("@ukendt", "@unknown", "@null")):
            corrections.append(f"Removed invalid email {contact.email!r}")
            contact.email = ""
            contact.confidence = min(contact.confidence, 0.1)

    for contact in cleaned.recommended_contacts:
        if contact.full_name and not any(_names_overlap(contact.full_name, n) for n in known_names):
            if contact.confidence > 0.4:
                corrections.append(
                    f"Lowered {contact.full_name!r} from {contact.confidence:.0%} to 40%: name not in any registry"
                )
                contact.confidence = 0.4

    owner = cleaned.owner_company_name
    if owner and owner != "Ukendt":
        sources = [o.name for o in ctx.ois.owners] if ctx.ois else []
        if ctx.cvr and ctx.cvr.company_name:
            sources.append(ctx.cvr.company_name)
        if not any(_names_overlap(owner, s) for s in sources):
            corrections.append(f"Owner {owner!r} matches neither OIS nor CVR; set to 'Ukendt'")
            cleaned.owner_company_name = "Ukendt"
            if cleaned.data_quality == "high":
                cleaned.data_quality = "medium"

    has_verified_email = any(c.email and c.confidence >= 0.6 for c in cleaned.recommended_contacts)
    if cleaned.data_quality == "high" and not (ctx.ois and ctx.cvr and has_verified_email):
        cleaned.data_quality = "medium"
        corrections.append("Data quality lowered from high to medium: needs OIS, CVR and a verified email")
    if not ctx.ois and not ctx.cvr and cleaned.data_quality != "low":
        cleaned.data_quality = "low"
        corrections.append("Data quality set to low: no registry source available")

    for contact in cleaned.recommended_contacts:
        if contact.email and contact.email.split("@")[0].lower() in GENERIC_EMAIL_PREFIXES:
            if contact.confidence > 0.3:
                corrections.append(f"Generic email {contact.email!r} capped at 30%")
                contact.confidence = 0.3

    before = len(cleaned.recommended_contacts)
    cleaned.recommended_contacts = [c for c in cleaned.recommended_contacts if c.full_name or c.email]
    if len(cleaned.recommended_contacts) < before:
        corrections.append(f"Dropped {before - len(cleaned.recommended_contacts)} empty contacts")

    _sort_contacts(cleaned.recommended_contacts)

    if corrections:
        log.info(f"Validator made {len(corrections)} corrections for {ctx.address}")
    return cleaned, corrections


class ContactRelevanceTracker:
    """
    Remembers which properties each contact email was used for. A contact that
    shows up for many properties is most likely an administrator or a generic
    mailbox, not the owner of this particular building.
    """

    def __init__(self):
        self._seen: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def seen_for(self, email: str) -> List[str]:
        with self._lock:
            return list(self._seen.get(email.lower(), []))

    def apply(self, analysis: ResearchAnalysis, property_ref: str = "") -> List[str]:
        """Penalize contacts already used for other properties. property_ref itself is not counted."""
        notes = []
        for contact in analysis.recommended_contacts:
            if not contact.email:
                continue
            seen = len([ref for ref in self.seen_for(contact.email) if ref != property_ref])
            if seen:
                penalty = min(seen * 0.25, 0.6)
                old = contact.confidence
                contact.confidence = max(contact.confidence - penalty, 0.05)
                if contact.relevance != "direct":
                    contact.relevance = "indirect"
                notes.append(f"{contact.email} used for {seen} other properties: {old:.0%} -> {contact.confidence:.0%}")
            if seen >= 3:
                contact.relevance = "indirect"
                contact.confidence = min(contact.confidence, 0.15)
        _sort_contacts(analysis.recommended_contacts)
        return notes

    def record(self, email: str, property_ref: str):
        if not email:
            return
        with self._lock:
            refs = self._seen.setdefault(email.lower(), [])
            if property_ref not in refs:
                refs.append(property_ref)


def quality_gate(analysis: ResearchAnalysis, contact: Optional[Contact]) -> Tuple[bool, str]:
    """Whether the research is good enough to send without review. Never changes status."""
    if not contact or not contact.email:
        return False, "Ingen kontakt med email fundet"
    if analysis.data_quality == "low":
        return False, f"Lav datakvalitet ({analysis.data_quality_reason}) – kræver manuel review"
    if contact.confidence < 0.7 and analysis.data_quality != "high":
        return False, f"Kontakt confidence {contact.confidence:.0%} < 70% og kvalitet er ikke high"
    if contact.relevance == "indirect" and contact.confidence < 0.8:
        return False, f"Kontakt er indirect med confidence {contact.confidence:.0%} – kræver godkendelse"
    return True, (
        f"Kvalitet: {analysis.data_quality}, Kontakt: {contact.full_name or contact.email} "
        f"({contact.confidence:.0%}, {contact.relevance})"
    )
