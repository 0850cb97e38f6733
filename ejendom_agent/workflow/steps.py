"""
Workflow Steps
==============
The research steps, in execution order. Each step reads the ResearchContext
and returns a dict of context fields to set. A step may raise StepSkipped to
end itself as `skipped` without an error.

    identity_lookup   optional   OIS, BBR, CVR (each source tolerated on its own)
    company_search    optional   web search for the owner company
    website_scrape    optional   company website, contact + about pages
    llm_analysis      MANDATORY  analysis, validation, relevance penalty, quality gate
    email_draft       optional   outreach draft for the best contact with an email
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from ..errors import TransientCollaboratorError
from ..research.analysis import quality_gate, validate_analysis
from ..research.models import ResearchContext

log = logging.getLogger("ejendom.workflow.steps")

# Directories and social sites that never are the owner's own website
SKIP_DOMAINS = (
    "facebook.com", "linkedin.com", "instagram.com", "twitter.com", "x.com",
    "youtube.com", "wikipedia.org", "krak.dk", "proff.dk", "cvrapi.dk",
    "virk.dk", "ois.dk", "boliga.dk", "google.com",
)


class StepSkipped(Exception):
    """Raised by a step that has nothing to do. Not a failure."""

    def __init__(self, details: str):
        self.details = details
        super().__init__(details)


@dataclass
class StepDescriptor:
    id: str
    name: str
    mandatory: bool
    execute: Callable[[ResearchContext], Dict[str, Any]]


def _identity_lookup(ois=None, bbr=None, cvr=None):
    def run(ctx: ResearchContext) -> Dict[str, Any]:
        delta: Dict[str, Any] = {}
        failures = []
        attempted = 0

        def tolerated(source: str, fn, *args):
            nonlocal attempted
            attempted += 1
            try:
                return fn(*args)
            except TransientCollaboratorError as e:
                log.warning(f"{source} lookup failed for {ctx.address}: {e}")
                failures.append(source)
                return None

        if ois:
            delta["ois"] = tolerated("OIS", ois.lookup, ctx.address, ctx.postal_code, ctx.city)
        if bbr:
            delta["bbr"] = tolerated("BBR", bbr.lookup, ctx.address, ctx.postal_code, ctx.city)
        if cvr:
            owner_ois = delta.get("ois")
            query = owner_ois.owners[0].name if owner_ois and owner_ois.owners else ""
            if query:
                delta["cvr"] = tolerated("CVR", cvr.lookup, query)

        if attempted and len(failures) == attempted:
            raise TransientCollaboratorError("registries", f"all lookups failed ({', '.join(failures)})")

        delta["details"] = " | ".join([
            f"OIS: {'✓ ' + ', '.join(o.name for o in delta['ois'].owners) if delta.get('ois') else '✗'}",
            f"CVR: {'✓ ' + delta['cvr'].company_name if delta.get('cvr') else '✗'}",
            f"BBR: {'✓' if delta.get('bbr') else '✗'}",
        ])
        return delta
    return run


def _company_search(search):
    def run(ctx: ResearchContext) -> Dict[str, Any]:
        owner = ""
        if ctx.cvr and ctx.cvr.company_name:
            owner = ctx.cvr.company_name
        elif ctx.ois and ctx.ois.owners:
            owner = ctx.ois.owners[0].name
        if not owner:
            raise StepSkipped("Ingen ejer at søge efter")

        seen, results = set(), []
        for query in (f'"{owner}" kontakt', f'"{owner}" ejendom {ctx.city}'.strip()):
            for r in search(query, 5):
                if r.url not in seen:
                    seen.add(r.url)
                    results.append(r)
        return {"search_results": results, "details": f"Søgninger: {len(results)} resultater"}
    return run


def pick_website(ctx: ResearchContext) -> Optional[str]:
    """The owner's website: CVR's company domain first, then the first usable search hit."""
    if ctx.cvr and ctx.cvr.website:
        site = ctx.cvr.website
        return site if site.startswith("http") else f"https://{site}"
    for r in ctx.search_results:
        host = (urlparse(r.url).hostname or "").lower()
        if host and not any(host == d or host.endswith("." + d) for d in SKIP_DOMAINS):
            return f"{urlparse(r.url).scheme}://{host}"
    return None


def _website_scrape(scrape):
    def run(ctx: ResearchContext) -> Dict[str, Any]:
        url = pick_website(ctx)
        if not url:
            raise StepSkipped("Ingen hjemmeside fundet")
        content = scrape(url)
        if content is None:
            raise StepSkipped(f"Kunne ikke hente {url}")
        return {"website": content, "details": f"{url}: {len(content.emails)} emails"}
    return run


def _llm_analysis(analyst, tracker=None):
    def run(ctx: ResearchContext) -> Dict[str, Any]:
        if analyst is None:
            raise ValueError("No LLM provider configured")
        analysis = analyst.analyze(ctx)
        cleaned, corrections = validate_analysis(analysis, ctx)
        if tracker is not None:
            corrections.extend(tracker.apply(cleaned, ctx.property_ref))
        passed, reason = quality_gate(cleaned, cleaned.best_contact)
        return {
            "analysis": cleaned,
            "corrections": corrections,
            "quality_gate_passed": passed,
            "quality_gate_reason": reason,
            "details": f"Datakvalitet: {cleaned.data_quality} | {len(cleaned.recommended_contacts)} kontakter",
        }
    return run


def _email_draft(analyst):
    def run(ctx: ResearchContext) -> Dict[str, Any]:
        contact = ctx.analysis.best_contact if ctx.analysis else None
        if contact is None:
            raise StepSkipped("Ingen kontaktperson med email fundet")
        draft = analyst.draft_email(ctx, contact, ctx.analysis)
        return {"draft": draft, "details": f"Emne: {draft.subject}"}
    return run


def default_steps(
    ois=None,
    bbr=None,
    cvr=None,
    search: Optional[Callable] = None,
    scrape: Optional[Callable] = None,
    analyst=None,
    tracker=None,
) -> List[StepDescriptor]:
    """The standard research sequence. Missing collaborators make their step a no-op skip."""
    def unavailable(reason: str):
        def run(ctx):
            raise StepSkipped(reason)
        return run

    return [
        StepDescriptor("identity_lookup", "Registeropslag (OIS, BBR, CVR)", False,
                       _identity_lookup(ois, bbr, cvr)),
        StepDescriptor("company_search", "Websøgning efter ejer", False,
                       _company_search(search) if search else unavailable("Websøgning ikke konfigureret")),
        StepDescriptor("website_scrape", "Hjemmeside-scraping", False,
                       _website_scrape(scrape) if scrape else unavailable("Scraping ikke konfigureret")),
        StepDescriptor("llm_analysis", "AI analyse og validering", True,
                       _llm_analysis(analyst, tracker)),
        StepDescriptor("email_draft", "AI genererer mailudkast", False,
                       _email_draft(analyst) if analyst else unavailable("Ingen LLM konfigureret")),
    ]
