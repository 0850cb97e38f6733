"""
Web Research
============
Company search via DuckDuckGo (no API key needed) and website scraping via
httpx. Scraped pages yield emails, Danish phone numbers and the text of the
contact and about pages.
"""

import logging
import re
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from ..errors import TransientCollaboratorError
from ..security import validate_url
from .models import WebSearchResult, WebsiteContent

log = logging.getLogger("ejendom.research.web")

MAX_TEXT_LENGTH = 5000
MAX_REDIRECTS = 5
MAX_SUBPAGES = 3

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}")
PHONE_RE = re.compile(r"(?:\+45[\s-]?)?(?:\d{2}[\s.-]?\d{2}[\s.-]?\d{2}[\s.-]?\d{2}|\d{8})")

_JUNK_EMAIL_MARKERS = (
    "example.com", "sentry", "wixpress", "webpack", "cloudflare", "w3.org",
    "schema.org", "noreply", "no-reply",
)
_IMAGE_SUFFIXES = (".png", ".jpg", ".svg", ".gif")

_SUBPAGE_KEYWORDS = {
    "contact": ("kontakt", "contact"),
    "about": ("om-os", "om os", "about"),
}

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; EjendomAgent/1.0)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "da-DK,da;q=0.9,en;q=0.8",
}


def search(query: str, max_results: int = 5) -> List[WebSearchResult]:
    """Search the web using DuckDuckGo."""
    try:
        from duckduckgo_search import DDGS
    except ImportError:
        raise ImportError("Web search requires: pip install duckduckgo-search")

    try:
        results = []
        with DDGS() as ddgs:
            for r in ddgs.text(query, max_results=max_results):
                url = r.get("href", "")
                if url:
                    results.append(WebSearchResult(
                        title=r.get("title", ""), url=url, snippet=r.get("body", ""),
                    ))
    except Exception as e:
        raise TransientCollaboratorError("web_search", str(e))

    log.debug(f"Search {query!r}: {len(results)} results")
    return results


def strip_html(html: str) -> str:
    text = re.sub(r"<script[^>]*>.*?</script>", "", html, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<style[^>]*>.*?</style>", "", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def extract_emails(text: str) -> List[str]:
    """Unique, lowercased emails in order of appearance, junk addresses removed."""
    found = []
    for match in EMAIL_RE.findall(text or ""):
        email = match.lower()
        if email in found:
            continue
        if any(marker in email for marker in _JUNK_EMAIL_MARKERS):
            continue
        if email.endswith(_IMAGE_SUFFIXES) or not 5 < len(email) < 60:
            continue
        found.append(email)
    return found


def extract_phones(text: str, limit: int = 8) -> List[str]:
    phones = []
    for match in PHONE_RE.findall(text or ""):
        if len(re.sub(r"\D", "", match)) >= 8 and match not in phones:
            phones.append(match)
    return phones[:limit]


def _http_client(http_client):
    if http_client is not None:
        return http_client
    try:
        import httpx
    except ImportError:
        raise ImportError("Website scraping requires: pip install httpx")
    return httpx.Client(timeout=12.0, headers=_HEADERS)


def fetch_page(url: str, http_client=None, resolve: bool = True) -> Optional[str]:
    """
    HTML of a page, or None when it is blocked, missing, or not HTML.
    Redirects are followed by hand so each hop passes validate_url.
    """
    err = validate_url(url, resolve=resolve)
    if err:
        log.warning(f"Refusing to fetch {url}: {err}")
        return None

    client = _http_client(http_client)
    current = url
    resp = None
    for _ in range(MAX_REDIRECTS):
        try:
            resp = client.get(current, follow_redirects=False, headers=_HEADERS)
        except Exception as e:
            raise TransientCollaboratorError("website", f"{current}: {e}")
        if resp.status_code in (301, 302, 303, 307, 308):
            location = resp.headers.get("location", "")
            if not location:
                break
            target = urljoin(current, location)
            err = validate_url(target, resolve=resolve)
            if err:
                log.warning(f"Redirect blocked from {current}: {err}")
                return None
            current = target
            continue
        break

    if resp is None:
        return None
    if resp.status_code >= 500:
        raise TransientCollaboratorError("website", f"{current} returned {resp.status_code}")
    if resp.status_code >= 400:
        return None
    content_type = resp.headers.get("content-type", "")
    if "text/html" not in content_type and "text/plain" not in content_type:
        return None
    return resp.text


def _subpage_links(html: str, base_url: str) -> dict:
    """First same-site link per subpage kind (contact, about)."""
    links = {}
    base_host = urlparse(base_url).netloc
    for href, label in re.findall(r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>', html,
                                  flags=re.DOTALL | re.IGNORECASE):
        full = urljoin(base_url, href)
        if not full.startswith("http") or urlparse(full).netloc != base_host:
            continue
        haystack = f"{href} {strip_html(label)}".lower()
        for kind, keywords in _SUBPAGE_KEYWORDS.items():
            if kind not in links and any(k in haystack for k in keywords):
                links[kind] = full
    return links


def _mailto_emails(html: str) -> List[str]:
    return [m.split("?")[0].strip().lower()
            for m in re.findall(r'href=["\']mailto:([^"\']+)["\']', html, flags=re.IGNORECASE)]


def scrape_website(url: str, http_client=None, follow_links: bool = True,
                   resolve: bool = True) -> Optional[WebsiteContent]:
    """Scrape a company site: root page plus its contact and about pages."""
    if not urlparse(url).scheme:
        url = f"https://{url}"

    client = _http_client(http_client)
    html = fetch_page(url, client, resolve=resolve)
    if html is None:
        return None

    title_match = re.search(r"<title[^>]*>(.*?)</title>", html, flags=re.DOTALL | re.IGNORECASE)
    text = strip_html(html)
    content = WebsiteContent(
        url=url,
        title=title_match.group(1).strip() if title_match else "",
        emails=extract_emails(" ".join(_mailto_emails(html)) + " " + html),
        phones=extract_phones(text),
        contact_page_text=text[:MAX_TEXT_LENGTH],
    )

    if not follow_links:
        return content

    for kind, link in list(_subpage_links(html, url).items())[:MAX_SUBPAGES]:
        if link.rstrip("/") == url.rstrip("/"):
            continue
        try:
            sub_html = fetch_page(link, client, resolve=resolve)
        except TransientCollaboratorError as e:
            log.debug(f"Subpage {link} failed: {e}")
            continue
        if sub_html is None:
            continue
        sub_text = strip_html(sub_html)
        for email in extract_emails(" ".join(_mailto_emails(sub_html)) + " " + sub_html):
            if email not in content.emails:
                content.emails.append(email)
        for phone in extract_phones(sub_text):
            if phone not in content.phones:
                content.phones.append(phone)
        if kind == "contact":
            content.contact_page_text = sub_text[:MAX_TEXT_LENGTH]
        else:
            content.about_page_text = sub_text[:MAX_TEXT_LENGTH]

    log.info(f"Scraped {url}: {len(content.emails)} emails, {len(content.phones)} phones")
    return content
