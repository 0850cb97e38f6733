"""
Discovery Sources
=================
Thin httpx adapters over DAWA (addresses + BBR light) and the municipal WFS
feed of active scaffolding permits.

Network and HTTP failures raise TransientCollaboratorError. A lookup that
simply finds nothing returns None or an empty list.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..errors import TransientCollaboratorError
from .models import CandidateRecord
from .traffic import normalize_city

log = logging.getLogger("ejendom.discovery.sources")

DEFAULT_DAWA_URL = "https://dawa.aws.dk"
DEFAULT_WFS_URL = "https://wfs-kbhkort.kk.dk/k101/ows"
DEFAULT_KOMMUNEKODE = "0101"

KNOWN_KOMMUNEKODER = {
    "københavn": "0101",
    "kobenhavn": "0101",
    "copenhagen": "0101",
    "valby": "0101",
    "vanløse": "0101",
    "amager": "0101",
    "nørrebro": "0101",
    "østerbro": "0101",
    "vesterbro": "0101",
    "frederiksberg": "0147",
    "gentofte": "0157",
    "hellerup": "0157",
    "charlottenlund": "0157",
    "gladsaxe": "0159",
    "hvidovre": "0167",
    "lyngby": "0173",
    "rødovre": "0175",
    "aarhus": "0751",
    "odense": "0461",
    "aalborg": "0851",
}

WFS_ACTIVE_LAYER = "k101:erhv_raaden_over_vej_events_aktiv_aabne"
MAX_WFS_FEATURES = 10000

_SCAFFOLD_CATEGORY_MARKERS = (
    "stillads", "lade tårn", "trappe tårn", "materiale-", "mandskabs hejs",
    "alu, inkl", "portal bundrammer", "standard bundrammer", "rørførings portal",
)


def _client(http_client, timeout: float):
    if http_client is not None:
        return http_client
    try:
        import httpx
    except ImportError:
        raise ImportError("Discovery sources require: pip install httpx")
    return httpx.Client(timeout=timeout, headers={"User-Agent": "EjendomAgent/1.0"})


def _to_int(value) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


class DawaClient:
    """Danish address web API: kommunekoder, street addresses, BBR light."""

    def __init__(self, base_url: str = DEFAULT_DAWA_URL, http_client=None, timeout: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self._http = http_client
        self._timeout = timeout

    def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        client = _client(self._http, self._timeout)
        self._http = client
        url = f"{self.base_url}{path}"
        try:
            resp = client.get(url, params=params)
        except Exception as e:
            raise TransientCollaboratorError("dawa", f"{path}: {e}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise TransientCollaboratorError("dawa", f"{path} returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransientCollaboratorError("dawa", f"{path}: invalid JSON ({e})")

    def resolve_kommunekode(self, city: str) -> str:
        """City name to kommunekode; known table first, then DAWA, then København."""
        normalized = normalize_city(city)
        if normalized in KNOWN_KOMMUNEKODER:
            return KNOWN_KOMMUNEKODER[normalized]

        try:
            data = self._get_json("/kommuner", {"q": city, "per_side": 1})
        except TransientCollaboratorError as e:
            log.warning(f"Could not resolve kommunekode for {city}: {e}")
            data = None
        if data:
            return str(data[0].get("kode", DEFAULT_KOMMUNEKODE))
        return DEFAULT_KOMMUNEKODE

    def street_addresses(self, street: str, kommunekode: str) -> List[Dict[str, Any]]:
        data = self._get_json("/adgangsadresser", {
            "vejnavn": street,
            "kommunekode": kommunekode,
            "struktur": "mini",
            "per_side": 500,
        })
        return list(data or [])

    def bbr_building(self, address_id: str) -> Optional[Dict[str, Any]]:
        """The largest BBR building registered on an access address."""
        buildings = self._get_json("/bbrlight/bygninger", {"adgangsadresseid": address_id})
        if not buildings:
            return None
        return max(buildings, key=lambda b: _to_int(b.get("SAMLET_BYGN_AREAL")) or 0)

    def lookup_address(self, query: str) -> Optional[Dict[str, Any]]:
        data = self._get_json("/adresser", {"q": query, "struktur": "mini", "per_side": 1})
        if not data:
            return None
        return data[0]

    def scan_street(self, street: str, city: str) -> List[CandidateRecord]:
        """All buildings on a street with BBR data attached."""
        kommunekode = self.resolve_kommunekode(city)
        addresses = self.street_addresses(street, kommunekode)
        log.info(f"Found {len(addresses)} addresses on {street} (kommune {kommunekode})")

        candidates = []
        for addr in addresses:
            candidate = CandidateRecord(
                dawa_id=addr.get("id", ""),
                address=f"{addr.get('vejnavn', '')} {addr.get('husnr', '')}".strip(),
                street_name=addr.get("vejnavn", ""),
                house_number=addr.get("husnr", ""),
                postal_code=str(addr.get("postnr", "")),
                city=addr.get("postnrnavn", "") or city,
                source="street_discovery",
            )
            try:
                building = self.bbr_building(candidate.dawa_id) if candidate.dawa_id else None
            except TransientCollaboratorError as e:
                log.warning(f"BBR lookup failed for {candidate.address}: {e}")
                building = None
            if building:
                candidate.building_year = _to_int(building.get("OPFOERELSE_AAR"))
                candidate.area = _to_int(building.get("SAMLET_BYGN_AREAL"))
                candidate.floors = _to_int(building.get("ETAGER_ANT"))
                candidate.units = _to_int(building.get("BYG_BOLIG_ANT_BOLIG"))
                candidate.usage_code = str(building.get("ANVEND_KODE") or "")
                candidate.usage_text = building.get("ANVEND_KODE_TEKST") or ""
            candidates.append(candidate)
        return candidates


# --- Scaffolding permits ---

def classify_permit_group(sagstype: str, kategori: str) -> Optional[str]:
    """'Stilladsreklamer', 'Stilladser', or None for everything else."""
    s, k = (sagstype or "").lower(), (kategori or "").lower()
    if "stilladsreklam" in s:
        return "Stilladsreklamer"
    if any(marker in k for marker in _SCAFFOLD_CATEGORY_MARKERS):
        return "Stilladser"
    return None


def parse_wfs_date(value) -> str:
    """ISO timestamps and DD-MM-YY dates to YYYY-MM-DD."""
    text = str(value or "").strip()
    if not text or text in ("null", "undefined"):
        return ""
    if "T" in text:
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            pass
    m = re.match(r"^(\d{2})-(\d{2})-(\d{2})$", text)
    if m:
        return f"{2000 + int(m.group(3))}-{m.group(2)}-{m.group(1)}"
    return text


def split_address(address: str) -> tuple:
    """'Lyshøj Allé 2 - 28' -> ('Lyshøj Allé', '2')."""
    street = re.sub(r"\s+\d+\s*[-–]\s*\d+.*$", "", address or "")
    street = re.sub(r"\s+\d+[A-Za-z]?.*$", "", street).strip()
    m = re.search(r"\s+(\d+[A-Za-z]?)(?:\s|$|,|-)", address or "")
    return street, (m.group(1) if m else "")


def _weeks_between(start: str, end: str) -> Optional[float]:
    try:
        days = (date.fromisoformat(end) - date.fromisoformat(start)).days
    except ValueError:
        return None
    return round(days / 7)


class ScaffoldingSource:
    """Active scaffolding permits from the Copenhagen WFS feed."""

    def __init__(self, wfs_url: str = DEFAULT_WFS_URL, dawa: Optional[DawaClient] = None,
                 http_client=None, timeout: float = 25.0):
        self.wfs_url = wfs_url
        self.dawa = dawa
        self._http = http_client
        self._timeout = timeout

    @staticmethod
    def supports(city: str) -> bool:
        return normalize_city(city) in ("københavn", "kobenhavn", "koebenhavn", "copenhagen")

    def fetch_permits(self, city: str) -> List[CandidateRecord]:
        if not self.supports(city):
            log.info(f"No permit feed for {city}")
            return []

        client = _client(self._http, self._timeout)
        self._http = client
        params = {
            "service": "WFS",
            "version": "1.0.0",
            "request": "GetFeature",
            "typeName": WFS_ACTIVE_LAYER,
            "outputFormat": "json",
            "SRSNAME": "EPSG:4326",
            "maxFeatures": str(MAX_WFS_FEATURES),
        }
        try:
            resp = client.get(self.wfs_url, params=params)
        except Exception as e:
            raise TransientCollaboratorError("wfs", str(e))
        if resp.status_code >= 400:
            raise TransientCollaboratorError("wfs", f"GetFeature returned {resp.status_code}")
        try:
            features = (resp.json() or {}).get("features") or []
        except ValueError as e:
            raise TransientCollaboratorError("wfs", f"invalid JSON ({e})")

        permits = []
        for feature in features:
            permit = self.parse_feature(feature.get("properties") or {})
            if permit:
                permits.append(permit)
        log.info(f"WFS returned {len(features)} features, {len(permits)} scaffolding permits")

        permits = self._best_per_address(permits)
        self._enrich_postal_codes(permits)
        return permits

    @staticmethod
    def parse_feature(props: Dict[str, Any]) -> Optional[CandidateRecord]:
        sagstype = str(props.get("sagstype") or "")
        kategori = str(props.get("kategori") or "")
        group = classify_permit_group(sagstype, kategori)
        if not group:
            return None

        location = str(props.get("lokation") or "").strip()
        street, number = split_address(location)
        start = parse_wfs_date(props.get("projekt_start"))
        end = parse_wfs_date(props.get("projekt_slut"))
        facade = props.get("facadeareal_m2")

        return CandidateRecord(
            address=location,
            street_name=street,
            house_number=number,
            city="København",
            source="scaffolding",
            permit_type=group,
            category=kategori,
            start_date=start,
            end_date=end,
            duration_weeks=_weeks_between(start, end) if start and end else None,
            facade_area=float(facade) if _to_int(facade) is not None else None,
            contractor=str(props.get("entreprenoer") or ""),
            contact_email=str(props.get("bygherre_kontaktemail") or props.get("ansoeger_kontaktinfo") or ""),
            contact_phone=str(props.get("bygherre_kontakttele") or props.get("ansoeger_kontakttele") or ""),
            source_url="kbhkort.kk.dk",
        )

    @staticmethod
    def _best_per_address(permits: List[CandidateRecord]) -> List[CandidateRecord]:
        """Several permits can share an address; advertising permits win."""
        priority = {"Stilladsreklamer": 10, "Stilladser": 9}
        best: Dict[str, CandidateRecord] = {}
        for p in permits:
            key = re.sub(r"\s+", " ", p.address.lower()).strip()
            current = best.get(key)
            if current is None or priority.get(p.permit_type, 0) > priority.get(current.permit_type, 0):
                best[key] = p
        return list(best.values())

    def _enrich_postal_codes(self, permits: List[CandidateRecord]):
        if not self.dawa:
            return
        for p in permits:
            if p.postal_code:
                continue
            try:
                match = self.dawa.lookup_address(f"{p.street_name} {p.house_number}, {p.city}")
            except TransientCollaboratorError as e:
                log.debug(f"Postal code lookup failed for {p.address}: {e}")
                continue
            if match:
                postnr = match.get("postnr")
                if isinstance(postnr, dict):
                    postnr = postnr.get("nr")
                p.postal_code = str(postnr or "")
