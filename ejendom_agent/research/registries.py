"""
Public Registries
=================
Owner (OIS via DAWA), company (CVR) and building (BBR) lookups.

Each lookup returns a typed result, or None when the registry has nothing on
the query. Network failures and 5xx answers raise TransientCollaboratorError.
Requires: pip install httpx
"""

import logging
import re
from typing import Any, Dict, Optional

from ..errors import TransientCollaboratorError
from .models import BbrResult, CvrResult, OisOwner, OisResult

log = logging.getLogger("ejendom.research.registries")

USER_AGENT = "Mozilla/5.0 (compatible; EjendomAgent/1.0)"

# DAWA only matches the Danish spelling
_DAWA_CITY_NAMES = {
    "kobenhavn": "København",
    "copenhagen": "København",
    "kbh": "København",
    "arhus": "Aarhus",
    "alborg": "Aalborg",
}


def dawa_city(city: str) -> str:
    return _DAWA_CITY_NAMES.get((city or "").lower().strip(), city or "")


def full_address(address: str, postal_code: str = "", city: str = "") -> str:
    """'Algade 1, 9000 Aalborg' without empty segments."""
    address, postal_code, city = (address or "").strip(), (postal_code or "").strip(), dawa_city(city).strip()
    location = " ".join(p for p in (postal_code, city) if p)
    return f"{address}, {location}" if location else address


def split_street_number(address: str):
    """'Algade 1A, 2. th' -> ('Algade', '1A'); (None, None) when there is no number."""
    first = (address or "").split(",")[0].strip()
    m = re.match(r"^(.+?)\s+(\d+\w?)$", first)
    if m:
        return m.group(1).strip(), m.group(2).strip()
    return None, None


def _to_int(value) -> Optional[int]:
    try:
        return int(float(value)) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class _RegistryClient:
    """Shared httpx GET returning parsed JSON, None on 404 / empty."""

    name = "registry"

    def __init__(self, http_client=None, timeout: float = 15.0, headers: Optional[Dict[str, str]] = None):
        self._http = http_client
        self._timeout = timeout
        self._headers = {"User-Agent": USER_AGENT, "Accept": "application/json", **(headers or {})}

    def _client(self):
        if self._http is None:
            try:
                import httpx
            except ImportError:
                raise ImportError("Registry lookups require: pip install httpx")
            self._http = httpx.Client(timeout=self._timeout, headers=self._headers)
        return self._http

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = self._client().get(url, params=params, headers=self._headers)
        except Exception as e:
            raise TransientCollaboratorError(self.name, str(e))
        if resp.status_code in (400, 404):
            return None
        if resp.status_code >= 400:
            raise TransientCollaboratorError(self.name, f"{url} returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError:
            log.debug(f"{self.name}: non-JSON answer from {url}")
            return None


class BbrClient(_RegistryClient):
    name = "bbr"

    def __init__(self, dawa_url: str = "https://dawa.aws.dk", **kwargs):
        super().__init__(**kwargs)
        self.dawa_url = dawa_url.rstrip("/")

    def lookup(self, address: str, postal_code: str = "", city: str = "") -> Optional[BbrResult]:
        query = full_address(address, postal_code, city)
        hits = self._get_json(f"{self.dawa_url}/adresser", {"q": query, "struktur": "mini", "per_side": 1})
        if not hits and (postal_code or city):
            hits = self._get_json(f"{self.dawa_url}/adresser",
                                  {"q": (address or "").strip(), "struktur": "mini", "per_side": 1})
        if not hits:
            log.info(f"No DAWA address for {query}")
            return None

        address_id = hits[0].get("adgangsadresseid") or hits[0].get("id")
        buildings = self._get_json(f"{self.dawa_url}/bbrlight/bygninger", {"adgangsadresseid": address_id})
        if not buildings:
            return BbrResult(address=query)

        b = buildings[0]
        return BbrResult(
            address=query,
            building_year=_to_int(b.get("OPFOERELSE_AAR")),
            area=_to_int(b.get("SAMLET_BYGN_AREAL")),
            usage=b.get("ANVEND_KODE_TEKST") or "",
            floors=_to_int(b.get("ETAGER_ANT")),
            units=_to_int(b.get("BYG_BOLIG_ANT_BOLIG")),
        )


class OisClient(_RegistryClient):
    """
    BFE discovery through DAWA, then owners and administrators from OIS:

        adresser -> adgangsadresser/{id} -> jordstykker/{ejerlav}/{matrikel} -> ejer/get?bfe=
    """

    name = "ois"

    def __init__(self, dawa_url: str = "https://dawa.aws.dk", ois_url: str = "https://ois.dk/api", **kwargs):
        super().__init__(**kwargs)
        self.dawa_url = dawa_url.rstrip("/")
        self.ois_url = ois_url.rstrip("/")

    def lookup(self, address: str, postal_code: str = "", city: str = "") -> Optional[OisResult]:
        bfe, kommune = self.find_bfe(address, postal_code, city)
        if not bfe:
            log.info(f"OIS: no BFE for {address}")
            return None

        data = self._get_json(f"{self.ois_url}/ejer/get", {"bfe": bfe})
        if not data:
            return None

        result = OisResult(
            bfe=str(bfe),
            address=full_address(address, postal_code, city),
            owners=self._people(data.get("ejerdata")),
            administrators=self._people(data.get("admindata")),
            kommune=kommune,
        )

        info = self._get_json(f"{self.ois_url}/property/GetGeneralInfoFromBFE", {"bfe": bfe}) or {}
        general = info.get("GeneralInfoSFE") or info.get("GeneralInfoBPFG") or info.get("GeneralInfoEJL") or {}
        result.property_type = general.get("ejendomstype") or ""
        result.ownership_text = general.get("ejendommensEjerforholdstekst") or ""
        if not result.kommune:
            result.kommune = general.get("kommunenavn_kode") or ""

        log.info(
            f"OIS: BFE {bfe}, owners={[o.name for o in result.owners]}, "
            f"admins={[a.name for a in result.administrators]}"
        )
        return result

    def find_bfe(self, address: str, postal_code: str = "", city: str = ""):
        """(bfe, kommune name) or (None, '')."""
        address_id = self._access_address_id(address, postal_code, city)
        if not address_id:
            return None, ""

        access = self._get_json(f"{self.dawa_url}/adgangsadresser/{address_id}")
        if not access:
            return None, ""
        kommune = (access.get("kommune") or {}).get("navn") or ""
        ejerlav = (access.get("ejerlav") or {}).get("kode")
        matrikel = access.get("matrikelnr")
        if not ejerlav or not matrikel:
            return None, kommune

        parcel = self._get_json(f"{self.dawa_url}/jordstykker/{ejerlav}/{matrikel}")
        if not parcel:
            return None, kommune
        bfe = _to_int(parcel.get("bfenummer") or parcel.get("sfeejendomsnr"))
        return (bfe if bfe and bfe > 0 else None), kommune

    def _access_address_id(self, address: str, postal_code: str, city: str) -> Optional[str]:
        street, number = split_street_number(address)
        if street and number:
            params = {"vejnavn": street, "husnr": number, "struktur": "mini", "per_side": 1}
            if (postal_code or "").strip():
                params["postnr"] = postal_code.strip()
            hits = self._get_json(f"{self.dawa_url}/adresser", params)
            if hits:
                return hits[0].get("adgangsadresseid") or hits[0].get("id")

        hits = self._get_json(f"{self.dawa_url}/adgangsadresser",
                              {"q": full_address(address, postal_code, city), "struktur": "mini", "per_side": 1})
        if hits:
            return hits[0].get("id")
        return None

    @staticmethod
    def _people(rows) -> list:
        people = []
        for row in rows or []:
            name = (row.get("name") or "").strip()
            # OIS masks protected owners with this placeholder
            if name and "Forbeholdt ejer" not in name:
                people.append(OisOwner(name=name, is_primary=row.get("primaerKontakt") is True))
        return people


class CvrClient(_RegistryClient):
    """cvrapi.dk lookups by company name or 8-digit CVR number."""

    name = "cvr"

    def __init__(self, api_url: str = "https://cvrapi.dk/api", user_agent: str = "", **kwargs):
        headers = {"User-Agent": user_agent} if user_agent else None
        super().__init__(headers=headers, **kwargs)
        self.api_url = api_url

    def lookup(self, query: str) -> Optional[CvrResult]:
        query = (query or "").strip()
        if not query:
            return None

        params = {"country": "dk"}
        if re.fullmatch(r"\d{8}", query):
            params["vat"] = query
        else:
            params["name"] = query

        data = self._get_json(self.api_url, params)
        if not data or data.get("error"):
            return None

        result = CvrResult(
            cvr=str(data.get("vat") or ""),
            company_name=data.get("name") or "",
            address=", ".join(str(p) for p in (data.get("address"), data.get("zipcode"), data.get("city")) if p),
            status=data.get("status") or "ukendt",
            company_type=data.get("companydesc") or "",
            owners=[o.get("name", "") for o in (data.get("owners") or []) if o.get("name")],
            industry=data.get("industrydesc") or "",
            employees=f"{data['employees']} ansatte" if data.get("employees") else "",
            email=(data.get("email") or "").strip().lower(),
            phone=str(data.get("phone") or ""),
            website=data.get("companydomain") or "",
        )
        log.info(f"CVR match for {query!r}: {result.company_name} ({result.cvr})")
        return result
