"""
Traffic Estimates
=================
Daily traffic (ADT) for Danish streets, in three tiers:

  1. Curated counts from Vejdirektoratet / municipal data   (confidence 0.9 / 0.75)
  2. Street-type pattern × city size                        (confidence 0.4)
  3. City-size default                                      (confidence 0.2)
"""

import re

from .models import TrafficEstimate

# "city:street" -> vehicles per day
KNOWN_TRAFFIC = {
    # København
    "københavn:h.c. andersens boulevard": 60000,
    "københavn:langebro": 55000,
    "københavn:bredgade": 15000,
    "københavn:vesterbrogade": 35000,
    "københavn:nørrebrogade": 30000,
    "københavn:amagerbrogade": 28000,
    "københavn:østerbrogade": 22000,
    "københavn:jagtvej": 25000,
    "københavn:tagensvej": 22000,
    "københavn:lyngbyvej": 45000,
    "københavn:frederikssundsvej": 28000,
    "københavn:roskildevej": 32000,
    "københavn:gammel kongevej": 20000,
    "københavn:kongens nytorv": 25000,
    "københavn:gothersgade": 18000,
    "københavn:nørre voldgade": 15000,
    "københavn:vester voldgade": 18000,
    "københavn:torvegade": 20000,
    "københavn:istedgade": 12000,
    "københavn:enghavevej": 15000,
    "københavn:vigerslev allé": 20000,
    "københavn:valby langgade": 18000,
    "københavn:øresundsvej": 18000,
    "københavn:amager strandvej": 12000,
    "københavn:englandsvej": 15000,
    "københavn:folehaven": 25000,
    "københavn:kalvebod brygge": 35000,
    "københavn:sydhavnsgade": 18000,
    "københavn:center boulevard": 22000,
    "københavn:åboulevard": 20000,
    "københavn:blegdamsvej": 18000,
    "københavn:nørre allé": 14000,
    "københavn:borups allé": 18000,
    "københavn:bispeengbuen": 35000,
    "københavn:tuborgvej": 20000,
    "københavn:strandvejen": 25000,
    "københavn:helsingørmotorvejen": 55000,
    "københavn:holbækmotorvejen": 60000,
    "københavn:køge bugt motorvejen": 65000,
    "københavn:amagermotorvejen": 50000,
    # Frederiksberg
    "frederiksberg:falkoner allé": 16000,
    "frederiksberg:smallegade": 12000,
    "frederiksberg:godthåbsvej": 14000,
    "frederiksberg:pile allé": 12000,
    "frederiksberg:gammel kongevej": 18000,
    "frederiksberg:frederiksberg allé": 15000,
    "frederiksberg:roskildevej": 30000,
    # Aarhus
    "aarhus:randersvej": 35000,
    "aarhus:silkeborgvej": 30000,
    "aarhus:ringvej": 40000,
    "aarhus:viborgvej": 28000,
    "aarhus:skanderborgvej": 25000,
    "aarhus:oddervej": 18000,
    "aarhus:frederiks allé": 15000,
    "aarhus:søndergade": 25000,
    "aarhus:park allé": 15000,
    "aarhus:marselis boulevard": 20000,
    "aarhus:grenåvej": 22000,
    # Odense
    "odense:albanigade": 20000,
    "odense:middelfartvej": 22000,
    "odense:nørregade": 15000,
    "odense:vesterbro": 18000,
    "odense:niels bohrs allé": 25000,
    # Aalborg
    "aalborg:vesterbro": 22000,
    "aalborg:hobrovej": 25000,
    "aalborg:kong christians allé": 16000,
}

# First match wins
STREET_TYPE_ESTIMATES = [
    (re.compile(r"motorvej"), 55000),
    (re.compile(r"motortrafikvej"), 35000),
    (re.compile(r"ringvej|ring\s?\d"), 35000),
    (re.compile(r"boulevard"), 20000),
    (re.compile(r"allé"), 15000),
    (re.compile(r"brogade$"), 22000),
    (re.compile(r"landevej"), 12000),
    (re.compile(r"hovedgade"), 15000),
    (re.compile(r"torv|plads"), 12000),
    (re.compile(r"strandvej"), 15000),
    (re.compile(r"^vej$|vej\s"), 10000),
    (re.compile(r"gade$"), 8000),
    (re.compile(r"stræde$"), 4000),
    (re.compile(r"vænge|have|park"), 3000),
]

CITY_MULTIPLIERS = {
    "københavn": 1.3,
    "frederiksberg": 1.2,
    "aarhus": 1.0,
    "odense": 0.85,
    "aalborg": 0.8,
    "esbjerg": 0.7,
    "randers": 0.65,
    "kolding": 0.65,
    "horsens": 0.6,
    "vejle": 0.65,
    "roskilde": 0.7,
    "herning": 0.6,
    "silkeborg": 0.55,
    "næstved": 0.55,
    "fredericia": 0.6,
    "viborg": 0.55,
    "køge": 0.6,
    "holstebro": 0.5,
    "slagelse": 0.55,
    "hillerød": 0.6,
    "helsingør": 0.6,
}

DEFAULT_CITY_MULTIPLIER = 0.5
DEFAULT_TRAFFIC = 6000


def normalize_city(city: str) -> str:
    return re.sub(r"[^a-zæøå]", "", (city or "").lower())


def estimate_street_traffic(street: str, city: str) -> TrafficEstimate:
    city_key = normalize_city(city)
    street_key = (street or "").lower().strip()

    exact = KNOWN_TRAFFIC.get(f"{city_key}:{street_key}")
    if exact:
        return TrafficEstimate(exact, "vejdirektoratet", 0.9)

    if street_key:
        for key, count in KNOWN_TRAFFIC.items():
            if key.startswith(f"{city_key}:") and street_key in key:
                return TrafficEstimate(count, "vejdirektoratet", 0.75)

    multiplier = CITY_MULTIPLIERS.get(city_key, DEFAULT_CITY_MULTIPLIER)

    for pattern, estimate in STREET_TYPE_ESTIMATES:
        if pattern.search(street_key):
            return TrafficEstimate(int(round(estimate * multiplier)), "estimate", 0.4)

    return TrafficEstimate(int(round(DEFAULT_TRAFFIC * multiplier)), "estimate", 0.2)


def meets_traffic_threshold(street: str, city: str, min_traffic: int = 10000) -> tuple:
    """Returns (meets, estimate)."""
    estimate = estimate_street_traffic(street, city)
    return estimate.estimated_daily_traffic >= min_traffic, estimate


def format_traffic(count: int) -> str:
    """35000 -> '35K', 8500 -> '8.5K', 950 -> '950'."""
    if count >= 1000:
        return f"{count / 1000:.{0 if count >= 10000 else 1}f}K"
    return str(count)
