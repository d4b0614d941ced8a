"""
market_discovery.py — decide which "City,State,Country" markets an audit checks.

Sources, highest priority first:
  1. tracked locations the user configured
  2. the detected business listing's city/region (only without tracked locations)
  3. location pages found in the crawl
  4. city mentions in titles/descriptions/H1s (only if nothing else matched)

The result never exceeds MAX_MARKETS.
"""

import logging
import re
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel

from classifiers import classify_url_type
from models import CrawledPage, DetectedBusiness, DiscoveredMarket, TrackedLocation

logger = logging.getLogger("site-audit")

MAX_MARKETS = 5

US_STATE_ABBREV_TO_NAME = {
    "al": "Alabama", "ak": "Alaska", "az": "Arizona", "ar": "Arkansas", "ca": "California",
    "co": "Colorado", "ct": "Connecticut", "de": "Delaware", "fl": "Florida", "ga": "Georgia",
    "hi": "Hawaii", "id": "Idaho", "il": "Illinois", "in": "Indiana", "ia": "Iowa",
    "ks": "Kansas", "ky": "Kentucky", "la": "Louisiana", "me": "Maine", "md": "Maryland",
    "ma": "Massachusetts", "mi": "Michigan", "mn": "Minnesota", "ms": "Mississippi",
    "mo": "Missouri", "mt": "Montana", "ne": "Nebraska", "nv": "Nevada", "nh": "New Hampshire",
    "nj": "New Jersey", "nm": "New Mexico", "ny": "New York", "nc": "North Carolina",
    "nd": "North Dakota", "oh": "Ohio", "ok": "Oklahoma", "or": "Oregon", "pa": "Pennsylvania",
    "ri": "Rhode Island", "sc": "South Carolina", "sd": "South Dakota", "tn": "Tennessee",
    "tx": "Texas", "ut": "Utah", "vt": "Vermont", "va": "Virginia", "wa": "Washington",
    "wv": "West Virginia", "wi": "Wisconsin", "wy": "Wyoming", "dc": "District of Columbia",
}

CA_PROVINCE_ABBREV_TO_NAME = {
    "ab": "Alberta", "bc": "British Columbia", "mb": "Manitoba", "nb": "New Brunswick",
    "nl": "Newfoundland and Labrador", "ns": "Nova Scotia", "nt": "Northwest Territories",
    "nu": "Nunavut", "on": "Ontario", "pe": "Prince Edward Island", "qc": "Quebec",
    "sk": "Saskatchewan", "yt": "Yukon",
}

US_STATE_NAMES = {n.lower() for n in US_STATE_ABBREV_TO_NAME.values()}
CA_PROVINCE_NAMES = {n.lower() for n in CA_PROVINCE_ABBREV_TO_NAME.values()}

# full state/province name (lowercase) -> 2-letter abbreviation
STATE_NAME_TO_ABBREV = {
    name.lower(): abbr
    for table in (US_STATE_ABBREV_TO_NAME, CA_PROVINCE_ABBREV_TO_NAME)
    for abbr, name in table.items()
}

_GENERIC_LOCATION_SEGMENT = re.compile(r"^(locations?|areas?|cities|service-areas?|serving|coverage)$")

_CITY_ABBR_RE = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*),?\s+([A-Z]{2})\b")
_CITY_FULL_STATE_RE = re.compile(
    r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*),?\s+("
    r"Alabama|Alaska|Arizona|Arkansas|California|Colorado|Connecticut|Delaware|Florida|Georgia|"
    r"Hawaii|Idaho|Illinois|Indiana|Iowa|Kansas|Kentucky|Louisiana|Maine|Maryland|Massachusetts|"
    r"Michigan|Minnesota|Mississippi|Missouri|Montana|Nebraska|Nevada|New\s+Hampshire|New\s+Jersey|"
    r"New\s+Mexico|New\s+York|North\s+Carolina|North\s+Dakota|Ohio|Oklahoma|Oregon|Pennsylvania|"
    r"Rhode\s+Island|South\s+Carolina|South\s+Dakota|Tennessee|Texas|Utah|Vermont|Virginia|"
    r"Washington|West\s+Virginia|Wisconsin|Wyoming|Alberta|British\s+Columbia|Manitoba|"
    r"New\s+Brunswick|Newfoundland|Nova\s+Scotia|Ontario|Prince\s+Edward\s+Island|Quebec|"
    r"Saskatchewan)\b",
    re.IGNORECASE,
)


class CityDetection(BaseModel):
    location: str
    city: str
    confidence: int
    sources: list[str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _title_words(words: list[str]) -> str:
    return " ".join(w[:1].upper() + w[1:] for w in words)


def segment_to_city(segment: str) -> str:
    """'new-york' → 'New York'"""
    return _title_words(segment.split("-"))


def market_city(market: str) -> str:
    return market.split(",")[0].strip()


def _country_for_business(business: Optional[DetectedBusiness]) -> str:
    if business and business.country in ("CA", "Canada"):
        return "Canada"
    return "United States"


def extract_location_from_segment(
    segment: str, business: Optional[DetectedBusiness]
) -> Optional[tuple[str, str, str]]:
    """Parse one URL path segment into (city, state, country), or None."""
    if not segment or len(segment) < 2:
        return None

    parts = segment.split("-")

    if len(parts) >= 2:
        tail = parts[-1].lower()
        if tail in US_STATE_ABBREV_TO_NAME:
            return segment_to_city("-".join(parts[:-1])), US_STATE_ABBREV_TO_NAME[tail], "United States"
        if tail in CA_PROVINCE_ABBREV_TO_NAME:
            return segment_to_city("-".join(parts[:-1])), CA_PROVINCE_ABBREV_TO_NAME[tail], "Canada"

    # "charlotte-north-carolina" → state spans the trailing parts
    for i in range(len(parts) - 1, 0, -1):
        candidate = " ".join(parts[i:]).lower()
        if candidate in US_STATE_NAMES or candidate in CA_PROVINCE_NAMES:
            city = segment_to_city("-".join(parts[:i]))
            state = segment_to_city("-".join(parts[i:]))
            country = "United States" if candidate in US_STATE_NAMES else "Canada"
            return city, state, country

    if business and business.region:
        city = segment_to_city(segment)
        if len(city) < 3:
            return None
        return city, business.region, _country_for_business(business)

    return None


def build_market_string(city: str, state: str, country: str = "United States") -> str:
    """
    Build a DataForSEO location name. State abbreviations are expanded:
    ('Dallas', 'tx') → 'Dallas,Texas,United States'
    """
    key = state.strip().lower()
    full_state = (
        US_STATE_ABBREV_TO_NAME.get(key)
        or CA_PROVINCE_ABBREV_TO_NAME.get(key)
        or " ".join(w[:1].upper() + w[1:].lower() for w in state.split())
    )
    return ",".join([city.strip(), full_state, country])


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def discover_markets_from_crawl(
    pages: list[CrawledPage], business: Optional[DetectedBusiness]
) -> list[DiscoveredMarket]:
    """Markets implied by location pages, deduplicated by city+state."""
    seen: dict[str, DiscoveredMarket] = {}

    for page in pages:
        if not page.url or classify_url_type(page.url) != "location":
            continue
        try:
            path = urlparse(page.url).path.lower().rstrip("/")
        except ValueError:
            continue

        segments = [s for s in path.split("/") if s]
        for seg in reversed(segments):
            if _GENERIC_LOCATION_SEGMENT.match(seg):
                continue
            loc = extract_location_from_segment(seg, business)
            if loc:
                city, state, country = loc
                key = f"{city},{state}".lower()
                if key not in seen:
                    seen[key] = DiscoveredMarket(
                        city=city,
                        location=f"{city},{state},{country}",
                        source="url",
                        page=page.url,
                    )
                break

    return list(seen.values())


def detect_city_from_content(pages: list[CrawledPage]) -> Optional[CityDetection]:
    """
    Most-mentioned "City, ST" / "City, State" in titles, descriptions and H1s.
    Needs more than 3 mentions to count.
    """
    mentions: dict[str, dict] = {}

    def _add(city: str, state: str, url: str) -> None:
        entry = mentions.setdefault(city.lower(), {"count": 0, "state": state, "sources": []})
        entry["count"] += 1
        if url not in entry["sources"]:
            entry["sources"].append(url)

    for page in pages:
        texts = [t for t in (page.meta.title, page.meta.description) if t] + page.h1s
        combined = " ".join(texts)
        if not combined:
            continue

        for m in _CITY_ABBR_RE.finditer(combined):
            city = m.group(1).strip()
            abbr = m.group(2).lower()
            state = US_STATE_ABBREV_TO_NAME.get(abbr) or CA_PROVINCE_ABBREV_TO_NAME.get(abbr)
            if not state or len(city) < 3:
                continue
            _add(city, state, page.url)

        for m in _CITY_FULL_STATE_RE.finditer(combined):
            city = m.group(1).strip()
            if len(city) < 3:
                continue
            state = " ".join(w[:1].upper() + w[1:].lower() for w in m.group(2).split())
            _add(city, state, page.url)

    best_city, best = None, None
    for city, data in mentions.items():
        if best is None or data["count"] > best["count"]:
            best_city, best = city, data

    if not best or best["count"] <= 3:
        return None

    city_name = _title_words(best_city.split(" "))
    country = "Canada" if best["state"].lower() in CA_PROVINCE_NAMES else "United States"
    return CityDetection(
        location=f"{city_name},{best['state']},{country}",
        city=city_name,
        confidence=best["count"],
        sources=best["sources"],
    )


def resolve_markets(
    tracked: list[TrackedLocation],
    business: Optional[DetectedBusiness],
    pages: list[CrawledPage],
) -> list[DiscoveredMarket]:
    """Ordered, deduplicated market list capped at MAX_MARKETS."""
    markets: list[DiscoveredMarket] = []

    def _append(market: DiscoveredMarket) -> None:
        if len(markets) >= MAX_MARKETS:
            return
        city = market_city(market.location).lower()
        if any(market_city(m.location).lower() == city for m in markets):
            return
        markets.append(market)

    for loc in tracked:
        _append(DiscoveredMarket(
            city=loc.city,
            location=build_market_string(loc.city, loc.state, loc.country),
            source="tracked",
        ))

    if not tracked and business and business.city and business.region:
        _append(DiscoveredMarket(
            city=business.city,
            location=build_market_string(business.city, business.region, _country_for_business(business)),
            source="business",
        ))

    for market in discover_markets_from_crawl(pages, business):
        _append(market)

    if not markets:
        detected = detect_city_from_content(pages)
        if detected:
            logger.info(f"Detected {detected.city} from page content ({detected.confidence} mentions)")
            _append(DiscoveredMarket(city=detected.city, location=detected.location, source="content"))

    return markets
