"""
keyword_extraction.py — derive a ranked keyword list from crawled pages.

Service terms are scored from titles, headings, URL slugs and descriptions,
then expanded into tiers (bare, near-me, city combos, modifiers, branded).
Each tier is a pure generator; `extract_keywords_from_crawl` merges them,
sorts by score and deduplicates. The output is deterministic for a given
input.
"""

import re
from typing import Iterator, NamedTuple
from urllib.parse import urlparse

from market_discovery import US_STATE_ABBREV_TO_NAME
from models import CrawledPage, ExtractedKeyword

MAX_KEYWORDS = 100
BRAND_THRESHOLD = 0.35

US_STATE_NAME_TO_ABBREV = {
    name.lower(): abbr for abbr, name in US_STATE_ABBREV_TO_NAME.items() if abbr != "dc"
}
STATE_ABBREVS = set(US_STATE_NAME_TO_ABBREV.values())

GENERIC_TERMS = {
    "home", "homepage", "blog", "news", "about", "about us", "contact",
    "contact us", "gallery", "portfolio", "testimonials", "reviews",
    "privacy policy", "privacy", "terms", "terms of service", "sitemap",
    "faq", "login", "signup", "register", "account", "cart", "checkout",
    "thank you", "thanks", "confirmation", "page not found", "404",
    "careers", "jobs", "team", "our team", "our story", "search",
    "untitled", "welcome", "loading", "error", "subscribe", "unsubscribe",
}

COMMON_MODIFIERS = ["best", "affordable", "cheap", "emergency", "cost", "price", "reviews"]

# Term source weights
TITLE_WEIGHT = 3
H1_WEIGHT = 2.5
H2_WEIGHT = 1.5
URL_WEIGHT = 1
DESCRIPTION_WEIGHT = 0.5

_TITLE_SPLIT = re.compile(r"\s*[|–—·:]\s*")


class Location(NamedTuple):
    city: str
    state: str
    country: str


# term, accumulated score
Term = tuple[str, float]


# ---------------------------------------------------------------------------
# Brand & locations
# ---------------------------------------------------------------------------

def detect_brand(pages: list[CrawledPage]) -> str:
    """Most common title segment, if it appears in more than 35% of titled pages."""
    counts: dict[str, int] = {}
    titled = 0
    for page in pages:
        if not page.meta.title:
            continue
        titled += 1
        for part in _TITLE_SPLIT.split(page.meta.title):
            part = part.strip()
            if len(part) > 1:
                counts[part.lower()] = counts.get(part.lower(), 0) + 1

    brand, brand_count = "", 0
    threshold = titled * BRAND_THRESHOLD
    for segment, count in counts.items():
        if count > threshold and count > brand_count:
            brand, brand_count = segment, count
    return brand


def parse_locations(markets: list[str]) -> tuple[list[Location], set[str]]:
    """Split market strings and collect the words that should be stripped from terms."""
    parsed: list[Location] = []
    words: set[str] = set()
    for market in markets:
        parts = [p.strip() for p in market.split(",")]
        city = parts[0] if parts else ""
        state = parts[1] if len(parts) > 1 else ""
        country = parts[2] if len(parts) > 2 and parts[2] else "United States"

        if city:
            parsed.append(Location(city, state, country))
            words.update(w for w in city.lower().split() if len(w) > 2)
        if state:
            words.update(w for w in state.lower().split() if len(w) > 2)
            abbr = US_STATE_NAME_TO_ABBREV.get(state.lower())
            if abbr:
                words.add(abbr)
    return parsed, words


# ---------------------------------------------------------------------------
# Term scoring
# ---------------------------------------------------------------------------

def clean_term(raw: str, location_words: set[str], brand: str) -> str:
    term = re.sub(r"[|–—·•:]", " ", raw.lower())
    term = re.sub(r"\s+", " ", term).strip()

    if brand:
        term = re.sub(r"\b" + re.escape(brand) + r"\b", "", term, flags=re.IGNORECASE).strip()

    words = [w for w in term.split() if w not in location_words and w not in STATE_ABBREVS]
    term = " ".join(words)

    return re.sub(r"^[-–—|:]+|[-–—|:]+$", "", term).strip()


def url_segments_to_text(url: str) -> list[str]:
    """'/services/roof-repair' → ['services', 'roof repair']"""
    try:
        segments = [s for s in urlparse(url).path.split("/") if s]
    except ValueError:
        return []
    texts = [re.sub(r"\.\w+$", "", re.sub(r"[-_]", " ", s)).strip() for s in segments]
    return [t for t in texts if len(t) > 2]


def _raw_candidates(page: CrawledPage) -> Iterator[tuple[str, float]]:
    if page.meta.title:
        for part in _TITLE_SPLIT.split(page.meta.title):
            if part.strip():
                yield part.strip(), TITLE_WEIGHT
    for h1 in page.h1s:
        yield h1, H1_WEIGHT
    for h2 in page.h2s:
        yield h2, H2_WEIGHT
    for text in url_segments_to_text(page.url):
        yield text, URL_WEIGHT
    if page.meta.description:
        for phrase in re.split(r"[.,;!?]", page.meta.description):
            phrase = phrase.strip()
            if len(phrase) > 3 and len(phrase.split()) <= 4:
                yield phrase, DESCRIPTION_WEIGHT


def score_terms(pages: list[CrawledPage], location_words: set[str], brand: str) -> list[Term]:
    """Cleaned service terms with additive weights, best first."""
    scores: dict[str, float] = {}
    for page in pages:
        for raw, weight in _raw_candidates(page):
            term = clean_term(raw, location_words, brand)
            if (
                len(term) < 3
                or term in GENERIC_TERMS
                or term.isdigit()
                or len(term.split()) > 5
            ):
                continue
            scores[term] = scores.get(term, 0) + weight
    return sorted(scores.items(), key=lambda kv: -kv[1])


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

def tier_service(terms: list[Term]) -> Iterator[ExtractedKeyword]:
    for term, score in terms[:15]:
        yield ExtractedKeyword(keyword=term, score=score * 1.0, type="service")


def tier_near_me(terms: list[Term]) -> Iterator[ExtractedKeyword]:
    for term, score in terms[:15]:
        yield ExtractedKeyword(keyword=f"{term} near me", score=score * 1.5, type="near_me")


def tier_primary_city(terms: list[Term], primary: Location | None) -> Iterator[ExtractedKeyword]:
    if not primary:
        return
    city = primary.city.lower()
    for term, score in terms[:15]:
        yield ExtractedKeyword(keyword=f"{term} {city}", score=score * 1.3, type="local")


def tier_modifiers(terms: list[Term]) -> Iterator[ExtractedKeyword]:
    for term, score in terms[:8]:
        for modifier in COMMON_MODIFIERS:
            yield ExtractedKeyword(keyword=f"{modifier} {term}", score=score * 0.8, type="modifier")


def tier_secondary_cities(terms: list[Term], secondary: list[Location]) -> Iterator[ExtractedKeyword]:
    if not secondary:
        return
    for term, score in terms[:10]:
        for loc in secondary:
            yield ExtractedKeyword(keyword=f"{term} {loc.city.lower()}", score=score * 0.9, type="local")


def tier_in_city(
    terms: list[Term], primary: Location | None, secondary: list[Location]
) -> Iterator[ExtractedKeyword]:
    if primary:
        city = primary.city.lower()
        for term, score in terms[:10]:
            yield ExtractedKeyword(keyword=f"{term} in {city}", score=score * 0.7, type="local")

    for loc in secondary:
        city = loc.city.lower()
        abbr = US_STATE_NAME_TO_ABBREV.get(loc.state.lower(), "")
        for term, score in terms[:5]:
            if abbr:
                yield ExtractedKeyword(keyword=f"{term} {city} {abbr}", score=score * 0.6, type="local")
            yield ExtractedKeyword(keyword=f"{term} in {city}", score=score * 0.5, type="local")


def tier_branded(brand: str, primary: Location | None) -> Iterator[ExtractedKeyword]:
    if not brand:
        return
    yield ExtractedKeyword(keyword=brand, score=5, type="branded")
    yield ExtractedKeyword(keyword=f"{brand} reviews", score=4, type="branded")
    yield ExtractedKeyword(keyword=f"{brand} near me", score=3.5, type="branded")
    if primary:
        yield ExtractedKeyword(keyword=f"{brand} {primary.city.lower()}", score=3, type="branded")


def merge_keywords(candidates: list[ExtractedKeyword], limit: int = MAX_KEYWORDS) -> list[ExtractedKeyword]:
    """Sort by score (stable), drop case-insensitive duplicates and short entries, cap at `limit`."""
    seen: set[str] = set()
    result: list[ExtractedKeyword] = []
    for kw in sorted(candidates, key=lambda k: -k.score):
        normalized = kw.keyword.lower().strip()
        if normalized in seen or len(normalized) < 3:
            continue
        seen.add(normalized)
        result.append(ExtractedKeyword(keyword=normalized, score=kw.score, type=kw.type))
        if len(result) >= limit:
            break
    return result


def extract_keywords_from_crawl(
    pages: list[CrawledPage], markets: list[str], domain: str
) -> list[ExtractedKeyword]:
    """
    Build up to 100 keywords for SERP checks from crawl data.

    `markets` are "City,State,Country" strings; the first one is the primary
    market. The brand is read from page titles, not from `domain`.
    """
    brand = detect_brand(pages)
    locations, location_words = parse_locations(markets)
    terms = score_terms(pages, location_words, brand)

    primary = locations[0] if locations else None
    secondary = locations[1:]

    candidates = [
        *tier_service(terms),
        *tier_near_me(terms),
        *tier_primary_city(terms, primary),
        *tier_modifiers(terms),
        *tier_secondary_cities(terms, secondary),
        *tier_in_city(terms, primary, secondary),
        *tier_branded(brand, primary),
    ]
    return merge_keywords(candidates)
