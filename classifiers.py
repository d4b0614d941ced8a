"""
classifiers.py — URL page-type, keyword-intent and conflict-type classification.

All three are pure functions over strings; they feed market discovery and
cannibalization detection.
"""

import re
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel

UrlType = Literal[
    "homepage", "contact", "about", "gallery", "testimonials",
    "faq", "blog", "location", "service", "other",
]
KeywordIntent = Literal["branded", "informational", "commercial", "local-commercial"]

STATE_ABBREVS = {
    "al", "ak", "az", "ar", "ca", "co", "ct", "de", "fl", "ga", "hi", "id", "il", "in", "ia",
    "ks", "ky", "la", "me", "md", "ma", "mi", "mn", "ms", "mo", "mt", "ne", "nv", "nh", "nj",
    "nm", "ny", "nc", "nd", "oh", "ok", "or", "pa", "ri", "sc", "sd", "tn", "tx", "ut", "vt",
    "va", "wa", "wv", "wi", "wy", "dc",
    # Canadian provinces
    "ab", "bc", "mb", "nb", "nl", "ns", "nt", "nu", "on", "pe", "qc", "sk", "yt",
}

UTILITY_PAGES = {
    "privacy", "privacy-policy", "terms", "terms-of-service", "terms-and-conditions",
    "sitemap", "sitemap.xml", "robots.txt", "careers", "jobs", "login", "signup",
    "register", "account", "cart", "checkout", "search", "wp-admin", "wp-login",
    "feed", "rss", "amp", "404", "thank-you", "thanks", "confirmation",
}

# Checked in order; first prefix match wins
_PREFIX_RULES: list[tuple[str, str]] = [
    ("contact", r"/(contact|get-in-touch|request|schedule|book)"),
    ("about", r"/(about|who-we-are|our-team|our-story)"),
    ("gallery", r"/(gallery|portfolio|projects|our-work|our-projects)"),
    ("testimonials", r"/(testimonials|reviews|customer-reviews|client-reviews)"),
    ("faq", r"/(faq|frequently-asked|help|knowledge-base)"),
    ("blog", r"/(blog|posts|articles|news|category|tag|author)"),
]

_BLOG_SLUG = re.compile(r"(how-to|why-|guide-to|what-is|what-are|tips-for|top-\d+|best-)")
_LOCATION_PREFIX = re.compile(r"/(locations|areas|cities|service-area|service-areas|serving|coverage)")
_SERVICE_PREFIX = re.compile(r"/(services|solutions|what-we-do|our-services)")


def classify_url_type(url: str) -> UrlType:
    try:
        path = urlparse(url).path if "://" in url else url
    except ValueError:
        path = url
    path = path.lower().rstrip("/")

    if not path or re.fullmatch(r"/index\.(html?|php)", path):
        return "homepage"

    segments = [s for s in path.split("/") if s]
    full_path = "/" + "/".join(segments)
    last = segments[-1] if segments else ""

    for url_type, pattern in _PREFIX_RULES:
        if re.match(pattern, full_path):
            return url_type

    # /2024/02/some-post
    if re.search(r"/\d{4}/\d{2}/", full_path) or _BLOG_SLUG.match(last):
        return "blog"

    if _LOCATION_PREFIX.match(full_path) or re.search(r"-(in|near|for|serving)-", last):
        return "location"
    parts = last.split("-")
    if len(parts) >= 2 and parts[-1] in STATE_ABBREVS:
        return "location"

    if _SERVICE_PREFIX.match(full_path):
        return "service"
    if len(segments) == 1 and segments[0] not in UTILITY_PAGES:
        return "service"

    return "other"


# ---------------------------------------------------------------------------
# Keyword intent
# ---------------------------------------------------------------------------

INFORMATIONAL_STARTS = [
    "how to", "what is", "what are", "why do", "why does", "why is", "why are",
    "when to", "when should", "where to", "where can", "who is", "who are",
    "can you", "can i", "should i", "should you", "is it", "are there",
    "do i need", "does", "which",
]

INFORMATIONAL_CONTAINS = [
    "tips", "guide", "tutorial", "how-to", "checklist", "ideas",
    "examples", "steps", "ways to", "pros and cons", "vs ", "versus",
    "benefits of", "advantages", "disadvantages", "difference between",
    "meaning", "definition",
]

COMMERCIAL_INVESTIGATION = [
    "cost", "price", "pricing", "how much", "best", "top", "compare",
    "comparison", "reviews", "review", "rated", "rating", "ratings",
    "worth it", "alternatives", "vs",
]

TRANSACTIONAL = [
    "buy", "hire", "book", "schedule", "order", "purchase", "get a quote",
    "request a quote", "free estimate", "free quote", "call", "contact",
    "repair", "install", "installation", "replace", "replacement",
    "removal", "remove", "fix", "service", "services", "company",
    "companies", "contractor", "contractors", "professional", "professionals",
    "specialist", "specialists", "expert", "experts", "provider", "providers",
]


def classify_keyword_intent(keyword: str, domain: str, tracked_locations: list[str] | None = None) -> KeywordIntent:
    kw = keyword.lower().strip()

    brand = re.sub(r"\.(com|net|org|co|io|biz|info|us|ca|uk).*$", "", domain, flags=re.IGNORECASE)
    if len(brand) > 2 and brand.lower() in kw:
        return "branded"

    if any(kw.startswith(s) for s in INFORMATIONAL_STARTS):
        return "informational"
    if any(t in kw for t in INFORMATIONAL_CONTAINS):
        return "informational"
    if any(t in kw for t in COMMERCIAL_INVESTIGATION):
        return "commercial"

    if "near me" in kw or "nearby" in kw or "in my area" in kw:
        return "local-commercial"

    for loc in tracked_locations or []:
        city = loc.split(",")[0].strip().lower()
        if len(city) > 2 and city in kw:
            return "local-commercial"

    if any(t in kw for t in TRANSACTIONAL):
        return "commercial"

    return "commercial" if len(kw.split()) <= 3 else "informational"


# ---------------------------------------------------------------------------
# Conflict type
# ---------------------------------------------------------------------------

class ConflictType(BaseModel):
    type: str
    description: str
    fix: str


_CONFLICTS: dict[frozenset, ConflictType] = {
    frozenset({"homepage", "service"}): ConflictType(
        type="Homepage Authority Hogging",
        description=(
            "Your homepage is ranking instead of a dedicated service page. The homepage's higher "
            "authority is pulling rank, but it can't convert as well as a focused service page."
        ),
        fix=(
            "Strengthen internal links from the homepage to the service page. Add the keyword to the "
            "service page's H1, title, and first paragraph. Add a homepage section that links to "
            "service pages with descriptive anchor text."
        ),
    ),
    frozenset({"blog", "service"}): ConflictType(
        type="Blog Stealing Service Traffic",
        description=(
            "A blog post is competing with a service page for a commercial keyword. Blog posts "
            "typically convert worse than service pages for transactional queries."
        ),
        fix=(
            "Add a prominent CTA and internal link from the blog post to the service page. Make the "
            "post more informational and the service page more transactional. Use canonical or "
            "noindex on the post if it is purely duplicative."
        ),
    ),
    frozenset({"location", "service"}): ConflictType(
        type="Service vs. City Page Overlap",
        description=(
            "A generic service page and a city-specific page are competing. This usually means the "
            "city page isn't differentiated enough."
        ),
        fix=(
            "Add unique, location-specific content to the city page (local testimonials, service "
            "area details, local pricing). Target the service broadly on the service page and "
            "\"service + city\" on the city page."
        ),
    ),
    frozenset({"location"}): ConflictType(
        type="City Pages Cannibalizing Each Other",
        description=(
            "Two location pages are competing for the same keyword. This typically happens when "
            "city pages are template content with just the city name swapped."
        ),
        fix=(
            "Add unique content to each city page: local case studies, city-specific service "
            "details, neighborhood information. Each page needs 60%+ unique content."
        ),
    ),
    frozenset({"homepage", "location"}): ConflictType(
        type="Homepage vs. Location Page",
        description=(
            "The homepage is competing with a location page for a local keyword. The homepage's "
            "authority advantage may override the location page's relevance."
        ),
        fix=(
            "Keep the homepage focused on brand + primary service area. Link prominently from the "
            "homepage to location pages and make each location page hyper-specific to its city."
        ),
    ),
    frozenset({"blog"}): ConflictType(
        type="Blog Posts Competing",
        description=(
            "Two blog posts cover the same topic closely enough that Google can't decide which to "
            "rank. This splits your ranking potential between them."
        ),
        fix=(
            "Consolidate the weaker post into the stronger one (301 redirect), or differentiate "
            "them: one comprehensive guide, the other a specific use case or FAQ."
        ),
    ),
    frozenset({"blog", "homepage"}): ConflictType(
        type="Blog Competing with Homepage",
        description=(
            "A blog post is competing with the homepage. Usually the homepage is too content-heavy "
            "or the post covers a core service topic."
        ),
        fix=(
            "For branded/navigational keywords optimize the homepage. For informational ones let "
            "the blog rank and add a strong CTA to the homepage. Remove duplicate content from "
            "whichever page shouldn't rank."
        ),
    ),
}


def classify_conflict_type(primary_type: UrlType, competitor_type: UrlType) -> ConflictType:
    conflict = _CONFLICTS.get(frozenset({primary_type, competitor_type}))
    if conflict:
        return conflict
    return ConflictType(
        type="Page Conflict",
        description=(
            f"A {primary_type} page and a {competitor_type} page are competing for the same keyword. "
            "Google is splitting ranking signals between them."
        ),
        fix=(
            "Differentiate the pages clearly. Choose which page should rank for this keyword and "
            "strengthen it with better content, internal links, and on-page optimization. Consider "
            "canonical tags or noindex on the secondary page."
        ),
    )
