"""
scoring.py — 10-category site health scores, per-page health and what-if impact.

Every category starts from 100 (performance heuristic from 70) and loses
capped deductions for the problems found in the crawl. Performance,
accessibility and SEO use the Lighthouse category score instead when one is
available. All scores are clamped to 0-100; `overall` is the weighted mean.
"""

from typing import Iterable, Optional

from pydantic import BaseModel

from models import CategoryScore, CategoryScores, CrawlData, CrawledPage, LighthouseResult
from utils import clamp, round_half_up

WEIGHTS: dict[str, float] = {
    "meta": 1.0,
    "content": 1.2,
    "links": 1.3,
    "resources": 0.8,
    "performance": 1.1,
    "accessibility": 0.8,
    "technical": 1.2,
    "seo": 1.1,
    "social": 0.6,
    "security": 1.3,
}

LABELS: dict[str, str] = {
    "meta": "Meta Tags",
    "content": "Content",
    "links": "Links",
    "resources": "Resources",
    "performance": "Performance",
    "accessibility": "Accessibility",
    "technical": "Technical",
    "seo": "SEO",
    "social": "Social",
    "security": "Security",
}

THIN_CONTENT_WORDS = 300
HEAVY_IMAGE_BYTES = 200_000
HEAVY_SCRIPT_BYTES = 100_000


class ScoreFix(BaseModel):
    """A category-scoped improvement used by `estimate_score_impact`."""
    category: str
    score_impact: float


def _score(category: str, value: float, issues: int = 0) -> CategoryScore:
    return CategoryScore(score=int(clamp(round_half_up(value))), label=LABELS[category], issues=issues)


def weighted_overall(categories: dict[str, CategoryScore]) -> int:
    w_sum = w_total = 0.0
    for key, cat in categories.items():
        w = WEIGHTS.get(key, 1)
        w_sum += cat.score * w
        w_total += w
    if not w_total:
        return 0
    return int(clamp(round_half_up(w_sum / w_total)))


def _lighthouse_score(lh: Optional[LighthouseResult], category: str) -> Optional[float]:
    return lh.score(category) if lh else None


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

def score_meta(data: CrawlData) -> CategoryScore:
    pages = data.pages
    total = len(pages) or 1
    no_title = no_desc = bad_title = bad_desc = 0
    for p in pages:
        if not p.title:
            no_title += 1
        elif len(p.title) < 30 or len(p.title) > 60:
            bad_title += 1
        if not p.description:
            no_desc += 1
        elif len(p.description) < 70 or len(p.description) > 160:
            bad_desc += 1

    dupe_titles = sum(1 for d in data.duplicate_tags if d.type in ("title", "duplicate_title"))
    dupe_descs = sum(1 for d in data.duplicate_tags if d.type in ("description", "duplicate_description"))

    score = 100.0
    score -= min(30, no_title / total * 100)
    score -= min(25, no_desc / total * 100)
    score -= min(10, bad_title / total * 50)
    score -= min(10, bad_desc / total * 50)
    score -= min(10, dupe_titles / total * 50)
    score -= min(10, dupe_descs / total * 50)
    return _score("meta", score, no_title + no_desc + dupe_titles + dupe_descs)


def score_content(data: CrawlData) -> CategoryScore:
    pages = data.pages
    total = len(pages) or 1
    thin = sum(1 for p in pages if p.word_count < THIN_CONTENT_WORDS)
    no_h1 = sum(1 for p in pages if not p.h1s)
    multi_h1 = sum(1 for p in pages if len(p.h1s) > 1)
    hard_to_read = sum(1 for p in pages if p.readability_index > 14)
    dupes = len(data.duplicate_content)

    score = 100.0
    score -= min(35, thin / total * 100)
    score -= min(20, no_h1 / total * 80)
    score -= min(10, multi_h1 / total * 60)
    score -= min(10, dupes / total * 60)
    score -= min(10, hard_to_read / total * 50)
    return _score("content", score, thin + no_h1 + dupes)


def score_links(data: CrawlData) -> CategoryScore:
    broken = sum(1 for link in data.links if link.is_broken)
    redirecting = sum(1 for link in data.links if link.is_redirect)
    chains = len(data.redirect_chains)

    score = 100.0
    score -= min(40, broken * 3)
    score -= min(20, redirecting * 0.5)
    score -= min(15, chains * 2)
    return _score("links", score, broken)


def _resource_stats(data: CrawlData) -> dict[str, float]:
    images = [r for r in data.resources if r.resource_type == "image"]
    scripts = [r for r in data.resources if r.resource_type == "script"]
    styles = [r for r in data.resources if r.resource_type == "stylesheet"]
    return {
        "scripts": len(scripts),
        "styles": len(styles),
        "heavy_images": sum(1 for r in images if (r.size or 0) > HEAVY_IMAGE_BYTES),
        "heavy_scripts": sum(1 for r in scripts if (r.size or 0) > HEAVY_SCRIPT_BYTES),
        "total_mb": sum(r.size or 0 for r in data.resources) / 1024 / 1024,
    }


def score_resources(data: CrawlData) -> CategoryScore:
    s = _resource_stats(data)
    score = 100.0
    score -= min(30, s["heavy_images"] * 2)
    score -= min(25, s["heavy_scripts"] * 3)
    score -= min(15, max(0, s["scripts"] - 30))
    score -= min(10, max(0, s["styles"] - 10) * 2)
    return _score("resources", score, int(s["heavy_images"] + s["heavy_scripts"]))


def score_performance(data: CrawlData) -> CategoryScore:
    lh = _lighthouse_score(data.lighthouse, "performance")
    if lh is not None:
        return _score("performance", lh * 100)

    s = _resource_stats(data)
    no_encoding = any(p.check("no_content_encoding") for p in data.pages)

    score = 70.0
    score -= min(20, s["heavy_images"] * 3)
    score -= min(15, s["heavy_scripts"] * 4)
    score -= min(10, max(0, s["scripts"] - 20))
    score -= 10 if no_encoding else 0
    score -= min(10, max(0, s["total_mb"] - 3) * 5)
    return _score("performance", score, int(s["heavy_images"] + s["heavy_scripts"] + no_encoding))


def score_accessibility(data: CrawlData) -> CategoryScore:
    lh = _lighthouse_score(data.lighthouse, "accessibility")
    if lh is not None:
        return _score("accessibility", lh * 100)

    total = len(data.pages) or 1
    no_alt = sum(1 for p in data.pages if p.check("no_image_alt"))
    return _score("accessibility", 100 - no_alt / total * 60, no_alt)


def score_technical(data: CrawlData) -> CategoryScore:
    non_indexable = len(data.non_indexable)
    chains = len(data.redirect_chains)
    has_http = any(p.check("is_http") for p in data.pages)
    broken_pages = sum(1 for p in data.pages if p.status_code >= 400)

    score = 100.0
    score -= min(30, non_indexable * 1.5)
    score -= min(20, chains * 2)
    score -= 30 if has_http else 0
    score -= min(20, broken_pages * 3)
    return _score("technical", score, non_indexable + chains + broken_pages)


def score_seo(data: CrawlData) -> CategoryScore:
    lh = _lighthouse_score(data.lighthouse, "seo")
    if lh is not None:
        return _score("seo", lh * 100)

    pages = data.pages
    total = len(pages) or 1
    score = 100.0
    score -= sum(1 for p in pages if not p.title) / total * 30
    score -= sum(1 for p in pages if not p.description) / total * 20
    score -= sum(1 for p in pages if p.check("no_canonical")) / total * 15
    score -= sum(1 for p in pages if not p.h1s) / total * 15
    return _score("seo", score)


def score_social(data: CrawlData) -> CategoryScore:
    total = len(data.pages) or 1
    no_og = sum(1 for p in data.pages if not p.has_open_graph)
    return _score("social", 100 - min(60, no_og / total * 80), no_og)


def score_security(data: CrawlData) -> CategoryScore:
    http_pages = sum(1 for p in data.pages if p.check("is_http"))
    mixed = sum(1 for p in data.pages if p.check("https_to_http_links"))

    score = 100.0
    score -= 40 if http_pages else 0
    score -= min(30, mixed * 3)
    if data.summary and data.summary.ssl_valid is False:
        score -= 30
    return _score("security", score, http_pages + mixed)


SCORERS = {
    "meta": score_meta,
    "content": score_content,
    "links": score_links,
    "resources": score_resources,
    "performance": score_performance,
    "accessibility": score_accessibility,
    "technical": score_technical,
    "seo": score_seo,
    "social": score_social,
    "security": score_security,
}


def compute_scores(data: CrawlData) -> CategoryScores:
    """All 10 category scores plus the weighted overall."""
    categories = {key: scorer(data) for key, scorer in SCORERS.items()}
    return CategoryScores(categories=categories, overall=weighted_overall(categories))


# ---------------------------------------------------------------------------
# Per page
# ---------------------------------------------------------------------------

def compute_page_health(page: CrawledPage) -> int:
    score = 100

    if page.status_code >= 400:
        score -= 40
    elif page.status_code >= 300:
        score -= 10

    if not page.title:
        score -= 15
    if not page.description:
        score -= 10
    if page.check("no_canonical"):
        score -= 5
    if page.check("duplicate_title"):
        score -= 10

    if page.word_count < 100:
        score -= 20
    elif page.word_count < THIN_CONTENT_WORDS:
        score -= 10

    if not page.h1s:
        score -= 10
    if len(page.h1s) > 1:
        score -= 5

    if page.duration_time > 3:
        score -= 10
    if page.check("no_content_encoding"):
        score -= 5
    if page.check("no_image_alt"):
        score -= 5

    if page.check("is_http"):
        score -= 15
    if page.check("https_to_http_links"):
        score -= 10

    if not page.has_open_graph:
        score -= 5

    return int(clamp(score))


# ---------------------------------------------------------------------------
# What-if
# ---------------------------------------------------------------------------

def estimate_score_impact(current: CategoryScores, fixes: Iterable[ScoreFix]) -> int:
    """
    Overall score after applying `fixes`. Works on a deep copy; `current`
    is never modified.
    """
    categories = {k: v.model_copy(deep=True) for k, v in current.categories.items()}
    for fix in fixes:
        cat = categories.get(fix.category.lower())
        if cat:
            cat.score = int(clamp(round_half_up(cat.score + fix.score_impact)))
    return weighted_overall({k: categories[k] for k in WEIGHTS if k in categories})
