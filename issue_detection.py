"""
issue_detection.py — turn crawl data into a prioritized issue list and quick wins.

Each rule selects the affected URLs from the crawl; rules that select nothing
produce no issue. Quick wins are the high-impact issues that are not hard to
fix, and carry an estimated score delta for the what-if estimator.
"""

from typing import Callable, Literal, NamedTuple, Optional, Union

from pydantic import BaseModel

from models import CrawlData, CrawledPage
from scoring import HEAVY_IMAGE_BYTES, HEAVY_SCRIPT_BYTES, ScoreFix
from utils import path_of, round_half_up

IssueSeverity = Literal["critical", "warning", "notice"]
Effort = Literal["easy", "medium", "hard"]

MAX_ISSUE_URLS = 50
VERY_HEAVY_IMAGE_BYTES = 500_000

# Score points a quick win is assumed to recover, per impact level
QUICK_WIN_POINTS_PER_IMPACT = 3

_EFFORT_ORDER = {"easy": 0, "medium": 1, "hard": 2}
_SEVERITY_ORDER = {"critical": 0, "warning": 1, "notice": 2}


class IssueUrl(BaseModel):
    url: str
    source: Optional[str] = None
    status: Optional[Union[int, str]] = None


class DetailedIssue(BaseModel):
    severity: IssueSeverity
    category: str
    title: str
    impact: int
    effort: Effort
    count: int
    time_min: int
    why: str
    fix: str
    urls: list[IssueUrl]


class QuickWin(BaseModel):
    issue: DetailedIssue
    score_delta: float


class Rule(NamedTuple):
    severity: IssueSeverity
    category: str
    title: str
    impact: int
    effort: Effort
    time_min: int
    why: str
    fix: str
    select: Callable[[CrawlData], list[IssueUrl]]


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------

def _page_url(p: CrawledPage) -> IssueUrl:
    return IssueUrl(url=p.url or "—", status=p.status_code)


def pages_where(pred: Callable[[CrawledPage], bool]) -> Callable[[CrawlData], list[IssueUrl]]:
    return lambda data: [_page_url(p) for p in data.pages if pred(p)]


def _check(name: str) -> Callable[[CrawledPage], bool]:
    return lambda p: p.check(name)


def _broken_links(data: CrawlData) -> list[IssueUrl]:
    return [
        IssueUrl(url=link.link_to or "—", source=link.link_from or "", status=link.status_code)
        for link in data.links if link.is_broken
    ]


def _important_non_indexable(data: CrawlData) -> list[IssueUrl]:
    return [
        IssueUrl(url=p.url or "—")
        for p in data.non_indexable
        if p.url and "/tag/" not in p.url and "/author/" not in p.url and "?" not in p.url
    ]


def _duplicate_tags(kind: str) -> Callable[[CrawlData], list[IssueUrl]]:
    return lambda data: [
        IssueUrl(url=d.accumulator or "—", status=d.total_count)
        for d in data.duplicate_tags if d.type in (kind, f"duplicate_{kind}")
    ]


def _chain_url(chain: list[dict]) -> str:
    return " → ".join(path_of(c.get("url") or "") for c in chain)


def _long_redirects(data: CrawlData) -> list[IssueUrl]:
    return [
        IssueUrl(url=_chain_url(r.chain), status=f"{len(r.chain)} hops")
        for r in data.redirect_chains if len(r.chain) > 2
    ]


def _redirects(data: CrawlData) -> list[IssueUrl]:
    # only reported when some chains are short; long ones have their own issue
    if len(data.redirect_chains) <= len(_long_redirects(data)):
        return []
    return [IssueUrl(url=_chain_url(r.chain), status=f"{len(r.chain)} hops") for r in data.redirect_chains]


def _resources_where(pred) -> Callable[[CrawlData], list[IssueUrl]]:
    return lambda data: [IssueUrl(url=r.url or "—", status=r.size) for r in data.resources if pred(r)]


def _broken_resources(data: CrawlData) -> list[IssueUrl]:
    return [
        IssueUrl(url=r.url or "—", status=r.status_code)
        for r in data.resources if (r.status_code or 0) >= 400
    ]


def _duplicate_content(data: CrawlData) -> list[IssueUrl]:
    out = []
    for d in data.duplicate_content:
        similarity = (d.model_extra or {}).get("similarity") or 0
        out.append(IssueUrl(url=d.url or "—", status=f"{round_half_up(similarity * 100)}% similar"))
    return out


def _missing_og(data: CrawlData) -> list[IssueUrl]:
    # a site with no OG tags anywhere is a single templating decision, scored under Social
    matched = [p for p in data.pages if not p.has_open_graph]
    if len(matched) >= len(data.pages):
        return []
    return [_page_url(p) for p in matched]


def _deep_pages(data: CrawlData) -> list[IssueUrl]:
    if any(p.check("is_orphan_page") for p in data.pages):
        return []
    return [_page_url(p) for p in data.pages if (p.click_depth or 0) > 4 and p.status_code == 200]


def _skips_heading_level(p: CrawledPage) -> bool:
    levels = [i for i in range(1, 7) if p.meta.htags.get(f"h{i}")]
    return any(b - a > 1 for a, b in zip(levels, levels[1:]))


def _render_blocking(p: CrawledPage) -> bool:
    return (p.meta.render_blocking_scripts_count or 0) + (p.meta.render_blocking_stylesheets_count or 0) > 5


def _is_image(r, lo: int, hi: Optional[int] = None) -> bool:
    size = r.size or 0
    return r.resource_type == "image" and size > lo and (hi is None or size <= hi)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

RULES: list[Rule] = [
    # critical
    Rule("critical", "Technical", "Server Errors (5xx)", 5, "hard", 30,
         "Pages returning 5xx errors are inaccessible to users and search engines. Google de-indexes "
         "pages that keep returning server errors.",
         "Check server logs for the root cause: exhausted memory, broken database connections, "
         "misconfigured rewrites, or crashed processes.",
         pages_where(lambda p: p.status_code >= 500)),
    Rule("critical", "Security", "Insecure Pages (HTTP)", 5, "medium", 20,
         "Pages served over HTTP are flagged \"Not Secure\" by browsers. HTTPS is a confirmed ranking signal.",
         "Install an SSL certificate and 301-redirect HTTP to HTTPS. Update internal links, canonicals "
         "and sitemap URLs.",
         pages_where(_check("is_http"))),
    Rule("critical", "Security", "Mixed Content (HTTPS→HTTP Links)", 4, "medium", 15,
         "These HTTPS pages load links or resources over HTTP. Browsers block mixed content.",
         "Update every resource reference to https://.",
         pages_where(_check("https_to_http_links"))),
    Rule("critical", "Technical", "Important Pages Blocked from Indexing", 5, "easy", 5,
         "These pages are excluded from search by noindex, robots.txt, or canonical issues.",
         "Remove noindex where the page should rank, allow it in robots.txt, fix canonical tags.",
         _important_non_indexable),
    Rule("critical", "Technical", "Broken Pages (4xx Errors)", 4, "medium", 10,
         "4xx pages are dead ends for users and crawlers; link equity pointing to them is wasted.",
         "301-redirect moved pages, return 410 for removed ones, and update internal links.",
         pages_where(lambda p: 400 <= p.status_code < 500)),
    Rule("critical", "Technical", "Canonical Tags Pointing to Broken Pages", 5, "easy", 5,
         "Canonicals pointing at error URLs effectively remove both pages from search.",
         "Point each canonical at a valid URL, usually the page itself.",
         pages_where(_check("canonical_to_broken"))),
    Rule("critical", "Technical", "Meta Refresh Redirects Detected", 4, "easy", 5,
         "Meta refresh redirects pass little link equity and can be treated as deceptive.",
         "Replace them with server-side 301 redirects.",
         pages_where(_check("has_meta_refresh_redirect"))),

    # warning
    Rule("warning", "Links", "Broken Links Detected", 4, "easy", 2,
         "Broken links hurt user experience and signal poor maintenance.",
         "Update or remove each broken link.",
         _broken_links),
    Rule("warning", "Meta", "Missing Page Titles", 4, "easy", 3,
         "The title tag is the clickable headline in search results.",
         "Write a unique 30–60 character title per page with the primary keyword near the start.",
         pages_where(lambda p: not p.title)),
    Rule("warning", "Meta", "Duplicate Page Titles", 3, "easy", 3,
         "Identical titles make your own pages compete against each other.",
         "Make every title unique with service, location, or feature details.",
         _duplicate_tags("title")),
    Rule("warning", "Technical", "Long Redirect Chains (3+ hops)", 4, "medium", 10,
         "Chains of 3+ hops slow page loads and Google may stop following after 5.",
         "Collapse each chain into a single redirect to the final URL.",
         _long_redirects),
    Rule("warning", "Technical", "Redirect Chains Detected", 3, "medium", 10,
         "Each extra hop adds latency and leaks link equity.",
         "Point internal links straight at the final destination URLs.",
         _redirects),
    Rule("warning", "Content", "Very Thin Content (Under 100 Words)", 3, "hard", 30,
         "Pages under 100 words provide almost no value to searchers.",
         "Expand to 500+ words, merge into a related page and redirect, or remove with 410.",
         pages_where(lambda p: p.word_count < 100 and p.status_code == 200)),
    Rule("warning", "Resources", "Broken Resources (CSS/JS/Images)", 3, "medium", 10,
         "Broken CSS breaks layout, broken JS disables features, broken images leave gaps.",
         "Re-upload missing files or update moved references.",
         _broken_resources),
    Rule("warning", "Technical", "Pages Missing Canonical Tags", 3, "easy", 2,
         "Without canonicals search engines guess the official URL and split ranking signals.",
         "Add a self-referencing canonical tag to every page.",
         pages_where(_check("no_canonical"))),
    Rule("warning", "Technical", "Canonical Tag Chains", 3, "easy", 5,
         "A canonical pointing to a URL with its own canonical may be ignored entirely.",
         "Point each canonical directly at the final preferred URL.",
         pages_where(_check("canonical_chain"))),
    Rule("warning", "Technical", "Canonical Tags Pointing to Redirects", 3, "easy", 5,
         "Canonicals should point to the final destination, not a redirect.",
         "Update canonicals to the post-redirect URL.",
         pages_where(_check("canonical_to_redirect"))),
    Rule("warning", "Technical", "Recursive Canonical Tags", 4, "easy", 3,
         "Circular canonical references are ignored by Google.",
         "Pick one definitive canonical URL for each set of pages.",
         pages_where(_check("recursive_canonical"))),
    Rule("warning", "Links", "Orphan Pages (No Internal Links)", 4, "medium", 5,
         "Pages with no internal links pointing to them are nearly invisible to crawlers.",
         "Link to each orphan page from relevant parent or sibling pages.",
         pages_where(_check("is_orphan_page"))),
    Rule("warning", "Performance", "Slow Loading Pages", 4, "hard", 30,
         "Page speed is a ranking factor and slow pages see much higher bounce rates.",
         "Compress images, minify CSS/JS, enable caching, defer non-critical scripts.",
         pages_where(_check("high_loading_time"))),
    Rule("warning", "Performance", "High Server Response Time (TTFB)", 4, "hard", 60,
         "TTFB above 600ms points to server-side performance problems.",
         "Add server-side caching, optimize database queries, upgrade hosting, use a CDN.",
         pages_where(_check("high_waiting_time"))),
    Rule("warning", "Performance", "Oversized Pages (>3MB)", 3, "medium", 15,
         "Pages over 3MB load slowly, especially on mobile.",
         "Convert images to WebP, minify assets, lazy-load non-critical resources.",
         pages_where(_check("size_greater_than_3mb"))),
    Rule("warning", "Technical", "Missing DOCTYPE Declaration", 2, "easy", 2,
         "Without a DOCTYPE browsers render in quirks mode.",
         "Add <!DOCTYPE html> as the first line of each page.",
         pages_where(_check("no_doctype"))),
    Rule("warning", "Performance", "Excessive Render-Blocking Resources", 3, "medium", 20,
         "More than 5 render-blocking scripts/stylesheets delay visible content.",
         "Defer non-critical JavaScript and inline critical CSS.",
         pages_where(_render_blocking)),

    # notice
    Rule("notice", "Meta", "Missing Meta Descriptions", 2, "easy", 3,
         "Without a description Google auto-generates the search snippet.",
         "Write a unique 70–160 character description with the primary keyword and a call to action.",
         pages_where(lambda p: not p.description)),
    Rule("notice", "Content", "Missing H1 Headings", 2, "easy", 2,
         "The H1 tells search engines what the page is about and helps screen readers.",
         "Add one descriptive H1 with the primary keyword.",
         pages_where(lambda p: not p.h1s)),
    Rule("notice", "Content", "Multiple H1 Headings on Page", 1, "easy", 2,
         "Multiple H1s dilute the heading hierarchy.",
         "Keep one H1 per page and demote the rest.",
         pages_where(lambda p: len(p.h1s) > 1)),
    Rule("notice", "Content", "Broken Heading Hierarchy (Skipped Levels)", 2, "easy", 5,
         "Skipping heading levels (H1 → H3) breaks the document outline.",
         "Make heading levels descend one step at a time.",
         pages_where(_skips_heading_level)),
    Rule("notice", "Meta", "Duplicate Meta Descriptions", 2, "easy", 3,
         "Identical descriptions waste the chance to tailor each snippet.",
         "Write descriptions around what makes each page different.",
         _duplicate_tags("description")),
    Rule("notice", "Content", "Duplicate Content Detected", 3, "hard", 30,
         "Near-duplicate pages compete with each other and can trip quality filters.",
         "Canonicalize, consolidate with redirects, or make 60%+ of each page unique.",
         _duplicate_content),
    Rule("notice", "Content", "Thin Content Pages (100–300 Words)", 2, "hard", 30,
         "Pages with 100–300 words may lack the depth to rank.",
         "Expand content to match what top-ranking competitors cover.",
         pages_where(lambda p: 100 <= p.word_count < 300 and p.status_code == 200)),
    Rule("notice", "Social", "Missing Open Graph / Social Meta Tags", 2, "easy", 3,
         "Without Open Graph tags shared links show generic previews.",
         "Add og:title, og:description, og:image (1200×630+) and og:url to every page.",
         _missing_og),
    Rule("notice", "Technical", "Non-SEO-Friendly URLs", 2, "medium", 10,
         "URLs contain parameters, session IDs, or non-descriptive characters.",
         "Use short, hyphenated, descriptive URLs and 301-redirect the old ones.",
         pages_where(lambda p: p.checks.get("seo_friendly_url") is False)),
    Rule("notice", "Meta", "Title Tags Don't Match Page Content", 3, "easy", 5,
         "Mismatched titles rank worse and may be rewritten by Google.",
         "Rewrite titles to reflect each page's actual content.",
         pages_where(_check("irrelevant_title"))),
    Rule("notice", "Meta", "Meta Descriptions Don't Match Content", 2, "easy", 5,
         "Google ignores irrelevant descriptions and writes its own.",
         "Rewrite descriptions to summarize each page accurately.",
         pages_where(_check("irrelevant_description"))),
    Rule("notice", "Links", "Pages Buried Too Deep (4+ Clicks)", 3, "medium", 15,
         "Pages 4+ clicks from the homepage get less crawl attention and link equity.",
         "Link deep pages from higher-level category pages and add breadcrumbs.",
         _deep_pages),
    Rule("notice", "Links", "Pages with Very Few Internal Links", 2, "easy", 5,
         "Pages with fewer than 2 internal links don't pass equity to the rest of the site.",
         "Add 3–5 contextual internal links per page.",
         pages_where(lambda p: (p.meta.internal_links_count or 0) < 2 and p.status_code == 200)),
    Rule("notice", "Accessibility", "Images Missing Alt Text", 2, "easy", 5,
         "Images without alt text are invisible to screen readers and search engines.",
         "Describe each image's content in its alt attribute.",
         pages_where(_check("no_image_alt"))),
    Rule("notice", "Resources", "Very Large Images (>500KB)", 3, "easy", 5,
         "Images over 500KB noticeably slow page loads on mobile.",
         "Convert to WebP, serve responsive srcsets, lazy-load below the fold.",
         _resources_where(lambda r: _is_image(r, VERY_HEAVY_IMAGE_BYTES))),
    Rule("notice", "Resources", "Oversized Images (200-500KB)", 2, "easy", 5,
         "Images over 200KB can usually be compressed further.",
         "Compress these images; most shrink 50–80% without visible loss.",
         _resources_where(lambda r: _is_image(r, HEAVY_IMAGE_BYTES, VERY_HEAVY_IMAGE_BYTES))),
    Rule("notice", "Resources", "Large Scripts/Stylesheets (>100KB)", 2, "medium", 10,
         "Large scripts and stylesheets block rendering.",
         "Minify and compress JS/CSS, split bundles, defer non-critical scripts.",
         _resources_where(lambda r: r.resource_type in ("script", "stylesheet")
                          and (r.size or 0) > HEAVY_SCRIPT_BYTES)),
    Rule("notice", "Meta", "Short Page Titles (<30 characters)", 1, "easy", 3,
         "Short titles waste search result space.",
         "Expand titles to 30–60 characters.",
         pages_where(lambda p: bool(p.title) and len(p.title) < 30)),
    Rule("notice", "Meta", "Long Page Titles (>60 characters)", 1, "easy", 3,
         "Titles over 60 characters are truncated in search results.",
         "Trim titles under 60 characters with the key terms first.",
         pages_where(lambda p: len(p.title) > 60)),
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def generate_detailed_issues(data: CrawlData) -> list[DetailedIssue]:
    issues = []
    for rule in RULES:
        urls = rule.select(data)
        if not urls:
            continue
        issues.append(DetailedIssue(
            severity=rule.severity,
            category=rule.category,
            title=rule.title,
            impact=rule.impact,
            effort=rule.effort,
            count=len(urls),
            time_min=rule.time_min,
            why=rule.why,
            fix=rule.fix,
            urls=urls[:MAX_ISSUE_URLS],
        ))
    return issues


def count_by_severity(issues: list[DetailedIssue]) -> dict[str, int]:
    counts = {s: 0 for s in _SEVERITY_ORDER}
    for issue in issues:
        counts[issue.severity] += 1
    return counts


def generate_quick_wins(issues: list[DetailedIssue]) -> list[QuickWin]:
    """Issues with impact >= 3 that aren't hard to fix, biggest impact first."""
    wins = [i for i in issues if i.effort != "hard" and i.impact >= 3]
    wins.sort(key=lambda i: (-i.impact, _EFFORT_ORDER[i.effort]))
    return [QuickWin(issue=i, score_delta=i.impact * QUICK_WIN_POINTS_PER_IMPACT) for i in wins]


def quick_win_fixes(wins: list[QuickWin]) -> list[ScoreFix]:
    """ScoreFix entries for `scoring.estimate_score_impact`."""
    return [ScoreFix(category=w.issue.category.lower(), score_impact=w.score_delta) for w in wins]
