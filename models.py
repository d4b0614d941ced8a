"""
models.py — pydantic records for everything that crosses an I/O boundary.

DataForSEO payloads are validated into these shapes as soon as they are
fetched; the rest of the pipeline only sees the typed records. Unknown
provider fields are kept (`extra="allow"`) so the raw crawl payload can be
persisted unchanged.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pagespeed import PageSpeedResult

logger = logging.getLogger("site-audit")


class _Record(BaseModel):
    model_config = ConfigDict(extra="allow")


def _drop_nulls(v: Any) -> Any:
    if isinstance(v, dict):
        return {k: val for k, val in v.items() if val is not None}
    return v if v is not None else {}


# =============================================================================
# Crawl payload
# =============================================================================

class PageContent(_Record):
    plain_text_word_count: Optional[float] = None
    automated_readability_index: Optional[float] = None


class PageMeta(_Record):
    title: Optional[str] = None
    description: Optional[str] = None
    canonical: Optional[str] = None
    htags: dict[str, list[str]] = Field(default_factory=dict)
    content: Optional[PageContent] = None
    social_media_tags: dict[str, Any] = Field(default_factory=dict)
    internal_links_count: Optional[int] = None
    external_links_count: Optional[int] = None
    render_blocking_scripts_count: Optional[int] = None
    render_blocking_stylesheets_count: Optional[int] = None

    @field_validator("htags", "social_media_tags", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _drop_nulls(v)


class CrawledPage(_Record):
    url: str
    status_code: int = 0
    resource_type: Optional[str] = None
    meta: PageMeta = Field(default_factory=PageMeta)
    checks: dict[str, bool] = Field(default_factory=dict)
    page_timing: dict[str, Any] = Field(default_factory=dict)
    onpage_score: Optional[float] = None
    click_depth: Optional[int] = None

    @field_validator("meta", mode="before")
    @classmethod
    def _meta_default(cls, v):
        return v if v is not None else {}

    @field_validator("status_code", mode="before")
    @classmethod
    def _status_default(cls, v):
        return v if v is not None else 0

    @field_validator("checks", "page_timing", mode="before")
    @classmethod
    def _strip_nulls(cls, v):
        return _drop_nulls(v)

    def check(self, name: str) -> bool:
        return bool(self.checks.get(name))

    @property
    def title(self) -> str:
        return self.meta.title or ""

    @property
    def description(self) -> str:
        return self.meta.description or ""

    @property
    def h1s(self) -> list[str]:
        return self.meta.htags.get("h1") or []

    @property
    def h2s(self) -> list[str]:
        return self.meta.htags.get("h2") or []

    @property
    def word_count(self) -> float:
        return (self.meta.content.plain_text_word_count or 0) if self.meta.content else 0

    @property
    def readability_index(self) -> float:
        return (self.meta.content.automated_readability_index or 0) if self.meta.content else 0

    @property
    def has_open_graph(self) -> bool:
        tags = self.meta.social_media_tags
        return bool(tags.get("og:title") or tags.get("og:description"))

    @property
    def duration_time(self) -> float:
        return self.page_timing.get("duration_time") or 0


class CrawledResource(_Record):
    url: str = ""
    resource_type: Optional[str] = None
    size: Optional[int] = None
    status_code: Optional[int] = None


class CrawledLink(_Record):
    link_from: Optional[str] = None
    link_to: Optional[str] = None
    type: Optional[str] = None
    status_code: Optional[int] = None
    page_to_status_code: Optional[int] = None

    @model_validator(mode="after")
    def _resolve_status(self) -> "CrawledLink":
        # on_page/links reports the target's status as page_to_status_code
        if self.status_code is None:
            self.status_code = self.page_to_status_code
        return self

    @property
    def is_broken(self) -> bool:
        return self.status_code is not None and (self.status_code >= 400 or self.status_code == 0)

    @property
    def is_redirect(self) -> bool:
        return self.status_code is not None and 300 <= self.status_code < 400


class DuplicateTag(_Record):
    type: Optional[str] = None
    accumulator: Optional[str] = None
    total_count: int = 0
    pages: list[dict] = Field(default_factory=list)


class DuplicateContent(_Record):
    url: Optional[str] = None
    total_count: int = 0
    pages: list[dict] = Field(default_factory=list)


class NonIndexablePage(_Record):
    url: Optional[str] = None
    reason: Optional[str] = None


class RedirectChain(_Record):
    from_url: Optional[str] = None
    to_url: Optional[str] = None
    is_redirect_loop: bool = False
    chain: list[dict] = Field(default_factory=list)


class CrawlSummary(_Record):
    crawl_progress: str = "unknown"
    crawl_status: dict[str, Any] = Field(default_factory=dict)
    domain_info: dict[str, Any] = Field(default_factory=dict)

    @field_validator("crawl_status", "domain_info", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v if v is not None else {}

    @field_validator("crawl_progress", mode="before")
    @classmethod
    def _none_to_unknown(cls, v):
        return v if v is not None else "unknown"

    @property
    def ssl_valid(self) -> Optional[bool]:
        """None when the crawler did not report certificate info."""
        ssl = self.domain_info.get("ssl_info") or {}
        return ssl.get("valid_certificate")


class LighthouseCategory(_Record):
    score: Optional[float] = None
    title: Optional[str] = None


class LighthouseResult(_Record):
    categories: dict[str, LighthouseCategory]
    audits: dict[str, Any] = Field(default_factory=dict)

    def score(self, category: str) -> Optional[float]:
        cat = self.categories.get(category)
        return cat.score if cat else None


class DomainRankOverview(BaseModel):
    target: str
    organic: Optional[dict[str, Any]] = None
    paid: Optional[dict[str, Any]] = None


class DetectedBusiness(BaseModel):
    name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: str = ""
    city: str = ""
    region: str = ""
    country: str = "US"
    categories: list[str] = Field(default_factory=list)
    category_names: list[str] = Field(default_factory=list)
    place_id: str = ""
    phone: str = ""
    rating: Optional[float] = None
    review_count: Optional[int] = None
    url: str = ""

    @property
    def coords(self) -> Optional[tuple[float, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)


class TrackedLocation(BaseModel):
    """A service area the user explicitly tracks for their business."""
    city: str
    state: str
    country: Literal["United States", "Canada"] = "United States"

    @field_validator("city", "state")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("city and state are required")
        return v


class DiscoveredMarket(BaseModel):
    city: str
    location: str                 # "City,State,Country"
    source: Literal["tracked", "business", "url", "content"]
    page: Optional[str] = None


# =============================================================================
# Keywords & SERP
# =============================================================================

KeywordType = Literal["service", "near_me", "local", "modifier", "branded"]
SurfaceComparison = Literal["both-ranking", "organic-only", "maps-only", "neither"]


class ExtractedKeyword(BaseModel):
    keyword: str
    score: float
    type: KeywordType


class SerpMatch(BaseModel):
    url: str
    path: str
    position: int
    title: str = ""
    description: str = ""


class SerpCompetitor(BaseModel):
    domain: str
    position: int
    title: str = ""


class MapsRanking(BaseModel):
    """A keyword's Google Maps result for the audited business. `rank` is None when not found."""
    rank: Optional[int] = None
    url: str = ""
    title: str = ""
    rating: Optional[float] = None
    reviews: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.rank is not None


class MarketKeywordItem(BaseModel):
    keyword: str
    score: float = 0
    keyword_type: Optional[KeywordType] = None
    keyword_info: Optional[dict[str, Any]] = None
    position: int = 0                     # 0 = not ranking
    url: str = ""
    path: str = ""
    etv: int = 0
    serp_item_types: list[str] = Field(default_factory=list)
    serp_matches: list[SerpMatch] = Field(default_factory=list)
    is_cannibalized: bool = False
    has_local_pack: bool = False
    has_ai_overview: bool = False
    top_competitors: list[SerpCompetitor] = Field(default_factory=list)
    maps_data: Optional[MapsRanking] = None
    maps_rank: Optional[int] = None
    surface_comparison: Optional[SurfaceComparison] = None

    @property
    def is_ranking(self) -> bool:
        return self.position > 0


class MapsMetrics(BaseModel):
    checked: int = 0
    ranking: int = 0
    not_found: int = 0


class MarketMetrics(BaseModel):
    count: int = 0
    etv: int = 0
    pos_1: int = 0
    pos_2_3: int = 0
    pos_4_10: int = 0
    pos_11_20: int = 0
    maps: Optional[MapsMetrics] = None


class MarketData(BaseModel):
    items: list[MarketKeywordItem] = Field(default_factory=list)
    total_count: int = 0
    metrics: Optional[MarketMetrics] = None


# =============================================================================
# Aggregate crawl data
# =============================================================================

class CrawlData(BaseModel):
    pages: list[CrawledPage] = Field(default_factory=list)
    resources: list[CrawledResource] = Field(default_factory=list)
    links: list[CrawledLink] = Field(default_factory=list)
    duplicate_tags: list[DuplicateTag] = Field(default_factory=list)
    duplicate_content: list[DuplicateContent] = Field(default_factory=list)
    non_indexable: list[NonIndexablePage] = Field(default_factory=list)
    redirect_chains: list[RedirectChain] = Field(default_factory=list)
    # endpoint name -> total_items_count reported by the crawler
    totals: dict[str, int] = Field(default_factory=dict)

    summary: Optional[CrawlSummary] = None
    lighthouse: Optional[LighthouseResult] = None
    lighthouse_mobile: Optional[LighthouseResult] = None
    # "mobile" / "desktop"
    pagespeed: dict[str, PageSpeedResult] = Field(default_factory=dict)
    domain_rank: Optional[DomainRankOverview] = None
    business: Optional[DetectedBusiness] = None
    markets: list[str] = Field(default_factory=list)
    keywords: list[ExtractedKeyword] = Field(default_factory=list)
    serp: dict[str, MarketData] = Field(default_factory=dict)


# =============================================================================
# Scores
# =============================================================================

CategoryId = Literal[
    "meta", "content", "links", "resources", "performance",
    "accessibility", "technical", "seo", "social", "security",
]


class CategoryScore(BaseModel):
    score: int
    label: str
    issues: int = 0


class CategoryScores(BaseModel):
    categories: dict[str, CategoryScore]
    overall: int


# =============================================================================
# Progress
# =============================================================================

LogLevel = Literal["info", "success", "warning", "error"]

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


LogFn = Callable[..., None]


def log_to_logger(message: str, level: LogLevel = "info") -> None:
    """Default `log` callback for pipeline steps run outside an audit."""
    logger.log(_LOG_LEVELS[level], message)


class LogEntry(BaseModel):
    time: datetime
    message: str
    level: LogLevel = "info"


class AuditProgress(BaseModel):
    """Mutable progress model owned by a single audit run."""
    audit_id: str
    phase: str = "submitting"
    completed_tasks: list[str] = Field(default_factory=list)
    current_task: Optional[str] = None
    crawl_percent: int = 0
    log_entries: list[LogEntry] = Field(default_factory=list)

    def log(self, message: str, level: LogLevel = "info") -> None:
        self.log_entries.append(
            LogEntry(time=datetime.now(timezone.utc), message=message, level=level)
        )
        logger.log(_LOG_LEVELS[level], f"[{self.audit_id}] {message}")

    def complete_task(self, name: str) -> None:
        self.completed_tasks.append(name)
        self.current_task = None
