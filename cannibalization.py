"""
cannibalization.py — turn cannibalized SERP results into actionable conflicts.
"""

from typing import Literal

from pydantic import BaseModel

from classifiers import (
    KeywordIntent,
    UrlType,
    classify_conflict_type,
    classify_keyword_intent,
    classify_url_type,
)
from models import MarketData, SerpMatch

Severity = Literal["critical", "high", "medium"]

_SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2}
_COMMERCIAL = ("commercial", "local-commercial")


class ConflictPage(BaseModel):
    url: str
    path: str
    position: int
    title: str = ""
    page_type: UrlType


class CannibalizationConflict(BaseModel):
    keyword: str
    volume: int = 0
    cpc: float = 0
    market: str
    primary: ConflictPage
    competitors: list[ConflictPage]
    position_gap: int
    all_matches: list[SerpMatch]
    severity: Severity
    intent: KeywordIntent
    conflict_type: str
    conflict_description: str
    conflict_fix: str
    primary_type: UrlType
    competitor_type: UrlType
    wrong_page_winning: bool


def is_wrong_page_winning(primary_type: UrlType, competitor_type: UrlType, intent: KeywordIntent) -> bool:
    """A weaker-converting page type outranks a better one for a commercial query."""
    if intent not in _COMMERCIAL:
        return False
    if primary_type == "homepage" and competitor_type in ("service", "location"):
        return True
    if primary_type == "blog" and competitor_type in ("service", "location", "homepage"):
        return True
    return False


def compute_severity(volume: int, position: int, wrong_page_winning: bool) -> Severity:
    if wrong_page_winning and (volume >= 200 or position <= 5):
        return "critical"
    if volume >= 500 or (position <= 3 and wrong_page_winning):
        return "critical"
    if volume >= 100 or position <= 10:
        return "high"
    return "medium"


def _page(match: SerpMatch) -> ConflictPage:
    return ConflictPage(
        url=match.url,
        path=match.path,
        position=match.position,
        title=match.title,
        page_type=classify_url_type(match.url),
    )


def detect_cannibalization_conflicts(
    markets: dict[str, MarketData], domain: str, tracked_locations: list[str] | None = None
) -> list[CannibalizationConflict]:
    """Conflicts across all markets, critical first, then by search volume."""
    conflicts: list[CannibalizationConflict] = []

    for market, data in markets.items():
        for item in data.items:
            if not item.is_cannibalized or len(item.serp_matches) < 2:
                continue

            ordered = sorted(item.serp_matches, key=lambda m: m.position)
            primary, competing = ordered[0], ordered[1:]
            info = item.keyword_info or {}
            volume = info.get("search_volume") or 0

            primary_type = classify_url_type(primary.url)
            competitor_type = classify_url_type(competing[0].url)
            intent = classify_keyword_intent(item.keyword, domain, tracked_locations)
            conflict = classify_conflict_type(primary_type, competitor_type)
            wrong = is_wrong_page_winning(primary_type, competitor_type, intent)

            conflicts.append(CannibalizationConflict(
                keyword=item.keyword,
                volume=volume,
                cpc=info.get("cpc") or 0,
                market=market,
                primary=_page(primary),
                competitors=[_page(m) for m in competing],
                position_gap=competing[-1].position - primary.position,
                all_matches=item.serp_matches,
                severity=compute_severity(volume, primary.position, wrong),
                intent=intent,
                conflict_type=conflict.type,
                conflict_description=conflict.description,
                conflict_fix=conflict.fix,
                primary_type=primary_type,
                competitor_type=competitor_type,
                wrong_page_winning=wrong,
            ))

    conflicts.sort(key=lambda c: (_SEVERITY_ORDER[c.severity], -c.volume))
    return conflicts
