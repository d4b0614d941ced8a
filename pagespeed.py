"""
pagespeed.py — Google PageSpeed Insights (lab scores + CrUX field data).

One request per URL × strategy. Failures never propagate: the audit keeps
going with whatever the crawler's own Lighthouse run produced.
"""

import logging
import os
from typing import Literal, Optional

import httpx
from pydantic import BaseModel

from utils import round_half_up

logger = logging.getLogger("site-audit")

PSI_BASE_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PSI_CATEGORIES = ["performance", "accessibility", "best-practices", "seo"]
PSI_TIMEOUT = 60.0

Strategy = Literal["mobile", "desktop"]

# Audits whose displayValue is surfaced as-is
KEY_AUDITS = [
    "first-contentful-paint",
    "largest-contentful-paint",
    "total-blocking-time",
    "cumulative-layout-shift",
    "speed-index",
    "interactive",
    "server-response-time",
    "render-blocking-resources",
    "uses-optimized-images",
    "uses-webp-images",
    "uses-text-compression",
    "uses-long-cache-ttl",
    "efficient-animated-content",
]

URL_FIELD_METRICS = [
    "FIRST_CONTENTFUL_PAINT_MS",
    "LARGEST_CONTENTFUL_PAINT_MS",
    "CUMULATIVE_LAYOUT_SHIFT_SCORE",
    "INTERACTION_TO_NEXT_PAINT",
    "EXPERIMENTAL_TIME_TO_FIRST_BYTE",
    "FIRST_INPUT_DELAY_MS",
]

ORIGIN_FIELD_METRICS = [
    "LARGEST_CONTENTFUL_PAINT_MS",
    "CUMULATIVE_LAYOUT_SHIFT_SCORE",
    "INTERACTION_TO_NEXT_PAINT",
    "EXPERIMENTAL_TIME_TO_FIRST_BYTE",
]


class FieldMetric(BaseModel):
    percentile: float
    category: Optional[str] = None
    distributions: list[dict] = []


class FieldData(BaseModel):
    overall_category: Optional[str] = None
    metrics: dict[str, FieldMetric] = {}


class PageSpeedScores(BaseModel):
    performance: int
    accessibility: int
    best_practices: int
    seo: int


class PageSpeedResult(BaseModel):
    url: str
    strategy: Strategy
    scores: Optional[PageSpeedScores] = None
    audits: dict[str, Optional[str]] = {}
    field_data: Optional[FieldData] = None
    origin_field_data: Optional[FieldData] = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _parse_field_data(crux: Optional[dict], names: list[str]) -> Optional[FieldData]:
    if not crux or not crux.get("metrics"):
        return None
    metrics = {}
    for name in names:
        raw = crux["metrics"].get(name) or {}
        if not raw.get("percentile"):
            continue
        metrics[name] = FieldMetric(
            percentile=raw["percentile"],
            category=raw.get("category"),
            distributions=raw.get("distributions") or [],
        )
    return FieldData(overall_category=crux.get("overall_category"), metrics=metrics)


def parse_pagespeed_response(data: dict, url: str, strategy: Strategy) -> PageSpeedResult:
    lhr = data.get("lighthouseResult") or {}
    cats = lhr.get("categories")
    audits = lhr.get("audits")

    def pct(key: str) -> int:
        return round_half_up(((cats.get(key) or {}).get("score") or 0) * 100)

    scores = PageSpeedScores(
        performance=pct("performance"),
        accessibility=pct("accessibility"),
        best_practices=pct("best-practices"),
        seo=pct("seo"),
    ) if cats else None

    return PageSpeedResult(
        url=url,
        strategy=strategy,
        scores=scores,
        audits={a: (audits.get(a) or {}).get("displayValue") for a in KEY_AUDITS} if audits else {},
        field_data=_parse_field_data(data.get("loadingExperience"), URL_FIELD_METRICS),
        origin_field_data=_parse_field_data(data.get("originLoadingExperience"), ORIGIN_FIELD_METRICS),
    )


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

async def fetch_pagespeed(
    url: str,
    strategy: Strategy = "mobile",
    api_key: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[PageSpeedResult]:
    """PageSpeed Insights for one URL and strategy. None on any failure."""
    if api_key is None:
        api_key = os.getenv("PAGESPEED_API_KEY", "")

    params: list[tuple[str, str]] = [("url", url), ("strategy", strategy)]
    if api_key:
        params.append(("key", api_key))
    params += [("category", c) for c in PSI_CATEGORIES]

    try:
        async with httpx.AsyncClient(timeout=PSI_TIMEOUT, transport=transport) as http:
            resp = await http.get(PSI_BASE_URL, params=params, headers={"Accept": "application/json"})
        if resp.status_code == 429:
            logger.warning(f"PageSpeed quota exceeded for {url} ({strategy})")
            return None
        if resp.status_code != 200:
            logger.warning(f"PageSpeed API error {resp.status_code} for {url} ({strategy})")
            return None
        return parse_pagespeed_response(resp.json(), url, strategy)
    except Exception as e:
        logger.warning(f"PageSpeed fetch failed for {url} ({strategy}): {e}")
        return None
