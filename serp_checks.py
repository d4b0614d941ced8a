"""
serp_checks.py — organic and Google Maps rank checks per market.

For each market the top keywords are sent in one batched live SERP request.
Every result URL on the audited domain is recorded, so a keyword with more
than one of our URLs in the same SERP is flagged as cannibalized. Maps checks
then cross-reference organic rankings with local-finder presence.
"""

import logging
from typing import Optional

from dfs_client import STATUS_LOCATION_UNKNOWN, STATUS_OK, DataForSEOClient
from errors import ApiError
from market_discovery import market_city
from models import (
    ExtractedKeyword,
    LogFn,
    MapsMetrics,
    MapsRanking,
    MarketData,
    MarketKeywordItem,
    MarketMetrics,
    SerpCompetitor,
    SerpMatch,
    log_to_logger,
)
from utils import clean_domain, host_of, path_of, round_half_up

logger = logging.getLogger("site-audit")

KEYWORDS_PER_MARKET = 50
MAPS_KEYWORDS_PER_MARKET = 20
SERP_DEPTH = 20
MAPS_ZOOM = 12
NOT_RANKED = 999


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def space_location(location: str) -> str:
    """'Dallas,Texas,United States' → 'Dallas, Texas, United States'"""
    return ", ".join(p.strip() for p in location.split(","))


def filter_keywords_for_market(
    keywords: list[ExtractedKeyword], city: str, all_cities: list[str]
) -> list[ExtractedKeyword]:
    """Drop keywords that mention one of the other markets' cities."""
    others = [c.lower() for c in all_cities if c.lower() != city.lower()]
    return [kw for kw in keywords if not any(c in kw.keyword.lower() for c in others)]


def etv_for_position(position: int) -> int:
    return max(0, round_half_up(100 / position)) if position > 0 else 0


def _is_own(host: str, domain: str) -> bool:
    return host == domain or host == f"www.{domain}"


def _item_host(item: dict) -> str:
    return host_of(item["url"]).lower() or clean_domain(item["url"])


def build_market_item(kw: ExtractedKeyword, result: dict, domain: str) -> MarketKeywordItem:
    """Summarize one keyword's SERP for the audited domain."""
    serp_items = result.get("items") or []

    matches: list[SerpMatch] = []
    for si in serp_items:
        if si.get("url") and _is_own(_item_host(si), domain):
            matches.append(SerpMatch(
                url=si["url"],
                path=path_of(si["url"]),
                position=si.get("rank_group") or si.get("rank_absolute") or NOT_RANKED,
                title=si.get("title") or "",
                description=si.get("description") or "",
            ))

    competitors: list[SerpCompetitor] = []
    for si in serp_items:
        if not si.get("url"):
            continue
        host = _item_host(si)
        if not _is_own(host, domain) and (si.get("rank_group") or NOT_RANKED) <= 5:
            competitors.append(SerpCompetitor(
                domain=host,
                position=si.get("rank_group") or si.get("rank_absolute") or NOT_RANKED,
                title=si.get("title") or "",
            ))
        if len(competitors) >= 3:
            break

    item_types = result.get("item_types") or []
    best = min(matches, key=lambda m: m.position) if matches else None
    position = best.position if best else 0

    return MarketKeywordItem(
        keyword=kw.keyword,
        score=kw.score,
        keyword_type=kw.type,
        keyword_info=result.get("keyword_info"),
        position=position,
        url=best.url if best else "",
        path=best.path if best else "",
        etv=etv_for_position(position),
        serp_item_types=item_types,
        serp_matches=matches,
        is_cannibalized=len(matches) > 1,
        has_local_pack="local_pack" in item_types or "maps" in item_types,
        has_ai_overview="ai_overview" in item_types or "featured_snippet" in item_types,
        top_competitors=competitors,
    )


def summarize_market(items: list[MarketKeywordItem]) -> MarketMetrics:
    metrics = MarketMetrics(count=len(items))
    for item in items:
        pos = item.position
        if pos == 1:
            metrics.pos_1 += 1
        elif 1 < pos <= 3:
            metrics.pos_2_3 += 1
        elif 3 < pos <= 10:
            metrics.pos_4_10 += 1
        elif 10 < pos <= 20:
            metrics.pos_11_20 += 1
        metrics.etv += item.etv
    return metrics


# ---------------------------------------------------------------------------
# Organic
# ---------------------------------------------------------------------------

async def _post_organic(client: DataForSEOClient, tasks: list[dict], log: LogFn) -> dict:
    try:
        return await client.call("serp/google/organic/live/regular", tasks)
    except ApiError as e:
        location_rejected = (
            e.status_code == STATUS_LOCATION_UNKNOWN
            or "40501" in e.message
            or "location" in e.message.lower()
        )
        if not location_rejected:
            raise
        log("  Location format rejected, retrying with spaced format...", "warning")
        spaced = [{**t, "location_name": space_location(t["location_name"])} for t in tasks]
        return await client.call("serp/google/organic/live/regular", spaced)


async def check_market_serps(
    client: DataForSEOClient,
    keywords: list[ExtractedKeyword],
    domain: str,
    location: str,
    log: LogFn = log_to_logger,
) -> MarketData:
    """Organic rankings for one market's keywords. Raises ApiError on request failure."""
    tasks = [{
        "keyword": kw.keyword,
        "location_name": location,
        "language_code": "en",
        "device": "desktop",
        "os": "windows",
        "depth": SERP_DEPTH,
    } for kw in keywords]

    data = await _post_organic(client, tasks, log)

    items: list[MarketKeywordItem] = []
    for i, task in enumerate(data.get("tasks") or []):
        if not task or task.get("status_code") != STATUS_OK or i >= len(keywords):
            continue
        result = (task.get("result") or [None])[0]
        if not result:
            continue
        items.append(build_market_item(keywords[i], result, domain))

    return MarketData(items=items, total_count=len(items), metrics=summarize_market(items))


async def check_local_serps(
    client: DataForSEOClient,
    keywords: list[ExtractedKeyword],
    domain: str,
    markets: list[str],
    log: LogFn = log_to_logger,
    on_task_complete=None,
) -> dict[str, MarketData]:
    """
    Organic rankings for every market. A failed market gets an empty
    MarketData and the remaining markets still run.
    """
    domain = clean_domain(domain)
    all_cities = [market_city(m) for m in markets]
    results: dict[str, MarketData] = {}

    for location in markets:
        city = market_city(location)
        label = city or location
        log(f"Checking SERPs for {label}...")

        market_keywords = filter_keywords_for_market(keywords, city, all_cities)[:KEYWORDS_PER_MARKET]
        if not market_keywords:
            log(f"  No keywords for {label} — skipping", "warning")
            continue

        try:
            data = await check_market_serps(client, market_keywords, domain, location, log)
            ranking = sum(1 for it in data.items if it.is_ranking)
            log(
                f"  {label}: {ranking}/{len(data.items)} keywords ranking",
                "success" if ranking else "warning",
            )
        except Exception as e:
            log(f"  SERP check failed for {label}: {e}", "error")
            data = MarketData()
        results[location] = data

        if on_task_complete:
            on_task_complete("Checking local SERPs")

    return results


# ---------------------------------------------------------------------------
# Maps
# ---------------------------------------------------------------------------

async def fetch_maps_rankings(
    client: DataForSEOClient,
    keywords: list[str],
    coords: tuple[float, float],
    domain: str,
    market_name: str,
    log: LogFn = log_to_logger,
) -> dict[str, MapsRanking]:
    """Where the business shows in Google Maps for each keyword (rank None = not found)."""
    if not keywords or not coords:
        return {}

    lat, lng = coords
    tasks = [{
        "keyword": kw,
        "location_coordinate": f"{lat},{lng},{MAPS_ZOOM}",
        "language_code": "en",
        "device": "desktop",
        "os": "windows",
        "depth": SERP_DEPTH,
    } for kw in keywords]

    results: dict[str, MapsRanking] = {}
    try:
        data = await client.call("serp/google/maps/live/advanced", tasks)
        task_list = data.get("tasks") or []
        for i, keyword in enumerate(keywords):
            task = task_list[i] if i < len(task_list) else None
            results[keyword] = MapsRanking()
            if not task or task.get("status_code") != STATUS_OK:
                continue
            for mi in ((task.get("result") or [{}])[0] or {}).get("items") or []:
                if not mi.get("url") and not mi.get("domain"):
                    continue
                host = (
                    mi["domain"].lower().removeprefix("www.")
                    if mi.get("domain")
                    else host_of(mi["url"]).lower()
                )
                if _is_own(host, domain):
                    rating = mi.get("rating") or {}
                    results[keyword] = MapsRanking(
                        rank=mi.get("rank_group") or mi.get("rank_absolute") or 1,
                        url=mi.get("url") or "",
                        title=mi.get("title") or "",
                        rating=rating.get("value", mi.get("rating_value")),
                        reviews=rating.get("votes_count", mi.get("reviews_count")),
                    )
                    break

        found = sum(1 for r in results.values() if r.found)
        log(f"  Maps {market_name}: {found}/{len(keywords)} found", "success" if found else "warning")
    except Exception as e:
        log(f"  Maps check failed for {market_name}: {e}", "error")
        results = {kw: MapsRanking() for kw in keywords}

    return results


def surface_comparison(has_organic: bool, has_maps: bool) -> str:
    if has_organic and has_maps:
        return "both-ranking"
    if has_organic:
        return "organic-only"
    if has_maps:
        return "maps-only"
    return "neither"


async def check_maps_for_markets(
    client: DataForSEOClient,
    organic: dict[str, MarketData],
    coords: Optional[tuple[float, float]],
    domain: str,
    log: LogFn = log_to_logger,
) -> dict[str, dict[str, MapsRanking]]:
    """
    Check Maps for each market's 20 best organic keywords and annotate the
    market items in place with maps_data / maps_rank / surface_comparison.
    """
    all_maps: dict[str, dict[str, MapsRanking]] = {}
    if not coords:
        log("No coordinates available — skipping Maps checks", "warning")
        return all_maps

    domain = clean_domain(domain)
    for location, market in organic.items():
        if not market.items:
            continue
        name = market_city(location) or location

        ranked = sorted((it for it in market.items if it.is_ranking), key=lambda it: it.position)
        ranked = ranked[:MAPS_KEYWORDS_PER_MARKET]
        if not ranked:
            log(f"  No organic rankings for {name} — skipping Maps", "warning")
            continue

        keywords = [it.keyword for it in ranked]
        log(f"Checking Maps for {name} ({len(keywords)} keywords)...")
        maps = await fetch_maps_rankings(client, keywords, coords, domain, name, log)
        all_maps[location] = maps

        ranking = not_found = 0
        for item in market.items:
            result = maps.get(item.keyword)
            if result is None:
                item.maps_data = None
                item.maps_rank = None
                item.surface_comparison = None
                continue
            item.maps_data = result
            item.maps_rank = result.rank
            item.surface_comparison = surface_comparison(item.is_ranking, result.found)
            if result.found:
                ranking += 1
            else:
                not_found += 1

        if market.metrics is None:
            market.metrics = MarketMetrics(count=len(market.items))
        market.metrics.maps = MapsMetrics(checked=len(keywords), ranking=ranking, not_found=not_found)

    return all_maps
