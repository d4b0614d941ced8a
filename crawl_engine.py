"""
crawl_engine.py — DataForSEO On-Page crawl and Lighthouse tasks.

    submit_crawl_task        → on_page/task_post
    submit_lighthouse_task   → on_page/lighthouse/task_post (desktop or mobile)
    poll_crawl_status        → on_page/summary/{id}           (one tick; caller loops)
    fetch_crawl_data         → the seven on_page report endpoints + Lighthouse
    fetch_lighthouse_result  → on_page/lighthouse/task_get/json/{id} (bounded retry)
    fetch_domain_rank_overview → dataforseo_labs domain_rank_overview/live
"""

import asyncio
import logging
from typing import Callable, NamedTuple, Optional

from pydantic import BaseModel, ValidationError

from dfs_client import STATUS_IN_PROGRESS, STATUS_OK, STATUS_QUEUED, DataForSEOClient
from errors import ApiError, CancellationToken
from models import (
    CrawlData,
    CrawledLink,
    CrawledPage,
    CrawledResource,
    CrawlSummary,
    DomainRankOverview,
    DuplicateContent,
    DuplicateTag,
    LighthouseResult,
    LogFn,
    NonIndexablePage,
    RedirectChain,
    log_to_logger,
)

logger = logging.getLogger("site-audit")

LIGHTHOUSE_CATEGORIES = ["performance", "accessibility", "best_practices", "seo"]
LIGHTHOUSE_MAX_ATTEMPTS = 15
LIGHTHOUSE_INTERVAL = 4.0


# ---------------------------------------------------------------------------
# Task submission
# ---------------------------------------------------------------------------

async def submit_crawl_task(
    client: DataForSEOClient, domain: str, max_pages: int, log: LogFn = log_to_logger
) -> str:
    """Queue an On-Page crawl and return its task id. Raises ApiError if rejected."""
    log(f"Crawling {domain} — max {max_pages} pages")

    data = await client.call("on_page/task_post", [{
        "target": domain,
        "max_crawl_pages": max_pages,
        "load_resources": True,
        "enable_javascript": True,
        "enable_www_redirect_check": True,
        "enable_sitemap": True,
    }])

    tasks = data.get("tasks") or []
    if not tasks:
        raise ApiError(data.get("status_message") or "Task submission failed")
    task = tasks[0]
    if task.get("status_code") != STATUS_QUEUED:
        raise ApiError(task.get("status_message") or "Task rejected", task.get("status_code"))

    log(f"Task created: {task['id']}", "success")
    log(f"Cost: ${task.get('cost') or 0:.4f}")
    return task["id"]


async def submit_lighthouse_task(
    client: DataForSEOClient, domain: str, mobile: bool = False, log: LogFn = log_to_logger
) -> Optional[str]:
    """
    Queue a Lighthouse audit for https://domain, falling back to
    https://www.domain. Returns None when both are rejected.
    """
    label = "Mobile Lighthouse" if mobile else "Lighthouse"
    log(f"Submitting {label} task...")

    for url in (f"https://{domain}", f"https://www.{domain}"):
        try:
            data = await client.call("on_page/lighthouse/task_post", [{
                "url": url,
                "for_mobile": mobile,
                "categories": LIGHTHOUSE_CATEGORIES,
            }])
            task = (data.get("tasks") or [{}])[0]
            if task.get("status_code") == STATUS_QUEUED:
                log(f"  {label} task queued: {task['id']}", "success")
                log(f"  {label} cost: ${task.get('cost') or 0:.4f}")
                return task["id"]
            log(f"  {label} rejected for {url}: {task.get('status_message') or 'unknown'}", "warning")
        except ApiError as e:
            log(f"  {label} submit failed for {url}: {e.message}", "warning")

    log(f"  {label} task could not be created — will use heuristic estimates", "warning")
    return None


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class PollResult(BaseModel):
    finished: bool
    pages_crawled: int = 0
    pages_in_queue: int = 0
    max_crawl_pages: int = 0
    progress: str = "in_queue"
    summary: Optional[CrawlSummary] = None


async def poll_crawl_status(client: DataForSEOClient, task_id: str) -> PollResult:
    """One status check. A task without results yet reports `in_queue`."""
    data = await client.get(f"on_page/summary/{task_id}")

    task = (data.get("tasks") or [None])[0]
    if not task or task.get("status_code") == STATUS_QUEUED:
        return PollResult(finished=False)

    result = (task.get("result") or [None])[0]
    if not result:
        return PollResult(finished=False)

    status = result.get("crawl_status") or {}
    progress = result.get("crawl_progress") or "unknown"
    return PollResult(
        finished=progress == "finished",
        pages_crawled=status.get("pages_crawled") or 0,
        pages_in_queue=status.get("pages_in_queue") or 0,
        max_crawl_pages=status.get("max_crawl_pages") or 1000,
        progress=progress,
        summary=CrawlSummary.model_validate(result),
    )


# ---------------------------------------------------------------------------
# Report endpoints
# ---------------------------------------------------------------------------

class Endpoint(NamedTuple):
    key: str
    path: str
    label: str
    limit: int
    model: type[BaseModel]
    filters: Optional[list] = None


ENDPOINTS: list[Endpoint] = [
    Endpoint("pages", "on_page/pages", "Pages", 1000, CrawledPage, [["resource_type", "=", "html"]]),
    Endpoint("resources", "on_page/resources", "Resources", 1000, CrawledResource),
    Endpoint("links", "on_page/links", "Links", 1000, CrawledLink),
    Endpoint("duplicate_tags", "on_page/duplicate_tags", "Duplicate Tags", 500, DuplicateTag),
    Endpoint("duplicate_content", "on_page/duplicate_content", "Duplicate Content", 500, DuplicateContent),
    Endpoint("non_indexable", "on_page/non_indexable", "Non-Indexable Pages", 500, NonIndexablePage),
    Endpoint("redirect_chains", "on_page/redirect_chains", "Redirect Chains", 500, RedirectChain),
]


class EndpointResult(NamedTuple):
    items: list
    total: int
    ok: bool


async def fetch_endpoint(
    client: DataForSEOClient, task_id: str, ep: Endpoint, log: LogFn = log_to_logger
) -> EndpointResult:
    """Fetch one report. Failures yield an empty result instead of raising."""
    log(f"Fetching {ep.label}...")
    body: dict = {"id": task_id, "limit": ep.limit}
    if ep.filters:
        body["filters"] = ep.filters

    try:
        data = await client.call(ep.path, [body])
        result = ((data.get("tasks") or [{}])[0].get("result") or [{}])[0] or {}
        raw_items = result.get("items") or []
    except ApiError as e:
        log(f"  Failed: {e.message}", "error")
        return EndpointResult([], 0, False)
    except Exception as e:
        log(f"  Failed: unexpected response ({type(e).__name__}: {e})", "error")
        return EndpointResult([], 0, False)

    items = []
    for raw in raw_items:
        try:
            items.append(ep.model.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {ep.key} item: {e.error_count()} errors")

    total = result.get("total_items_count") or len(items)
    suffix = f" (of {total} total)" if total > len(items) else ""
    log(f"  {len(items)} items{suffix}", "success")
    return EndpointResult(items, total, True)


async def fetch_crawl_data(
    client: DataForSEOClient,
    task_id: str,
    lh_task_id: Optional[str],
    log: LogFn = log_to_logger,
    on_task_complete: Optional[Callable[[str], None]] = None,
    lighthouse_interval: float = LIGHTHOUSE_INTERVAL,
    lighthouse_attempts: int = LIGHTHOUSE_MAX_ATTEMPTS,
    token: Optional[CancellationToken] = None,
) -> CrawlData:
    """
    Fetch every report endpoint in order, then the desktop Lighthouse result.
    Endpoints run one after another to stay under the provider's rate limit.
    """
    results: dict[str, EndpointResult] = {}
    for ep in ENDPOINTS:
        if token:
            token.raise_if_cancelled()
        results[ep.key] = await fetch_endpoint(client, task_id, ep, log)
        if on_task_complete:
            on_task_complete(f"Fetching {ep.label.lower()}")

    lighthouse = await fetch_lighthouse_result(
        client, lh_task_id, log,
        max_attempts=lighthouse_attempts, interval=lighthouse_interval, token=token,
    )
    if on_task_complete:
        on_task_complete("Fetching Lighthouse results")

    return CrawlData(
        **{key: r.items for key, r in results.items()},
        totals={key: r.total for key, r in results.items()},
        lighthouse=lighthouse,
    )


# ---------------------------------------------------------------------------
# Lighthouse results
# ---------------------------------------------------------------------------

def _extract_lighthouse(result: dict) -> Optional[LighthouseResult]:
    lh = result if result.get("categories") else (
        result.get("lighthouseResult") or result.get("lighthouse_result")
    )
    if not lh or not lh.get("categories"):
        return None
    try:
        return LighthouseResult.model_validate(lh)
    except ValidationError as e:
        logger.warning(f"Malformed Lighthouse result: {e.error_count()} errors")
        return None


async def fetch_lighthouse_result(
    client: DataForSEOClient,
    lh_task_id: Optional[str],
    log: LogFn = log_to_logger,
    label: str = "Lighthouse",
    max_attempts: int = LIGHTHOUSE_MAX_ATTEMPTS,
    interval: float = LIGHTHOUSE_INTERVAL,
    token: Optional[CancellationToken] = None,
) -> Optional[LighthouseResult]:
    """
    Poll a Lighthouse task until it completes. Gives up after `max_attempts`
    polls and returns None; callers fall back to heuristic scores.
    """
    if not lh_task_id:
        log(f"  No {label} task ID — skipping", "warning")
        return None

    log(f"Retrieving {label} results...")
    for attempt in range(1, max_attempts + 1):
        if token:
            token.raise_if_cancelled()
        try:
            data = await client.get(f"on_page/lighthouse/task_get/json/{lh_task_id}")
        except ApiError as e:
            # DataForSEO envelope codes are five digits; anything else is transport
            if e.status_code and e.status_code >= 10000:
                log(f"  {label} poll error: {e.message}", "warning")
                return None
            log(f"  {label} poll failed: {e.message}", "warning")
            if attempt < max_attempts:
                await asyncio.sleep(interval)
                continue
            return None

        task = (data.get("tasks") or [None])[0] or {}
        status = task.get("status_code")

        if status == STATUS_OK:
            result = (task.get("result") or [None])[0]
            lh = _extract_lighthouse(result) if result else None
            if lh:
                log(f"  {label} complete — {', '.join(lh.categories)}", "success")
            else:
                log(f"  {label} result has no categories", "warning")
            return lh

        if status in (STATUS_QUEUED, STATUS_IN_PROGRESS):
            log(f"  {label} still processing (attempt {attempt}/{max_attempts})...")
            await asyncio.sleep(interval)
            continue

        log(f"  {label} task failed: {task.get('status_message') or f'status {status}'}", "warning")
        return None

    log(f"  {label} timed out after {max_attempts} attempts — using heuristic estimates", "warning")
    return None


# ---------------------------------------------------------------------------
# DataForSEO Labs
# ---------------------------------------------------------------------------

async def fetch_domain_rank_overview(
    client: DataForSEOClient, domain: str, log: LogFn = log_to_logger
) -> Optional[DomainRankOverview]:
    """Organic keyword count and ETV for the domain. None on any failure."""
    log("Fetching domain rank overview (organic keyword count + ETV)...")
    try:
        data = await client.call("dataforseo_labs/google/domain_rank_overview/live", [{
            "target": domain,
            "location_name": "United States",
            "language_name": "English",
        }])
        result = ((data.get("tasks") or [{}])[0].get("result") or [None])[0]
        if not result:
            log("  Domain rank overview: no result returned", "warning")
            return None

        metrics = result.get("metrics") or {}
        organic = metrics.get("organic") or {}
        log(
            f"  Domain rank overview: {organic.get('count', 0)} keywords, ETV {organic.get('etv', 0)}",
            "success",
        )
        return DomainRankOverview(target=domain, organic=metrics.get("organic"), paid=metrics.get("paid"))
    except Exception as e:
        log(f"  Domain rank overview failed: {e}", "warning")
        return None
