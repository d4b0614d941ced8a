"""
orchestrator.py — drives one site audit from crawl submission to scores.

    submitting → crawling → fetching → analyzing → keywords → complete

Independent lookups run concurrently in two waves:
  1. desktop Lighthouse + mobile Lighthouse submission + business detection
  2. domain rank overview + mobile Lighthouse result + PageSpeed mobile/desktop
Everything with a data dependency runs strictly in order. Enrichment failures
degrade the result; only crawl submission, crawl timeout and unexpected
exceptions fail the run. Checkpoints are written to the AuditStore after each
major phase.
"""

import asyncio
import functools
import logging
import time
from enum import Enum
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, Field

from business_detection import detect_business
from cannibalization import CannibalizationConflict, detect_cannibalization_conflicts
from crawl_engine import (
    LIGHTHOUSE_INTERVAL,
    LIGHTHOUSE_MAX_ATTEMPTS,
    fetch_crawl_data,
    fetch_domain_rank_overview,
    fetch_lighthouse_result,
    poll_crawl_status,
    submit_crawl_task,
    submit_lighthouse_task,
)
from database import AuditStore, utcnow
from dfs_client import DataForSEOClient
from errors import ApiError, AuditCancelled, CancellationToken, CrawlTimeoutError
from issue_detection import (
    DetailedIssue,
    QuickWin,
    count_by_severity,
    generate_detailed_issues,
    generate_quick_wins,
    quick_win_fixes,
)
from keyword_extraction import extract_keywords_from_crawl
from market_discovery import resolve_markets
from models import AuditProgress, CategoryScores, CrawlData, CrawlSummary, TrackedLocation
from pagespeed import fetch_pagespeed
from scoring import compute_page_health, compute_scores, estimate_score_impact
from serp_checks import check_local_serps, check_maps_for_markets
from utils import clean_domain, crawl_progress_percent

logger = logging.getLogger("site-audit")

POLL_INTERVAL = 4.0
CRAWL_TIMEOUT = 15 * 60
DEFAULT_MAX_PAGES = 100


class AuditPhase(str, Enum):
    SUBMITTING = "submitting"
    CRAWLING = "crawling"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    KEYWORDS = "keywords"
    COMPLETE = "complete"
    FAILED = "failed"


# Persisted record status for each phase
PHASE_STATUS = {
    AuditPhase.SUBMITTING: "pending",
    AuditPhase.CRAWLING: "crawling",
    AuditPhase.FETCHING: "crawling",
    AuditPhase.ANALYZING: "analyzing",
    AuditPhase.KEYWORDS: "analyzing",
    AuditPhase.COMPLETE: "complete",
    AuditPhase.FAILED: "failed",
}


class AuditOptions(BaseModel):
    audit_id: str
    business_id: str
    domain: str
    tracked_locations: list[TrackedLocation] = Field(default_factory=list)
    location_id: Optional[str] = None
    max_pages: int = DEFAULT_MAX_PAGES


class AuditResult(BaseModel):
    audit_id: str
    domain: str
    crawl_data: CrawlData
    scores: CategoryScores
    page_health: dict[str, int]
    issues: list[DetailedIssue]
    quick_wins: list[QuickWin]
    projected_overall: int
    conflicts: list[CannibalizationConflict]
    api_cost: float


class AuditOrchestrator:
    """
    Runs audits against an injected DataForSEO client and (optional) store.
    Timing knobs exist so tests can run the whole pipeline in milliseconds.
    """

    def __init__(
        self,
        client: DataForSEOClient,
        store: Optional[AuditStore] = None,
        poll_interval: float = POLL_INTERVAL,
        crawl_timeout: float = CRAWL_TIMEOUT,
        lighthouse_interval: float = LIGHTHOUSE_INTERVAL,
        lighthouse_attempts: int = LIGHTHOUSE_MAX_ATTEMPTS,
        pagespeed_api_key: Optional[str] = None,
        pagespeed_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.poll_interval = poll_interval
        self.crawl_timeout = crawl_timeout
        self.lighthouse_interval = lighthouse_interval
        self.lighthouse_attempts = lighthouse_attempts
        self.pagespeed_api_key = pagespeed_api_key
        self.pagespeed_transport = pagespeed_transport
        self._clock = clock

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _db(self, method: str, *args, **kwargs):
        """Run a store method in the thread pool. Failures are logged, not raised."""
        if self.store is None:
            return None
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(
                None, functools.partial(getattr(self.store, method), *args, **kwargs)
            )
        except Exception as e:
            logger.error(f"Audit store {method} failed: {type(e).__name__}: {e}", exc_info=True)
            return None

    async def _checkpoint(self, progress: AuditProgress, token: CancellationToken, **fields) -> None:
        if token.cancelled:
            return
        await self._db(
            "update_audit",
            progress.audit_id,
            status=PHASE_STATUS[AuditPhase(progress.phase)],
            phase=progress.phase,
            completed_tasks=progress.completed_tasks,
            api_cost=self.client.total_cost,
            **fields,
        )

    async def _enter(self, phase: AuditPhase, progress: AuditProgress, token: CancellationToken, **fields) -> None:
        token.raise_if_cancelled()
        progress.phase = phase.value
        await self._checkpoint(progress, token, **fields)

    # ------------------------------------------------------------------
    # Crawl polling
    # ------------------------------------------------------------------

    async def wait_for_crawl(
        self, task_id: str, progress: AuditProgress, token: CancellationToken
    ) -> Optional[CrawlSummary]:
        """
        Poll until the crawl reports `finished`. Poll failures are retried at
        the same interval. Raises CrawlTimeoutError once `crawl_timeout`
        seconds have elapsed.
        """
        start = self._clock()
        last_crawled = -1
        while True:
            token.raise_if_cancelled()
            elapsed = self._clock() - start
            if elapsed > self.crawl_timeout:
                raise CrawlTimeoutError(
                    f"Crawl timed out after {round(self.crawl_timeout / 60, 1)} minutes"
                )

            try:
                status = await poll_crawl_status(self.client, task_id)
            except ApiError as e:
                progress.log(f"Poll failed: {e.message} — retrying", "warning")
                await asyncio.sleep(self.poll_interval)
                continue
            except Exception as e:
                progress.log(f"Poll failed: {type(e).__name__}: {e} — retrying", "warning")
                await asyncio.sleep(self.poll_interval)
                continue

            progress.crawl_percent = crawl_progress_percent(
                status.pages_crawled, status.pages_in_queue, status.finished
            )
            if status.finished:
                progress.log(f"Crawl finished — {status.pages_crawled} pages", "success")
                return status.summary

            if status.pages_crawled != last_crawled:
                progress.log(
                    f"Crawling: {status.pages_crawled} pages done, {status.pages_in_queue} queued "
                    f"({status.progress})"
                )
                last_crawled = status.pages_crawled
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run(
        self,
        options: AuditOptions,
        progress: Optional[AuditProgress] = None,
        token: Optional[CancellationToken] = None,
    ) -> AuditResult:
        """
        Run the full audit. Raises AuditCancelled when `token` is cancelled
        (nothing more is written), or the fatal error after marking the
        record failed.
        """
        progress = progress or AuditProgress(audit_id=options.audit_id)
        token = token or CancellationToken()
        domain = clean_domain(options.domain)

        try:
            return await self._run(options, domain, progress, token)
        except AuditCancelled:
            progress.log("Audit cancelled", "warning")
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            progress.log(f"Audit failed: {message}", "error")
            progress.phase = AuditPhase.FAILED.value
            await self._checkpoint(progress, token, error_message=message, completed_at=utcnow())
            raise

    async def _run(
        self, options: AuditOptions, domain: str, progress: AuditProgress, token: CancellationToken
    ) -> AuditResult:
        token.raise_if_cancelled()
        await self._db("invalidate_in_flight", options.business_id, keep_id=options.audit_id)
        await self._db("create_audit", options.audit_id, options.business_id, domain, options.location_id)

        # -- submitting ------------------------------------------------------
        await self._enter(AuditPhase.SUBMITTING, progress, token)
        progress.current_task = "Submitting crawl"
        task_id = await submit_crawl_task(self.client, domain, options.max_pages, progress.log)
        progress.complete_task("Submitting crawl")

        lh_desktop, lh_mobile, business = await asyncio.gather(
            submit_lighthouse_task(self.client, domain, False, progress.log),
            submit_lighthouse_task(self.client, domain, True, progress.log),
            detect_business(self.client, domain, progress.log),
            return_exceptions=True,
        )
        lh_desktop = _settled(lh_desktop, "Lighthouse submission", progress)
        lh_mobile = _settled(lh_mobile, "Mobile Lighthouse submission", progress)
        business = _settled(business, "Business detection", progress)
        progress.complete_task("Detecting business")

        # -- crawling --------------------------------------------------------
        await self._enter(AuditPhase.CRAWLING, progress, token)
        progress.current_task = "Crawling site"
        summary = await self.wait_for_crawl(task_id, progress, token)
        progress.complete_task("Crawling site")

        # -- fetching --------------------------------------------------------
        await self._enter(AuditPhase.FETCHING, progress, token)
        data = await fetch_crawl_data(
            self.client, task_id, lh_desktop, progress.log,
            on_task_complete=progress.complete_task,
            lighthouse_interval=self.lighthouse_interval,
            lighthouse_attempts=self.lighthouse_attempts,
            token=token,
        )
        data.summary = summary
        data.business = business

        token.raise_if_cancelled()
        url = f"https://{domain}"
        domain_rank, lighthouse_mobile, psi_mobile, psi_desktop = await asyncio.gather(
            fetch_domain_rank_overview(self.client, domain, progress.log),
            fetch_lighthouse_result(
                self.client, lh_mobile, progress.log, label="Mobile Lighthouse",
                max_attempts=self.lighthouse_attempts, interval=self.lighthouse_interval,
                token=token,
            ),
            fetch_pagespeed(url, "mobile", self.pagespeed_api_key, self.pagespeed_transport),
            fetch_pagespeed(url, "desktop", self.pagespeed_api_key, self.pagespeed_transport),
            return_exceptions=True,
        )
        data.domain_rank = _settled(domain_rank, "Domain rank overview", progress)
        data.lighthouse_mobile = _settled(lighthouse_mobile, "Mobile Lighthouse", progress)
        for strategy, psi in (("mobile", psi_mobile), ("desktop", psi_desktop)):
            psi = _settled(psi, f"PageSpeed {strategy}", progress)
            if psi:
                data.pagespeed[strategy] = psi
        progress.complete_task("Fetching enrichment data")

        # -- analyzing -------------------------------------------------------
        await self._enter(
            AuditPhase.ANALYZING, progress, token,
            page_count=len(data.pages),
            crawl_data=data.model_dump(mode="json"),
        )
        progress.current_task = "Discovering markets"
        try:
            markets = resolve_markets(options.tracked_locations, business, data.pages)
            data.markets = [m.location for m in markets]
            for m in markets:
                progress.log(f"Market: {m.location} ({m.source})")
        except Exception as e:
            progress.log(f"Market discovery failed: {e}", "warning")
        progress.complete_task("Discovering markets")

        # -- keywords --------------------------------------------------------
        await self._enter(AuditPhase.KEYWORDS, progress, token)
        progress.current_task = "Extracting keywords"
        try:
            data.keywords = extract_keywords_from_crawl(data.pages, data.markets, domain)
            progress.log(f"Extracted {len(data.keywords)} keywords", "success")
        except Exception as e:
            progress.log(f"Keyword extraction failed: {e}", "warning")
        progress.complete_task("Extracting keywords")

        if data.keywords and data.markets:
            data.serp = await check_local_serps(
                self.client, data.keywords, domain, data.markets, progress.log,
            )
            token.raise_if_cancelled()
            coords = business.coords if business else None
            await check_maps_for_markets(self.client, data.serp, coords, domain, progress.log)
            progress.complete_task("Checking local SERPs")
        else:
            progress.log("No keywords or markets — skipping SERP checks", "warning")

        # -- scoring ---------------------------------------------------------
        token.raise_if_cancelled()
        progress.current_task = "Computing scores"
        scores = compute_scores(data)
        issues = generate_detailed_issues(data)
        quick_wins = generate_quick_wins(issues)
        projected = estimate_score_impact(scores, quick_win_fixes(quick_wins))
        conflicts = detect_cannibalization_conflicts(data.serp, domain, data.markets)
        page_health = {p.url: compute_page_health(p) for p in data.pages if p.url}
        progress.log(
            f"Overall score {scores.overall} — {len(issues)} issues, {len(quick_wins)} quick wins, "
            f"{len(conflicts)} cannibalization conflicts",
            "success",
        )
        progress.complete_task("Computing scores")

        result = AuditResult(
            audit_id=options.audit_id,
            domain=domain,
            crawl_data=data,
            scores=scores,
            page_health=page_health,
            issues=issues,
            quick_wins=quick_wins,
            projected_overall=projected,
            conflicts=conflicts,
            api_cost=self.client.total_cost,
        )

        # -- complete --------------------------------------------------------
        counts = count_by_severity(issues)
        await self._enter(
            AuditPhase.COMPLETE, progress, token,
            overall_score=scores.overall,
            category_scores={k: v.model_dump() for k, v in scores.categories.items()},
            page_count=len(data.pages),
            issues_critical=counts["critical"],
            issues_warning=counts["warning"],
            issues_notice=counts["notice"],
            crawl_data=result.model_dump(mode="json", exclude={"scores"}),
            completed_at=utcnow(),
        )
        progress.log(f"Audit complete — API cost ${self.client.total_cost:.4f}", "success")
        return result


def _settled(value, label: str, progress: AuditProgress):
    """Unwrap one gather(return_exceptions=True) result; exceptions become None."""
    if isinstance(value, AuditCancelled):
        raise value
    if isinstance(value, BaseException):
        progress.log(f"{label} failed: {value}", "warning")
        return None
    return value
