# =============================================================================
# Site Audit API — FastAPI Backend
# =============================================================================
# Crawl + keyword + SERP + scoring pipeline over DataForSEO and PageSpeed.
#
# Audits run in the background; clients poll the status endpoint.
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import asyncio
import logging
import os
import time
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

load_dotenv()                       # reads .env into os.environ

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("site-audit")

DATAFORSEO_LOGIN = os.getenv("DATAFORSEO_LOGIN", "")
DATAFORSEO_PASSWORD = os.getenv("DATAFORSEO_PASSWORD", "")
DATAFORSEO_BASE_URL = os.getenv("DATAFORSEO_BASE_URL", "https://api.dataforseo.com")
PAGESPEED_API_KEY = os.getenv("PAGESPEED_API_KEY", "")
AUDIT_MAX_PAGES = int(os.getenv("AUDIT_MAX_PAGES", "100"))

if not DATAFORSEO_LOGIN or not DATAFORSEO_PASSWORD:
    logger.warning("⚠️  DATAFORSEO_LOGIN / DATAFORSEO_PASSWORD not set — audits will fail")
if not PAGESPEED_API_KEY:
    logger.warning("⚠️  PAGESPEED_API_KEY is not set — PageSpeed calls use the keyless quota")

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

from database import AuditStore, make_session_factory
from dfs_client import DataForSEOClient
from errors import AuditCancelled
from models import AuditProgress, TrackedLocation
from orchestrator import AuditOptions, AuditOrchestrator, CancellationToken
from utils import clean_domain

store: Optional[AuditStore] = None

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Site Audit API",
    version="1.0.0",
    description="Crawl, keyword, SERP and scoring pipeline for local business sites",
)

# CORS — open for development, lock down for production
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    global store
    store = AuditStore(make_session_factory())
    logger.info("Database tables ready")


def get_store() -> AuditStore:
    global store
    if store is None:
        store = AuditStore(make_session_factory())
    return store


# ---------------------------------------------------------------------------
# Simple in-memory rate limiter (swap for Redis in production)
# ---------------------------------------------------------------------------

_rate_buckets: dict[str, list[float]] = defaultdict(list)
RATE_LIMIT = int(os.getenv("RATE_LIMIT_PER_MIN", "10"))

# In-memory registry of running audits: audit_id -> {"status", "progress", "token", ...}
_pending_audits: dict[str, dict] = {}


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    # Only audit submissions are limited; status polling happens every few seconds
    if request.method != "POST" or request.url.path != "/site-audit":
        return await call_next(request)

    ip = request.client.host if request.client else "unknown"
    now = time.time()
    _rate_buckets[ip] = [t for t in _rate_buckets[ip] if now - t < 60]

    if len(_rate_buckets[ip]) >= RATE_LIMIT:
        return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded — try again in a minute"})

    _rate_buckets[ip].append(now)
    return await call_next(request)


# =============================================================================
# Request models
# =============================================================================

class SiteAuditRequest(BaseModel):
    domain: str
    business_id: str
    tracked_locations: list[TrackedLocation] = []
    location_id: Optional[str] = None
    max_pages: Optional[int] = None

    @field_validator("domain")
    @classmethod
    def domain_valid(cls, v: str) -> str:
        d = clean_domain(v)
        if "." not in d or len(d) < 4:
            raise ValueError("domain must be a hostname like example.com")
        return d

    @field_validator("max_pages")
    @classmethod
    def max_pages_valid(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1 <= v <= 1000:
            raise ValueError("max_pages must be between 1 and 1000")
        return v


# =============================================================================
# Audit endpoints
# =============================================================================

def make_orchestrator(client: DataForSEOClient) -> AuditOrchestrator:
    return AuditOrchestrator(client, get_store(), pagespeed_api_key=PAGESPEED_API_KEY)


@app.post("/site-audit")
async def start_site_audit(request: SiteAuditRequest):
    """
    Start a site audit — returns immediately with audit_id, runs in background.
    Poll GET /site-audit/{audit_id}/status for progress.
    """
    audit_id = str(uuid.uuid4())
    options = AuditOptions(
        audit_id=audit_id,
        business_id=request.business_id,
        domain=request.domain,
        tracked_locations=request.tracked_locations,
        location_id=request.location_id,
        max_pages=request.max_pages or AUDIT_MAX_PAGES,
    )
    progress = AuditProgress(audit_id=audit_id)
    token = CancellationToken()

    # A new audit supersedes any audit still running for the same business
    for entry in _pending_audits.values():
        if entry["business_id"] == request.business_id and entry["status"] == "processing":
            entry["token"].cancel()

    _pending_audits[audit_id] = {
        "status": "processing",
        "business_id": request.business_id,
        "progress": progress,
        "token": token,
    }
    asyncio.create_task(_run_audit_background(options, progress, token))
    logger.info(f"[{audit_id}] Site audit queued for {request.domain}")
    return {"audit_id": audit_id, "status": "processing"}


async def _run_audit_background(options: AuditOptions, progress: AuditProgress, token: CancellationToken) -> None:
    """Run the audit in the background and record the outcome in _pending_audits."""
    audit_id = options.audit_id
    entry = _pending_audits[audit_id]
    try:
        async with DataForSEOClient(DATAFORSEO_LOGIN, DATAFORSEO_PASSWORD, DATAFORSEO_BASE_URL) as client:
            result = await make_orchestrator(client).run(options, progress, token)
        entry["status"] = "completed"
        entry["result"] = result.model_dump(mode="json")
    except AuditCancelled:
        logger.info(f"[{audit_id}] Audit cancelled")
        entry["status"] = "cancelled"
    except Exception as e:
        logger.error(f"[{audit_id}] Background audit failed: {e}", exc_info=True)
        entry["status"] = "failed"
        entry["error"] = str(e) or type(e).__name__
    # Auto-clean from memory after 2 hours
    await asyncio.sleep(7200)
    _pending_audits.pop(audit_id, None)


@app.get("/site-audit/{audit_id}/status")
def get_site_audit_status(audit_id: str, log_tail: int = 50):
    """
    Poll for audit progress. In-memory state first; falls back to the
    persisted record after a server restart.
    """
    entry = _pending_audits.get(audit_id)
    if entry is not None:
        progress: AuditProgress = entry["progress"]
        body = {
            "audit_id": audit_id,
            "status": entry["status"],
            "phase": progress.phase,
            "current_task": progress.current_task,
            "completed_tasks": progress.completed_tasks,
            "crawl_percent": progress.crawl_percent,
            "log": [e.model_dump(mode="json") for e in progress.log_entries[-log_tail:]],
        }
        if entry["status"] == "completed":
            result = entry["result"]
            body["scores"] = result["scores"]
            body["projected_overall"] = result["projected_overall"]
        if entry.get("error"):
            body["error"] = entry["error"]
        return body

    row = get_store().get_audit(audit_id, include_crawl_data=False)
    if not row:
        raise HTTPException(status_code=404, detail="Audit not found")
    return {
        "audit_id": audit_id,
        "status": row["status"],
        "phase": row["phase"],
        "completed_tasks": row["completed_tasks"],
        "overall_score": row["overall_score"],
        "category_scores": row["category_scores"],
        "error": row["error_message"],
    }


@app.post("/site-audit/{audit_id}/cancel")
def cancel_site_audit(audit_id: str):
    entry = _pending_audits.get(audit_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Audit not running")
    if entry["status"] != "processing":
        return {"audit_id": audit_id, "status": entry["status"]}
    entry["token"].cancel()
    logger.info(f"[{audit_id}] Cancellation requested")
    return {"audit_id": audit_id, "status": "cancelling"}


@app.get("/site-audit/{audit_id}")
def get_site_audit(audit_id: str):
    """Return the persisted audit record, including the full result payload."""
    row = get_store().get_audit(audit_id, include_crawl_data=True)
    if not row:
        raise HTTPException(status_code=404, detail="Audit not found")
    return row


# =============================================================================
# Health
# =============================================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "dataforseo_credentials_set": bool(DATAFORSEO_LOGIN and DATAFORSEO_PASSWORD),
        "pagespeed_key_set": bool(PAGESPEED_API_KEY),
        "running_audits": sum(1 for e in _pending_audits.values() if e["status"] == "processing"),
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
