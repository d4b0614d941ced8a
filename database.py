"""
database.py — SQLAlchemy models and the audit record store.

Uses PostgreSQL in production (via the DATABASE_URL env var).
Falls back to SQLite locally so you can develop without Postgres.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

logger = logging.getLogger("site-audit")

DEFAULT_DATABASE_URL = "sqlite:///./site_audits.db"

# Statuses that mean a run may still be writing to the record
IN_FLIGHT_STATUSES = ("pending", "crawling", "analyzing")
AUDIT_STATUSES = (*IN_FLIGHT_STATUSES, "complete", "failed")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

def database_url() -> str:
    url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    # Some hosts expose postgres:// but SQLAlchemy requires postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def make_engine(url: Optional[str] = None) -> Engine:
    url = url or database_url()
    return create_engine(
        url,
        # SQLite needs this flag; ignored by Postgres
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=True,   # drop stale connections before use
    )


def make_session_factory(url: Optional[str] = None) -> sessionmaker:
    """Engine + sessionmaker for `url` (default: DATABASE_URL). Tables are created too."""
    engine = make_engine(url)
    init_db(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SiteAudit(Base):
    __tablename__ = "site_audits"

    id                   = Column(String(36), primary_key=True)
    business_id          = Column(String(36), nullable=False, index=True)
    domain               = Column(String(255), nullable=False)
    location_id          = Column(String(36), nullable=True)
    status               = Column(String(20), default="pending", nullable=False, index=True)
    phase                = Column(String(20), nullable=True)
    overall_score        = Column(Integer, nullable=True)
    # JSON stored as text so SQLite and Postgres behave the same
    category_scores_json = Column(Text, nullable=True)
    page_count           = Column(Integer, default=0)
    issues_critical      = Column(Integer, default=0)
    issues_warning       = Column(Integer, default=0)
    issues_notice        = Column(Integer, default=0)
    crawl_data_json      = Column(Text, nullable=True)
    completed_tasks_json = Column(Text, nullable=True)
    api_cost             = Column(Float, default=0.0)
    error_message        = Column(Text, nullable=True)
    started_at           = Column(DateTime, default=utcnow, index=True)
    completed_at         = Column(DateTime, nullable=True)

    def to_dict(self, include_crawl_data: bool = False) -> dict:
        out = {
            "id": self.id,
            "business_id": self.business_id,
            "domain": self.domain,
            "location_id": self.location_id,
            "status": self.status,
            "phase": self.phase,
            "overall_score": self.overall_score,
            "category_scores": _loads(self.category_scores_json),
            "page_count": self.page_count,
            "issues": {
                "critical": self.issues_critical or 0,
                "warning": self.issues_warning or 0,
                "notice": self.issues_notice or 0,
            },
            "completed_tasks": _loads(self.completed_tasks_json) or [],
            "api_cost": self.api_cost,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_crawl_data:
            out["crawl_data"] = _loads(self.crawl_data_json)
        return out


# Keyword arguments to update_audit that are serialized into *_json columns
_JSON_FIELDS = {
    "category_scores": "category_scores_json",
    "crawl_data": "crawl_data_json",
    "completed_tasks": "completed_tasks_json",
}


def _dumps(value: Any) -> str:
    # PostgreSQL rejects \x00 in text columns
    return json.dumps(value, default=str).replace("\\u0000", "")


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def init_db(engine: Engine) -> None:
    """Create all tables. Safe to call on every startup."""
    Base.metadata.create_all(bind=engine)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class AuditStore:
    """
    Synchronous access to SiteAudit records. Async callers run these methods
    via `loop.run_in_executor`.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create_audit(
        self, audit_id: str, business_id: str, domain: str, location_id: Optional[str] = None
    ) -> dict:
        db = self._session_factory()
        try:
            row = SiteAudit(
                id=audit_id,
                business_id=business_id,
                domain=domain,
                location_id=location_id,
                status="pending",
                phase="submitting",
            )
            db.add(row)
            db.commit()
            logger.info(f"[{audit_id}] Audit record created for {domain}")
            return row.to_dict()
        finally:
            db.close()

    def update_audit(self, audit_id: str, **fields: Any) -> None:
        """
        Write the given columns. `category_scores`, `crawl_data` and
        `completed_tasks` are JSON-serialized into their *_json columns.
        """
        db = self._session_factory()
        try:
            row = db.get(SiteAudit, audit_id)
            if row is None:
                logger.warning(f"[{audit_id}] update_audit: record not found")
                return
            for key, value in fields.items():
                if key in _JSON_FIELDS:
                    setattr(row, _JSON_FIELDS[key], _dumps(value) if value is not None else None)
                elif hasattr(SiteAudit, key):
                    setattr(row, key, value)
                else:
                    raise ValueError(f"Unknown audit field: {key}")
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_audit(self, audit_id: str, include_crawl_data: bool = True) -> Optional[dict]:
        db = self._session_factory()
        try:
            row = db.get(SiteAudit, audit_id)
            return row.to_dict(include_crawl_data) if row else None
        finally:
            db.close()

    def invalidate_in_flight(self, business_id: str, keep_id: Optional[str] = None) -> int:
        """Mark every still-running audit for the business as failed. Returns the count."""
        db = self._session_factory()
        try:
            q = db.query(SiteAudit).filter(
                SiteAudit.business_id == business_id,
                SiteAudit.status.in_(IN_FLIGHT_STATUSES),
            )
            if keep_id:
                q = q.filter(SiteAudit.id != keep_id)
            rows = q.all()
            for row in rows:
                row.status = "failed"
                row.error_message = "Superseded by a newer audit"
                row.completed_at = utcnow()
            db.commit()
            if rows:
                logger.info(f"Invalidated {len(rows)} in-flight audit(s) for business {business_id}")
            return len(rows)
        finally:
            db.close()

    def latest_in_flight(self, business_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            row = (
                db.query(SiteAudit)
                .filter(SiteAudit.business_id == business_id, SiteAudit.status.in_(IN_FLIGHT_STATUSES))
                .order_by(SiteAudit.started_at.desc())
                .first()
            )
            return row.to_dict() if row else None
        finally:
            db.close()
