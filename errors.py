"""
errors.py — exception types shared across the audit pipeline.
"""

from typing import Optional


class ApiError(Exception):
    """Transport failure, non-2xx response, or a DataForSEO error envelope."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CrawlTimeoutError(Exception):
    """Raised when a crawl never reports `finished` within the wall-clock budget."""


class AuditCancelled(Exception):
    """Raised at a phase boundary or poll tick after the audit was cancelled."""


class CancellationToken:
    """Cooperative abort flag, checked at every phase boundary and poll tick."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AuditCancelled("Audit was cancelled")
