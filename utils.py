"""
utils.py — small helpers used by several pipeline modules.
"""

import math
import re
from urllib.parse import urlparse


def clean_domain(value: str) -> str:
    """'https://www.Example.com/path?q=1' → 'example.com'"""
    d = value.strip().lower()
    d = re.sub(r"^https?://", "", d)
    d = re.sub(r"^www\.", "", d)
    return d.split("/")[0].split("?")[0]


def host_of(url: str) -> str:
    """Hostname of a URL without the www. prefix; '' when unparsable."""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host.removeprefix("www.")


def path_of(url: str) -> str:
    try:
        return urlparse(url).path or "/"
    except ValueError:
        return url


def round_half_up(value: float) -> int:
    # Halves always round towards +inf, so 12.5 → 13 and -2.5 → -2
    return int(math.floor(value + 0.5))


def clamp(value: float, lo: float = 0, hi: float = 100) -> float:
    return max(lo, min(hi, value))


def crawl_progress_percent(crawled: int, queued: int, finished: bool) -> int:
    """Progress bar value for a running crawl."""
    if finished:
        return 100
    total = crawled + queued
    if total == 0:
        return 5
    return min(95, round_half_up(crawled / total * 100))
