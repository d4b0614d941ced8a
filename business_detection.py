"""
business_detection.py — find the Google Business Profile listing for a domain.
"""

import logging
from typing import Optional

from dfs_client import DataForSEOClient
from models import DetectedBusiness, LogFn, log_to_logger

logger = logging.getLogger("site-audit")


def _parse_listing(item: dict) -> DetectedBusiness:
    address_info = item.get("address_info") or {}
    rating = item.get("rating") or {}
    category_ids = item.get("category_ids") or []
    names = item.get("categories") or category_ids
    if isinstance(names, str):
        names = [names]

    return DetectedBusiness(
        name=item.get("title") or item.get("name") or "",
        latitude=item.get("latitude") or None,
        longitude=item.get("longitude") or None,
        address=item.get("address") or address_info.get("address") or "",
        city=address_info.get("city") or item.get("city") or "",
        region=address_info.get("region") or item.get("state") or "",
        country=address_info.get("country_code") or item.get("country") or "US",
        categories=category_ids,
        category_names=names,
        place_id=str(item.get("place_id") or item.get("cid") or ""),
        phone=item.get("phone") or "",
        rating=rating.get("value", item.get("rating_value")),
        review_count=rating.get("votes_count", item.get("review_count")) or 0,
        url=item.get("url") or item.get("domain") or "",
    )


async def detect_business(
    client: DataForSEOClient, domain: str, log: LogFn = log_to_logger
) -> Optional[DetectedBusiness]:
    """
    Look up the business listing whose website matches `domain`.
    Never raises: any failure is logged and returns None so the audit continues.
    """
    log(f"Detecting business for {domain}...")
    try:
        data = await client.call("business_data/business_listings/search/live", [{
            "filters": ["domain", "like", f"%{domain}%"],
            "limit": 1,
        }])
        result = ((data.get("tasks") or [{}])[0].get("result") or [{}])[0] or {}
        items = result.get("items") or []
        if not items:
            log(f"  No business listing found for {domain}", "warning")
            return None

        business = _parse_listing(items[0])
        where = f" ({business.city}, {business.region})" if business.city else ""
        log(f"  Found: {business.name}{where}", "success")
        if business.rating is not None:
            log(f"  Rating: {business.rating}/5 ({business.review_count} reviews)")
        return business

    except Exception as e:
        log(f"  Business detection failed: {e}", "warning")
        return None
