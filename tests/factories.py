"""
Builders for crawl records and a routing fake of the DataForSEO API.
"""

import json
from typing import Callable, Optional, Union

import httpx

from dfs_client import DataForSEOClient
from models import CrawledPage


def make_page(
    url: str,
    title: Optional[str] = "Roof Repair Services | Acme Roofing",
    description: Optional[str] = "Acme Roofing repairs and replaces residential roofs across the metro area.",
    h1: Optional[list[str]] = None,
    h2: Optional[list[str]] = None,
    words: int = 500,
    status: int = 200,
    checks: Optional[dict] = None,
    og: bool = True,
    duration: float = 1.0,
    **extra,
) -> CrawledPage:
    return CrawledPage.model_validate({
        "url": url,
        "status_code": status,
        "resource_type": "html",
        "meta": {
            "title": title,
            "description": description,
            "htags": {"h1": ["Roof Repair"] if h1 is None else h1, "h2": h2 or []},
            "content": {"plain_text_word_count": words, "automated_readability_index": 8},
            "social_media_tags": {"og:title": title} if og else {},
            "internal_links_count": 10,
        },
        "checks": checks or {},
        "page_timing": {"duration_time": duration},
        **extra,
    })


def envelope(tasks: list[dict]) -> dict:
    return {"status_code": 20000, "status_message": "Ok.", "tasks": tasks}


def task(result=None, status: int = 20000, cost: float = 0.0, task_id: str = "task-1", message: str = "Ok.") -> dict:
    return {"id": task_id, "status_code": status, "status_message": message, "cost": cost, "result": result}


def items_result(items: list[dict], total: Optional[int] = None) -> dict:
    return envelope([task([{"items": items, "total_items_count": total if total is not None else len(items)}])])


Route = Union[dict, httpx.Response, Callable[[Optional[list]], Union[dict, httpx.Response]]]


class FakeDataForSEO:
    """
    Routes requests by path (without the /v3/ prefix). A route is a JSON
    body, an httpx.Response, or a callable receiving the decoded request
    body. Longest matching prefix wins; unknown paths return 404.
    """

    def __init__(self, routes: dict[str, Route]):
        self.routes = routes
        self.calls: list[tuple[str, Optional[list]]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v3/")
        body = json.loads(request.content) if request.content else None
        self.calls.append((path, body))

        for route in sorted(self.routes, key=len, reverse=True):
            if path == route or path.startswith(route):
                handler = self.routes[route]
                response = handler(body) if callable(handler) else handler
                if isinstance(response, httpx.Response):
                    return response
                return httpx.Response(200, json=response)
        return httpx.Response(404, json={"error": f"no route for {path}"})

    def paths(self) -> list[str]:
        return [p for p, _ in self.calls]

    def client(self) -> DataForSEOClient:
        return DataForSEOClient("login", "password", transport=httpx.MockTransport(self.handler))


def fake_client(routes: dict[str, Route]) -> tuple[DataForSEOClient, FakeDataForSEO]:
    fake = FakeDataForSEO(routes)
    return fake.client(), fake
