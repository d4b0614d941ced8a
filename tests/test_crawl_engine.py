import asyncio

import httpx
import pytest

from crawl_engine import (
    ENDPOINTS,
    fetch_crawl_data,
    fetch_domain_rank_overview,
    fetch_lighthouse_result,
    poll_crawl_status,
    submit_crawl_task,
    submit_lighthouse_task,
)
from errors import ApiError, AuditCancelled, CancellationToken
from factories import envelope, fake_client, items_result, task

LIGHTHOUSE_JSON = {
    "categories": {
        "performance": {"score": 0.55},
        "accessibility": {"score": 0.91},
        "best-practices": {"score": 0.8},
        "seo": {"score": 0.92},
    },
    "audits": {"largest-contentful-paint": {"displayValue": "3.1 s"}},
}


class TestSubmit:
    def test_crawl_task_id(self):
        client, fake = fake_client({"on_page/task_post": envelope([task(status=20100, task_id="crawl-1", cost=0.0125)])})
        assert asyncio.run(submit_crawl_task(client, "acme.com", 50)) == "crawl-1"

        body = fake.calls[0][1][0]
        assert body["target"] == "acme.com"
        assert body["max_crawl_pages"] == 50
        assert body["load_resources"] and body["enable_javascript"]

    def test_crawl_task_rejected(self):
        client, _ = fake_client({
            "on_page/task_post": envelope([task(status=40200, message="Payment Required.")]),
        })
        with pytest.raises(ApiError, match="Payment Required"):
            asyncio.run(submit_crawl_task(client, "acme.com", 50))

    def test_lighthouse_falls_back_to_www(self):
        def handler(body):
            if body[0]["url"] == "https://acme.com":
                return envelope([task(status=40501, message="Invalid URL")])
            return envelope([task(status=20100, task_id="lh-www")])

        client, fake = fake_client({"on_page/lighthouse/task_post": handler})
        assert asyncio.run(submit_lighthouse_task(client, "acme.com", mobile=True)) == "lh-www"
        assert [c[1][0]["url"] for c in fake.calls] == ["https://acme.com", "https://www.acme.com"]
        assert fake.calls[0][1][0]["for_mobile"] is True

    def test_lighthouse_gives_up_without_raising(self):
        client, _ = fake_client({"on_page/lighthouse/task_post": httpx.Response(500)})
        assert asyncio.run(submit_lighthouse_task(client, "acme.com")) is None


class TestPoll:
    def test_no_result_yet_is_in_queue(self):
        client, _ = fake_client({"on_page/summary/": envelope([task(result=None)])})
        status = asyncio.run(poll_crawl_status(client, "crawl-1"))
        assert status.finished is False
        assert status.progress == "in_queue"

    def test_finished(self):
        summary = {
            "crawl_progress": "finished",
            "crawl_status": {"pages_crawled": 42, "pages_in_queue": 0, "max_crawl_pages": 100},
            "domain_info": {"ssl_info": {"valid_certificate": True}},
        }
        client, fake = fake_client({"on_page/summary/": envelope([task([summary])])})
        status = asyncio.run(poll_crawl_status(client, "crawl-1"))
        assert status.finished
        assert status.pages_crawled == 42
        assert status.summary.ssl_valid is True
        assert fake.paths() == ["on_page/summary/crawl-1"]

    def test_null_progress_is_unknown(self):
        client, _ = fake_client({"on_page/summary/": envelope([task([{"crawl_progress": None, "crawl_status": None}])])})
        status = asyncio.run(poll_crawl_status(client, "crawl-1"))
        assert status.finished is False
        assert status.progress == "unknown"
        assert status.summary.crawl_progress == "unknown"


class TestFetchCrawlData:
    def test_failed_endpoint_yields_empty_result(self):
        client, fake = fake_client({
            "on_page/pages": items_result(
                [{"url": "https://acme.com/", "status_code": 200, "meta": {"title": "Home"}}, {"status_code": 200}],
                total=250,
            ),
            "on_page/links": httpx.Response(500, json={"error": "boom"}),
            "on_page/": items_result([]),
        })
        done = []
        data = asyncio.run(fetch_crawl_data(client, "crawl-1", None, on_task_complete=done.append))

        assert [p.url for p in data.pages] == ["https://acme.com/"]
        assert data.totals["pages"] == 250
        assert data.links == []
        assert data.totals["links"] == 0
        assert data.lighthouse is None
        assert len(done) == len(ENDPOINTS) + 1
        # sequential, in declared order
        assert fake.paths() == [ep.path for ep in ENDPOINTS]
        assert fake.calls[0][1][0]["filters"] == [["resource_type", "=", "html"]]

    def test_malformed_envelopes_do_not_abort_fetch(self):
        client, fake = fake_client({
            "on_page/pages": {"status_code": 20000, "tasks": [None]},
            "on_page/resources": envelope([task(["not a result object"], cost=0.002)]),
            "on_page/": items_result([]),
        })
        data = asyncio.run(fetch_crawl_data(client, "crawl-1", None))

        assert data.pages == []
        assert data.resources == []
        assert data.totals["pages"] == 0
        assert fake.paths() == [ep.path for ep in ENDPOINTS]
        assert client.total_cost == pytest.approx(0.002)

    def test_cancellation_stops_between_endpoints(self):
        token = CancellationToken()
        client, fake = fake_client({"on_page/": items_result([])})

        with pytest.raises(AuditCancelled):
            asyncio.run(fetch_crawl_data(client, "crawl-1", "lh-1", on_task_complete=lambda name: token.cancel(), token=token))

        assert fake.paths() == ["on_page/pages"]

    def test_lighthouse_attempts_passed_through(self):
        client, fake = fake_client({
            "on_page/lighthouse/task_get/json/": envelope([task(status=20100)]),
            "on_page/": items_result([]),
        })
        data = asyncio.run(fetch_crawl_data(client, "crawl-1", "lh-1", lighthouse_interval=0, lighthouse_attempts=2))

        assert data.lighthouse is None
        assert fake.paths().count("on_page/lighthouse/task_get/json/lh-1") == 2

    def test_includes_lighthouse(self):
        client, _ = fake_client({
            "on_page/lighthouse/task_get/json/": envelope([task([LIGHTHOUSE_JSON])]),
            "on_page/": items_result([]),
        })
        data = asyncio.run(fetch_crawl_data(client, "crawl-1", "lh-1", lighthouse_interval=0))
        assert data.lighthouse.score("performance") == 0.55


class TestLighthouseResult:
    def test_polls_until_ready(self):
        responses = iter([
            envelope([task(status=20100)]),
            envelope([task(status=20200)]),
            envelope([task([{"lighthouseResult": LIGHTHOUSE_JSON}])]),
        ])
        client, fake = fake_client({"on_page/lighthouse/task_get/json/": lambda body: next(responses)})
        result = asyncio.run(fetch_lighthouse_result(client, "lh-1", interval=0))
        assert result.score("seo") == 0.92
        assert len(fake.calls) == 3

    def test_gives_up_after_max_attempts(self):
        client, fake = fake_client({"on_page/lighthouse/task_get/json/": envelope([task(status=20100)])})
        assert asyncio.run(fetch_lighthouse_result(client, "lh-1", max_attempts=3, interval=0)) is None
        assert len(fake.calls) == 3

    def test_cancellation_checked_each_attempt(self):
        token = CancellationToken()

        def still_running(body):
            token.cancel()
            return envelope([task(status=20100)])

        client, fake = fake_client({"on_page/lighthouse/task_get/json/": still_running})
        with pytest.raises(AuditCancelled):
            asyncio.run(fetch_lighthouse_result(client, "lh-1", interval=0, token=token))
        assert len(fake.calls) == 1

    def test_transport_errors_retried(self):
        responses = iter([httpx.Response(502), envelope([task([LIGHTHOUSE_JSON])])])
        client, _ = fake_client({"on_page/lighthouse/task_get/json/": lambda body: next(responses)})
        assert asyncio.run(fetch_lighthouse_result(client, "lh-1", interval=0)) is not None

    def test_envelope_error_stops(self):
        client, fake = fake_client({
            "on_page/lighthouse/task_get/json/": {"status_code": 40400, "status_message": "Not Found.", "tasks": []},
        })
        assert asyncio.run(fetch_lighthouse_result(client, "lh-1", interval=0)) is None
        assert len(fake.calls) == 1

    def test_result_without_categories(self):
        client, _ = fake_client({"on_page/lighthouse/task_get/json/": envelope([task([{"audits": {}}])])})
        assert asyncio.run(fetch_lighthouse_result(client, "lh-1", interval=0)) is None

    def test_no_task_id(self):
        client, fake = fake_client({})
        assert asyncio.run(fetch_lighthouse_result(client, None)) is None
        assert fake.calls == []


class TestDomainRank:
    def test_overview(self):
        client, fake = fake_client({
            "dataforseo_labs/google/domain_rank_overview/live": envelope([task([{
                "metrics": {"organic": {"count": 120, "etv": 830.5}, "paid": None},
            }])]),
        })
        overview = asyncio.run(fetch_domain_rank_overview(client, "acme.com"))
        assert overview.organic["count"] == 120
        assert fake.calls[0][1][0]["location_name"] == "United States"

    def test_failure_is_none(self):
        client, _ = fake_client({"dataforseo_labs/google/domain_rank_overview/live": httpx.Response(500)})
        assert asyncio.run(fetch_domain_rank_overview(client, "acme.com")) is None
