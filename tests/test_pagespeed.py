import asyncio

import httpx

from pagespeed import PSI_CATEGORIES, fetch_pagespeed, parse_pagespeed_response

PSI_RESPONSE = {
    "lighthouseResult": {
        "categories": {
            "performance": {"score": 0.875},
            "accessibility": {"score": 0.9},
            "best-practices": {"score": 1},
            "seo": {"score": None},
        },
        "audits": {
            "largest-contentful-paint": {"displayValue": "4.2 s"},
            "server-response-time": {"displayValue": "Root document took 620 ms"},
        },
    },
    "loadingExperience": {
        "overall_category": "AVERAGE",
        "metrics": {
            "LARGEST_CONTENTFUL_PAINT_MS": {
                "percentile": 2900, "category": "AVERAGE",
                "distributions": [{"min": 0, "max": 2500, "proportion": 0.7}],
            },
            "CUMULATIVE_LAYOUT_SHIFT_SCORE": {"percentile": 0, "category": "FAST"},
        },
    },
    "originLoadingExperience": {
        "overall_category": "FAST",
        "metrics": {"INTERACTION_TO_NEXT_PAINT": {"percentile": 180, "category": "FAST"}},
    },
}


class TestParse:
    def test_scores_audits_and_field_data(self):
        result = parse_pagespeed_response(PSI_RESPONSE, "https://acme.com", "mobile")

        assert result.scores.model_dump() == {
            "performance": 88, "accessibility": 90, "best_practices": 100, "seo": 0,
        }
        assert result.audits["largest-contentful-paint"] == "4.2 s"
        assert result.audits["speed-index"] is None

        lcp = result.field_data.metrics["LARGEST_CONTENTFUL_PAINT_MS"]
        assert lcp.percentile == 2900
        assert lcp.distributions[0]["proportion"] == 0.7
        # a zero percentile carries no signal and is dropped
        assert "CUMULATIVE_LAYOUT_SHIFT_SCORE" not in result.field_data.metrics
        assert result.origin_field_data.overall_category == "FAST"

    def test_missing_sections(self):
        result = parse_pagespeed_response({}, "https://acme.com", "desktop")
        assert result.scores is None
        assert result.field_data is None
        assert result.audits == {}


class TestFetch:
    def test_requests_all_categories(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = request.url.params
            return httpx.Response(200, json=PSI_RESPONSE)

        result = asyncio.run(fetch_pagespeed(
            "https://acme.com", "desktop", api_key="k", transport=httpx.MockTransport(handler),
        ))

        assert result.strategy == "desktop"
        assert seen["params"].get_list("category") == PSI_CATEGORIES
        assert seen["params"]["key"] == "k"
        assert seen["params"]["strategy"] == "desktop"

    def test_quota_exceeded_is_none(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(429))
        assert asyncio.run(fetch_pagespeed("https://acme.com", api_key="", transport=transport)) is None

    def test_transport_failure_is_none(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        assert asyncio.run(fetch_pagespeed("https://acme.com", api_key="", transport=httpx.MockTransport(handler))) is None
