import pytest

from cannibalization import compute_severity, detect_cannibalization_conflicts, is_wrong_page_winning
from classifiers import classify_conflict_type, classify_keyword_intent, classify_url_type
from models import MarketData, MarketKeywordItem, SerpMatch

DALLAS = "Dallas,Texas,United States"


class TestUrlType:
    @pytest.mark.parametrize("url, expected", [
        ("https://acme.com/", "homepage"),
        ("https://acme.com/index.html", "homepage"),
        ("https://acme.com/contact-us", "contact"),
        ("https://acme.com/about", "about"),
        ("https://acme.com/blog/roof-tips", "blog"),
        ("https://acme.com/2024/02/storm-season", "blog"),
        ("https://acme.com/how-to-spot-hail-damage", "blog"),
        ("https://acme.com/locations/plano", "location"),
        ("https://acme.com/roof-repair-in-plano", "location"),
        ("https://acme.com/plano-tx", "location"),
        ("https://acme.com/services/roof-repair", "service"),
        ("https://acme.com/roof-repair", "service"),
        ("https://acme.com/privacy-policy", "other"),
    ])
    def test_classification(self, url, expected):
        assert classify_url_type(url) == expected


class TestIntent:
    @pytest.mark.parametrize("keyword, expected", [
        ("acme roofing reviews", "branded"),
        ("how to fix a leaking roof", "informational"),
        ("roof repair cost", "commercial"),
        ("roof repair near me", "local-commercial"),
        ("roof repair dallas", "local-commercial"),
        ("hire a roofer", "commercial"),
        ("roof repair", "commercial"),
    ])
    def test_classification(self, keyword, expected):
        assert classify_keyword_intent(keyword, "acme.com", [DALLAS]) == expected


class TestConflictType:
    def test_pair_is_unordered(self):
        assert classify_conflict_type("homepage", "service").type == "Homepage Authority Hogging"
        assert classify_conflict_type("service", "homepage").type == "Homepage Authority Hogging"

    def test_same_type_pair(self):
        assert classify_conflict_type("location", "location").type == "City Pages Cannibalizing Each Other"

    def test_fallback(self):
        conflict = classify_conflict_type("faq", "gallery")
        assert conflict.type == "Page Conflict"
        assert "faq" in conflict.description


class TestSeverity:
    def test_wrong_page_winning(self):
        assert is_wrong_page_winning("homepage", "service", "commercial")
        assert is_wrong_page_winning("blog", "homepage", "local-commercial")
        assert not is_wrong_page_winning("homepage", "service", "informational")
        assert not is_wrong_page_winning("service", "blog", "commercial")

    def test_levels(self):
        assert compute_severity(250, 8, True) == "critical"
        assert compute_severity(600, 15, False) == "critical"
        assert compute_severity(50, 8, False) == "high"
        assert compute_severity(150, 14, False) == "high"
        assert compute_severity(20, 14, False) == "medium"


def match(path, position):
    return SerpMatch(url=f"https://acme.com{path}", path=path, position=position)


class TestDetectConflicts:
    def test_conflicts_from_cannibalized_items(self):
        markets = {DALLAS: MarketData(items=[
            MarketKeywordItem(
                keyword="roof repair dallas",
                keyword_info={"search_volume": 300, "cpc": 12.5},
                position=2,
                is_cannibalized=True,
                serp_matches=[match("/services/roof-repair", 6), match("/", 2)],
            ),
            MarketKeywordItem(
                keyword="gutter guards",
                keyword_info={"search_volume": 40},
                position=12,
                is_cannibalized=True,
                serp_matches=[match("/blog/gutter-guards", 12), match("/blog/best-gutter-guards", 18)],
            ),
            MarketKeywordItem(keyword="siding", position=4, serp_matches=[match("/siding", 4)]),
        ])}

        conflicts = detect_cannibalization_conflicts(markets, "acme.com", [DALLAS])

        assert [c.keyword for c in conflicts] == ["roof repair dallas", "gutter guards"]
        top = conflicts[0]
        assert top.primary.path == "/"
        assert top.primary_type == "homepage"
        assert top.competitor_type == "service"
        assert top.intent == "local-commercial"
        assert top.wrong_page_winning is True
        assert top.severity == "critical"
        assert top.position_gap == 4
        assert top.cpc == 12.5
        assert top.conflict_type == "Homepage Authority Hogging"

        blog = conflicts[1]
        assert blog.conflict_type == "Blog Posts Competing"
        assert blog.severity == "medium"

    def test_sorted_by_severity_then_volume(self):
        def item(keyword, volume):
            return MarketKeywordItem(
                keyword=keyword,
                keyword_info={"search_volume": volume},
                is_cannibalized=True,
                serp_matches=[match("/services/a", 15), match("/services/b", 19)],
            )

        markets = {DALLAS: MarketData(items=[item("small", 120), item("big", 900), item("mid", 300)])}
        conflicts = detect_cannibalization_conflicts(markets, "acme.com")
        assert [c.keyword for c in conflicts] == ["big", "mid", "small"]
        assert [c.severity for c in conflicts] == ["critical", "high", "high"]
