import pytest

from factories import make_page
from keyword_extraction import (
    clean_term,
    detect_brand,
    extract_keywords_from_crawl,
    merge_keywords,
    parse_locations,
    score_terms,
    url_segments_to_text,
)
from models import ExtractedKeyword

DALLAS = "Dallas,Texas,United States"


@pytest.fixture
def pages():
    return [
        make_page("https://acme.com/", title="Acme Roofing | Roof Repair Dallas", h1=["Roof Repair"], description=None),
        make_page("https://acme.com/roof-replacement", title="Roof Replacement | Acme Roofing", h1=[], description=None),
        make_page("https://acme.com/contact", title="Contact | Acme Roofing", h1=[], description=None),
    ]


class TestBrand:
    def test_most_common_title_segment(self, pages):
        assert detect_brand(pages) == "acme roofing"

    def test_no_brand_below_threshold(self):
        pages = [
            make_page("https://a.com/1", title="Roof Repair | Acme"),
            make_page("https://a.com/2", title="Gutters | Best Co"),
            make_page("https://a.com/3", title="Siding | Other"),
        ]
        assert detect_brand(pages) == ""


class TestTerms:
    def test_location_words_and_abbreviation_collected(self):
        locations, words = parse_locations([DALLAS])
        assert locations[0].city == "Dallas"
        assert {"dallas", "texas", "tx"} <= words

    def test_clean_term_strips_brand_and_location(self):
        assert clean_term("Acme Roofing: Roof Repair Dallas TX", {"dallas", "tx"}, "acme roofing") == "roof repair"

    def test_url_segments_humanized(self):
        assert url_segments_to_text("https://acme.com/services/roof-repair.html") == ["services", "roof repair"]

    def test_weights_accumulate_and_generic_terms_dropped(self, pages):
        _, words = parse_locations([DALLAS])
        terms = score_terms(pages, words, "acme roofing")
        assert terms == [("roof repair", 5.5), ("roof replacement", 4.0)]


class TestExtraction:
    def test_tiers_and_ordering(self, pages):
        keywords = extract_keywords_from_crawl(pages, [DALLAS], "acme.com")

        assert keywords[0] == ExtractedKeyword(keyword="roof repair near me", score=8.25, type="near_me")
        by_text = {k.keyword: k for k in keywords}
        assert by_text["roof repair dallas"].type == "local"
        assert by_text["roof repair dallas"].score == pytest.approx(7.15)
        assert by_text["roof repair in dallas"].score == pytest.approx(3.85)
        assert by_text["emergency roof repair"].type == "modifier"
        assert by_text["acme roofing"].type == "branded"
        assert by_text["acme roofing dallas"].score == 3
        assert len(keywords) == 26

        scores = [k.score for k in keywords]
        assert scores == sorted(scores, reverse=True)

    def test_deterministic(self, pages):
        first = extract_keywords_from_crawl(pages, [DALLAS, "Plano,Texas,United States"], "acme.com")
        second = extract_keywords_from_crawl(pages, [DALLAS, "Plano,Texas,United States"], "acme.com")
        assert first == second

    def test_secondary_city_tiers(self, pages):
        keywords = extract_keywords_from_crawl(pages, [DALLAS, "Plano,Texas,United States"], "acme.com")
        texts = {k.keyword for k in keywords}
        assert "roof repair plano" in texts
        assert "roof repair plano tx" in texts
        assert "roof repair in plano" in texts

    def test_no_markets_skips_city_tiers(self, pages):
        keywords = extract_keywords_from_crawl(pages, [], "acme.com")
        assert not any(k.type == "local" for k in keywords)

    def test_empty_crawl(self):
        assert extract_keywords_from_crawl([], [DALLAS], "acme.com") == []


class TestMerge:
    def test_highest_score_wins_on_duplicates(self):
        merged = merge_keywords([
            ExtractedKeyword(keyword="Roof Repair", score=2, type="service"),
            ExtractedKeyword(keyword="roof repair", score=5, type="near_me"),
            ExtractedKeyword(keyword="ab", score=9, type="service"),
        ])
        assert merged == [ExtractedKeyword(keyword="roof repair", score=5, type="near_me")]

    def test_ties_keep_generation_order(self):
        merged = merge_keywords([
            ExtractedKeyword(keyword="gutters", score=3, type="service"),
            ExtractedKeyword(keyword="siding", score=3, type="service"),
        ])
        assert [k.keyword for k in merged] == ["gutters", "siding"]

    def test_capped(self):
        candidates = [ExtractedKeyword(keyword=f"term {i}", score=i, type="service") for i in range(150)]
        merged = merge_keywords(candidates)
        assert len(merged) == 100
        assert len({k.keyword for k in merged}) == 100
