from factories import make_page
from issue_detection import (
    DetailedIssue,
    count_by_severity,
    generate_detailed_issues,
    generate_quick_wins,
    quick_win_fixes,
)
from models import (
    CrawlData,
    CrawledLink,
    CrawledResource,
    DuplicateTag,
    NonIndexablePage,
    RedirectChain,
)


def issues_by_title(data: CrawlData) -> dict[str, DetailedIssue]:
    return {i.title: i for i in generate_detailed_issues(data)}


def issue(title, severity="warning", impact=3, effort="easy", category="Meta") -> DetailedIssue:
    return DetailedIssue(
        severity=severity, category=category, title=title, impact=impact, effort=effort,
        count=1, time_min=5, why="", fix="", urls=[],
    )


class TestRules:
    def test_clean_site_has_no_issues(self):
        pages = [make_page("https://acme.com/"), make_page("https://acme.com/roof-repair")]
        assert generate_detailed_issues(CrawlData(pages=pages)) == []

    def test_broken_links_carry_source(self):
        data = CrawlData(links=[
            CrawledLink(link_from="https://acme.com/", link_to="https://acme.com/gone", page_to_status_code=404),
            CrawledLink(link_from="https://acme.com/", link_to="https://acme.com/ok", status_code=200),
        ])
        broken = issues_by_title(data)["Broken Links Detected"]
        assert broken.count == 1
        assert broken.urls[0].url == "https://acme.com/gone"
        assert broken.urls[0].source == "https://acme.com/"
        assert broken.urls[0].status == 404

    def test_http_pages_are_critical(self):
        data = CrawlData(pages=[make_page("http://acme.com/", checks={"is_http": True})])
        found = issues_by_title(data)["Insecure Pages (HTTP)"]
        assert found.severity == "critical"
        assert found.category == "Security"

    def test_non_indexable_ignores_archive_pages(self):
        data = CrawlData(non_indexable=[
            NonIndexablePage(url="https://acme.com/services"),
            NonIndexablePage(url="https://acme.com/tag/roofing"),
            NonIndexablePage(url="https://acme.com/?p=12"),
        ])
        blocked = issues_by_title(data)["Important Pages Blocked from Indexing"]
        assert [u.url for u in blocked.urls] == ["https://acme.com/services"]

    def test_duplicate_titles_accept_both_type_names(self):
        data = CrawlData(duplicate_tags=[
            DuplicateTag(type="duplicate_title", accumulator="Home", total_count=3),
            DuplicateTag(type="title", accumulator="Roofing", total_count=2),
            DuplicateTag(type="description", accumulator="We fix roofs", total_count=2),
        ])
        found = issues_by_title(data)
        assert found["Duplicate Page Titles"].count == 2
        assert found["Duplicate Meta Descriptions"].count == 1

    def test_long_redirect_chains_split_from_short(self):
        def chain(n):
            return RedirectChain(chain=[{"url": f"https://acme.com/{i}"} for i in range(n)])

        only_long = issues_by_title(CrawlData(redirect_chains=[chain(4)]))
        assert only_long["Long Redirect Chains (3+ hops)"].urls[0].url == "/0 → /1 → /2 → /3"
        assert "Redirect Chains Detected" not in only_long

        mixed = issues_by_title(CrawlData(redirect_chains=[chain(4), chain(2)]))
        assert mixed["Redirect Chains Detected"].count == 2

    def test_missing_og_only_when_some_pages_have_it(self):
        none_have = CrawlData(pages=[make_page("https://acme.com/", og=False), make_page("https://acme.com/a", og=False)])
        assert "Missing Open Graph / Social Meta Tags" not in issues_by_title(none_have)

        some_have = CrawlData(pages=[make_page("https://acme.com/", og=False), make_page("https://acme.com/a")])
        assert issues_by_title(some_have)["Missing Open Graph / Social Meta Tags"].count == 1

    def test_deep_pages_suppressed_by_orphans(self):
        deep = make_page("https://acme.com/a/b/c/d/e", click_depth=6)
        assert "Pages Buried Too Deep (4+ Clicks)" in issues_by_title(CrawlData(pages=[deep]))

        orphan = make_page("https://acme.com/lost", checks={"is_orphan_page": True})
        assert "Pages Buried Too Deep (4+ Clicks)" not in issues_by_title(CrawlData(pages=[deep, orphan]))

    def test_thin_content_tiers(self):
        data = CrawlData(pages=[
            make_page("https://acme.com/a", words=50),
            make_page("https://acme.com/b", words=200),
            make_page("https://acme.com/c", words=200, status=301),
        ])
        found = issues_by_title(data)
        assert found["Very Thin Content (Under 100 Words)"].count == 1
        assert found["Thin Content Pages (100–300 Words)"].count == 1

    def test_skipped_heading_level(self):
        page = make_page("https://acme.com/", h2=[])
        page.meta.htags["h3"] = ["Detail"]
        assert "Broken Heading Hierarchy (Skipped Levels)" in issues_by_title(CrawlData(pages=[page]))

    def test_image_size_bands(self):
        data = CrawlData(resources=[
            CrawledResource(url="a.jpg", resource_type="image", size=300_000),
            CrawledResource(url="b.jpg", resource_type="image", size=900_000),
            CrawledResource(url="c.jpg", resource_type="image", size=50_000),
        ])
        found = issues_by_title(data)
        assert [u.url for u in found["Oversized Images (200-500KB)"].urls] == ["a.jpg"]
        assert [u.url for u in found["Very Large Images (>500KB)"].urls] == ["b.jpg"]

    def test_url_list_capped(self):
        pages = [make_page(f"https://acme.com/{i}", title=None) for i in range(80)]
        missing = issues_by_title(CrawlData(pages=pages))["Missing Page Titles"]
        assert missing.count == 80
        assert len(missing.urls) == 50


class TestQuickWins:
    def test_filter_and_order(self):
        issues = [
            issue("hard one", impact=5, effort="hard"),
            issue("low impact", impact=2),
            issue("medium five", impact=5, effort="medium"),
            issue("easy five", impact=5, effort="easy"),
            issue("easy three", impact=3),
        ]
        wins = generate_quick_wins(issues)
        assert [w.issue.title for w in wins] == ["easy five", "medium five", "easy three"]
        assert [w.score_delta for w in wins] == [15, 15, 9]

    def test_fixes_map_to_score_categories(self):
        wins = generate_quick_wins([issue("x", category="Links", impact=4)])
        fixes = quick_win_fixes(wins)
        assert fixes[0].category == "links"
        assert fixes[0].score_impact == 12

    def test_count_by_severity(self):
        counts = count_by_severity([issue("a", severity="critical"), issue("b"), issue("c")])
        assert counts == {"critical": 1, "warning": 2, "notice": 0}
