"""Unit tests for the HTML diagnostics pages."""

from __future__ import annotations

from smart_scorecard.html_report import HtmlReport


class TestHtmlReport:
    def test_page_structure(self) -> None:
        body = HtmlReport().open().echo_hash("params", {"code": "abc"}).close()
        assert body.startswith("<!DOCTYPE html>")
        assert body.endswith("</html>")
        assert "<h2>params</h2>" in body
        assert "<tr><td>code</td><td>abc</td></tr>" in body

    def test_values_are_escaped(self) -> None:
        body = HtmlReport().open().echo_hash("<b>", {"error": "<script>alert(1)</script>"}).close()
        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        assert "<h2>&lt;b&gt;</h2>" in body

    def test_rows_with_headers(self) -> None:
        report = {"vital_signs": {"points": 5, "message": "4 of 8"}, "points": 5}
        body = HtmlReport().open().echo_hash("scorecard", report, ["rubric", "points", "description"]).close()
        assert "<tr><th>rubric</th><th>points</th><th>description</th></tr>" in body
        assert "<tr><td>vital_signs</td><td>5</td><td>4 of 8</td></tr>" in body
        assert "<tr><td>points</td><td>5</td></tr>" in body

    def test_empty_mapping(self) -> None:
        body = HtmlReport().open().echo_hash("nothing", None).close()
        assert "<h2>nothing</h2>" in body
