"""Tests for page content extraction."""

from unittest.mock import patch

from scraper.content_extractor import body_text, extract_content


class TestExtractContent:
    """Test suite for extract_content."""

    def test_head_fields(self, sample_html):
        content = extract_content(sample_html, "https://example.com/")

        assert content.title == "Acme Corp | Cloud Consulting"
        assert content.meta_description == "Acme Corp helps teams move to the cloud."
        assert content.canonical_url == "/home/"
        assert content.author == "Acme Marketing"
        assert content.language == "en"

    def test_headings_by_level(self, sample_html):
        content = extract_content(sample_html, "https://example.com/")

        assert content.headings == {
            "h1": ["Welcome to Acme"],
            "h2": ["Our Services"],
            "h3": ["Product Catalog"],
        }

    def test_malformed_json_ld_blocks_are_skipped(self, sample_html):
        content = extract_content(sample_html, "https://example.com/")

        assert len(content.json_ld) == 1
        assert content.json_ld[0]["name"] == "Acme Corp"

    def test_metadata_blob(self, sample_html):
        metadata = extract_content(sample_html, "https://example.com/").metadata

        assert set(metadata) == {"headings", "jsonLd", "author", "language"}
        assert metadata["jsonLd"][0]["@type"] == "Organization"

    def test_main_text_extracted(self, sample_html):
        content = extract_content(sample_html, "https://example.com/")

        assert content.text_content
        assert "Acme" in content.text_content

    def test_falls_back_to_body_text_when_readability_finds_nothing(self, sample_html):
        with patch("scraper.content_extractor.trafilatura.extract", return_value=None):
            content = extract_content(sample_html, "https://example.com/")

        assert "cloud consulting to enterprise customers" in content.text_content
        assert "Site header text" not in content.text_content
        assert "Footer text" not in content.text_content
        assert "Consulting Services" not in content.text_content

    def test_falls_back_when_readability_raises(self, sample_html):
        with patch("scraper.content_extractor.trafilatura.extract", side_effect=ValueError("boom")):
            content = extract_content(sample_html, "https://example.com/")

        assert "Welcome to Acme" in content.text_content

    def test_language_from_content_language_meta(self):
        html = '<html><head><meta http-equiv="content-language" content="de"></head><body></body></html>'
        assert extract_content(html, "https://example.com/").language == "de"

    def test_empty_document(self):
        content = extract_content("<html><body></body></html>", "https://example.com/")

        assert content.title is None
        assert content.canonical_url is None
        assert content.text_content is None
        assert content.json_ld == []


def test_body_text_collapses_whitespace():
    html = "<body><script>x()</script><p>one\n\n   two</p><aside>skip</aside></body>"
    assert body_text(html) == "one two"
