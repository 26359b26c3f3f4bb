"""Tests for upload parsing."""

from chunkflow.ingest import parse_payloads


def test_csv_with_url_column():
    """The url column is used regardless of position or case."""
    text = "name,URL\nAcme,https://acme.com\nGlobex,https://globex.com\n"
    assert parse_payloads(text) == ["https://acme.com", "https://globex.com"]


def test_plain_lines():
    """Without a url header every non-blank line is a payload."""
    text = "https://a.com\n\nhttps://b.com\n   \n"
    assert parse_payloads(text) == ["https://a.com", "https://b.com"]


def test_blank_url_cells_skipped():
    """Rows with an empty url are ignored."""
    text = "url,note\nhttps://a.com,x\n,missing\nhttps://b.com\n"
    assert parse_payloads(text) == ["https://a.com", "https://b.com"]


def test_empty_input():
    """Empty files produce no payloads."""
    assert parse_payloads("") == []
    assert parse_payloads("url\n") == []
