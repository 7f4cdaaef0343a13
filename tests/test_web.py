"""Tests for web.py: Brave search and URL fetching."""

import asyncio
import http.client
import json
import socket
import urllib.error
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest

from opensam.errors import ToolExecutionError
from opensam.web import (
    BRAVE_SEARCH_URL,
    MAX_RESPONSE_SIZE,
    _RedirectError,
    check_url_safety,
    fetch,
    format_search_results,
    html_to_text,
    search,
    web_fetch_tool,
    web_search_tool,
)

PUBLIC_DNS = [(2, 1, 0, "", ("93.184.216.34", 0))]


def _make_response(body: bytes, content_type="text/html; charset=utf-8", status=200):
    resp = MagicMock()
    resp.read.return_value = body
    resp.headers = http.client.HTTPMessage()
    resp.headers["Content-Type"] = content_type
    resp.status = status
    return resp


def _opener_returning(resp):
    opener = MagicMock()
    opener.open.return_value = resp
    return opener


# =========================================================================
# web_search
# =========================================================================


SEARCH_PAYLOAD = {
    "web": {
        "results": [
            {"title": "Python", "url": "https://python.org", "description": "Home"},
            {"title": "PyPI", "url": "https://pypi.org"},
            {"title": "Docs", "url": "https://docs.python.org", "description": "Docs"},
        ]
    }
}


class TestSearch:
    def test_missing_api_key_is_sentinel(self):
        assert search("python", None) == "error: BRAVE_API_KEY not configured"

    @patch("opensam.web.urllib.request.urlopen")
    def test_formats_results(self, mock_urlopen):
        resp = MagicMock()
        resp.read.return_value = json.dumps(SEARCH_PAYLOAD).encode()
        mock_urlopen.return_value.__enter__.return_value = resp

        result = search("python", "key", count=2)
        assert result == (
            "Results for: python\n"
            "1. Python\n   https://python.org\n   Home\n"
            "2. PyPI\n   https://pypi.org"
        )

        req = mock_urlopen.call_args[0][0]
        assert req.full_url.startswith(BRAVE_SEARCH_URL)
        assert "count=2" in req.full_url
        assert req.get_header("X-subscription-token") == "key"

    @patch("opensam.web.urllib.request.urlopen")
    def test_count_is_clamped(self, mock_urlopen):
        resp = MagicMock()
        resp.read.return_value = b"{}"
        mock_urlopen.return_value.__enter__.return_value = resp

        search("q", "key", count=50)
        assert "count=10" in mock_urlopen.call_args[0][0].full_url
        search("q", "key", count=0)
        assert "count=1" in mock_urlopen.call_args[0][0].full_url

    @patch("opensam.web.urllib.request.urlopen")
    def test_http_error_is_sentinel(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.HTTPError(
            BRAVE_SEARCH_URL, 429, "Too Many Requests", None, BytesIO()
        )
        assert search("q", "key") == "error: search API returned HTTP 429"

    @patch("opensam.web.urllib.request.urlopen")
    def test_network_error_is_sentinel(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError("no route")
        assert search("q", "key").startswith("error: search request failed")

    @patch("opensam.web.urllib.request.urlopen")
    def test_malformed_http_response_is_sentinel(self, mock_urlopen):
        mock_urlopen.side_effect = http.client.LineTooLong("header line")
        assert search("q", "key").startswith("error: search request failed: LineTooLong")

    @patch("opensam.web.urllib.request.urlopen")
    def test_truncated_body_is_sentinel(self, mock_urlopen):
        resp = MagicMock()
        resp.read.side_effect = http.client.IncompleteRead(b"", 10)
        mock_urlopen.return_value.__enter__.return_value = resp
        assert search("q", "key").startswith("error: search request failed: IncompleteRead")

    def test_no_results(self):
        assert format_search_results("zzz", {}, 5) == "No results for: zzz"

    def test_tool_falls_back_to_env_key(self, monkeypatch):
        monkeypatch.setenv("BRAVE_API_KEY", "from-env")
        with patch("opensam.web.search", return_value="ok") as mock_search:
            result = asyncio.run(web_search_tool().execute({"query": "q"}))
        assert result == "ok"
        mock_search.assert_called_once_with("q", "from-env", 5)

    def test_tool_without_any_key(self, monkeypatch):
        monkeypatch.delenv("BRAVE_API_KEY", raising=False)
        result = asyncio.run(web_search_tool().execute({"query": "q"}))
        assert result == "error: BRAVE_API_KEY not configured"

    def test_tool_rejects_non_integer_count(self):
        with pytest.raises(ToolExecutionError):
            asyncio.run(web_search_tool(api_key="k").execute({"query": "q", "count": "3"}))


# =========================================================================
# URL safety
# =========================================================================


class TestUrlSafety:
    def test_rejects_non_http_schemes(self):
        for url in ("ftp://example.com", "file:///etc/passwd", "javascript:alert(1)"):
            result = check_url_safety(url)
            assert result is not None and "not allowed" in result

    @pytest.mark.parametrize(
        "addr",
        ["127.0.0.1", "10.0.0.1", "192.168.1.1", "172.16.0.1", "169.254.169.254"],
    )
    def test_blocks_private_addresses(self, addr):
        with patch("opensam.web.socket.getaddrinfo", return_value=[(2, 1, 0, "", (addr, 0))]):
            result = check_url_safety("http://somewhere.example")
        assert result is not None
        assert "private address" in result

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    def test_allows_public_address(self, mock_dns):
        assert check_url_safety("https://example.com") is None

    @patch("opensam.web.socket.getaddrinfo")
    def test_dns_failure(self, mock_dns):
        mock_dns.side_effect = socket.gaierror("Name or service not known")
        assert "could not resolve" in check_url_safety("http://nonexistent.invalid")


# =========================================================================
# fetch
# =========================================================================


class TestHtmlToText:
    def test_strips_script_and_style(self):
        text = html_to_text(
            "<style>body{}</style><script>alert('x')</script><p>visible &amp; kept</p>"
        )
        assert text == "visible & kept"

    def test_block_elements_break_lines(self):
        assert html_to_text("<div>first</div><div>second</div>") == "first\n\nsecond"


class TestFetch:
    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_text_mode_returns_json_document(self, mock_opener_factory, mock_dns):
        body = b"<html><body><p>Hello</p><script>evil()</script></body></html>"
        mock_opener_factory.return_value = _opener_returning(_make_response(body))

        doc = json.loads(fetch("http://example.com", extract_mode="text"))
        assert doc == {
            "url": "http://example.com",
            "final_url": "http://example.com",
            "status": 200,
            "extractor": "text",
            "truncated": False,
            "length": 5,
            "text": "Hello",
        }

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_markdown_mode(self, mock_opener_factory, mock_dns):
        body = b"<html><body><h1>Title</h1><p>Paragraph</p></body></html>"
        mock_opener_factory.return_value = _opener_returning(_make_response(body))

        doc = json.loads(fetch("http://example.com"))
        assert doc["extractor"] == "markdown"
        assert "Title" in doc["text"]
        assert "Paragraph" in doc["text"]

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_json_passes_through(self, mock_opener_factory, mock_dns):
        resp = _make_response(b'{"a": 1}', content_type="application/json")
        mock_opener_factory.return_value = _opener_returning(resp)

        doc = json.loads(fetch("http://example.com/api"))
        assert doc["extractor"] == "json"
        assert doc["text"] == '{"a": 1}'

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_truncated_at_max_chars(self, mock_opener_factory, mock_dns):
        resp = _make_response(b"x" * 500, content_type="text/plain")
        mock_opener_factory.return_value = _opener_returning(resp)

        doc = json.loads(fetch("http://example.com", max_chars=100))
        assert doc["truncated"] is True
        assert doc["length"] == 100
        assert doc["text"] == "x" * 100

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_binary_content_rejected(self, mock_opener_factory, mock_dns):
        resp = _make_response(b"\x89PNG", content_type="image/png")
        mock_opener_factory.return_value = _opener_returning(resp)

        result = fetch("http://example.com/a.png")
        assert result.startswith("error: binary content")

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_oversized_response_rejected(self, mock_opener_factory, mock_dns):
        resp = _make_response(b"a" * (MAX_RESPONSE_SIZE + 1), content_type="text/plain")
        mock_opener_factory.return_value = _opener_returning(resp)

        assert fetch("http://example.com").startswith("error: response too large")

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_http_error_status(self, mock_opener_factory, mock_dns):
        opener = MagicMock()
        opener.open.side_effect = urllib.error.HTTPError(
            "http://example.com", 404, "Not Found", None, BytesIO()
        )
        mock_opener_factory.return_value = opener

        assert fetch("http://example.com") == "error: HTTP 404 Not Found"

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_incomplete_read_is_sentinel(self, mock_opener_factory, mock_dns):
        resp = _make_response(b"")
        resp.read.side_effect = http.client.IncompleteRead(b"partial", 100)
        mock_opener_factory.return_value = _opener_returning(resp)

        assert fetch("http://example.com") == "error: failed to read response: IncompleteRead"

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_bad_status_line_is_sentinel(self, mock_opener_factory, mock_dns):
        opener = MagicMock()
        opener.open.side_effect = http.client.BadStatusLine("garbage")
        mock_opener_factory.return_value = opener

        result = fetch("http://example.com")
        assert result == "error: invalid HTTP response from example.com: BadStatusLine"

    @patch("opensam.web.socket.getaddrinfo")
    @patch("opensam.web.urllib.request.build_opener")
    def test_redirect_to_private_blocked(self, mock_opener_factory, mock_dns):
        def dns(hostname, *args, **kwargs):
            if hostname == "127.0.0.1":
                return [(2, 1, 0, "", ("127.0.0.1", 0))]
            return PUBLIC_DNS

        mock_dns.side_effect = dns
        opener = MagicMock()
        opener.open.side_effect = _RedirectError("http://127.0.0.1/secret", 302)
        mock_opener_factory.return_value = opener

        result = fetch("http://public.example")
        assert result.startswith("error:")
        assert "private address" in result

    @patch("opensam.web.socket.getaddrinfo", return_value=PUBLIC_DNS)
    @patch("opensam.web.urllib.request.build_opener")
    def test_redirect_followed_and_reported(self, mock_opener_factory, mock_dns):
        opener = MagicMock()
        opener.open.side_effect = [
            _RedirectError("/moved", 301),
            _make_response(b"done", content_type="text/plain"),
        ]
        mock_opener_factory.return_value = opener

        doc = json.loads(fetch("http://example.com/start"))
        assert doc["url"] == "http://example.com/start"
        assert doc["final_url"] == "http://example.com/moved"

    def test_invalid_extract_mode(self):
        assert fetch("http://example.com", extract_mode="pdf").startswith("error:")

    def test_tool_requires_url(self):
        with pytest.raises(ToolExecutionError):
            asyncio.run(web_fetch_tool().execute({}))
