"""Web tools: Brave search and URL fetching with readable-content extraction."""

import asyncio
import html.parser
import http.client
import ipaddress
import json
import logging
import os
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

from .errors import ToolExecutionError
from .registry import Tool, ToolContext, require_str

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
SEARCH_TIMEOUT = 10
FETCH_TIMEOUT = 30
MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
DEFAULT_MAX_CHARS = 50_000
MAX_REDIRECTS = 10

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,text/markdown,text/plain,application/json,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_TEXT_MIMES = (
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/javascript",
    "application/rss+xml",
    "application/atom+xml",
)

_BLOCK_TAGS = frozenset(
    {
        "p", "div", "br", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr",
        "blockquote", "pre", "hr", "section", "article", "header", "footer",
        "nav", "main", "table", "figure", "figcaption",
    }
)  # fmt: skip

_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg"})

WEB_SEARCH_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "Search query."},
        "count": {
            "type": "integer",
            "description": "Number of results (1-10).",
            "minimum": 1,
            "maximum": 10,
        },
    },
    "required": ["query"],
}

WEB_FETCH_SCHEMA = {
    "type": "object",
    "properties": {
        "url": {"type": "string", "description": "URL to fetch (http or https)."},
        "extract_mode": {
            "type": "string",
            "enum": ["markdown", "text"],
            "default": "markdown",
        },
        "max_chars": {"type": "integer", "minimum": 100},
    },
    "required": ["url"],
}


# -- Search ------------------------------------------------------------------


def format_search_results(query: str, data: dict, count: int) -> str:
    results = (data.get("web") or {}).get("results") or []
    if not results:
        return f"No results for: {query}"

    lines = [f"Results for: {query}"]
    for i, item in enumerate(results[:count], 1):
        lines.append(f"{i}. {item.get('title', '')}")
        lines.append(f"   {item.get('url', '')}")
        if item.get("description"):
            lines.append(f"   {item['description']}")
    return "\n".join(lines)


def search(query: str, api_key: str | None, count: int = 5) -> str:
    """Query the Brave Search API. Returns formatted results or an error sentinel."""
    if not api_key:
        return "error: BRAVE_API_KEY not configured"
    count = max(1, min(int(count), 10))

    params = urllib.parse.urlencode({"q": query, "count": count})
    req = urllib.request.Request(
        f"{BRAVE_SEARCH_URL}?{params}",
        headers={"Accept": "application/json", "X-Subscription-Token": api_key},
    )
    logger.debug("Web search: %s", query)
    try:
        with urllib.request.urlopen(req, timeout=SEARCH_TIMEOUT) as resp:
            body = resp.read(MAX_RESPONSE_SIZE)
    except urllib.error.HTTPError as e:
        return f"error: search API returned HTTP {e.code}"
    except urllib.error.URLError as e:
        return f"error: search request failed: {e.reason}"
    except (TimeoutError, OSError) as e:
        return f"error: search request failed: {e}"
    except http.client.HTTPException as e:
        return f"error: search request failed: {type(e).__name__}: {e}"

    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return "error: search API returned invalid JSON"
    if not isinstance(data, dict):
        return "error: search API returned invalid JSON"
    return format_search_results(query, data, count)


# -- Fetch -------------------------------------------------------------------


class _RedirectError(Exception):
    def __init__(self, url: str, code: int):
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


class _TextExtractor(html.parser.HTMLParser):
    """Collect visible text, breaking lines at block elements."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS and not self._skip_depth:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS and not self._skip_depth:
            self._parts.append("\n")

    def handle_data(self, data):
        if not self._skip_depth:
            self._parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._parts)
        text = re.sub(r"[^\S\n]+", " ", text)
        text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)
        return text.strip()


def html_to_text(body: str) -> str:
    parser = _TextExtractor()
    parser.feed(body)
    parser.close()
    return parser.get_text()


def html_to_markdown(body: str) -> str:
    from html_to_markdown import convert

    return convert(body)


def check_url_safety(url: str) -> str | None:
    """Return an error sentinel for non-http(s) or private-address URLs, else None."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"error: url scheme {parsed.scheme!r} is not allowed, must be http or https"
    hostname = parsed.hostname
    if not hostname:
        return "error: could not parse hostname from url"
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        return f"error: could not resolve hostname {hostname!r}: {e}"
    for _family, _, _, _, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            return f"error: url resolves to private address ({addr}), blocked"
    return None


def _decode(data: bytes, content_type: str) -> str:
    charset = None
    for part in content_type.split(";"):
        part = part.strip()
        if part.lower().startswith("charset="):
            charset = part.split("=", 1)[1].strip().strip("\"'")
            break
    for encoding in (charset, "utf-8"):
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def fetch_raw(url: str, timeout: int = FETCH_TIMEOUT):
    """GET *url*, re-checking every redirect hop.

    Returns ``(final_url, status, content_type, body_bytes)`` or an error
    sentinel string.
    """
    current = url
    opener = urllib.request.build_opener(_NoRedirectHandler)

    for _ in range(MAX_REDIRECTS + 1):
        err = check_url_safety(current)
        if err:
            return err
        req = urllib.request.Request(current, headers=HEADERS)
        try:
            resp = opener.open(req, timeout=timeout)
            break
        except _RedirectError as r:
            current = urllib.parse.urljoin(current, r.url)
        except urllib.error.HTTPError as e:
            return f"error: HTTP {e.code} {e.reason}"
        except urllib.error.URLError as e:
            return f"error: could not connect to {urllib.parse.urlparse(current).hostname}: {e.reason}"
        except TimeoutError:
            return f"error: request timed out after {timeout} seconds"
        except OSError as e:
            return f"error: could not connect to {urllib.parse.urlparse(current).hostname}: {e}"
        except http.client.HTTPException as e:
            return f"error: invalid HTTP response from {urllib.parse.urlparse(current).hostname}: {type(e).__name__}"
    else:
        return f"error: too many redirects (limit is {MAX_REDIRECTS})"

    with resp:
        content_type = resp.headers.get("Content-Type", "")
        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except TimeoutError:
            return f"error: request timed out after {timeout} seconds"
        except OSError as e:
            return f"error: failed to read response: {e}"
        except http.client.HTTPException as e:
            return f"error: failed to read response: {type(e).__name__}"
        status = getattr(resp, "status", 200)

    if len(data) > MAX_RESPONSE_SIZE:
        return f"error: response too large (limit is {MAX_RESPONSE_SIZE} bytes)"
    return current, status, content_type, data


def fetch(url: str, extract_mode: str = "markdown", max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Fetch a URL and return a JSON document describing the extracted content."""
    if extract_mode not in ("markdown", "text"):
        return f"error: invalid extract_mode {extract_mode!r}, must be 'markdown' or 'text'"
    max_chars = max(100, int(max_chars))

    logger.debug("Fetching %s (mode: %s)", url, extract_mode)
    raw = fetch_raw(url)
    if isinstance(raw, str):
        return raw
    final_url, status, content_type, data = raw

    mime = content_type.split(";")[0].strip().lower()
    if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
        return f"error: binary content (content-type: {mime}), cannot extract text"
    if b"\x00" in data[:8192]:
        return "error: binary content detected (null bytes found)"

    body = _decode(data, content_type)
    if mime == "application/json":
        text, extractor = body, "json"
    elif mime in ("text/plain", "text/markdown"):
        text, extractor = body, "raw"
    elif extract_mode == "text":
        text, extractor = html_to_text(body), "text"
    else:
        try:
            text = html_to_markdown(body)
        except Exception as e:
            return f"error: failed to convert HTML to markdown: {e}"
        extractor = "markdown"

    truncated = len(text) > max_chars
    if truncated:
        text = text[:max_chars]

    return json.dumps(
        {
            "url": url,
            "final_url": final_url,
            "status": status,
            "extractor": extractor,
            "truncated": truncated,
            "length": len(text),
            "text": text,
        },
        ensure_ascii=False,
    )


# -- Tool factories ----------------------------------------------------------


def _int_arg(tool: str, args: dict, key: str, default: int) -> int:
    value = args.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ToolExecutionError(tool, f"argument {key!r} must be an integer")
    return int(value)


def web_search_tool(api_key: str | None = None, max_results: int = 5) -> Tool:
    """Brave search. Falls back to ``BRAVE_API_KEY`` when no key is given."""
    key = api_key or os.environ.get("BRAVE_API_KEY")

    async def handler(args: dict, ctx: ToolContext) -> str:
        query = require_str("web_search", args, "query")
        count = _int_arg("web_search", args, "count", max_results)
        return await asyncio.to_thread(search, query, key, count)

    return Tool(
        "web_search",
        "Search the web. Returns titles, URLs and snippets.",
        WEB_SEARCH_SCHEMA,
        handler,
    )


def web_fetch_tool(max_chars: int = DEFAULT_MAX_CHARS) -> Tool:
    async def handler(args: dict, ctx: ToolContext) -> str:
        url = require_str("web_fetch", args, "url")
        mode = args.get("extract_mode") or "markdown"
        if not isinstance(mode, str):
            raise ToolExecutionError("web_fetch", "argument 'extract_mode' must be a string")
        limit = _int_arg("web_fetch", args, "max_chars", max_chars)
        return await asyncio.to_thread(fetch, url, mode, limit)

    return Tool(
        "web_fetch",
        "Fetch a URL and extract readable content as markdown or text.",
        WEB_FETCH_SCHEMA,
        handler,
    )
