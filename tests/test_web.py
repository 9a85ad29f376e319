"""
Tests for the web tools.

Pages are served by httpx.MockTransport, so redirects, status handling
and the byte limit go through the real client code without a network.
"""

from pathlib import Path

import httpx
import pytest

from crabclaw.config import ToolConfig
from crabclaw.errors import EmptyInputError, ToolExecutionError
from crabclaw.tools import builtin_registry
from crabclaw.web import WebTools, fetch_truncation_marker, html_to_markdown, normalize_url

PAGE = """
<html>
  <head><title>Docs</title><style>.foo { color: red }</style></head>
  <body>
    <header>Site header</header>
    <nav><a href="/home">Home</a></nav>
    <h1>Install</h1>
    <p>Run <code>pip install crabclaw</code> and <b>restart</b>.</p>
    <ul><li>First</li><li>Second</li></ul>
    <p>See <a href="https://example.com/more">the guide</a>.</p>
    <script>var tracking = 1;</script>
    <footer>Copyright</footer>
  </body>
</html>
"""


def _web(handler, **config: object) -> tuple[WebTools, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return WebTools(ToolConfig(**config), transport=httpx.MockTransport(record)), seen


class TestNormalizeUrl:
    def test_adds_https(self) -> None:
        assert normalize_url("  example.com/page ") == "https://example.com/page"

    def test_keeps_scheme(self) -> None:
        assert normalize_url("http://example.com") == "http://example.com"
        assert normalize_url("https://example.com") == "https://example.com"

    def test_empty(self) -> None:
        assert normalize_url("   ") is None


class TestHtmlToMarkdown:
    def test_structure_is_kept(self) -> None:
        text = html_to_markdown(PAGE)

        assert "# Install" in text
        assert "`pip install crabclaw`" in text
        assert "**restart**" in text
        assert "- First" in text
        assert "- Second" in text
        assert "[the guide](https://example.com/more)" in text

    def test_page_chrome_is_dropped(self) -> None:
        text = html_to_markdown(PAGE)

        for fragment in ("tracking", ".foo", "Site header", "Home", "Copyright"):
            assert fragment not in text

    def test_entities_are_decoded(self) -> None:
        assert html_to_markdown("<p>a &amp; b &lt;c&gt;</p>") == "a & b <c>"


class TestFetch:
    async def test_html_page(self) -> None:
        web, seen = _web(lambda request: httpx.Response(200, html=PAGE))

        text = await web.fetch("example.com/docs")

        assert "# Install" in text
        assert str(seen[0].url) == "https://example.com/docs"
        assert seen[0].headers["user-agent"] == "crabclaw/0.1"

    async def test_plain_text_is_returned_as_is(self) -> None:
        web, _ = _web(lambda request: httpx.Response(200, text="<b>not html</b>"))

        assert await web.fetch("https://example.com/raw.txt") == "<b>not html</b>"

    async def test_redirects_are_followed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "https://example.com/new"})
            return httpx.Response(200, text="moved here")

        web, seen = _web(handler)

        assert await web.fetch("https://example.com/old") == "moved here"
        assert [r.url.path for r in seen] == ["/old", "/new"]

    async def test_error_status(self) -> None:
        web, _ = _web(lambda request: httpx.Response(404, text="missing"))

        with pytest.raises(ToolExecutionError) as excinfo:
            await web.fetch("https://example.com/gone")

        assert "HTTP 404" in excinfo.value.message

    async def test_large_body_is_truncated(self) -> None:
        web, _ = _web(lambda request: httpx.Response(200, text="x" * 50), max_fetch_bytes=10)

        text = await web.fetch("https://example.com/big")

        assert text == "x" * 10 + "\n\n" + fetch_truncation_marker(10)

    async def test_empty_body(self) -> None:
        web, _ = _web(lambda request: httpx.Response(200, html="<script>only()</script>"))

        with pytest.raises(ToolExecutionError) as excinfo:
            await web.fetch("https://example.com/blank")

        assert "empty response body" in excinfo.value.message

    async def test_empty_url(self) -> None:
        web, seen = _web(lambda request: httpx.Response(200, text="unused"))

        with pytest.raises(EmptyInputError):
            await web.fetch("  ")
        assert seen == []

    async def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        web, _ = _web(handler)

        with pytest.raises(ToolExecutionError) as excinfo:
            await web.fetch("https://example.com")

        assert "connection refused" in excinfo.value.message


class TestSearch:
    def test_builds_search_url(self) -> None:
        text = WebTools().search("rust programming")

        assert "https://duckduckgo.com/?q=rust+programming" in text

    def test_empty_query(self) -> None:
        with pytest.raises(EmptyInputError):
            WebTools().search(" ")


class TestRegistry:
    async def test_web_fetch_through_registry(self, workspace: Path) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="hello from the web"))
        registry = builtin_registry(workspace, web_transport=transport)

        result = await registry.execute("web.fetch", {"url": "example.com"})

        assert result.content == "hello from the web"

    async def test_web_fetch_failure_keeps_its_kind(self, workspace: Path) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        registry = builtin_registry(workspace, web_transport=transport)

        with pytest.raises(ToolExecutionError) as excinfo:
            await registry.execute("web.fetch", {"url": "example.com"})

        assert excinfo.value.kind == "tool_execution"
        assert "HTTP 500" in excinfo.value.message
