"""
Web tools: web.fetch and web.search.

web.fetch downloads one page with httpx and returns it as text. HTML is
reduced to a markdown-like rendering with BeautifulSoup: page chrome
(scripts, styles, navigation, headers and footers) is dropped, while
headings, list items, emphasis, code and links keep a light markup.
Bodies larger than the configured byte limit are cut off with a marker.

web.search does not call a search engine. It returns a DuckDuckGo URL
the model can pass to web.fetch.
"""

import logging
import re
from urllib.parse import quote_plus

import httpx
from bs4 import BeautifulSoup

from crabclaw.config import ToolConfig
from crabclaw.errors import EmptyInputError, ToolExecutionError

logger = logging.getLogger(__name__)

USER_AGENT = "crabclaw/0.1"
MAX_REDIRECTS = 5
NOISE_TAGS = ["script", "style", "nav", "footer", "header", "noscript"]
PARAGRAPH_TAGS = ["p", "div", "section", "article", "table", "tr"]

_SPACES = re.compile(r"[ \t\xa0]+")
_BLANK_RUNS = re.compile(r"\n{3,}")


def normalize_url(raw: str) -> str | None:
    """Strip whitespace and default to https. None for an empty URL."""
    url = raw.strip()
    if not url:
        return None
    if url.startswith(("http://", "https://")):
        return url
    return f"https://{url}"


def fetch_truncation_marker(limit: int) -> str:
    return f"[truncated: response exceeded {limit} bytes]"


def html_to_markdown(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(NOISE_TAGS):
        # Nested noise goes with its ancestor.
        if not tag.decomposed:
            tag.decompose()

    for level in range(1, 7):
        for tag in soup.find_all(f"h{level}"):
            tag.insert_before(f"\n\n{'#' * level} ")
            tag.insert_after("\n\n")
    for tag in soup.find_all("li"):
        tag.insert_before("\n- ")
    for tag in soup.find_all(["strong", "b"]):
        tag.insert_before("**")
        tag.insert_after("**")
    for tag in soup.find_all(["em", "i"]):
        tag.insert_before("*")
        tag.insert_after("*")
    for tag in soup.find_all("pre"):
        tag.insert_before("\n```\n")
        tag.insert_after("\n```\n")
    for tag in soup.find_all("code"):
        if tag.find_parent("pre") is None:
            tag.insert_before("`")
            tag.insert_after("`")
    for tag in soup.find_all("a", href=True):
        tag.insert_before("[")
        tag.insert_after(f"]({tag['href']})")
    for tag in soup.find_all("br"):
        tag.replace_with("\n")
    for tag in soup.find_all("hr"):
        tag.replace_with("\n---\n")
    for tag in soup.find_all(PARAGRAPH_TAGS):
        tag.insert_before("\n\n")
        tag.insert_after("\n\n")

    lines = [_SPACES.sub(" ", line).strip() for line in soup.get_text().splitlines()]
    return _BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()


class WebTools:
    """HTTP access for the model. One short-lived client per request."""

    def __init__(
        self,
        config: ToolConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ToolConfig()
        self.transport = transport

    async def fetch(self, url: str) -> str:
        target = normalize_url(url)
        if target is None:
            raise EmptyInputError("url must not be empty", tool="web.fetch")

        limit = self.config.max_fetch_bytes
        logger.info(f"Fetching {target}")
        try:
            async with httpx.AsyncClient(
                timeout=self.config.web_timeout,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                headers={"User-Agent": USER_AGENT},
                transport=self.transport,
            ) as client:
                async with client.stream("GET", target) as response:
                    if not response.is_success:
                        raise ToolExecutionError(
                            f"HTTP {response.status_code} for {target}",
                            url=target,
                            status=response.status_code,
                        )
                    content_type = response.headers.get("content-type", "").lower()
                    encoding = response.encoding or "utf-8"
                    body = bytearray()
                    truncated = False
                    async for chunk in response.aiter_bytes():
                        body.extend(chunk)
                        if len(body) > limit:
                            truncated = True
                            break
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Fetch of {target} failed: {e}")
            raise ToolExecutionError(f"request failed: {e}", url=target) from e

        text = bytes(body[:limit]).decode(encoding, errors="replace")
        rendered = html_to_markdown(text) if "text/html" in content_type else text
        if not rendered.strip():
            raise ToolExecutionError(f"empty response body from {target}", url=target)
        if truncated:
            logger.warning(f"Truncating fetch of {target} at {limit} bytes")
            return f"{rendered}\n\n{fetch_truncation_marker(limit)}"
        return rendered

    def search(self, query: str) -> str:
        if not query.strip():
            raise EmptyInputError("query must not be empty", tool="web.search")
        return (
            f"Search URL: https://duckduckgo.com/?q={quote_plus(query.strip())}\n\n"
            "Use web.fetch to read specific result pages."
        )
