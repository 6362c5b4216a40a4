from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from html import unescape
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, unquote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from .config import ChatConfig
from .logging_utils import get_logger

log = get_logger(__name__)

MAX_RESULTS = 5
MAX_TITLE_CHARS = 200
MAX_SNIPPET_CHARS = 500

TAVILY_URL = "https://api.tavily.com/search"
SERPER_URL = "https://google.serper.dev/search"
DUCKDUCKGO_URL = "https://html.duckduckgo.com/html/"

_BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
_WS_RE = re.compile(r"\s+")


class WebToolError(RuntimeError):
    pass


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def clean_text(value: Any, max_chars: int) -> str:
    """Strip markup and entities, collapse whitespace, cap the length."""
    # Decode entities first so escaped tags are stripped like literal ones.
    raw = unescape(str(value or ""))
    if "<" in raw:
        raw = BeautifulSoup(raw, "html.parser").get_text(" ", strip=True)
    text = _WS_RE.sub(" ", raw).strip()
    if max_chars > 0 and len(text) > max_chars:
        text = text[: max_chars - 3].rstrip() + "..."
    return text


def _normalize_result(title: Any, url: Any, snippet: Any) -> SearchResult | None:
    u = str(url or "").strip()
    t = clean_text(title, MAX_TITLE_CHARS)
    if not u or not t:
        return None
    return SearchResult(title=t, url=u, snippet=clean_text(snippet, MAX_SNIPPET_CHARS))


def _dedupe(results: list[SearchResult], k: int) -> list[SearchResult]:
    out: list[SearchResult] = []
    seen: set[str] = set()
    for r in results:
        if r.url in seen:
            continue
        seen.add(r.url)
        out.append(r)
        if len(out) >= k:
            break
    return out


def _json_body(resp: httpx.Response, provider: str) -> Any:
    if not resp.is_success:
        raise WebToolError(f"{provider} failed ({resp.status_code}): {resp.text[:400]}")
    try:
        return resp.json()
    except ValueError as e:
        raise WebToolError(f"{provider} returned invalid JSON: {e}") from e


async def tavily_search(
    client: httpx.AsyncClient, query: str, *, api_key: str, k: int = MAX_RESULTS
) -> list[SearchResult]:
    payload = {
        "api_key": api_key,
        "query": query,
        "search_depth": "basic",
        "include_answer": False,
        "include_images": False,
        "max_results": k,
    }
    data = _json_body(await client.post(TAVILY_URL, json=payload), "Tavily")
    items = data.get("results") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise WebToolError("Tavily response missing 'results' list")
    results = [_normalize_result(r.get("title"), r.get("url"), r.get("content")) for r in items if isinstance(r, dict)]
    return _dedupe([r for r in results if r], k)


async def serper_search(
    client: httpx.AsyncClient, query: str, *, api_key: str, k: int = MAX_RESULTS
) -> list[SearchResult]:
    headers = {"X-API-KEY": api_key, "Content-Type": "application/json"}
    data = _json_body(await client.post(SERPER_URL, json={"q": query, "num": k}, headers=headers), "Serper")
    items = (data.get("organic") if isinstance(data, dict) else None) or []
    if not isinstance(items, list):
        raise WebToolError("Serper response 'organic' is not a list")
    results = [
        _normalize_result(r.get("title"), r.get("link"), r.get("snippet")) for r in items[:k] if isinstance(r, dict)
    ]
    return _dedupe([r for r in results if r], k)


def _normalize_ddg_href(href: str) -> str:
    if not href:
        return ""
    href = href.strip()
    # DuckDuckGo HTML sometimes returns relative /l/?uddg=... links
    href = urljoin("https://duckduckgo.com", href)
    try:
        u = urlparse(href)
    except ValueError:
        return href
    qs = parse_qs(u.query or "")
    uddg = qs.get("uddg", [None])[0]
    if isinstance(uddg, str) and uddg:
        return unquote(unescape(uddg))
    return href


def _is_external(url: str) -> bool:
    return bool(url) and "duckduckgo.com" not in urlparse(url).netloc


def _parse_ddg_result_blocks(soup: BeautifulSoup) -> list[SearchResult]:
    results: list[SearchResult] = []
    for block in soup.select(".result"):
        a = block.select_one("a.result__a")
        if a is None:
            continue
        url = _normalize_ddg_href(str(a.get("href") or ""))
        if not _is_external(url):
            continue
        sn = block.select_one(".result__snippet")
        r = _normalize_result(a.get_text(" ", strip=True), url, sn.get_text(" ", strip=True) if sn else "")
        if r:
            results.append(r)
    return results


def _parse_ddg_flat_lists(soup: BeautifulSoup) -> list[SearchResult]:
    # Markup without result containers: pair anchors and snippets by position.
    anchors = soup.select("a.result__a")
    snippets = [s.get_text(" ", strip=True) for s in soup.select(".result__snippet")]
    results: list[SearchResult] = []
    for i, a in enumerate(anchors):
        url = _normalize_ddg_href(str(a.get("href") or ""))
        if not _is_external(url):
            continue
        r = _normalize_result(a.get_text(" ", strip=True), url, snippets[i] if i < len(snippets) else "")
        if r:
            results.append(r)
    return results


def parse_duckduckgo_html(html: str, k: int = MAX_RESULTS) -> list[SearchResult]:
    soup = BeautifulSoup(html or "", "html.parser")
    results = _parse_ddg_result_blocks(soup)
    if not results:
        results = _parse_ddg_flat_lists(soup)
    return _dedupe(results, k)


async def duckduckgo_search(client: httpx.AsyncClient, query: str, *, k: int = MAX_RESULTS) -> list[SearchResult]:
    headers = {"user-agent": _BROWSER_UA, "accept": "text/html"}
    resp = await client.get(DUCKDUCKGO_URL, params={"q": query}, headers=headers)
    if not resp.is_success:
        raise WebToolError(f"DuckDuckGo failed ({resp.status_code}): {resp.text[:400]}")
    return parse_duckduckgo_html(resp.text, k)


Provider = Callable[[httpx.AsyncClient, str], Awaitable[list[SearchResult]]]


class WebSearchGateway:
    """Queries the configured providers in order; the first non-empty answer wins.

    Tavily and Serper take part only when their key is configured. DuckDuckGo
    needs no key and is always the last resort. Provider failures are logged
    and count as "no results"; ``search`` itself never raises.
    """

    def __init__(self, config: ChatConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout_s = config.web_timeout_s
        self._transport = transport
        self.providers: list[tuple[str, Provider]] = []
        if config.tavily_key:
            key = config.tavily_key
            self.providers.append(("tavily", lambda c, q: tavily_search(c, q, api_key=key)))
        if config.serper_key:
            skey = config.serper_key
            self.providers.append(("serper", lambda c, q: serper_search(c, q, api_key=skey)))
        self.providers.append(("duckduckgo", duckduckgo_search))

    @property
    def provider_names(self) -> list[str]:
        return [name for name, _ in self.providers]

    async def search(self, query: str) -> list[SearchResult]:
        q = str(query or "").strip()
        if not q:
            return []

        async with httpx.AsyncClient(
            follow_redirects=True, timeout=httpx.Timeout(self.timeout_s), transport=self._transport
        ) as client:
            for name, provider in self.providers:
                try:
                    results = await provider(client, q)
                except Exception as e:
                    log.warning("Web search provider %s failed: %s: %s", name, type(e).__name__, e)
                    continue
                if results:
                    log.info("Web search provider %s returned %d results", name, len(results))
                    return results[:MAX_RESULTS]
                log.info("Web search provider %s returned no results", name)
        return []
