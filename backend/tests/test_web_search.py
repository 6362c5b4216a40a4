"""Web search gateway tests with stubbed providers."""

from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from lmchat.config import ChatConfig
from lmchat.web_search import SearchResult, WebSearchGateway, clean_text, parse_duckduckgo_html

DDG_BLOCKS_HTML = """
<html><body>
<div class="result results_links web-result">
  <div class="links_main result__body">
    <h2 class="result__title">
      <a rel="nofollow" class="result__a"
         href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fa&amp;rut=abc">Example <b>A</b></a>
    </h2>
    <a class="result__snippet" href="#">Snippet <b>one</b> &amp; more</a>
  </div>
</div>
<div class="result results_links web-result">
  <a rel="nofollow" class="result__a" href="https://duckduckgo.com/y.js?ad_provider=x">Sponsored</a>
  <a class="result__snippet" href="#">An ad</a>
</div>
<div class="result results_links web-result">
  <a rel="nofollow" class="result__a" href="https://example.com/b">Example B</a>
</div>
</body></html>
"""

DDG_FLAT_HTML = """
<html><body>
<a rel="nofollow" class="result__a" href="https://example.org/x">X title</a>
<a class="result__snippet">x snippet</a>
<a rel="nofollow" class="result__a" href="https://example.org/y">Y title</a>
</body></html>
"""

Handler = Callable[[httpx.Request], httpx.Response]


def _gateway(handler: Handler, **keys: str) -> WebSearchGateway:
    return WebSearchGateway(ChatConfig(**keys), transport=httpx.MockTransport(handler))


def _router(routes: dict[str, Handler], calls: list[str]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        route = routes.get(request.url.host)
        if route is None:
            return httpx.Response(404, text="no route")
        return route(request)

    return handler


def _tavily_ok(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    assert body["api_key"] == "tv-key"
    assert body["max_results"] == 5
    return httpx.Response(
        200,
        json={"results": [{"title": "Tavily hit", "url": "https://t.example/1", "content": "from <i>tavily</i>"}]},
    )


def _serper_ok(request: httpx.Request) -> httpx.Response:
    assert request.headers["X-API-KEY"] == "sp-key"
    return httpx.Response(
        200, json={"organic": [{"title": "Serper hit", "link": "https://s.example/1", "snippet": "from serper"}]}
    )


def _ddg_ok(request: httpx.Request) -> httpx.Response:
    assert request.url.params["q"]
    return httpx.Response(200, text=DDG_BLOCKS_HTML)


def _fail(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, text="boom")


def _raise(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("unreachable", request=request)


def test_provider_chain_depends_on_configured_keys() -> None:
    assert _gateway(_fail).provider_names == ["duckduckgo"]
    assert _gateway(_fail, serper_key="s").provider_names == ["serper", "duckduckgo"]
    assert _gateway(_fail, tavily_key="t", serper_key="s").provider_names == ["tavily", "serper", "duckduckgo"]


@pytest.mark.asyncio
async def test_first_provider_with_results_wins() -> None:
    calls: list[str] = []
    routes = {"api.tavily.com": _tavily_ok, "google.serper.dev": _serper_ok, "html.duckduckgo.com": _ddg_ok}
    gateway = _gateway(_router(routes, calls), tavily_key="tv-key", serper_key="sp-key")

    results = await gateway.search("python news")

    assert results == [SearchResult(title="Tavily hit", url="https://t.example/1", snippet="from tavily")]
    assert calls == ["api.tavily.com"]


@pytest.mark.asyncio
async def test_failures_fall_through_to_next_provider() -> None:
    calls: list[str] = []
    routes = {"api.tavily.com": _fail, "google.serper.dev": _raise, "html.duckduckgo.com": _ddg_ok}
    gateway = _gateway(_router(routes, calls), tavily_key="tv-key", serper_key="sp-key")

    results = await gateway.search("python news")

    assert calls == ["api.tavily.com", "google.serper.dev", "html.duckduckgo.com"]
    assert [r.url for r in results] == ["https://example.com/a", "https://example.com/b"]


@pytest.mark.asyncio
async def test_empty_results_fall_through() -> None:
    calls: list[str] = []
    routes = {
        "api.tavily.com": lambda r: httpx.Response(200, json={"results": []}),
        "google.serper.dev": _serper_ok,
    }
    gateway = _gateway(_router(routes, calls), tavily_key="tv-key", serper_key="sp-key")

    results = await gateway.search("q")

    assert [r.title for r in results] == ["Serper hit"]
    assert calls == ["api.tavily.com", "google.serper.dev"]


@pytest.mark.asyncio
async def test_malformed_json_is_absorbed() -> None:
    calls: list[str] = []
    routes = {"api.tavily.com": lambda r: httpx.Response(200, text="not json"), "html.duckduckgo.com": _fail}
    gateway = _gateway(_router(routes, calls), tavily_key="tv-key")

    assert await gateway.search("q") == []


@pytest.mark.asyncio
async def test_all_providers_failing_returns_empty_list() -> None:
    gateway = _gateway(_raise, tavily_key="tv-key", serper_key="sp-key")
    assert await gateway.search("anything") == []


@pytest.mark.asyncio
async def test_blank_query_does_not_hit_providers() -> None:
    calls: list[str] = []
    gateway = _gateway(_router({}, calls))
    assert await gateway.search("   ") == []
    assert calls == []


@pytest.mark.asyncio
async def test_results_capped_at_five_and_stable() -> None:
    items = [{"title": f"T{i}", "url": f"https://e.example/{i}", "content": f"s{i}"} for i in range(8)]
    routes = {"api.tavily.com": lambda r: httpx.Response(200, json={"results": items})}
    gateway = _gateway(_router(routes, []), tavily_key="tv-key")

    first = await gateway.search("q")
    second = await gateway.search("q")

    assert [r.title for r in first] == ["T0", "T1", "T2", "T3", "T4"]
    assert first == second


def test_duckduckgo_primary_pattern() -> None:
    results = parse_duckduckgo_html(DDG_BLOCKS_HTML)
    assert results[0] == SearchResult(title="Example A", url="https://example.com/a", snippet="Snippet one & more")
    assert results[1] == SearchResult(title="Example B", url="https://example.com/b", snippet="")
    assert len(results) == 2


def test_duckduckgo_alternate_pattern_when_no_result_blocks() -> None:
    results = parse_duckduckgo_html(DDG_FLAT_HTML)
    assert results == [
        SearchResult(title="X title", url="https://example.org/x", snippet="x snippet"),
        SearchResult(title="Y title", url="https://example.org/y", snippet=""),
    ]


def test_duckduckgo_unparseable_page() -> None:
    assert parse_duckduckgo_html("<html><body>captcha</body></html>") == []


def test_clean_text_strips_markup_and_truncates() -> None:
    assert clean_text("<b>Hello</b>\n   <i>world</i> &amp; co", 100) == "Hello world & co"
    assert clean_text("x" * 20, 10) == "xxxxxxx..."
    assert clean_text(None, 10) == ""


def test_clean_text_strips_entity_encoded_markup() -> None:
    assert clean_text("&lt;b&gt;Bold&lt;/b&gt; snippet", 500) == "Bold snippet"
    assert clean_text("Tom &amp; Jerry &lt;i&gt;classic&lt;/i&gt;", 500) == "Tom & Jerry classic"


@pytest.mark.asyncio
async def test_provider_snippets_with_escaped_tags_are_cleaned() -> None:
    items = [{"title": "&lt;em&gt;Hit&lt;/em&gt;", "url": "https://e.example/1", "content": "&lt;b&gt;Bold&lt;/b&gt; text"}]
    routes = {"api.tavily.com": lambda r: httpx.Response(200, json={"results": items})}
    gateway = _gateway(_router(routes, []), tavily_key="tv-key")

    assert await gateway.search("q") == [SearchResult(title="Hit", url="https://e.example/1", snippet="Bold text")]
