"""Shared fixtures: in-memory catalog, fake portals behind httpx.MockTransport."""

import json
from urllib.parse import urlsplit

import httpx
import pytest

from everybot.config import Settings
from everybot.fetch import FetchClient
from everybot.locks import TenantLock
from everybot.models.database import get_engine
from everybot.pipeline.state import PipelineContext
from everybot.storage import ListingStore

OFFICE = "office-1"


class FakeWeb:
    """
    Routes requests by host, path and (optionally) query parameters.

    A route may also redirect. Unknown URLs answer 404. Every request is
    recorded in ``requests``.
    """

    def __init__(self):
        self.routes = []
        self.requests: list[httpx.Request] = []

    def add(self, url, body="", *, status=200, headers=None, content_type="text/html; charset=utf-8", **params):
        parts = urlsplit(url)
        response_headers = {"content-type": content_type}
        response_headers.update(headers or {})
        self.routes.append(
            {
                "host": parts.netloc,
                "path": parts.path or "/",
                "params": {k: str(v) for k, v in params.items()},
                "status": status,
                "body": body,
                "headers": response_headers,
            }
        )

    def redirect(self, url, location, *, status=302, **params):
        self.add(url, "", status=status, headers={"location": location}, **params)

    def add_json(self, url, payload, *, status=200, **params):
        self.add(url, json.dumps(payload), status=status, content_type="application/json", **params)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        query = dict(request.url.params)

        best = None
        for route in self.routes:
            if route["host"] != request.url.host and route["host"] != f"{request.url.host}:{request.url.port}":
                continue
            if route["path"] != request.url.path:
                continue
            if any(query.get(k) != v for k, v in route["params"].items()):
                continue
            if best is None or len(route["params"]) > len(best["params"]):
                best = route

        if best is None:
            return httpx.Response(404, text="not found", request=request)
        return httpx.Response(best["status"], text=best["body"], headers=best["headers"], request=request)

    def urls(self) -> list[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        default_delay_min=0,
        default_delay_max=0,
        enrich_delay=0,
        verify_delay=0,
        geocode_delay=0,
        rcn_delay=0,
        max_retries=1,
        retry_backoff=0,
        harvest_sources=["otodom", "olx"],
    )


@pytest.fixture
def store():
    s = ListingStore(get_engine("sqlite://"))
    s.init()
    return s


@pytest.fixture
def web():
    return FakeWeb()


@pytest.fixture
def fetcher(web):
    return FetchClient(max_retries=1, retry_backoff=0, transport=httpx.MockTransport(web.handler))


@pytest.fixture
def ctx(store, fetcher, settings):
    return PipelineContext(
        store,
        fetcher=fetcher,
        locks=TenantLock(store.engine, settings.lock_ttl_minutes),
        settings=settings,
    )


# =============================================================================
# Page builders
# =============================================================================


def next_data_page(data: dict, body: str = "") -> str:
    return (
        "<html><head><title>Otodom</title>"
        f'<script id="__NEXT_DATA__" type="application/json">{json.dumps(data)}</script>'
        f"</head><body>{body}</body></html>"
    )


def otodom_ad(slug: str, title: str | None, price: float | None = 500000, **extra) -> dict:
    ad = {
        "href": f"[lang]/ad/{slug}",
        "title": title,
        "totalPrice": {"value": price, "currency": "PLN"} if price is not None else None,
        "areaInSquareMeters": 50,
        "roomsNumber": "TWO",
        "estate": "FLAT",
        "transaction": "SELL",
        "location": {"address": {"city": {"name": "Warszawa"}, "province": {"name": "mazowieckie"}}},
    }
    ad.update(extra)
    return ad


def otodom_search_page(ads: list[dict], page: int = 1, total_pages: int = 1) -> str:
    return next_data_page(
        {
            "props": {
                "pageProps": {
                    "data": {
                        "searchAds": {
                            "items": ads,
                            "pagination": {"page": page, "totalPages": total_pages},
                        }
                    }
                }
            }
        }
    )


def olx_card(slug: str, title: str, price: str = "2 500 zł", location: str = "Kraków, Podgórze - Dzisiaj o 12:30") -> str:
    return (
        '<div data-cy="l-card">'
        f'<a href="/d/oferta/{slug}.html"><h4>{title}</h4></a>'
        f'<p data-testid="ad-price">{price}</p>'
        f'<p data-testid="location-date">{location}</p>'
        "<span>48 m²</span>"
        "</div>"
    )


def olx_search_page(cards: list[str], next_link: bool = False) -> str:
    pager = '<a data-testid="pagination-forward" href="?page=2">Następna</a>' if next_link else ""
    return f"<html><head><title>OLX</title></head><body>{''.join(cards)}{pager}</body></html>"
