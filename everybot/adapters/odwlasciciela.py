"""Odwlasciciela.pl adapter - owner-posted offers."""

import re
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from everybot.adapters.base import SourceAdapter
from everybot.fetch import FetchClient
from everybot.filters import portal_safe_filters
from everybot.models import EnrichResult, ListingCandidate, SearchFilters
from everybot.utils.helpers import parse_price
from everybot.utils.html import text_of

_OFFER_LINK = re.compile(r"odwlasciciela\.pl/oferty/podglad/")
_PRICE_IN_TEXT = re.compile(r"\d[\d\s.,]*\s*zł", re.IGNORECASE)


class OdwlascicielaAdapter(SourceAdapter):
    """
    Adapter for Odwlasciciela.pl.

    Search cards already carry everything the portal publishes, so
    enrichment does not fetch the offer page.
    """

    name = "odwlasciciela"
    base_url = "https://odwlasciciela.pl"
    expired_phrases = ("oferta nie jest już aktualna",)

    def build_search_url(self, filters: SearchFilters, page: int = 1) -> str:
        safe = portal_safe_filters(self.name, filters)

        params = {}
        if safe.q:
            params["q"] = safe.q
        if page > 1:
            params["page"] = page

        url = f"{self.base_url}/oferty"
        return f"{url}?{urlencode(params)}" if params else url

    def extract_items(self, soup: BeautifulSoup, final_url: str) -> list[ListingCandidate]:
        items = []
        for link, card, url in self.scan_offer_links(soup, final_url, _OFFER_LINK):
            item = self.candidate_from_card(link, card, url, final_url)
            if item.price_amount is None:
                match = _PRICE_IN_TEXT.search(text_of(card) or "")
                if match:
                    item.price_amount, item.currency = parse_price(match.group())
            items.append(item)
        return items

    async def enrich(self, fetcher: FetchClient, url: str) -> EnrichResult:
        return EnrichResult()
