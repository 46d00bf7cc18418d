"""Morizon adapter."""

import re
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from everybot.adapters.base import SourceAdapter
from everybot.filters import portal_safe_filters
from everybot.models import ListingCandidate, SearchFilters

_OFFER_LINK = re.compile(r"morizon\.pl/oferta/")


class MorizonAdapter(SourceAdapter):
    """Adapter for Morizon.pl. Only the free-text phrase is sent to the portal."""

    name = "morizon"
    base_url = "https://www.morizon.pl"
    expired_phrases = ("oferta jest nieaktualna", "ogłoszenie archiwalne")

    def build_search_url(self, filters: SearchFilters, page: int = 1) -> str:
        safe = portal_safe_filters(self.name, filters)

        params = {}
        if safe.q:
            params["q"] = safe.q
        if page > 1:
            params["page"] = page

        url = f"{self.base_url}/"
        return f"{url}?{urlencode(params)}" if params else url

    def extract_items(self, soup: BeautifulSoup, final_url: str) -> list[ListingCandidate]:
        return [
            self.candidate_from_card(link, card, url, final_url)
            for link, card, url in self.scan_offer_links(soup, final_url, _OFFER_LINK)
        ]
