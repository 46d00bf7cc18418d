"""Gratka adapter."""

import re
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from everybot.adapters.base import SourceAdapter
from everybot.filters import portal_safe_filters
from everybot.models import ListingCandidate, PropertyType, SearchFilters, TransactionType

_OFFER_LINK = re.compile(r"gratka\.pl/nieruchomosci/.+/(?:ob|id)/\d+")


class GratkaAdapter(SourceAdapter):
    """
    Adapter for Gratka.pl.

    Estate and transaction are path segments; the phrase goes to the query.
    """

    name = "gratka"
    base_url = "https://gratka.pl"
    expired_phrases = ("ogłoszenie zostało zakończone", "oferta wygasła")

    ESTATES = {
        PropertyType.APARTMENT: "mieszkania",
        PropertyType.HOUSE: "domy",
        PropertyType.PLOT: "dzialki-grunty",
        PropertyType.COMMERCIAL: "lokale-uzytkowe",
        PropertyType.ROOM: "pokoje",
        PropertyType.GARAGE: "garaze",
    }

    TRANSACTIONS = {
        TransactionType.SALE: "sprzedaz",
        TransactionType.RENT: "wynajem",
    }

    def build_search_url(self, filters: SearchFilters, page: int = 1) -> str:
        safe = portal_safe_filters(self.name, filters)

        path = "/nieruchomosci"
        if safe.property_type in self.ESTATES:
            path += f"/{self.ESTATES[safe.property_type]}"
        if safe.transaction_type in self.TRANSACTIONS:
            path += f"/{self.TRANSACTIONS[safe.transaction_type]}"

        params = {}
        if safe.q:
            params["q"] = safe.q
        if page > 1:
            params["page"] = page

        url = f"{self.base_url}{path}"
        return f"{url}?{urlencode(params)}" if params else url

    def extract_items(self, soup: BeautifulSoup, final_url: str) -> list[ListingCandidate]:
        return [
            self.candidate_from_card(
                link,
                card,
                url,
                final_url,
                title_selector="h2, h3, [class*='title']",
                location_selector="[class*='location'], [class*='address'], [class*='place']",
            )
            for link, card, url in self.scan_offer_links(soup, final_url, _OFFER_LINK)
        ]
