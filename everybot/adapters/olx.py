"""OLX adapter - server-rendered cards under /nieruchomosci/."""

import re
from urllib.parse import quote, urlencode

from bs4 import BeautifulSoup

from everybot.adapters.base import SourceAdapter, details_from_text
from everybot.filters import normalize_property_type, portal_safe_filters
from everybot.models import EnrichResult, ListingCandidate, SearchFilters
from everybot.utils.helpers import (
    abs_url,
    clean_title,
    infer_transaction_type,
    opt_str,
    parse_area,
    parse_floor,
    parse_price,
    parse_year_built,
)
from everybot.utils.html import extract_meta, pick_thumb_url, text_of
from everybot.utils.location import clean_loose_location_text

_OFFER_LINK = re.compile(r"/d/oferta/")


def _first_srcset_url(srcset: str | None) -> str | None:
    raw = opt_str(srcset)
    if not raw:
        return None
    return raw.split(",")[0].strip().split(" ")[0] or None


class OlxAdapter(SourceAdapter):
    """
    Adapter for OLX.pl real-estate category.

    OLX only takes a free-text phrase in the path; it never redirects a
    search elsewhere, so degradation is not checked.
    """

    name = "olx"
    base_url = "https://www.olx.pl"
    checks_degradation = False
    expired_phrases = ("to ogłoszenie nie jest już dostępne", "ogłoszenie nie jest już dostępne")

    def build_search_url(self, filters: SearchFilters, page: int = 1) -> str:
        safe = portal_safe_filters(self.name, filters)

        path = "/nieruchomosci/"
        if safe.q:
            slug = re.sub(r"[\s,]+", "-", safe.q.strip().lower()).strip("-")
            path = f"/nieruchomosci/q-{quote(slug)}/"

        url = f"{self.base_url}{path}"
        if page > 1:
            url = f"{url}?{urlencode({'page': page})}"
        return url

    def extract_items(self, soup: BeautifulSoup, final_url: str) -> list[ListingCandidate]:
        cards = soup.select("[data-cy='l-card']")
        if not cards:
            cards = [article for article in soup.find_all("article") if article.select_one("a[href*='/d/oferta/']")]

        items = []
        seen: set[str] = set()
        for card in cards:
            link = card.select_one("a[href*='/d/oferta/']")
            if link is None:
                continue
            url = abs_url(final_url, link.get("href"))
            if not url:
                continue
            url = url.split("#")[0]
            if url in seen:
                continue
            seen.add(url)
            items.append(self._from_card(card, link, url, final_url))

        if items:
            return items

        for link, card, url in self.scan_offer_links(soup, final_url, _OFFER_LINK):
            items.append(self._from_card(card, link, url, final_url))
        return items

    def _from_card(self, card, link, url: str, final_url: str) -> ListingCandidate:
        title = None
        for tag in ("h4", "h6", "h5", "h3", "h2"):
            title = clean_title(text_of(card.find(tag)))
            if title:
                break
        title = title or clean_title(link.get("aria-label")) or clean_title(link.get("title"))

        price_text = text_of(card.select_one("[data-testid='ad-price']"))
        price, currency = parse_price(price_text)

        location = clean_loose_location_text(text_of(card.select_one("[data-testid='location-date']"))) or None

        thumb = None
        img = card.find("img")
        if img is not None:
            thumb = abs_url(final_url, img.get("src") or img.get("data-src") or _first_srcset_url(img.get("srcset")))

        card_text = text_of(card) or ""
        area = parse_area(card_text) if "m²" in card_text else None

        return ListingCandidate(
            source=self.name,
            source_url=url,
            title=title,
            price_amount=price,
            currency=currency,
            transaction_type=infer_transaction_type(price_text) if price_text else None,
            location_text=location,
            area_m2=area,
            thumb_url=thumb,
        )

    def detect_has_next(self, soup: BeautifulSoup, page: int) -> bool:
        if soup.select_one("[data-testid='pagination-forward'], [data-cy='pagination-forward']"):
            return True
        return super().detect_has_next(soup, page)

    def markup_detail(self, soup: BeautifulSoup, url: str) -> EnrichResult:
        meta = extract_meta(soup)

        description = text_of(soup.select_one("[data-cy='ad_description'], [data-testid='ad_description']"))
        description = description or meta["description"]

        price_text = text_of(soup.select_one("[data-testid='ad-price-container'], [data-testid='ad-price']"))
        price, currency = parse_price(price_text)
        if price is None and meta["price"]:
            price, currency = parse_price(meta["price"])
            currency = currency or meta["currency"]

        # OLX prints "City, District" on offer pages
        city = district = None
        location = text_of(soup.select_one("[data-testid='location-date'], [data-testid='map-aside-section'] p"))
        location = clean_loose_location_text(location) or meta["locality"]
        if location:
            head, _, tail = location.partition(",")
            city = opt_str(head)
            district = opt_str(tail)

        params_text = " ".join(text_of(li) or "" for li in soup.select("[data-testid='ad-parameters-container'] p, ul li"))
        facts = details_from_text(params_text)
        category = text_of(soup.select_one("[data-testid='breadcrumbs'] li:last-child"))

        result = EnrichResult(
            title=clean_title(text_of(soup.select_one("[data-cy='ad_title'], [data-testid='ad_title'], h1")))
            or clean_title(meta["title"]),
            description=description,
            price_amount=price,
            currency=currency,
            transaction_type=infer_transaction_type(price_text) if price_text else None,
            property_type=normalize_property_type(category).value if category else None,
            location_text=location,
            city=city,
            district=district,
            floor=facts.floor or parse_floor(description),
            year_built=facts.year_built or parse_year_built(description if description and "budow" in description.lower() else None),
            thumb_url=pick_thumb_url(soup, url),
        )
        return result.fill_missing(facts).fill_missing(details_from_text(text_of(soup.body)))
