"""Base source adapter."""

import re
from abc import ABC, abstractmethod
from collections.abc import Iterator

from bs4 import BeautifulSoup, Tag

from everybot.canonical import normalize_url, same_search
from everybot.fetch import FetchClient
from everybot.models import (
    DegradedReason,
    EnrichResult,
    ListingCandidate,
    SearchFilters,
    SearchPage,
)
from everybot.utils.helpers import (
    abs_url,
    clean_title,
    extract_number,
    infer_transaction_type,
    opt_str,
    parse_area,
    parse_floor,
    parse_price,
    parse_year_built,
    title_from_url,
)
from everybot.utils.html import (
    extract_json_ld,
    extract_meta,
    extract_next_data,
    json_ld_attributes,
    make_soup,
    pick_thumb_url,
    text_of,
)
from everybot.utils.location import clean_loose_location_text, match_voivodeship, split_location

_BLOCK_MARKERS = ("captcha", "access denied", "attention required", "are you a robot")

_AREA_LABEL = re.compile(r"Powierzchnia[^0-9]{0,30}(\d[\d\s]*(?:[.,]\d+)?)\s*m", re.IGNORECASE)
_ROOMS_LABEL = re.compile(r"Liczba\s+pokoi[^0-9]{0,30}(\d{1,2})", re.IGNORECASE)
_FLOOR_LABEL = re.compile(r"Piętro[:\s]{0,5}(parter|\d{1,2})", re.IGNORECASE)
_YEAR_LABEL = re.compile(r"Rok\s+budowy[^0-9]{0,30}(\d{4})", re.IGNORECASE)
_CARD_ROOMS = re.compile(r"(\d{1,2})\s*pok", re.IGNORECASE)
_CARD_PRICE_PER_M2 = re.compile(r"(\d[\d\s.,]*)\s*zł\s*/\s*m", re.IGNORECASE)


class SourceAdapter(ABC):
    """
    One portal: how to ask for a search page, how to read it, and how to
    read a single offer page.

    Adapters are stateless; the fetch client is passed in by the caller.
    """

    name: str = "base"
    base_url: str = ""

    # Maximum candidates kept from a single search page
    search_item_limit: int = 60

    # Portal-specific "listing expired" phrases, lower-case
    expired_phrases: tuple[str, ...] = ()

    # Whether a redirect away from the requested search marks the page degraded
    checks_degradation: bool = True

    @abstractmethod
    def build_search_url(self, filters: SearchFilters, page: int = 1) -> str:
        """
        Build the search URL for ``page`` of ``filters``.

        Only the portal-safe subset of the filters is encoded; the rest is
        left to catalog queries.
        """

    @abstractmethod
    def extract_items(self, soup: BeautifulSoup, final_url: str) -> list[ListingCandidate]:
        """Raw candidates from a search page; titles may still be missing."""

    # ------------------------------------------------------------------
    # Search pages
    # ------------------------------------------------------------------

    def parse_search_results(
        self,
        html: str,
        final_url: str,
        *,
        filters: SearchFilters | None = None,
        page: int = 1,
        requested_url: str | None = None,
    ) -> SearchPage:
        """
        Parse a fetched search page into a ``SearchPage``.

        A degraded page (the portal redirected away from the requested
        search) carries no items and ``has_next=False``.
        """
        requested = requested_url or self.build_search_url(filters or SearchFilters(), page)

        applied, reason = self.detect_degradation(requested, final_url)
        if not applied:
            return SearchPage(
                source=self.name,
                page=page,
                requested_url=requested,
                final_url=final_url,
                applied=False,
                degraded_reason=reason,
                has_next=False,
            )

        soup = make_soup(html)
        items, discarded = self.finalize_items(self.extract_items(soup, final_url))

        if not items and self.looks_blocked(soup):
            return SearchPage(
                source=self.name,
                page=page,
                requested_url=requested,
                final_url=final_url,
                applied=False,
                degraded_reason=DegradedReason.CAPTCHA_OR_BLOCK,
                has_next=False,
                discarded=discarded,
            )

        return SearchPage(
            source=self.name,
            page=page,
            requested_url=requested,
            final_url=final_url,
            has_next=self.detect_has_next(soup, page),
            items=items,
            discarded=discarded,
        )

    def detect_degradation(self, requested_url: str, final_url: str) -> tuple[bool, DegradedReason]:
        """Compare the requested search with where the portal actually landed."""
        if not final_url:
            return False, DegradedReason.UNKNOWN
        if self.checks_degradation and not same_search(requested_url, final_url):
            return False, DegradedReason.PORTAL_REDIRECTED
        return True, DegradedReason.NONE

    def detect_has_next(self, soup: BeautifulSoup, page: int) -> bool:
        """Pagination signal from embedded data, ``rel=next`` or a "Następna" control."""
        next_data = extract_next_data(soup)
        if next_data is not None:
            total = _find_key(next_data, ("totalPages", "total_pages"))
            if isinstance(total, int):
                return total > page

        if soup.select_one('link[rel="next"], a[rel="next"]'):
            return True
        if soup.select_one('a[aria-label*="Następ"], button[aria-label*="Następ"]'):
            return True
        for control in soup.find_all(["a", "button"]):
            if "następ" in control.get_text().lower():
                return True
        return False

    def looks_blocked(self, soup: BeautifulSoup) -> bool:
        title = text_of(soup.find("title")) or ""
        body = text_of(soup.body) or ""
        sample = f"{title} {body[:2000]}".lower()
        return any(marker in sample for marker in _BLOCK_MARKERS)

    def finalize_items(self, items: list[ListingCandidate]) -> tuple[list[ListingCandidate], int]:
        """
        Deduplicate by canonical URL and drop items without a title.

        An item with no title gets one synthesized from its URL when the
        last path segment is a readable slug; otherwise it is discarded.

        Returns:
            Tuple of (kept items, discarded count)
        """
        kept: list[ListingCandidate] = []
        seen: set[str] = set()
        discarded = 0

        for item in items:
            key = normalize_url(item.source_url)
            if key in seen:
                continue
            seen.add(key)

            if not item.title:
                item.title = title_from_url(item.source_url)
            if not item.title:
                discarded += 1
                continue

            kept.append(item)
            if len(kept) >= self.search_item_limit:
                break

        return kept, discarded

    def scan_offer_links(self, soup: BeautifulSoup, final_url: str, pattern: re.Pattern) -> Iterator[tuple[Tag, Tag, str]]:
        """Yield ``(link, card, url)`` for each distinct offer link on a page."""
        seen: set[str] = set()
        for link in soup.select("a[href]"):
            full = abs_url(final_url, link.get("href"))
            if not full or not pattern.search(full):
                continue
            url = full.split("#")[0]
            if url in seen:
                continue
            seen.add(url)
            card = link.find_parent(["article", "li", "div"]) or link
            yield link, card, url

    def candidate_from_card(
        self,
        link: Tag,
        card: Tag,
        url: str,
        final_url: str,
        *,
        title_selector: str = "h2, h3",
        price_selector: str = "[class*='price']",
        location_selector: str = "[class*='address'], [class*='location']",
    ) -> ListingCandidate:
        """Build a candidate from a generic listing card."""
        title = (
            clean_title(text_of(card.select_one(title_selector)))
            or clean_title(link.get("title"))
            or clean_title(link.get("aria-label"))
            or clean_title(text_of(link))
        )

        price_text = text_of(card.select_one(price_selector))
        price, currency = parse_price(price_text)

        location = clean_loose_location_text(text_of(card.select_one(location_selector))) or None

        img = card.find("img")
        thumb = None
        if img is not None:
            thumb = abs_url(final_url, img.get("src") or img.get("data-src"))

        card_text = text_of(card) or ""
        rooms = None
        rooms_match = _CARD_ROOMS.search(card_text)
        if rooms_match:
            rooms = int(rooms_match.group(1))
        ppm_match = _CARD_PRICE_PER_M2.search(card_text)
        price_per_m2 = parse_price(f"{ppm_match.group(1)} zł")[0] if ppm_match else None

        return ListingCandidate(
            source=self.name,
            source_url=url,
            title=title,
            price_amount=price,
            currency=currency,
            transaction_type=infer_transaction_type(price_text),
            location_text=location,
            area_m2=parse_area(card_text) if re.search(r"m²|m2", card_text) else None,
            rooms=rooms,
            price_per_m2=price_per_m2,
            thumb_url=thumb,
        )

    # ------------------------------------------------------------------
    # Detail pages
    # ------------------------------------------------------------------

    async def enrich(self, fetcher: FetchClient, url: str) -> EnrichResult:
        """Fetch an offer page and extract its attributes."""
        result = await fetcher.fetch_ok(url)
        return self.parse_detail(result.body, result.final_url)

    def parse_detail(self, html: str, url: str) -> EnrichResult:
        """
        Extract attributes from an offer page.

        Structured data wins field by field; whatever it lacks is taken
        from the markup heuristics.
        """
        soup = make_soup(html)
        structured = self.structured_detail(soup, url)
        markup = self.markup_detail(soup, url)
        return self.complete_detail(structured.fill_missing(markup))

    def structured_detail(self, soup: BeautifulSoup, url: str) -> EnrichResult:
        """Attributes from embedded JSON (JSON-LD by default)."""
        return EnrichResult(**json_ld_attributes(extract_json_ld(soup)))

    def markup_detail(self, soup: BeautifulSoup, url: str) -> EnrichResult:
        """Attributes from meta tags and class-name heuristics."""
        meta = extract_meta(soup)

        title = clean_title(text_of(soup.find("h1"))) or clean_title(meta["title"])
        description = meta["description"] or text_of(
            soup.select_one("[class*='description'], [class*='content'], [class*='details']")
        )

        price_text = text_of(soup.select_one("[data-testid*='price'], [class*='price'], [data-cy*='price']"))
        price, currency = parse_price(price_text)
        if price is None and meta["price"]:
            price, currency = parse_price(meta["price"])
            currency = currency or opt_str(meta["currency"])

        location = text_of(soup.select_one("[data-testid*='address'], [class*='address'], [class*='location']"))

        result = EnrichResult(
            title=title,
            description=description,
            price_amount=price,
            currency=currency,
            transaction_type=infer_transaction_type(price_text),
            location_text=clean_loose_location_text(location) or None,
            thumb_url=pick_thumb_url(soup, url),
        )
        return result.fill_missing(details_from_text(text_of(soup.body)))

    def complete_detail(self, result: EnrichResult) -> EnrichResult:
        """Derive what can be derived: location parts, price per m², region name."""
        if result.location_text and not any((result.city, result.district, result.street, result.voivodeship)):
            parts = split_location(result.location_text)
            result = result.fill_missing(EnrichResult(**parts.model_dump()))

        if result.voivodeship:
            result.voivodeship = match_voivodeship(result.voivodeship) or result.voivodeship

        if result.price_per_m2 is None and result.price_amount and result.area_m2:
            result.price_per_m2 = round(result.price_amount / result.area_m2)

        return result


def details_from_text(text: str | None) -> EnrichResult:
    """Labelled facts from an offer page's text ("Powierzchnia: 55 m²", "Liczba pokoi: 3")."""
    if not text:
        return EnrichResult()

    area = _AREA_LABEL.search(text)
    rooms = _ROOMS_LABEL.search(text)
    floor = _FLOOR_LABEL.search(text)
    year = _YEAR_LABEL.search(text)

    return EnrichResult(
        area_m2=parse_area(f"{area.group(1)} m²") if area else None,
        rooms=extract_number(rooms.group(1)) if rooms else None,
        floor=parse_floor(f"piętro {floor.group(1)}") if floor else None,
        year_built=parse_year_built(year.group(1)) if year else None,
    )


def _find_key(data, keys: tuple[str, ...], depth: int = 0):
    """Depth-first search for the first of ``keys`` in nested JSON."""
    if depth > 12:
        return None
    if isinstance(data, dict):
        for key in keys:
            if key in data and data[key] is not None:
                return data[key]
        for value in data.values():
            found = _find_key(value, keys, depth + 1)
            if found is not None:
                return found
    elif isinstance(data, list):
        for value in data:
            found = _find_key(value, keys, depth + 1)
            if found is not None:
                return found
    return None
