"""Otodom adapter - Next.js site, listing data embedded in __NEXT_DATA__."""

import re
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from everybot.adapters.base import SourceAdapter
from everybot.filters import portal_safe_filters
from everybot.models import (
    DegradedReason,
    EnrichResult,
    ListingCandidate,
    PropertyType,
    SearchFilters,
    TransactionType,
)
from everybot.utils.helpers import (
    abs_url,
    clean_title,
    infer_transaction_type,
    opt_number,
    opt_str,
    parse_floor,
    parse_price,
    slugify_pl,
)
from everybot.utils.html import dig, extract_meta, extract_next_data, make_soup, pick_thumb_url, text_of
from everybot.utils.location import clean_loose_location_text, match_voivodeship

_OFFER_LINK = re.compile(r"otodom\.pl/pl/oferta/")

_ROOM_WORDS = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
    "SIX": 6,
    "SEVEN": 7,
    "EIGHT": 8,
    "NINE": 9,
    "TEN": 10,
    "MORE": 10,
}

_CATEGORY_TYPES = {
    "FLAT": PropertyType.APARTMENT,
    "HOUSE": PropertyType.HOUSE,
    "TERRAIN": PropertyType.PLOT,
    "COMMERCIAL_PROPERTY": PropertyType.COMMERCIAL,
    "ROOM": PropertyType.ROOM,
    "GARAGE": PropertyType.GARAGE,
}


def _rooms(value) -> int | None:
    if isinstance(value, str) and value.upper() in _ROOM_WORDS:
        return _ROOM_WORDS[value.upper()]
    number = opt_number(value)
    return int(number) if number is not None else None


def _transaction(value) -> TransactionType | None:
    s = (opt_str(value) or "").upper()
    if s == "SELL":
        return TransactionType.SALE
    if s == "RENT":
        return TransactionType.RENT
    return None


class OtodomAdapter(SourceAdapter):
    """
    Adapter for Otodom.pl.

    Search pages encode transaction, estate and voivodeship in the path.
    When a filter combination is not supported the portal answers with a
    redirect to a broader search (often ``/cala-polska``) instead of an error.
    """

    name = "otodom"
    base_url = "https://www.otodom.pl"
    expired_phrases = ("oferta została zakończona", "oferta zostala zakonczona", "ogłoszenie wygasło")

    TRANSACTIONS = {
        TransactionType.SALE: "sprzedaz",
        TransactionType.RENT: "wynajem",
    }

    ESTATES = {
        PropertyType.APARTMENT: "mieszkanie",
        PropertyType.HOUSE: "dom",
        PropertyType.PLOT: "dzialka",
        PropertyType.COMMERCIAL: "lokal",
        PropertyType.ROOM: "pokoj",
        PropertyType.GARAGE: "garaz",
    }

    def build_search_url(self, filters: SearchFilters, page: int = 1) -> str:
        safe = portal_safe_filters(self.name, filters)

        tx = self.TRANSACTIONS.get(safe.transaction_type, "sprzedaz")
        estate = self.ESTATES.get(safe.property_type, "mieszkanie")

        region = "cala-polska"
        voivodeship = match_voivodeship(safe.voivodeship)
        if voivodeship:
            region = slugify_pl(voivodeship)

        params = {}
        if safe.q:
            params["search[phrase]"] = safe.q
        params["viewType"] = "listing"
        if page > 1:
            params["page"] = str(page)

        return f"{self.base_url}/pl/wyniki/{tx}/{estate}/{region}?{urlencode(params)}"

    def detect_degradation(self, requested_url: str, final_url: str) -> tuple[bool, DegradedReason]:
        if final_url and "/cala-polska" in final_url and "/cala-polska" not in requested_url:
            return False, DegradedReason.PORTAL_REDIRECTED
        return super().detect_degradation(requested_url, final_url)

    def extract_items(self, soup: BeautifulSoup, final_url: str) -> list[ListingCandidate]:
        next_data = extract_next_data(soup)
        ads = dig(next_data, "props", "pageProps", "data", "searchAds", "items")
        if isinstance(ads, list) and ads:
            items = [self._from_search_ad(ad, final_url) for ad in ads if isinstance(ad, dict)]
            return [item for item in items if item is not None]

        # Markup fallback for pages rendered without the data blob
        items = []
        for link, card, url in self.scan_offer_links(soup, final_url, _OFFER_LINK):
            items.append(
                self.candidate_from_card(
                    link,
                    card,
                    url,
                    final_url,
                    title_selector="[data-cy='listing-item-title'], h2, h3, p[class*='title']",
                    location_selector="[data-testid='advert-card-address'], [class*='address'], p[class*='location']",
                )
            )
        return items

    def _from_search_ad(self, ad: dict, final_url: str) -> ListingCandidate | None:
        href = opt_str(ad.get("href")) or opt_str(ad.get("url"))
        if not href:
            slug = opt_str(ad.get("slug"))
            href = f"/pl/oferta/{slug}" if slug else None
        if not href:
            return None
        href = href.replace("/hpr/", "/").replace("[lang]/ad/", "pl/oferta/")
        if not href.startswith(("http:", "https:", "/")):
            href = f"/{href}"
        url = abs_url(final_url or self.base_url, href)
        if not url:
            return None

        price = opt_number(dig(ad, "totalPrice", "value"))
        currency = opt_str(dig(ad, "totalPrice", "currency"))
        if price is None:
            price, currency = parse_price(opt_str(ad.get("price")))

        city = opt_str(dig(ad, "location", "address", "city", "name"))
        province = opt_str(dig(ad, "location", "address", "province", "name"))
        street = opt_str(dig(ad, "location", "address", "street", "name"))

        estate = opt_str(ad.get("estate"))
        images = ad.get("images")
        thumb = None
        if isinstance(images, list) and images and isinstance(images[0], dict):
            thumb = opt_str(images[0].get("medium")) or opt_str(images[0].get("large"))

        return ListingCandidate(
            source=self.name,
            source_url=url,
            title=clean_title(opt_str(ad.get("title"))),
            price_amount=price,
            currency=currency,
            transaction_type=_transaction(ad.get("transaction")),
            property_type=_CATEGORY_TYPES[estate].value if estate in _CATEGORY_TYPES else None,
            area_m2=opt_number(ad.get("areaInSquareMeters")),
            price_per_m2=opt_number(dig(ad, "pricePerSquareMeter", "value")),
            rooms=_rooms(ad.get("roomsNumber")),
            floor=parse_floor(f"piętro {ad['floorNumber']}") if isinstance(ad.get("floorNumber"), (int, str)) else None,
            location_text=", ".join(p for p in (street, city, province) if p) or None,
            voivodeship=match_voivodeship(province),
            city=city,
            street=street,
            thumb_url=thumb,
        )

    def detect_has_next(self, soup: BeautifulSoup, page: int) -> bool:
        next_data = extract_next_data(soup)
        pagination = dig(next_data, "props", "pageProps", "data", "searchAds", "pagination")
        if isinstance(pagination, dict):
            total = opt_number(pagination.get("totalPages"))
            current = opt_number(pagination.get("page")) or page
            if total is not None:
                return total > current
        return super().detect_has_next(soup, page)

    # ------------------------------------------------------------------
    # Detail pages
    # ------------------------------------------------------------------

    def structured_detail(self, soup: BeautifulSoup, url: str) -> EnrichResult:
        ad = dig(extract_next_data(soup), "props", "pageProps", "ad")
        if not isinstance(ad, dict):
            return super().structured_detail(soup, url)

        characteristics = {}
        for item in ad.get("characteristics") or []:
            if isinstance(item, dict) and item.get("key"):
                characteristics[item["key"]] = item
        target = ad.get("target") if isinstance(ad.get("target"), dict) else {}

        def characteristic(key: str):
            item = characteristics.get(key)
            return item.get("value") if item else None

        price = opt_number(characteristic("price")) or opt_number(target.get("Price"))
        currency = opt_str((characteristics.get("price") or {}).get("currency"))

        floor = opt_str(characteristic("floor_no"))
        if floor is None and isinstance(target.get("Floor_no"), list) and target["Floor_no"]:
            floor = opt_str(target["Floor_no"][0])
        if floor:
            floor = "0" if "ground" in floor else (re.sub(r"\D", "", floor) or None)

        address = dig(ad, "location", "address") or {}
        street_name = opt_str(dig(address, "street", "name"))
        street_number = opt_str(dig(address, "street", "number"))
        street = " ".join(p for p in (street_name, street_number) if p) or None

        description_html = opt_str(ad.get("description"))
        description = text_of(make_soup(description_html)) if description_html else None

        images = ad.get("images")
        thumb = None
        if isinstance(images, list) and images and isinstance(images[0], dict):
            thumb = opt_str(images[0].get("large")) or opt_str(images[0].get("medium"))

        phones = dig(ad, "owner", "phones") or dig(ad, "contactDetails", "phones") or []
        phone = opt_str(phones[0]) if isinstance(phones, list) and phones else None

        category = opt_str(dig(ad, "adCategory", "name"))
        year = opt_number(characteristic("build_year")) or opt_number(target.get("Build_year"))
        area = opt_number(characteristic("m")) or opt_number(target.get("Area"))

        return EnrichResult(
            title=clean_title(opt_str(ad.get("title"))),
            description=description,
            price_amount=price,
            currency=currency,
            transaction_type=_transaction(dig(ad, "adCategory", "type")),
            property_type=_CATEGORY_TYPES[category].value if category in _CATEGORY_TYPES else None,
            area_m2=area,
            price_per_m2=opt_number(characteristic("price_per_m")) or opt_number(target.get("Price_per_m")),
            rooms=_rooms(characteristic("rooms_num") or target.get("Rooms_num")),
            floor=floor,
            year_built=int(year) if year else None,
            voivodeship=match_voivodeship(opt_str(dig(address, "province", "name"))),
            city=opt_str(dig(address, "city", "name")),
            district=opt_str(dig(address, "district", "name")),
            street=street,
            owner_phone=phone,
            thumb_url=thumb,
        )

    def markup_detail(self, soup: BeautifulSoup, url: str) -> EnrichResult:
        meta = extract_meta(soup)

        price_text = text_of(soup.select_one("[data-cy='adPageHeaderPrice'], strong[aria-label='Cena']"))
        price, currency = parse_price(price_text)

        location = text_of(soup.select_one("a[href='#map'], [data-testid='ad-header-address'], [class*='address']"))

        result = EnrichResult(
            title=clean_title(text_of(soup.find("h1"))) or clean_title(meta["title"]),
            description=text_of(soup.select_one("[data-cy='adPageAdDescription']")) or meta["description"],
            price_amount=price,
            currency=currency,
            transaction_type=infer_transaction_type(price_text) if price_text else None,
            location_text=clean_loose_location_text(location) or None,
            thumb_url=pick_thumb_url(soup, url),
        )
        return result.fill_missing(super().markup_detail(soup, url))
