"""Structured-data and meta extraction from listing pages."""

import json
import re
from typing import Any

from bs4 import BeautifulSoup
from loguru import logger

from everybot.utils.helpers import abs_url, opt_number, opt_str

_BAD_THUMB_MARKERS = ("logo", "signet", "nuxt-assets", "placeholder", "sprite")

# JSON-LD blocks describing the site or agency rather than the offer
_SKIP_LD_TYPES = {"breadcrumblist", "organization", "website", "webpage", "realestateagent", "localbusiness"}


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def extract_next_data(soup: BeautifulSoup) -> dict | None:
    """Return the parsed ``__NEXT_DATA__`` blob of a Next.js page, if any."""
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None or not script.string:
        return None
    try:
        data = json.loads(script.string)
    except ValueError:
        logger.debug("Malformed __NEXT_DATA__ payload")
        return None
    return data if isinstance(data, dict) else None


def extract_json_ld(soup: BeautifulSoup) -> list[dict]:
    """Return every JSON-LD object on the page, with ``@graph`` lists flattened."""
    out: list[dict] = []
    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            parsed = json.loads(raw)
        except ValueError:
            continue
        stack = parsed if isinstance(parsed, list) else [parsed]
        for block in stack:
            if not isinstance(block, dict):
                continue
            graph = block.get("@graph")
            if isinstance(graph, list):
                out.extend(item for item in graph if isinstance(item, dict))
            else:
                out.append(block)
    return out


def extract_meta(soup: BeautifulSoup) -> dict[str, str | None]:
    """OpenGraph/standard meta fallbacks for title, description and image."""

    def meta(**attrs) -> str | None:
        tag = soup.find("meta", attrs=attrs)
        return opt_str(tag.get("content")) if tag else None

    title_tag = soup.find("title")
    return {
        "title": meta(property="og:title") or (opt_str(title_tag.get_text()) if title_tag else None),
        "description": meta(property="og:description") or meta(name="description"),
        "image": meta(property="og:image"),
        "price": meta(property="product:price:amount"),
        "currency": meta(property="product:price:currency"),
        "locality": meta(property="og:locality"),
    }


def dig(data: Any, *path: str | int) -> Any:
    """Safe nested lookup: ``dig(d, "props", "pageProps", "ad")``."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def _ld_types(block: dict) -> set[str]:
    kind = block.get("@type")
    if isinstance(kind, str):
        return {kind.lower()}
    if isinstance(kind, list):
        return {k.lower() for k in kind if isinstance(k, str)}
    return set()


def json_ld_attributes(blocks: list[dict]) -> dict[str, Any]:
    """
    Collect listing attributes from schema.org blocks.

    Understands ``Offer``/``Product``/``Residence``-like objects: ``name``,
    ``description``, ``offers.price``/``priceCurrency``, ``address``,
    ``floorSize`` and ``numberOfRooms``. Only the first value found for each
    attribute is kept.
    """
    out: dict[str, Any] = {}

    def put(key: str, value: Any) -> None:
        if value is not None and key not in out:
            out[key] = value

    for block in blocks:
        if _ld_types(block) & _SKIP_LD_TYPES:
            continue

        put("title", opt_str(block.get("name")))
        put("description", opt_str(block.get("description")))

        offers = block.get("offers")
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        if isinstance(offers, dict):
            put("price_amount", opt_number(offers.get("price")))
            put("currency", opt_str(offers.get("priceCurrency")))
        put("price_amount", opt_number(block.get("price")))
        put("currency", opt_str(block.get("priceCurrency")))

        address = block.get("address")
        if not isinstance(address, dict):
            address = dig(block, "itemOffered", "address")
        if isinstance(address, dict):
            put("street", opt_str(address.get("streetAddress")))
            put("city", opt_str(address.get("addressLocality")))
            put("voivodeship", opt_str(address.get("addressRegion")))

        floor_size = block.get("floorSize") or dig(block, "itemOffered", "floorSize")
        if isinstance(floor_size, dict):
            put("area_m2", opt_number(floor_size.get("value")))
        else:
            put("area_m2", opt_number(floor_size))

        rooms = opt_number(block.get("numberOfRooms") or dig(block, "itemOffered", "numberOfRooms"))
        if rooms is not None:
            put("rooms", int(round(rooms)))

        image = block.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get("url")
        put("thumb_url", opt_str(image))

        phone = opt_str(block.get("telephone")) or opt_str(dig(block, "seller", "telephone"))
        put("owner_phone", phone)

    return out


def is_bad_thumb(url: str) -> bool:
    t = url.lower()
    return t.endswith(".svg") or any(marker in t for marker in _BAD_THUMB_MARKERS)


def pick_thumb_url(soup: BeautifulSoup, page_url: str) -> str | None:
    """og:image, then twitter:image, then the first real ``<img>`` (no logos/SVG)."""
    candidates: list[str | None] = []

    og = soup.find("meta", attrs={"property": "og:image"})
    candidates.append(og.get("content") if og else None)
    tw = soup.find("meta", attrs={"name": "twitter:image"})
    candidates.append(tw.get("content") if tw else None)
    for img in soup.find_all("img"):
        candidates.append(img.get("data-src") or img.get("src"))

    for raw in candidates:
        url = abs_url(page_url, raw)
        if url and not is_bad_thumb(url):
            return url
    return None


def text_of(node) -> str | None:
    """Whitespace-collapsed text of a tag, or None."""
    if node is None:
        return None
    return opt_str(re.sub(r"\s+", " ", node.get_text(" ")))
