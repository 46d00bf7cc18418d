"""Helper utilities for scraping."""

import asyncio
import math
import random
import re
import unicodedata
from datetime import datetime
from urllib.parse import urljoin, urlsplit

from everybot.config import settings
from everybot.models import TransactionType

# Listing prices outside this range are parser noise (glued digits, phone numbers).
PRICE_MIN = 1.0
PRICE_MAX = 100_000_000.0

AREA_MIN = 1.0
AREA_MAX = 1_000_000.0

MAX_TITLE_LENGTH = 260

_PRICE_WITH_CURRENCY = re.compile(r"(\d[\d\s.,]*)\s*(zł|zl|pln|eur|€|usd|\$)", re.IGNORECASE)
_FIRST_NUMBER = re.compile(r"\d[\d\s.,]*")
_LOOSE_NUMBER = re.compile(r"\d[\d\s]*(?:[.,]\d+)?")
_AREA = re.compile(r"(\d{1,3}(?:[ \u00a0]\d{3})+(?:[.,]\d+)?|\d+(?:[.,]\d+)?)\s*(?:m²|m2|m\^2|mkw|m kw)", re.IGNORECASE)


async def random_delay(min_seconds: float | None = None, max_seconds: float | None = None) -> None:
    """Sleep for a random duration between min and max seconds."""
    min_s = settings.default_delay_min if min_seconds is None else min_seconds
    max_s = settings.default_delay_max if max_seconds is None else max_seconds
    delay = random.uniform(min_s, max(min_s, max_s))
    await asyncio.sleep(delay)


def opt_str(value) -> str | None:
    """Return a stripped string, or None for blanks and non-strings."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def opt_number(value) -> float | None:
    """Return a finite number from a number or a plain numeric string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _normalize_number(raw: str) -> float | None:
    """
    Turn a localized number string into a float.

    Handles space, dot and comma thousand separators ("1 199 900",
    "1.199.900", "1,199,900") and comma or dot decimals ("55,5", "55.5").
    """
    s = re.sub(r"\s+", "", raw).strip(".,")
    if not s:
        return None

    if "," in s and "." in s:
        # The separator that appears last is the decimal one
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        head, _, tail = s.rpartition(",")
        if s.count(",") == 1 and len(tail) in (1, 2):
            s = f"{head}.{tail}"
        else:
            s = s.replace(",", "")
    elif "." in s:
        tail = s.rpartition(".")[2]
        if s.count(".") > 1 or len(tail) == 3:
            s = s.replace(".", "")

    try:
        return float(s)
    except ValueError:
        return None


def currency_from_text(text: str | None) -> str | None:
    """Detect the currency mentioned in a price label."""
    if not text:
        return None
    t = text.lower()
    if "€" in t or "eur" in t:
        return "EUR"
    if "zł" in t or "zl" in t or "pln" in t:
        return "PLN"
    if "$" in t or "usd" in t:
        return "USD"
    return None


def parse_price(text: str | None) -> tuple[float | None, str | None]:
    """
    Parse price text and extract amount and currency.

    Prefers a "number + currency" match so that unrelated digits in the
    same label are not glued onto the price. Amounts outside
    ``PRICE_MIN``..``PRICE_MAX`` are rejected.

    Returns:
        Tuple of (price, currency)
    """
    if not text:
        return None, None

    currency = currency_from_text(text)

    match = _PRICE_WITH_CURRENCY.search(text)
    raw = match.group(1) if match else None
    if raw is None:
        match = _FIRST_NUMBER.search(text)
        raw = match.group() if match else None
    if raw is None:
        return None, currency

    amount = _normalize_number(raw)
    if amount is None or not (PRICE_MIN <= amount <= PRICE_MAX):
        return None, currency

    return amount, currency


def parse_number_loose(text: str | None) -> float | None:
    """Parse the first number in free text ("55,5", "1 234")."""
    if not text:
        return None
    match = _LOOSE_NUMBER.search(text)
    if not match:
        return None
    return _normalize_number(match.group())


def parse_area(text: str | None) -> float | None:
    """Parse area text and extract square meters."""
    if not text:
        return None

    match = _AREA.search(text)
    area = _normalize_number(match.group(1)) if match else parse_number_loose(text)
    if area is None or not (AREA_MIN <= area <= AREA_MAX):
        return None
    return area


def extract_number(text: str | None) -> int | None:
    """Extract first integer from text."""
    if not text:
        return None

    match = re.search(r"\d+", text)
    if match:
        return int(match.group())
    return None


def clean_text(text: str | None) -> str | None:
    """Clean and normalize text."""
    if not text:
        return None

    # Remove extra whitespace
    text = " ".join(text.split())
    return text.strip() or None


def clean_title(text: str | None) -> str | None:
    """Collapse whitespace and drop implausibly long titles (whole card text)."""
    title = clean_text(text)
    if not title or len(title) > MAX_TITLE_LENGTH:
        return None
    return title


def title_from_url(url: str) -> str | None:
    """
    Synthesize a title from the last path segment of an offer URL.

    "/pl/oferta/przestronne-mieszkanie-z-balkonem-ID4abCd" becomes
    "Przestronne mieszkanie z balkonem". Segments that are only an id
    yield None.
    """
    segment = urlsplit(url).path.rstrip("/").rpartition("/")[2]
    segment = re.sub(r"\.html?$", "", segment, flags=re.IGNORECASE)
    segment = re.sub(r"-(?:CID\d+-)?ID[A-Za-z0-9]+$", "", segment)
    words = [w for w in re.split(r"[-_+]+", segment) if w and not w.isdigit()]
    if sum(1 for w in words if len(w) >= 3 and w.isalpha()) < 2:
        return None
    title = " ".join(words)
    return title[:1].upper() + title[1:]


def slugify_pl(text: str) -> str:
    """Slug for Polish place names in portal paths ("Śląskie" -> "slaskie")."""
    s = text.strip().lower().replace("ł", "l")
    s = unicodedata.normalize("NFD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = re.sub(r"[^a-z0-9]+", "-", s)
    return s.strip("-")


def abs_url(base: str, href: str | None) -> str | None:
    """Resolve ``href`` against ``base``; only http(s) results are kept."""
    href = opt_str(href)
    if not href:
        return None
    if href.startswith("//"):
        href = f"https:{href}"
    try:
        full = urljoin(base, href)
    except ValueError:
        return None
    if urlsplit(full).scheme not in ("http", "https"):
        return None
    return full


def infer_transaction_type(text: str | None) -> TransactionType | None:
    """Guess sale vs rent from a price label ("2 500 zł/mies." is rent)."""
    if not text:
        return None
    t = text.lower()
    if (
        "/mies" in t
        or "miesi" in t
        or "wynaj" in t
        or "najem" in t
        or "month" in t
        or re.search(r"\bmc\b|/\s*mc", t)
    ):
        return TransactionType.RENT
    return TransactionType.SALE


def parse_floor(text: str | None) -> str | None:
    """Floor number from descriptive text; "parter" is floor 0."""
    if not text:
        return None
    t = text.lower()
    if "parter" in t:
        return "0"
    match = re.search(r"pi[eę]tro:?\s*(\d{1,2})\b", t) or re.search(r"\b(\d{1,2})\s*pi[eę]tro\b", t)
    if match:
        return match.group(1)
    return None


def parse_year_built(text: str | None) -> int | None:
    """First plausible construction year mentioned in ``text``."""
    if not text:
        return None
    latest = datetime.now().year + 5
    for match in re.finditer(r"\b(18\d{2}|19\d{2}|20\d{2})\b", text):
        year = int(match.group(1))
        if year <= latest:
            return year
    return None
