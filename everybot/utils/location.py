"""Heuristics for free-text Polish locations."""

import re

from pydantic import BaseModel

from everybot.utils.helpers import slugify_pl

VOIVODESHIPS = [
    "dolnośląskie",
    "kujawsko-pomorskie",
    "lubelskie",
    "lubuskie",
    "łódzkie",
    "małopolskie",
    "mazowieckie",
    "opolskie",
    "podkarpackie",
    "podlaskie",
    "pomorskie",
    "śląskie",
    "świętokrzyskie",
    "warmińsko-mazurskie",
    "wielkopolskie",
    "zachodniopomorskie",
]

_VOIVODESHIP_BY_SLUG = {slugify_pl(name): name for name in VOIVODESHIPS}

_COUNTRY_TOKENS = {"polska", "poland"}
_STREET_PREFIX = re.compile(r"^(ul|al|pl|os|aleja|ulica|plac|osiedle)\b\.?\s*", re.IGNORECASE)
_VOIVODESHIP_PREFIX = re.compile(r"^(woj\.?|województwo|wojewodztwo)\s*", re.IGNORECASE)

_RELATIVE_DATE = re.compile(r"\b(dzisiaj|wczoraj|jutro|przedwczoraj)\b", re.IGNORECASE)
_AGO = re.compile(r"\b\d+\s*(dni|dzień|dzien|godz|godzin|godziny|min|minut|minuty)\s*temu\b", re.IGNORECASE)
_CLOCK = re.compile(r"\b\d{1,2}:\d{2}\b")
_DATED_TAIL = re.compile(
    r"\s+-\s+(dzisiaj|wczoraj|jutro|odświeżono|[0-9]{1,2}\s+\w+|[0-9]{1,2}:[0-9]{2}|[0-9]+\s+dni?\s+temu).*",
    re.IGNORECASE,
)


class LocationParts(BaseModel):
    voivodeship: str | None = None
    city: str | None = None
    district: str | None = None
    street: str | None = None


def match_voivodeship(token: str | None) -> str | None:
    """Canonical voivodeship name for a token like "woj. śląskie" or "Slaskie"."""
    if not token:
        return None
    stripped = _VOIVODESHIP_PREFIX.sub("", token.strip())
    return _VOIVODESHIP_BY_SLUG.get(slugify_pl(stripped))


def split_location(text: str | None) -> LocationParts:
    """
    Split a comma separated location into its parts.

    The last token that names a voivodeship becomes ``voivodeship``; of the
    remaining tokens the last is the city, the one before it the district
    and anything earlier is joined into ``street``. A lone leading token
    with a street prefix ("ul. Długa") is a street, not a district.
    """
    if not text:
        return LocationParts()

    tokens = [t.strip() for t in text.replace(" - ", ", ").split(",")]
    tokens = [t for t in tokens if t and t.lower() not in _COUNTRY_TOKENS]
    if not tokens:
        return LocationParts()

    parts = LocationParts()
    voivodeship = match_voivodeship(tokens[-1])
    if voivodeship:
        parts.voivodeship = voivodeship
        tokens.pop()
    if not tokens:
        return parts

    parts.city = tokens.pop()
    if tokens:
        if len(tokens) == 1 and _STREET_PREFIX.match(tokens[0]):
            parts.street = tokens[0]
        else:
            parts.district = tokens.pop()
            if tokens:
                parts.street = ", ".join(tokens)
    return parts


def clean_loose_location_text(text: str | None) -> str:
    """Drop date/time noise from listing-card locations ("Warszawa - Dzisiaj 12:30")."""
    out = (text or "").strip()
    out = out.split("·")[0].strip()
    out = _DATED_TAIL.sub("", out).strip()
    out = _RELATIVE_DATE.sub("", out)
    out = _AGO.sub("", out)
    out = re.sub(r"\s+", " ", out).strip(" ,-")
    return out
