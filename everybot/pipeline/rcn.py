"""Price registry (RCN) cross-reference around a listing's coordinate."""

import json
import math
import re
from datetime import date
from functools import lru_cache
from urllib.parse import urlencode

from bs4 import BeautifulSoup
from loguru import logger
from lxml import etree
from pyproj import Transformer

from everybot.errors import ConfigError, FetchError, ParseError
from everybot.fetch import FetchClient
from everybot.logging import stage_finished, stage_started
from everybot.models import RcnMatch
from everybot.pipeline.state import BatchResult, PipelineContext
from everybot.utils.helpers import opt_str
from everybot.utils.html import text_of

STAGE = "rcn"

REGISTRY_CRS = "EPSG:2180"

PRICE_KEYS = (
    "tran_cena_brutto",
    "nier_cena_brutto",
    "lok_cena_brutto",
    "dzi_cena_brutto",
    "bud_cena_brutto",
    "cena",
    "cena_brutto",
    "cena_transakcyjna",
    "cenatransakcyjna",
    "wartosc",
    "wartość",
    "price",
)

DATE_KEYS = (
    "dok_data",
    "data",
    "data_transakcji",
    "datatransakcji",
    "data_zawarcia",
    "dataaktu",
    "transaction_date",
    "date",
)

XSI_NIL = "{http://www.w3.org/2001/XMLSchema-instance}nil"
GML_ID_ATTRS = ("{http://www.opengis.net/gml/3.2}id", "{http://www.opengis.net/gml}id")

_ISO_DATE = re.compile(r"(?<!\d)(\d{4})-(\d{2})-(\d{2})(?!\d)")
_PL_DATE = re.compile(r"(?<!\d)(\d{2})\.(\d{2})\.(\d{4})(?!\d)")
_LABEL_LINE = re.compile(r"^\s*([^:\n]{2,60}):\s*(.+?)\s*$", re.MULTILINE)

# Raster click box size in pixels; the click lands in the middle
INFO_PIXELS = 101


@lru_cache(maxsize=1)
def _to_registry() -> Transformer:
    return Transformer.from_crs("EPSG:4326", REGISTRY_CRS, always_xy=True)


def bbox_2180(lat: float, lng: float, radius_m: float) -> tuple[float, float, float, float]:
    """Square box of ``radius_m`` around a WGS84 point, in EPSG:2180 metres (minx, miny, maxx, maxy)."""
    x, y = _to_registry().transform(lng, lat)
    if not (math.isfinite(x) and math.isfinite(y)):
        raise ParseError(f"Coordinate out of registry range: {lat},{lng}")
    return x - radius_m, y - radius_m, x + radius_m, y + radius_m


def bbox_param(bbox: tuple[float, float, float, float], axis_order: str = "yx") -> str:
    """Serialize a box for the registry; ``yx`` puts northing first as EPSG:2180 defines."""
    minx, miny, maxx, maxy = bbox
    if axis_order == "yx":
        return f"{miny:.2f},{minx:.2f},{maxy:.2f},{maxx:.2f}"
    return f"{minx:.2f},{miny:.2f},{maxx:.2f},{maxy:.2f}"


def rcn_link(lat: float, lng: float, base_url: str) -> str:
    """Registry map view centered on the coordinate."""
    return f"{base_url}?{urlencode({'map': 'mapa', 'center': f'{lng},{lat}', 'scale': '5000'})}"


def parse_registry_number(value) -> float | None:
    """Price from a registry field ("1 234 567,89", 450000)."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    s = re.sub(r"\s", "", str(value)).replace(",", ".")
    s = re.sub(r"[^\d.]", "", s)
    if s.count(".") > 1:
        s = s.replace(".", "")
    try:
        number = float(s)
    except ValueError:
        return None
    return number if number > 0 else None


def parse_registry_date(value) -> date | None:
    """``YYYY-MM-DD`` (also inside a timestamp) or ``DD.MM.YYYY``."""
    s = opt_str(value if isinstance(value, str) else None)
    if not s:
        return None
    try:
        match = _ISO_DATE.search(s)
        if match:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        match = _PL_DATE.search(s)
        if match:
            return date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
    except ValueError:
        return None
    return None


def _pick(properties: dict, keys: tuple[str, ...], parse):
    lowered = {str(k).lower(): v for k, v in properties.items()}
    for key in keys:
        if key in lowered:
            value = parse(lowered[key])
            if value is not None:
                return value
    return None


def match_from_properties(properties: dict, layer: str, mode: str, source_id: str | None = None) -> RcnMatch | None:
    match = RcnMatch(
        price=_pick(properties, PRICE_KEYS, parse_registry_number),
        transaction_date=_pick(properties, DATE_KEYS, parse_registry_date),
        source_id=source_id,
        layer=layer,
        mode=mode,
    )
    return match if match.usable else None


def match_from_json(payload: dict, layer: str) -> RcnMatch | None:
    """First GeoJSON feature carrying a price or a date."""
    features = payload.get("features")
    if not isinstance(features, list):
        return None
    for feature in features:
        if not isinstance(feature, dict) or not isinstance(feature.get("properties"), dict):
            continue
        source_id = feature.get("id")
        match = match_from_properties(
            feature["properties"],
            layer,
            "json",
            str(source_id) if source_id not in (None, "") else None,
        )
        if match:
            return match
    return None


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def match_from_xml(body: str, layer: str) -> RcnMatch | None:
    """
    First GML feature carrying a price or a date.

    An OWS ``ExceptionReport`` means no data. Elements marked
    ``xsi:nil="true"`` are ignored.
    """
    parser = etree.XMLParser(recover=True, resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(body.encode("utf-8"), parser)
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Unreadable registry XML: {e}") from e
    if root is None:
        return None
    if _local(root.tag) == "exceptionreport":
        logger.debug("Registry returned ExceptionReport for {}", layer)
        return None

    features = [el for el in root.iter() if any(attr in el.attrib for attr in GML_ID_ATTRS)]
    if not features:
        features = [root]

    for feature in features:
        properties = {}
        for el in feature.iter():
            if el is feature or len(el) or el.get(XSI_NIL) == "true":
                continue
            value = opt_str(el.text)
            if value is not None:
                properties.setdefault(_local(el.tag), value)
        source_id = next((feature.get(attr) for attr in GML_ID_ATTRS if feature.get(attr)), None)
        match = match_from_properties(properties, layer, "xml", source_id)
        if match:
            return match
    return None


def info_panel_pairs(html: str) -> list[tuple[str, str]]:
    """Label/value pairs from a feature-info panel (table rows, ``dl`` lists, "Label: value" lines)."""
    soup = BeautifulSoup(html or "", "lxml")
    pairs: list[tuple[str, str]] = []

    for tr in soup.find_all("tr"):
        cells = tr.find_all(["th", "td"])
        if len(cells) >= 2:
            label, value = text_of(cells[0]), text_of(cells[1])
            if label and value:
                pairs.append((label, value))

    for dl in soup.find_all("dl"):
        for dt in dl.find_all("dt"):
            dd = dt.find_next_sibling("dd")
            label, value = text_of(dt), text_of(dd)
            if label and value:
                pairs.append((label, value))

    if not pairs:
        for match in _LABEL_LINE.finditer(soup.get_text("\n")):
            pairs.append((match.group(1).strip(), match.group(2).strip()))

    return pairs


def match_from_info_panel(html: str, layer: str = "wms") -> RcnMatch | None:
    price = None
    when = None
    source_id = None
    for label, value in info_panel_pairs(html):
        key = label.lower()
        if price is None and "cena" in key:
            price = parse_registry_number(value)
        elif when is None and "data" in key:
            when = parse_registry_date(value)
        elif source_id is None and "identyfikator" in key:
            source_id = value
    match = RcnMatch(price=price, transaction_date=when, source_id=source_id, layer=layer, mode="html")
    return match if match.usable else None


def parse_wfs_payload(body: str, layer: str) -> RcnMatch | None:
    """Dispatch on payload shape: GeoJSON, then GML/XML."""
    text = (body or "").strip()
    if not text:
        return None
    if text[0] in "{[":
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise ParseError(f"Unreadable registry JSON: {e}") from e
        return match_from_json(payload, layer) if isinstance(payload, dict) else None
    if text.startswith("<"):
        return match_from_xml(text, layer)
    return None


class RegistryClient:
    """
    WFS/WMS client for the price registry.

    Vector layers are asked in order and the first one with a price or a
    date wins. Without a price, a WMS GetFeatureInfo click in the middle of
    the same box is tried and its price fills the gap.
    """

    def __init__(
        self,
        fetcher: FetchClient,
        wfs_url: str,
        wms_url: str | None,
        layers: list[str],
        axis_order: str = "yx",
    ):
        self.fetcher = fetcher
        self.wfs_url = wfs_url
        self.wms_url = wms_url
        self.layers = layers
        self.axis_order = axis_order

    async def query_layer(self, layer: str, bbox) -> RcnMatch | None:
        params = {
            "SERVICE": "WFS",
            "REQUEST": "GetFeature",
            "VERSION": "2.0.0",
            "TYPENAMES": layer,
            "COUNT": "50",
            "SRSNAME": REGISTRY_CRS,
            "BBOX": f"{bbox_param(bbox, self.axis_order)},{REGISTRY_CRS}",
            "OUTPUTFORMAT": "application/json",
        }
        fetched = await self.fetcher.fetch_ok(
            self.wfs_url,
            params=params,
            headers={"Accept": "application/json, text/xml;q=0.9, application/xml;q=0.8, */*;q=0.7"},
        )
        return parse_wfs_payload(fetched.body, layer)

    async def feature_info(self, bbox) -> RcnMatch | None:
        center = INFO_PIXELS // 2
        layers = ",".join(self.layers)
        params = {
            "SERVICE": "WMS",
            "REQUEST": "GetFeatureInfo",
            "VERSION": "1.3.0",
            "LAYERS": layers,
            "QUERY_LAYERS": layers,
            "STYLES": "",
            "CRS": REGISTRY_CRS,
            "BBOX": bbox_param(bbox, self.axis_order),
            "WIDTH": str(INFO_PIXELS),
            "HEIGHT": str(INFO_PIXELS),
            "I": str(center),
            "J": str(center),
            "INFO_FORMAT": "text/html",
            "FEATURE_COUNT": "10",
        }
        fetched = await self.fetcher.fetch_ok(self.wms_url, params=params, headers={"Accept": "text/html,*/*;q=0.8"})
        return match_from_info_panel(fetched.body)

    async def lookup(self, lat: float, lng: float, radius_m: float) -> tuple[RcnMatch | None, list[str], int]:
        """
        Look up a comparable transaction near a point.

        Returns:
            Tuple of (match or None, failure messages, number of queries sent)
        """
        bbox = bbox_2180(lat, lng, radius_m)
        failures: list[str] = []
        queries = 0
        best: RcnMatch | None = None

        for layer in self.layers:
            queries += 1
            try:
                match = await self.query_layer(layer, bbox)
            except (FetchError, ParseError) as e:
                logger.debug("Registry layer {} failed: {}", layer, e)
                failures.append(f"{layer}: {e}")
                continue
            if match is not None:
                best = match
                break

        if (best is None or best.price is None) and self.wms_url:
            queries += 1
            try:
                info = await self.feature_info(bbox)
            except (FetchError, ParseError) as e:
                logger.debug("Registry feature info failed: {}", e)
                failures.append(f"wms: {e}")
                info = None
            if info is not None:
                if best is None:
                    best = info
                else:
                    best = RcnMatch(
                        price=info.price,
                        transaction_date=best.transaction_date or info.transaction_date,
                        source_id=best.source_id or info.source_id,
                        layer=best.layer,
                        mode=f"{best.mode}+html",
                    )

        return best, failures, queries


async def run_rcn_batch(
    ctx: PipelineContext,
    office_id: str,
    limit: int | None = None,
    radius: float | None = None,
    *,
    force: bool = False,
) -> BatchResult:
    """
    Attach registry prices/dates to geocoded rows.

    ``rcn_enriched_at`` is stamped after every lookup, found or not; the row
    comes back only after the cooldown or with ``force``.
    """
    settings = ctx.settings
    settings.require("rcn_wfs_url", "rcn_map_url")
    limit = settings.rcn_limit if limit is None else limit
    radius = settings.rcn_radius_m if radius is None else radius

    client = RegistryClient(
        ctx.fetcher,
        settings.rcn_wfs_url,
        settings.rcn_wms_url,
        settings.rcn_layers,
        settings.rcn_axis_order,
    )

    rows = ctx.store.select_stale_for_rcn(
        office_id,
        limit,
        cooldown_hours=settings.rcn_cooldown_hours,
        force=force,
    )
    result = BatchResult(stage=STAGE, details={"radius_m": radius, "matched": 0})
    stage_started(STAGE, office_id, selected=len(rows), radius_m=radius)

    for row in rows:
        await ctx.pace(STAGE, settings.rcn_delay)
        try:
            match, failures, queries = await client.lookup(row.lat, row.lng, radius)
        except ConfigError:
            raise
        except Exception as e:
            logger.warning("Registry lookup failed for {}: {}", row.id, e)
            result.add_error(e, item_id=row.id, source=row.source, url=row.source_url)
            ctx.store.save_rcn(office_id, row.id, None, None)
            continue

        ctx.store.save_rcn(office_id, row.id, match, rcn_link(row.lat, row.lng, settings.rcn_map_url))

        if match is None and failures and len(failures) == queries:
            logger.warning("Registry unreachable for {}: {}", row.id, "; ".join(failures))
            result.add_error("; ".join(failures), item_id=row.id, source=row.source, url=row.source_url)
            continue

        result.processed += 1
        if match is not None:
            result.details["matched"] += 1

    stage_finished(STAGE, office_id, {"processed": result.processed, "errors": len(result.errors)})
    return result
