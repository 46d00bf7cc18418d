"""Tests for the coordinate-based stages: geocoding and price registry lookups."""

import asyncio
from datetime import date

import pytest

from conftest import OFFICE
from everybot.errors import ConfigError, ParseError
from everybot.models import GeocodeResult, ListingCandidate, ListingSnapshot
from everybot.pipeline import run_geocode_batch, run_rcn_batch
from everybot.pipeline.geocode import PhotonGeocoder, build_geocode_query, photon_confidence, sanitize_geocode_query
from everybot.pipeline.rcn import (
    RegistryClient,
    bbox_2180,
    bbox_param,
    match_from_info_panel,
    match_from_xml,
    parse_registry_date,
    parse_registry_number,
    parse_wfs_payload,
    rcn_link,
)

PHOTON = "https://photon.komoot.io/api/"
REGISTRY = "https://mapy.geoportal.gov.pl/wss/service/rcn"

GML_FEATURES = """
<wfs:FeatureCollection xmlns:wfs="http://www.opengis.net/wfs/2.0"
    xmlns:gml="http://www.opengis.net/gml/3.2"
    xmlns:ms="http://mapserver.gis.umn.edu/mapserver"
    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">
  <wfs:member>
    <ms:lokale gml:id="lokale.1">
      <ms:tran_cena_brutto xsi:nil="true"/>
      <ms:dok_data xsi:nil="true"/>
    </ms:lokale>
  </wfs:member>
  <wfs:member>
    <ms:lokale gml:id="lokale.2">
      <ms:TRAN_CENA_BRUTTO>640000</ms:TRAN_CENA_BRUTTO>
      <ms:dok_data>2023-02-10</ms:dok_data>
    </ms:lokale>
  </wfs:member>
</wfs:FeatureCollection>
"""

EXCEPTION_REPORT = """
<ows:ExceptionReport xmlns:ows="http://www.opengis.net/ows/1.1" version="2.0.0">
  <ows:Exception exceptionCode="InvalidParameterValue"><ows:ExceptionText>bad layer</ows:ExceptionText></ows:Exception>
</ows:ExceptionReport>
"""

INFO_TABLE = """
<html><body><table>
  <tr><th>Cena transakcyjna</th><td>725 000,00 zł</td></tr>
  <tr><th>Data transakcji</th><td>14.06.2023</td></tr>
  <tr><th>Identyfikator</th><td>RCN.77</td></tr>
</table></body></html>
"""

EMPTY_COLLECTION = {"type": "FeatureCollection", "features": []}


def snapshot(**fields) -> ListingSnapshot:
    return ListingSnapshot(id="1", office_id=OFFICE, source="olx", source_url="https://www.olx.pl/d/oferta/x.html", **fields)


def located_listing(store, slug="mieszkanie-mokotow-ID9a", lat=52.2297, lng=21.0122) -> str:
    listing_id = store.upsert_listing(
        OFFICE,
        ListingCandidate(source="otodom", source_url=f"https://www.otodom.pl/pl/oferta/{slug}", title="Mieszkanie"),
    )
    store.save_geocode(OFFICE, listing_id, GeocodeResult(lat=lat, lng=lng, confidence=0.9))
    return listing_id


# =============================================================================
# Geocoding
# =============================================================================


class TestGeocodeQuery:
    def test_street_and_city_first(self):
        row = snapshot(street="ul. Długa 5", city="Gdańsk", voivodeship="pomorskie", location_text="Śródmieście")
        assert build_geocode_query(row) == "ul. Długa 5, Gdańsk, pomorskie, Poland"

    def test_location_containing_city(self):
        row = snapshot(location_text="Kraków, Podgórze", city="Kraków")
        assert build_geocode_query(row) == "Kraków, Podgórze, Poland"

    def test_location_without_city(self):
        assert build_geocode_query(snapshot(location_text="Zakopane centrum")) == "Zakopane centrum, Poland"

    def test_city_alone(self):
        assert build_geocode_query(snapshot(city="Łódź")) == "Łódź, Poland"

    def test_nothing_to_send(self):
        assert build_geocode_query(snapshot()) is None

    def test_sanitize_drops_card_noise(self):
        cleaned = sanitize_geocode_query("Kraków, Podgórze - Dzisiaj o 12:30")
        assert "12:30" not in cleaned
        assert "Dzisiaj" not in cleaned
        assert cleaned.startswith("Kraków, Podgórze")
        assert len(sanitize_geocode_query("Warszawa " * 40)) <= 120

    def test_confidence(self):
        assert photon_confidence({}) == 0.15
        assert photon_confidence({"state": "a", "city": "b", "street": "c", "housenumber": "1"}) == 0.9


class TestGeocodeBatch:
    def test_found_and_not_found_are_both_attempted_once(self, ctx, store, web):
        with_street = store.upsert_listing(
            OFFICE,
            ListingCandidate(
                source="olx",
                source_url="https://www.olx.pl/d/oferta/mieszkanie-pulawska-CID3-IDj1.html",
                title="Mieszkanie",
                street="ul. Puławska 10",
                district="Mokotów",
                city="Warszawa",
            ),
        )
        vague = store.upsert_listing(
            OFFICE,
            ListingCandidate(
                source="olx",
                source_url="https://www.olx.pl/d/oferta/dom-gdzies-CID3-IDj2.html",
                title="Dom",
                location_text="Gdzieś pod miastem",
            ),
        )
        web.add_json(
            PHOTON,
            {
                "features": [
                    {
                        "geometry": {"coordinates": [21.0241, 52.1934]},
                        "properties": {"street": "Puławska", "city": "Warszawa", "state": "mazowieckie"},
                    }
                ]
            },
            q="ul. Puławska 10, Mokotów, Warszawa, Poland",
        )
        web.add_json(PHOTON, {"features": [{"geometry": {"coordinates": [20.0, 50.0]}, "properties": {}}]})

        result = asyncio.run(run_geocode_batch(ctx, OFFICE))

        assert result.processed == 2
        assert result.details == {"found": 1, "not_found": 1}
        row = store.get_listing(OFFICE, with_street)
        assert (row.lat, row.lng) == (52.1934, 21.0241)
        assert row.geocode_confidence == 0.5
        low = store.get_listing(OFFICE, vague)
        assert low.lat is None
        assert low.geocoded_at is not None

        requests_before = len(web.requests)
        again = asyncio.run(run_geocode_batch(ctx, OFFICE))
        assert again.processed == 0
        assert len(web.requests) == requests_before

    def test_force_retries_unresolved_rows(self, ctx, store, web):
        store.upsert_listing(
            OFFICE,
            ListingCandidate(source="olx", source_url="https://www.olx.pl/d/oferta/a-b-CID3-IDk1.html", title="A", city="Radom"),
        )
        web.add_json(PHOTON, {"features": []})

        asyncio.run(run_geocode_batch(ctx, OFFICE))
        forced = asyncio.run(run_geocode_batch(ctx, OFFICE, force=True))

        assert forced.processed == 1
        assert len(web.requests) == 2

    def test_failed_request_leaves_row_for_next_run(self, ctx, store, web):
        listing_id = store.upsert_listing(
            OFFICE,
            ListingCandidate(source="olx", source_url="https://www.olx.pl/d/oferta/a-b-CID3-IDk2.html", title="A", city="Radom"),
        )
        web.add(PHOTON, "down", status=500)

        result = asyncio.run(run_geocode_batch(ctx, OFFICE))

        assert result.processed == 0
        assert len(result.errors) == 1
        assert store.get_listing(OFFICE, listing_id).geocoded_at is None

    def test_unusable_answers_are_not_found(self, ctx, store, web):
        for slug, city in (("a-b-CID3-IDk3", "Radom"), ("c-d-CID3-IDk4", "Kielce")):
            store.upsert_listing(
                OFFICE,
                ListingCandidate(source="olx", source_url=f"https://www.olx.pl/d/oferta/{slug}.html", title="A", city=city),
            )
        web.add_json(PHOTON, {"features": [None]}, q="Radom, Poland")
        web.add_json(PHOTON, {"features": [{"geometry": None, "properties": ["x"]}]}, q="Kielce, Poland")

        result = asyncio.run(run_geocode_batch(ctx, OFFICE))

        assert result.processed == 2
        assert result.errors == []
        assert result.details == {"found": 0, "not_found": 2}

    def test_one_failing_row_does_not_stop_the_batch(self, ctx, store, web, monkeypatch):
        broken = store.upsert_listing(
            OFFICE,
            ListingCandidate(source="olx", source_url="https://www.olx.pl/d/oferta/a-b-CID3-IDk5.html", title="A", city="Radom"),
        )
        store.upsert_listing(
            OFFICE,
            ListingCandidate(source="olx", source_url="https://www.olx.pl/d/oferta/c-d-CID3-IDk6.html", title="B", city="Kielce"),
        )
        web.add_json(PHOTON, {"features": []})
        original = PhotonGeocoder.geocode

        async def geocode(self, query):
            if query.startswith("Radom"):
                raise RuntimeError("unexpected payload")
            return await original(self, query)

        monkeypatch.setattr(PhotonGeocoder, "geocode", geocode)

        result = asyncio.run(run_geocode_batch(ctx, OFFICE))

        assert result.processed == 1
        assert [e.item_id for e in result.errors] == [broken]
        assert "RuntimeError" in result.errors[0].error

    def test_missing_endpoint(self, ctx, settings):
        settings.geocoder_url = ""
        with pytest.raises(ConfigError):
            asyncio.run(run_geocode_batch(ctx, OFFICE))


# =============================================================================
# Price registry parsing
# =============================================================================


class TestRegistryValues:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("1 234 567,89", 1234567.89),
            ("1.234.567", 1234567.0),
            ("725 000 zł", 725000.0),
            (450000, 450000.0),
            ("0", None),
            (-5, None),
            (True, None),
            ("brak", None),
            (None, None),
        ],
    )
    def test_numbers(self, value, expected):
        assert parse_registry_number(value) == expected

    def test_dates(self):
        assert parse_registry_date("2023-04-05T00:00:00Z") == date(2023, 4, 5)
        assert parse_registry_date("2023-04-05Z") == date(2023, 4, 5)
        assert parse_registry_date("2023-04-05") == date(2023, 4, 5)
        assert parse_registry_date("12023-04-05") is None
        assert parse_registry_date("05.04.2023") == date(2023, 4, 5)
        assert parse_registry_date("2023-13-40") is None
        assert parse_registry_date(20230405) is None

    def test_bbox_is_metric_and_northing_first(self):
        bbox = bbox_2180(52.2297, 21.0122, 250)
        minx, miny, maxx, maxy = bbox
        assert maxx - minx == pytest.approx(500)
        assert 600000 < minx < 700000
        assert 450000 < miny < 520000

        first, second, _, _ = (float(v) for v in bbox_param(bbox, "yx").split(","))
        assert first == pytest.approx(miny, abs=0.01)
        assert second == pytest.approx(minx, abs=0.01)
        assert bbox_param(bbox, "xy").startswith(f"{minx:.2f},")

    def test_map_link(self):
        link = rcn_link(52.23, 21.01, "https://mapy.geoportal.gov.pl/imapnext/imap/")
        assert link.startswith("https://mapy.geoportal.gov.pl/imapnext/imap/?")
        assert "center=21.01%2C52.23" in link


class TestRegistryPayloads:
    def test_geojson_feature(self):
        body = '{"features": [{"id": "lokale.9", "properties": {"Cena": "510 000", "Data": "2022-08-01"}}]}'
        match = parse_wfs_payload(body, "lokale")
        assert match.price == 510000
        assert match.transaction_date == date(2022, 8, 1)
        assert match.source_id == "lokale.9"
        assert match.mode == "json"

    def test_geojson_without_values(self):
        assert parse_wfs_payload('{"features": [{"properties": {"opis": "x"}}]}', "lokale") is None

    def test_broken_json(self):
        with pytest.raises(ParseError):
            parse_wfs_payload('{"features": [', "lokale")

    def test_gml_skips_nil_values(self):
        match = match_from_xml(GML_FEATURES, "lokale")
        assert match.source_id == "lokale.2"
        assert match.price == 640000
        assert match.transaction_date == date(2023, 2, 10)
        assert match.mode == "xml"

    def test_exception_report_means_no_data(self):
        assert parse_wfs_payload(EXCEPTION_REPORT, "lokale") is None

    def test_info_table(self):
        match = match_from_info_panel(INFO_TABLE)
        assert match.price == 725000
        assert match.transaction_date == date(2023, 6, 14)
        assert match.source_id == "RCN.77"
        assert match.mode == "html"

    def test_info_label_lines(self):
        match = match_from_info_panel("<div><p>Cena: 300 000 zł</p><p>Data: 2021-01-02</p></div>")
        assert match.price == 300000
        assert match.transaction_date == date(2021, 1, 2)

    def test_empty_panel(self):
        assert match_from_info_panel("<html><body>Brak danych</body></html>") is None


# =============================================================================
# Price registry batch
# =============================================================================


def wfs(web, layer, payload):
    web.add_json(REGISTRY, payload, SERVICE="WFS", TYPENAMES=layer)


def queried(web, service):
    return [r.url.params for r in web.requests if r.url.params.get("SERVICE") == service]


class TestRcnBatch:
    def test_first_priced_layer_wins(self, ctx, store, web):
        listing_id = located_listing(store)
        wfs(web, "lokale", EMPTY_COLLECTION)
        wfs(
            web,
            "budynki",
            {"features": [{"id": "budynki.3", "properties": {"bud_cena_brutto": 980000, "dok_data": "2024-03-01"}}]},
        )
        wfs(web, "dzialki", {"features": [{"id": "dzialki.1", "properties": {"cena": 1}}]})

        result = asyncio.run(run_rcn_batch(ctx, OFFICE))

        assert result.processed == 1
        assert result.details["matched"] == 1
        assert [p["TYPENAMES"] for p in queried(web, "WFS")] == ["lokale", "budynki"]
        assert queried(web, "WMS") == []

        first = queried(web, "WFS")[0]
        assert first["VERSION"] == "2.0.0"
        assert first["BBOX"].endswith(",EPSG:2180")

        row = store.get_listing(OFFICE, listing_id)
        assert row.rcn_last_price == 980000
        assert row.rcn_last_date == date(2024, 3, 1)
        assert row.rcn_last_source_id == "budynki.3"
        assert row.rcn_link.startswith("https://mapy.geoportal.gov.pl/imapnext/imap/?")
        assert row.rcn_enriched_at is not None

    def test_raster_fills_missing_price(self, ctx, store, web):
        listing_id = located_listing(store)
        wfs(web, "lokale", {"features": [{"id": "lokale.5", "properties": {"dok_data": "2023-09-09"}}]})
        web.add(REGISTRY, INFO_TABLE, SERVICE="WMS", REQUEST="GetFeatureInfo")

        asyncio.run(run_rcn_batch(ctx, OFFICE))

        info = queried(web, "WMS")[0]
        assert info["VERSION"] == "1.3.0"
        assert (info["WIDTH"], info["HEIGHT"], info["I"], info["J"]) == ("101", "101", "50", "50")
        assert info["QUERY_LAYERS"] == "lokale,budynki,dzialki"
        assert info["INFO_FORMAT"] == "text/html"

        row = store.get_listing(OFFICE, listing_id)
        assert row.rcn_last_price == 725000
        assert row.rcn_last_date == date(2023, 9, 9)
        assert row.rcn_last_source_id == "lokale.5"

    def test_exception_report_is_not_a_failure(self, ctx, store, web):
        located_listing(store)
        web.add(REGISTRY, EXCEPTION_REPORT, content_type="text/xml", SERVICE="WFS")

        result = asyncio.run(run_rcn_batch(ctx, OFFICE))

        assert result.processed == 1
        assert result.details["matched"] == 0
        assert result.errors == []

    def test_unreachable_registry_is_an_item_error(self, ctx, store, web):
        listing_id = located_listing(store)

        result = asyncio.run(run_rcn_batch(ctx, OFFICE))

        assert result.processed == 0
        assert len(result.errors) == 1
        row = store.get_listing(OFFICE, listing_id)
        assert row.rcn_last_price is None
        assert row.rcn_enriched_at is not None

    def test_cooldown_and_force(self, ctx, store, web):
        located_listing(store)
        for layer in ("lokale", "budynki", "dzialki"):
            wfs(web, layer, EMPTY_COLLECTION)
        web.add(REGISTRY, "<html></html>", SERVICE="WMS")

        asyncio.run(run_rcn_batch(ctx, OFFICE))
        sent = len(web.requests)

        assert asyncio.run(run_rcn_batch(ctx, OFFICE)).processed == 0
        assert len(web.requests) == sent

        assert asyncio.run(run_rcn_batch(ctx, OFFICE, force=True)).processed == 1
        assert len(web.requests) == 2 * sent

    def test_rows_without_coordinates_are_ignored(self, ctx, store, web):
        store.upsert_listing(
            OFFICE,
            ListingCandidate(source="otodom", source_url="https://www.otodom.pl/pl/oferta/bez-wspolrzednych-ID9z", title="A"),
        )
        assert asyncio.run(run_rcn_batch(ctx, OFFICE)).processed == 0
        assert web.requests == []

    def test_timestamp_date_is_stored(self, ctx, store, web):
        listing_id = located_listing(store)
        wfs(web, "lokale", {"features": [{"id": "lokale.8", "properties": {"dok_data": "2022-10-17T00:00:00Z"}}]})
        web.add(REGISTRY, "<html></html>", SERVICE="WMS")

        result = asyncio.run(run_rcn_batch(ctx, OFFICE))

        assert result.details["matched"] == 1
        row = store.get_listing(OFFICE, listing_id)
        assert row.rcn_last_date == date(2022, 10, 17)
        assert row.rcn_last_price is None

    def test_malformed_features_are_skipped(self, ctx, store, web):
        first = located_listing(store)
        second = located_listing(store, slug="dom-wilanow-ID9b", lat=52.1651, lng=21.0901)
        for layer in ("lokale", "budynki", "dzialki"):
            wfs(web, layer, {"features": [{"id": "x", "properties": ["oops"]}, None, "y"]})
        web.add(REGISTRY, "<html></html>", SERVICE="WMS")

        result = asyncio.run(run_rcn_batch(ctx, OFFICE))

        assert result.processed == 2
        assert result.details["matched"] == 0
        assert result.errors == []
        assert store.get_listing(OFFICE, first).rcn_enriched_at is not None
        assert store.get_listing(OFFICE, second).rcn_enriched_at is not None

    def test_one_failing_row_does_not_stop_the_batch(self, ctx, store, web, monkeypatch):
        broken = located_listing(store, slug="dom-w-lodzi-ID9c", lat=51.7592, lng=19.4560)
        located_listing(store)
        for layer in ("lokale", "budynki", "dzialki"):
            wfs(web, layer, EMPTY_COLLECTION)
        web.add(REGISTRY, "<html></html>", SERVICE="WMS")
        original = RegistryClient.lookup

        async def lookup(self, lat, lng, radius_m):
            if lat == 51.7592:
                raise RuntimeError("unexpected payload")
            return await original(self, lat, lng, radius_m)

        monkeypatch.setattr(RegistryClient, "lookup", lookup)

        result = asyncio.run(run_rcn_batch(ctx, OFFICE))

        assert result.processed == 1
        assert [e.item_id for e in result.errors] == [broken]
        assert store.get_listing(OFFICE, broken).rcn_enriched_at is not None

    def test_missing_endpoint(self, ctx, settings):
        settings.rcn_wfs_url = ""
        with pytest.raises(ConfigError):
            asyncio.run(run_rcn_batch(ctx, OFFICE))
