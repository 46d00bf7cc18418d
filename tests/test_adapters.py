"""Tests for portal adapters: search URLs, search pages, offer pages."""

import asyncio
import json

import pytest

from conftest import next_data_page, olx_card, olx_search_page, otodom_ad, otodom_search_page
from everybot.adapters import (
    GratkaAdapter,
    MorizonAdapter,
    OdwlascicielaAdapter,
    OlxAdapter,
    OtodomAdapter,
    get_adapter,
)
from everybot.errors import ConfigError
from everybot.models import DegradedReason, PropertyType, SearchFilters, TransactionType

OTODOM_SEARCH = "https://www.otodom.pl/pl/wyniki/sprzedaz/mieszkanie/mazowieckie?viewType=listing"


class TestRegistry:
    def test_known_adapters(self):
        assert isinstance(get_adapter("otodom"), OtodomAdapter)
        assert isinstance(get_adapter("OLX"), OlxAdapter)

    def test_unknown_adapter(self):
        with pytest.raises(ConfigError):
            get_adapter("allegro")


# =============================================================================
# Search URLs
# =============================================================================


class TestSearchUrls:
    """Only portal-safe filters reach the portal."""

    def test_otodom_path_encodes_region(self):
        filters = SearchFilters(q="balkon", voivodeship="Śląskie", city="Katowice", transaction_type=TransactionType.RENT)
        url = OtodomAdapter().build_search_url(filters, page=2)
        assert url.startswith("https://www.otodom.pl/pl/wyniki/wynajem/mieszkanie/slaskie?")
        assert "balkon" in url
        assert "page=2" in url
        assert "Katowice" not in url

    def test_otodom_without_region(self):
        url = OtodomAdapter().build_search_url(SearchFilters())
        assert url == "https://www.otodom.pl/pl/wyniki/sprzedaz/mieszkanie/cala-polska?viewType=listing"

    def test_olx_phrase_slug(self):
        url = OlxAdapter().build_search_url(SearchFilters(q="dwa pokoje"), page=2)
        assert url == "https://www.olx.pl/nieruchomosci/q-dwa-pokoje/?page=2"

    def test_olx_first_page(self):
        assert OlxAdapter().build_search_url(SearchFilters()) == "https://www.olx.pl/nieruchomosci/"

    def test_gratka_segments(self):
        filters = SearchFilters(q="balkon", property_type=PropertyType.APARTMENT, transaction_type=TransactionType.SALE)
        assert GratkaAdapter().build_search_url(filters) == "https://gratka.pl/nieruchomosci/mieszkania/sprzedaz?q=balkon"

    def test_morizon_and_odwlasciciela(self):
        assert MorizonAdapter().build_search_url(SearchFilters(q="dom"), 3) == "https://www.morizon.pl/?q=dom&page=3"
        assert OdwlascicielaAdapter().build_search_url(SearchFilters()) == "https://odwlasciciela.pl/oferty"


# =============================================================================
# Search pages
# =============================================================================


class TestOtodomSearch:
    def test_items_from_embedded_data(self):
        html = otodom_search_page(
            [
                otodom_ad("mieszkanie-2-pokoje-ID4abc", "Mieszkanie 2 pokoje"),
                otodom_ad("mieszkanie-2-pokoje-ID4abc", "Mieszkanie 2 pokoje"),
                otodom_ad("jasne-mieszkanie-przy-parku-ID4def", None),
                otodom_ad("ID4zzz", None),
            ],
            page=1,
            total_pages=3,
        )
        page = OtodomAdapter().parse_search_results(html, OTODOM_SEARCH, requested_url=OTODOM_SEARCH)

        assert not page.degraded
        assert page.has_next is True
        assert [item.source_url for item in page.items] == [
            "https://www.otodom.pl/pl/oferta/mieszkanie-2-pokoje-ID4abc",
            "https://www.otodom.pl/pl/oferta/jasne-mieszkanie-przy-parku-ID4def",
        ]
        assert page.discarded == 1

        first = page.items[0]
        assert first.price_amount == 500000
        assert first.currency == "PLN"
        assert first.rooms == 2
        assert first.city == "Warszawa"
        assert first.voivodeship == "mazowieckie"
        assert first.property_type == "apartment"
        assert first.transaction_type == TransactionType.SALE
        assert page.items[1].title == "Jasne mieszkanie przy parku"

    def test_last_page_has_no_next(self):
        html = otodom_search_page([otodom_ad("a-b-c-ID1", "Oferta")], page=3, total_pages=3)
        page = OtodomAdapter().parse_search_results(html, OTODOM_SEARCH, page=3, requested_url=OTODOM_SEARCH)
        assert page.has_next is False

    def test_redirect_to_whole_country_is_degraded(self):
        final = "https://www.otodom.pl/pl/wyniki/sprzedaz/mieszkanie/cala-polska?viewType=listing"
        html = otodom_search_page([otodom_ad("a-b-c-ID1", "Oferta")])
        page = OtodomAdapter().parse_search_results(html, final, requested_url=OTODOM_SEARCH)

        assert page.degraded
        assert page.degraded_reason == DegradedReason.PORTAL_REDIRECTED
        assert page.items == []
        assert page.has_next is False

    def test_markup_fallback(self):
        html = """
        <html><body>
          <article>
            <a href="https://www.otodom.pl/pl/oferta/dom-z-ogrodem-ID9xyz"><h3>Dom z ogrodem</h3></a>
            <span class="price">1 250 000 zł</span>
            <p class="address">Wilanów, Warszawa</p>
            <span>160 m²</span><span>5 pokoi</span>
          </article>
        </body></html>
        """
        page = OtodomAdapter().parse_search_results(html, OTODOM_SEARCH, requested_url=OTODOM_SEARCH)

        assert len(page.items) == 1
        item = page.items[0]
        assert item.title == "Dom z ogrodem"
        assert item.price_amount == 1250000
        assert item.location_text == "Wilanów, Warszawa"
        assert item.area_m2 == 160
        assert item.rooms == 5

    def test_block_page(self):
        html = "<html><head><title>Attention Required</title></head><body>Please solve the captcha</body></html>"
        page = OtodomAdapter().parse_search_results(html, OTODOM_SEARCH, requested_url=OTODOM_SEARCH)
        assert page.degraded_reason == DegradedReason.CAPTCHA_OR_BLOCK

    def test_empty_page_is_not_an_error(self):
        page = OtodomAdapter().parse_search_results(
            "<html><body>Brak wyników</body></html>", OTODOM_SEARCH, requested_url=OTODOM_SEARCH
        )
        assert not page.degraded
        assert page.items == []
        assert page.has_next is False


class TestOlxSearch:
    def test_cards(self):
        html = olx_search_page(
            [
                olx_card("mieszkanie-2-pokoje-podgorze-CID3-IDabc12", "Mieszkanie 2 pokoje Podgórze"),
                olx_card("kawalerka-CID3-IDdef34", "Kawalerka", price="1 900 zł/mies."),
            ],
            next_link=True,
        )
        page = OlxAdapter().parse_search_results(html, "https://www.olx.pl/nieruchomosci/")

        assert page.has_next is True
        assert len(page.items) == 2
        first = page.items[0]
        assert first.source_url == "https://www.olx.pl/d/oferta/mieszkanie-2-pokoje-podgorze-CID3-IDabc12.html"
        assert first.title == "Mieszkanie 2 pokoje Podgórze"
        assert first.price_amount == 2500
        assert first.location_text == "Kraków, Podgórze"
        assert first.area_m2 == 48
        assert page.items[1].transaction_type == TransactionType.RENT

    def test_redirects_are_not_degradation(self):
        html = olx_search_page([olx_card("a-b-c-IDx1", "Oferta testowa")])
        page = OlxAdapter().parse_search_results(
            html,
            "https://www.olx.pl/nieruchomosci/mieszkania/",
            requested_url="https://www.olx.pl/nieruchomosci/q-test/",
        )
        assert not page.degraded
        assert len(page.items) == 1


class TestGenericSearch:
    def test_gratka_redirect_is_degraded(self):
        page = GratkaAdapter().parse_search_results(
            "<html></html>",
            "https://gratka.pl/nieruchomosci",
            requested_url="https://gratka.pl/nieruchomosci/mieszkania/sprzedaz?q=balkon",
        )
        assert page.degraded

    def test_morizon_cards(self):
        html = """
        <ul>
          <li><a href="/oferta/sprzedaz-mieszkanie-lodz-polesie-mzn2041234567"><h2>Mieszkanie Łódź Polesie</h2></a>
              <div class="price">399 000 zł</div><div class="location">Łódź, Polesie</div></li>
          <li><a href="/oferta/sprzedaz-dom-zgierz-mzn2047654321"><h2>Dom Zgierz</h2></a>
              <div class="price">899 000 zł</div></li>
        </ul>
        <a rel="next" href="/?page=2">2</a>
        """
        page = MorizonAdapter().parse_search_results(html, "https://www.morizon.pl/", requested_url="https://www.morizon.pl/")
        assert [i.title for i in page.items] == ["Mieszkanie Łódź Polesie", "Dom Zgierz"]
        assert page.items[0].price_amount == 399000
        assert page.has_next is True

    def test_owner_portal_price_from_text(self):
        html = """
        <div class="offer">
          <a href="/oferty/podglad/1234"><h3>Mieszkanie bez pośredników</h3></a>
          <p>Cena: 560 000 zł do negocjacji</p>
        </div>
        """
        page = OdwlascicielaAdapter().parse_search_results(
            html, "https://odwlasciciela.pl/oferty", requested_url="https://odwlasciciela.pl/oferty"
        )
        assert page.items[0].price_amount == 560000

    def test_owner_portal_enrich_is_a_no_op(self):
        result = asyncio.run(OdwlascicielaAdapter().enrich(None, "https://odwlasciciela.pl/oferty/podglad/1234"))
        assert result.filled() == {}


# =============================================================================
# Offer pages
# =============================================================================


def otodom_offer(ad: dict, body: str = "") -> str:
    return next_data_page({"props": {"pageProps": {"ad": ad}}}, body)


OTODOM_AD = {
    "title": "Słoneczne 3 pokoje z balkonem",
    "description": "<p>Słoneczne mieszkanie</p>",
    "characteristics": [
        {"key": "price", "value": "650000", "currency": "PLN"},
        {"key": "m", "value": "54.2"},
        {"key": "rooms_num", "value": "3"},
        {"key": "floor_no", "value": "floor_2"},
        {"key": "build_year", "value": "2015"},
    ],
    "adCategory": {"name": "FLAT", "type": "SELL"},
    "location": {
        "address": {
            "street": {"name": "Puławska", "number": "12"},
            "district": {"name": "Mokotów"},
            "city": {"name": "Warszawa"},
            "province": {"name": "mazowieckie"},
        }
    },
    "owner": {"phones": ["+48 600 100 200"]},
    "images": [{"large": "https://img.otodom.pl/a-large.jpg"}],
}


class TestOfferPages:
    """Structured data wins field by field; markup fills the gaps."""

    def test_otodom_structured(self):
        result = OtodomAdapter().parse_detail(otodom_offer(OTODOM_AD), "https://www.otodom.pl/pl/oferta/x-ID1")

        assert result.title == "Słoneczne 3 pokoje z balkonem"
        assert result.description == "Słoneczne mieszkanie"
        assert result.price_amount == 650000
        assert result.currency == "PLN"
        assert result.area_m2 == 54.2
        assert result.rooms == 3
        assert result.floor == "2"
        assert result.year_built == 2015
        assert result.street == "Puławska 12"
        assert result.district == "Mokotów"
        assert result.city == "Warszawa"
        assert result.voivodeship == "mazowieckie"
        assert result.owner_phone == "+48 600 100 200"
        assert result.thumb_url == "https://img.otodom.pl/a-large.jpg"
        assert result.property_type == "apartment"
        assert result.transaction_type == TransactionType.SALE
        assert result.price_per_m2 == round(650000 / 54.2)

    def test_otodom_markup_fills_missing_price(self):
        ad = {key: value for key, value in OTODOM_AD.items() if key != "characteristics"}
        body = '<strong data-cy="adPageHeaderPrice">700 000 zł</strong>'
        result = OtodomAdapter().parse_detail(otodom_offer(ad, body), "https://www.otodom.pl/pl/oferta/x-ID1")

        assert result.title == "Słoneczne 3 pokoje z balkonem"
        assert result.price_amount == 700000
        assert result.currency == "PLN"

    def test_json_ld_and_labelled_text(self):
        ld = {
            "@context": "https://schema.org",
            "@type": "Product",
            "name": "Mieszkanie na Polesiu",
            "offers": {"price": "499000", "priceCurrency": "PLN"},
            "address": {"addressLocality": "Łódź", "addressRegion": "Łódzkie"},
        }
        html = f"""
        <html><head>
          <script type="application/ld+json">{json.dumps(ld)}</script>
          <meta property="og:image" content="/photos/1.jpg">
        </head><body>
          <h1>Mieszkanie na Polesiu</h1>
          <ul><li>Powierzchnia: 61,3 m²</li><li>Liczba pokoi: 3</li><li>Piętro: parter</li></ul>
        </body></html>
        """
        result = MorizonAdapter().parse_detail(html, "https://www.morizon.pl/oferta/x-mzn1")

        assert result.price_amount == 499000
        assert result.city == "Łódź"
        assert result.voivodeship == "łódzkie"
        assert result.area_m2 == 61.3
        assert result.rooms == 3
        assert result.floor == "0"
        assert result.thumb_url == "https://www.morizon.pl/photos/1.jpg"
        assert result.price_per_m2 == round(499000 / 61.3)

    def test_olx_markup(self):
        html = """
        <html><body>
          <ol data-testid="breadcrumbs"><li>Nieruchomości</li><li>Mieszkania</li></ol>
          <h4 data-cy="ad_title">Kawalerka przy parku</h4>
          <div data-testid="ad-price-container"><h3>2 300 zł</h3></div>
          <div data-cy="ad_description">Ciche mieszkanie, blisko SKM.</div>
          <p data-testid="location-date">Gdynia, Śródmieście</p>
          <div data-testid="ad-parameters-container">
            <p>Powierzchnia: 27 m²</p><p>Liczba pokoi: 1 pokój</p><p>Poziom: 2</p>
          </div>
        </body></html>
        """
        result = OlxAdapter().parse_detail(html, "https://www.olx.pl/d/oferta/kawalerka-CID3-IDq1.html")

        assert result.title == "Kawalerka przy parku"
        assert result.price_amount == 2300
        assert result.description == "Ciche mieszkanie, blisko SKM."
        assert result.city == "Gdynia"
        assert result.district == "Śródmieście"
        assert result.area_m2 == 27
        assert result.rooms == 1
        assert result.property_type == "apartment"
