"""Tests for currency.py and rates.py - UAH-pivot conversion and rate tables."""

import pytest
import requests

from fakes import FakeResponse, FakeSession
from wallet_engine.currency import CurrencyConverter, normalize_currency, rate_key
from wallet_engine.rates import RateService, derive_rate_table


@pytest.fixture
def converter(rates):
    return CurrencyConverter(rates)


def test_same_currency_is_identity(converter):
    """Converting to the same currency returns the amount unchanged."""
    assert converter.convert(123.45, "USD", "USD") == 123.45
    assert converter.convert(7.0, "XYZ", "XYZ") == 7.0


def test_usdt_is_an_alias_of_usd(converter):
    """USDT shares the USD rate and converts 1:1 to USD."""
    assert converter.convert(2, "USDT", "UAH") == 80.0
    assert converter.convert(5, "USDT", "USD") == 5


def test_round_trip_with_consistent_table(converter):
    """Converting there and back returns the original amount."""
    there = converter.convert(100, "USD", "EUR")
    assert there == pytest.approx(100 * 40 / 44)
    assert converter.convert(there, "EUR", "USD") == pytest.approx(100)


def test_empty_table_returns_original_amount():
    """While rates are warming up the amount passes through unconverted."""
    converter = CurrencyConverter({})
    assert converter.convert(100, "USD", "UAH") == 100

    result = converter.convert_checked(100, "USD", "UAH")
    assert result.exact is False


def test_missing_second_leg_returns_uah_intermediate():
    """Without the target rate the UAH value is returned."""
    converter = CurrencyConverter({"840->980": 40.0})
    result = converter.convert_checked(10, "USD", "EUR")
    assert result.amount == 400.0
    assert result.exact is False
    assert converter.can_convert("USD", "UAH")
    assert not converter.can_convert("USD", "EUR")


def test_missing_currency_is_passthrough(converter):
    """A missing source or target leaves the amount untouched."""
    assert converter.convert(50, None, "UAH") == 50
    assert converter.convert(50, "USD", "") == 50


def test_lowercase_codes_are_normalised(converter):
    assert normalize_currency(" usd ") == "USD"
    assert converter.convert(1, "usd", "uah") == 40.0
    assert rate_key("EUR") == "978->980"
    assert rate_key("BTC") is None


def test_derive_rate_table_from_usd_quotes():
    """Quotes against USD are turned into hryvnias per unit."""
    table = derive_rate_table({"rates": {"USD": 1, "UAH": 41.0, "EUR": 0.9, "GBP": 0}})
    assert table["840->980"] == pytest.approx(41.0)
    assert table["978->980"] == pytest.approx(41.0 / 0.9)
    assert "826->980" not in table


def test_derive_rate_table_without_uah_is_empty():
    assert derive_rate_table({"rates": {"USD": 1, "EUR": 0.9}}) == {}
    assert derive_rate_table(["not", "a", "mapping"]) == {}


def test_rate_service_fetches_table(config):
    """The service reads the configured endpoint and derives the table."""
    session = FakeSession(FakeResponse(200, {"rates": {"USD": 1, "UAH": 40.0}}))
    service = RateService(config, session=session)

    assert service.fetch_rate_table() == {"840->980": 40.0}
    assert session.calls[0]["url"] == "http://rates.test/latest"


def test_rate_service_degrades_to_empty_table(config):
    """Transport failures and HTTP errors never raise."""
    session = FakeSession(requests.ConnectionError("offline"), FakeResponse(503, {"error": "busy"}))
    service = RateService(config, session=session)

    assert service.fetch_rate_table() == {}
    assert service.fetch_rate_table() == {}


@pytest.mark.asyncio
async def test_rate_service_async_wrapper(config):
    session = FakeSession(FakeResponse(200, {"rates": {"USD": 1, "UAH": 40.0, "EUR": 0.8}}))
    table = await RateService(config, session=session).fetch_rate_table_async()
    assert table["978->980"] == pytest.approx(50.0)


def test_with_rates_returns_a_new_converter(converter):
    empty = converter.with_rates({})

    assert empty.rates == {}
    assert empty.convert(10, "USD", "UAH") == 10
    assert converter.can_convert("USD", "UAH")
