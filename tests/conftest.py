import datetime
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from revolut2edavki import TaxpayerIdentity

SAMPLE_CSV = """
Income from Sells
Date acquired,Date sold,Symbol,Security name,ISIN,Country,Quantity,Cost basis,Gross proceeds,Gross PnL,Currency
2020-04-09,2024-03-07,NVDA,NVIDIA,US67066G1040,US,4,"269.84","3,654.20","3,384.36",USD
2023-01-15 10:30:00,2024-06-20 15:45:12,MSFT,Microsoft,US5949181045,US,2,"480.00","900.00","420.00",USD

Other income & fees
Date,Symbol,Security name,ISIN,Country,Gross amount,Withholding tax,Net Amount,Currency
2024-01-10,TSM,Taiwan Semiconductor,US8740391003,TW,16.92,"€3.55","€13.37",EUR
2024-02-15,AAPL,Apple Inc.,US0378331005,US,0.24,0.04,0.20,USD
2024-03-01,,,,-,,-0.01,,USD
"""

SAMPLE_CSV_ALT = """Income from Sells,,,,,,,,,,
Date acquired,Date sold,Symbol,Security name,ISIN,Country,Quantity,Cost basis,Gross proceeds,Gross PnL,Currency
2022-05-02,2023-11-14,AMD,Advanced Micro Devices,US0079031078,US,10,"850.00","1,170.50","320.50",USD
,,,,,,,,,,
Dividends,,,,,,,,,,
Date,Symbol,Security name,ISIN,Country,Gross amount,Withholding tax,Net amount,Currency
2023-06-01,KO,Coca-Cola,US1912161007,US,1.84,0.28,1.56,USD
"""

# Clock fixed in the middle of 2025: 2025 is the current year, 2024 and earlier are past years.
FIXED_NOW = datetime.datetime(2025, 6, 1, 12, 0, 0).timestamp()


@pytest.fixture
def sample_csv():
    return SAMPLE_CSV


@pytest.fixture
def sample_csv_alt():
    return SAMPLE_CSV_ALT


@pytest.fixture
def taxpayer():
    return TaxpayerIdentity(
        tax_number="12345678",
        name="Janez Novak",
        address="Slovenska cesta 1",
        post_number="1000",
        post_name="Ljubljana",
        city="Ljubljana",
        email="janez@example.com",
        telephone_number="041123456",
    )


class FakeFetcher:
    """Stands in for fetch_ecb_rates: serves canned rates per year and records calls."""

    def __init__(self, rates_by_year=None, fail_years=(), error=None):
        self.rates_by_year = rates_by_year or {}
        self.fail_years = set(fail_years)
        self.error = error or OSError("connection refused")
        self.calls = []

    def __call__(self, year, currency, timeout):
        self.calls.append((year, currency))
        if year in self.fail_years:
            raise self.error
        return {day: Decimal(str(rate)) for day, rate in self.rates_by_year.get(year, {}).items()}


@pytest.fixture
def fake_fetcher():
    return FakeFetcher


def frankfurter_body(rates, currency="USD"):
    """Encode {iso_date: rate} the way the Frankfurter time-series endpoint does."""
    return json.dumps({
        "amount": 1.0,
        "base": "EUR",
        "rates": {day: {currency: rate} for day, rate in rates.items()},
    }).encode("utf-8")


def mock_urlopen_factory(rates_by_year, currency="USD"):
    """Create a urlopen mock answering Frankfurter requests by the year in the URL."""
    requested = []

    def _mock(url, **kwargs):
        requested.append(url)
        year = int(url.rsplit("/", 1)[1][:4])
        resp = MagicMock()
        resp.read.return_value = frankfurter_body(rates_by_year.get(year, {}), currency)
        resp.__enter__ = lambda s: s
        resp.__exit__ = MagicMock(return_value=False)
        return resp

    _mock.requested = requested
    return _mock


@pytest.fixture
def urlopen_factory():
    return mock_urlopen_factory
