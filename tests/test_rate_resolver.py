import datetime
import json
import logging
from decimal import Decimal

import pytest

from revolut2edavki import InMemoryCache, RateResolver, resolve_rates
from revolut2edavki.rates import CACHE_TTL_CURRENT_YEAR, cache_key

from conftest import FIXED_NOW

RATES_2024 = {"2024-03-07": 1.0895, "2024-03-08": 1.0938, "2024-12-31": 1.0389}
RATES_2023 = {"2023-11-14": 1.0704}


def _resolver(fetcher, **kwargs):
    kwargs.setdefault("static_rates", {})
    kwargs.setdefault("now", lambda: FIXED_NOW)
    return RateResolver("USD", fetcher=fetcher, **kwargs)


def _cache_entry(rates, fetched_at):
    return json.dumps({"rates": rates, "fetchedAt": fetched_at})


def test_exact_date(fake_fetcher):
    result = _resolver(fake_fetcher({2024: RATES_2024})).resolve(["2024-03-07"])
    assert result.rates == {"2024-03-07": Decimal("1.0895")}
    assert result.missing_dates == []
    assert result.errors == []
    assert result.success


def test_weekend_uses_previous_business_day(fake_fetcher):
    # 2024-03-09 is a Saturday
    result = _resolver(fake_fetcher({2024: RATES_2024})).resolve(["2024-03-09", "2024-03-10"])
    assert result.rates == {"2024-03-09": Decimal("1.0938"), "2024-03-10": Decimal("1.0938")}
    assert result.missing_dates == []


def test_lookback_limited_to_seven_days(fake_fetcher):
    fetcher = fake_fetcher({2024: {"2024-03-01": 1.0844}})
    result = _resolver(fetcher).resolve(["2024-03-08", "2024-03-09"])
    assert result.rates == {"2024-03-08": Decimal("1.0844")}
    assert result.missing_dates == ["2024-03-09"]
    assert not result.success


def test_never_uses_later_rate(fake_fetcher):
    result = _resolver(fake_fetcher({2024: RATES_2024})).resolve(["2024-03-06"])
    assert result.rates == {}
    assert result.missing_dates == ["2024-03-06"]


def test_gap_on_working_day_is_logged(fake_fetcher, caplog):
    fetcher = fake_fetcher({2024: {"2024-03-05": 1.0857}})
    with caplog.at_level(logging.WARNING):
        result = _resolver(fetcher).resolve(["2024-03-07"])
    assert result.rates == {"2024-03-07": Decimal("1.0857")}
    assert "TARGET working day 2024-03-07" in caplog.text


def test_one_request_per_year(fake_fetcher):
    fetcher = fake_fetcher({2023: RATES_2023, 2024: RATES_2024})
    _resolver(fetcher).resolve(["2024-03-07", "2023-11-14", "2024-12-31", "2024-03-08"])
    assert fetcher.calls == [(2023, "USD"), (2024, "USD")]


def test_failed_year_does_not_block_other_years(fake_fetcher):
    fetcher = fake_fetcher({2024: RATES_2024}, fail_years=[2023])
    result = _resolver(fetcher).resolve(["2023-11-14", "2024-03-07"])
    assert result.rates == {"2024-03-07": Decimal("1.0895")}
    assert result.missing_dates == ["2023-11-14"]
    assert len(result.errors) == 1
    assert "2023" in result.errors[0]
    assert "connection refused" in result.errors[0]


def test_malformed_response_reported_as_error(fake_fetcher):
    fetcher = fake_fetcher(fail_years=[2024], error=ValueError("Unexpected response"))
    result = _resolver(fetcher).resolve(["2024-03-07"])
    assert result.missing_dates == ["2024-03-07"]
    assert result.errors == ["Failed to fetch USD rates for 2024: Unexpected response"]


def test_static_table_used_when_fetch_fails(fake_fetcher):
    fetcher = fake_fetcher(fail_years=[2023])
    resolver = _resolver(fetcher, static_rates={"2023-12-29": Decimal("1.105")})
    # 2023-12-31 is a Sunday; the last ECB fixing of 2023 was on the 29th
    result = resolver.resolve(["2023-12-31"])
    assert result.rates == {"2023-12-31": Decimal("1.105")}
    assert result.missing_dates == []
    assert len(result.errors) == 1


def test_live_rates_take_precedence_over_static(fake_fetcher):
    resolver = _resolver(fake_fetcher({2024: RATES_2024}), static_rates={"2024-03-07": Decimal("9.99")})
    assert resolver.resolve(["2024-03-07"]).rates == {"2024-03-07": Decimal("1.0895")}


def test_bundled_static_table_is_default(fake_fetcher):
    resolver = RateResolver("USD", fetcher=fake_fetcher(fail_years=[2024]), now=lambda: FIXED_NOW)
    result = resolver.resolve(["2024-01-02"])
    assert result.rates == {"2024-01-02": Decimal("1.0956")}


def test_non_positive_rates_ignored(fake_fetcher):
    fetcher = fake_fetcher({2024: {"2024-03-07": 1.0895, "2024-03-08": 0, "2024-03-11": -1.2}})
    result = _resolver(fetcher).resolve(["2024-03-08", "2024-03-11"])
    assert result.rates == {"2024-03-08": Decimal("1.0895"), "2024-03-11": Decimal("1.0895")}


def test_accepts_date_objects(fake_fetcher):
    result = _resolver(fake_fetcher({2024: RATES_2024})).resolve([datetime.date(2024, 3, 7)])
    assert result.rates == {"2024-03-07": Decimal("1.0895")}


def test_invalid_dates_reported_missing(fake_fetcher):
    fetcher = fake_fetcher({2024: RATES_2024})
    result = _resolver(fetcher).resolve(["", "07.03.2024", "2024-03-07"])
    assert result.rates == {"2024-03-07": Decimal("1.0895")}
    assert sorted(result.missing_dates) == ["", "07.03.2024"]


def test_empty_input(fake_fetcher):
    fetcher = fake_fetcher({2024: RATES_2024})
    result = _resolver(fetcher).resolve([])
    assert result.rates == {}
    assert result.missing_dates == []
    assert fetcher.calls == []


def test_fetched_rates_are_cached(fake_fetcher):
    cache = InMemoryCache()
    fetcher = fake_fetcher({2024: RATES_2024})
    _resolver(fetcher, cache=cache).resolve(["2024-03-07"])
    entry = json.loads(cache.get("ecb-rates-2024"))
    assert entry["rates"]["2024-03-07"] == 1.0895
    assert entry["fetchedAt"] == int(FIXED_NOW * 1000)

    _resolver(fetcher, cache=cache).resolve(["2024-03-08"])
    assert fetcher.calls == [(2024, "USD")]


def test_past_year_cache_never_expires(fake_fetcher):
    cache = InMemoryCache()
    cache.set("ecb-rates-2023", _cache_entry(RATES_2023, 0))
    fetcher = fake_fetcher()
    result = _resolver(fetcher, cache=cache).resolve(["2023-11-14"])
    assert result.rates == {"2023-11-14": Decimal("1.0704")}
    assert fetcher.calls == []


def test_current_year_cache_fresh(fake_fetcher):
    cache = InMemoryCache()
    cache.set("ecb-rates-2025", _cache_entry({"2025-03-03": 1.0483}, FIXED_NOW * 1000 - 60_000))
    fetcher = fake_fetcher({2025: {"2025-03-03": 1.05}})
    result = _resolver(fetcher, cache=cache).resolve(["2025-03-03"])
    assert result.rates == {"2025-03-03": Decimal("1.0483")}
    assert fetcher.calls == []


def test_current_year_cache_expires_after_a_day(fake_fetcher):
    cache = InMemoryCache()
    stale = FIXED_NOW * 1000 - CACHE_TTL_CURRENT_YEAR - 1
    cache.set("ecb-rates-2025", _cache_entry({"2025-03-03": 1.0483}, stale))
    fetcher = fake_fetcher({2025: {"2025-03-03": 1.05}})
    result = _resolver(fetcher, cache=cache).resolve(["2025-03-03"])
    assert result.rates == {"2025-03-03": Decimal("1.05")}
    assert fetcher.calls == [(2025, "USD")]
    assert json.loads(cache.get("ecb-rates-2025"))["fetchedAt"] == int(FIXED_NOW * 1000)


def test_corrupt_cache_entry_refetched(fake_fetcher):
    cache = InMemoryCache()
    cache.set("ecb-rates-2024", "{not json")
    fetcher = fake_fetcher({2024: RATES_2024})
    result = _resolver(fetcher, cache=cache).resolve(["2024-03-07"])
    assert result.rates == {"2024-03-07": Decimal("1.0895")}
    assert fetcher.calls == [(2024, "USD")]
    assert "fetchedAt" in json.loads(cache.get("ecb-rates-2024"))


@pytest.mark.parametrize("entry", [
    json.dumps({"rates": [], "fetchedAt": 0}),
    json.dumps({"rates": "1.0895", "fetchedAt": 0}),
    json.dumps({"rates": {"2024-03-07": 1.0895}, "fetchedAt": "yesterday"}),
    json.dumps({"rates": {"2024-03-07": 1.0895}}),
    json.dumps([1, 2, 3]),
    json.dumps("ecb"),
])
def test_wrong_shape_cache_entry_refetched(fake_fetcher, entry):
    cache = InMemoryCache()
    cache.set("ecb-rates-2024", entry)
    fetcher = fake_fetcher({2024: RATES_2024})
    result = _resolver(fetcher, cache=cache).resolve(["2024-03-07"])
    assert result.rates == {"2024-03-07": Decimal("1.0895")}
    assert result.errors == []
    assert fetcher.calls == [(2024, "USD")]
    assert json.loads(cache.get("ecb-rates-2024"))["rates"] == RATES_2024


def test_fetcher_returning_non_mapping_reported_as_error():
    def fetcher(year, currency, timeout):
        return [("2024-03-07", 1.0895)]

    cache = InMemoryCache()
    result = _resolver(fetcher, cache=cache).resolve(["2024-03-07"])
    assert result.rates == {}
    assert result.missing_dates == ["2024-03-07"]
    assert len(result.errors) == 1
    assert "Expected a mapping" in result.errors[0]
    assert cache.get("ecb-rates-2024") is None


def test_empty_fetch_not_cached(fake_fetcher):
    cache = InMemoryCache()
    _resolver(fake_fetcher({2024: {}}), cache=cache).resolve(["2024-03-07"])
    assert cache.get("ecb-rates-2024") is None


def test_failed_fetch_not_cached(fake_fetcher):
    cache = InMemoryCache()
    _resolver(fake_fetcher(fail_years=[2024]), cache=cache).resolve(["2024-03-07"])
    assert cache.get("ecb-rates-2024") is None


def test_other_currency_uses_own_cache_key(fake_fetcher):
    cache = InMemoryCache()
    fetcher = fake_fetcher({2024: {"2024-03-07": 0.8543}})
    resolver = RateResolver("gbp", cache=cache, fetcher=fetcher, static_rates={}, now=lambda: FIXED_NOW)
    result = resolver.resolve(["2024-03-07"])
    assert result.rates == {"2024-03-07": Decimal("0.8543")}
    assert fetcher.calls == [(2024, "GBP")]
    assert cache.get("ecb-rates-gbp-2024") is not None
    assert cache.get("ecb-rates-2024") is None


def test_cache_key():
    assert cache_key(2024) == "ecb-rates-2024"
    assert cache_key(2024, "usd") == "ecb-rates-2024"
    assert cache_key(2023, "CHF") == "ecb-rates-chf-2023"


def test_resolve_rates_wrapper(fake_fetcher):
    result = resolve_rates(
        ["2024-03-07"], fetcher=fake_fetcher({2024: RATES_2024}), static_rates={}, now=lambda: FIXED_NOW
    )
    assert result.rates == {"2024-03-07": Decimal("1.0895")}
