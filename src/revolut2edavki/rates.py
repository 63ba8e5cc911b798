import datetime
import http.client
import json
import logging
import ssl
import time
import urllib.request
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Union

import certifi
import pandas as pd
from workalendar.europe import EuropeanCentralBank

from .models import RateResolution
from .validation import check_rates_resolved

FRANKFURTER_API = "https://api.frankfurter.dev/v1"
REPORTING_CURRENCY = "EUR"
CACHE_PREFIX = "ecb-rates-"
CACHE_TTL_CURRENT_YEAR = 24 * 60 * 60 * 1000  # milliseconds; past years never expire
DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "revolut2edavki"
STATIC_RATES_DIR = Path(__file__).parent / "data"

# ECB publishes no rates on TARGET closing days; the gap before the nearest
# earlier rate is bounded by this window.
MAX_RATE_LOOKBACK_DAYS = 7

DateLike = Union[str, datetime.date]
RateTable = Dict[str, Decimal]
Fetcher = Callable[[int, str, float], RateTable]

_ecb_calendar = EuropeanCentralBank()


class CacheProvider(Protocol):
    """Key/value store for per-year rate series."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryCache:
    """Cache that lives as long as the process."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileCache:
    """Cache persisted as one JSON file per key in a directory."""

    def __init__(self, directory: Union[str, Path] = DEFAULT_CACHE_DIR) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logging.warning("Cannot read rate cache %s: %s", path, exc)
            return None

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(value, encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logging.warning("Cannot write rate cache %s: %s", path, exc)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


def cache_key(year: int, currency: str = "USD") -> str:
    """Cache key for one year's series, e.g. 'ecb-rates-2024' (USD) or 'ecb-rates-gbp-2024'."""
    currency = currency.upper()
    if currency == "USD":
        return f"{CACHE_PREFIX}{year}"
    return f"{CACHE_PREFIX}{currency.lower()}-{year}"


def clean_rates(raw: Dict[str, object]) -> RateTable:
    """Keep entries with an ISO date key and a positive numeric rate.

    Raises:
        ValueError: if ``raw`` is not a mapping.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Expected a mapping of dates to rates, got {type(raw).__name__}")
    rates: RateTable = {}
    for day, value in raw.items():
        try:
            iso_day = datetime.date.fromisoformat(str(day)).isoformat()
            rate = Decimal(str(value))
        except (ValueError, InvalidOperation):
            continue
        if rate.is_finite() and rate > 0:
            rates[iso_day] = rate
    return rates


def build_rate_url(year: int, currency: str = "USD") -> str:
    """Frankfurter URL for a full calendar year of EUR-based rates for one currency."""
    return (
        f"{FRANKFURTER_API}/{year}-01-01..{year}-12-31"
        f"?base={REPORTING_CURRENCY}&symbols={currency.upper()}"
    )


def fetch_ecb_rates(year: int, currency: str = "USD", timeout: float = DEFAULT_TIMEOUT) -> RateTable:
    """Fetch one year of ECB reference rates (1 EUR = X ``currency``) from Frankfurter.

    The response body looks like
    ``{"base": "EUR", "rates": {"2024-01-02": {"USD": 1.0956}, ...}}``.

    Raises:
        urllib.error.URLError: on network failure or non-2xx response.
        ValueError: on a malformed body.
    """
    url = build_rate_url(year, currency)
    ssl_ctx = ssl.create_default_context(cafile=certifi.where())
    with urllib.request.urlopen(url, context=ssl_ctx, timeout=timeout) as resp:
        payload = json.loads(resp.read().decode("utf-8"))
    if not isinstance(payload, dict) or not isinstance(payload.get("rates"), dict):
        raise ValueError(f"Unexpected response from {url}")
    symbol = currency.upper()
    raw = {
        day: entry[symbol]
        for day, entry in payload["rates"].items()
        if isinstance(entry, dict) and symbol in entry
    }
    rates = clean_rates(raw)
    logging.info("Fetched %d %s rate(s) for %d.", len(rates), symbol, year)
    return rates


def static_rates_path(currency: str = "USD") -> Path:
    return STATIC_RATES_DIR / f"ecb-rates-{currency.lower()}.json"


def load_static_rates(currency: str = "USD", path: Optional[Union[str, Path]] = None) -> RateTable:
    """Load the bundled fallback table; a currency without a bundled table has none."""
    path = Path(path) if path else static_rates_path(currency)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logging.warning("Ignoring unreadable static rate table %s: %s", path, exc)
        return {}
    return clean_rates(raw) if isinstance(raw, dict) else {}


def lookup_rates(
    dates: Iterable[str],
    table: RateTable,
    max_lookback_days: int = MAX_RATE_LOOKBACK_DAYS,
) -> Dict[str, str]:
    """Map each date to the date of the rate to use: itself, or the nearest earlier rate date.

    Performs a backward asof-merge limited to ``max_lookback_days``. Dates with
    no rate in that window are absent from the result.
    """
    requested = sorted(set(dates))
    if not requested or not table:
        return {}
    left = pd.DataFrame({"date": pd.to_datetime(requested)})
    right = pd.DataFrame({"rate_date": pd.to_datetime(sorted(table))})
    merged = pd.merge_asof(
        left,
        right,
        left_on="date",
        right_on="rate_date",
        direction="backward",
        tolerance=pd.Timedelta(days=max_lookback_days),
        allow_exact_matches=True,
    )
    found = {}
    for row in merged.itertuples(index=False):
        if pd.notna(row.rate_date):
            found[row.date.strftime("%Y-%m-%d")] = row.rate_date.strftime("%Y-%m-%d")
    return found


def _to_iso(value: DateLike) -> Optional[str]:
    if isinstance(value, datetime.datetime):
        return value.date().isoformat()
    if isinstance(value, datetime.date):
        return value.isoformat()
    try:
        return datetime.date.fromisoformat(str(value).strip()).isoformat()
    except ValueError:
        return None


class RateResolver:
    """Resolve EUR reference rates for one foreign currency.

    Rates are layered by priority: per-year cache, then the remote service
    (one request per uncached year), then the bundled static table. Resolution
    never raises; failures are reported in the returned RateResolution.

    Args:
        currency: Foreign currency code, e.g. 'USD'.
        cache: Cache provider; defaults to a process-local in-memory cache.
        fetcher: ``fetcher(year, currency, timeout) -> {iso_date: rate}``.
        static_rates: Fallback table; defaults to the bundled one for ``currency``.
        now: Clock returning epoch seconds, used for cache expiry.
        timeout: Seconds allowed for each remote request.
    """

    def __init__(
        self,
        currency: str = "USD",
        cache: Optional[CacheProvider] = None,
        fetcher: Fetcher = fetch_ecb_rates,
        static_rates: Optional[RateTable] = None,
        now: Callable[[], float] = time.time,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.currency = currency.upper()
        self.cache = cache if cache is not None else InMemoryCache()
        self.fetcher = fetcher
        self.static_rates = static_rates if static_rates is not None else load_static_rates(self.currency)
        self.now = now
        self.timeout = timeout

    def _current_year(self) -> int:
        return datetime.date.fromtimestamp(self.now()).year

    def load_cached(self, year: int) -> Optional[RateTable]:
        """Cached series for ``year``, or None if absent, unreadable or expired."""
        key = cache_key(year, self.currency)
        raw = self.cache.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            fetched_at = float(data["fetchedAt"])
            rates = clean_rates(data["rates"])
        except (ValueError, KeyError, TypeError) as exc:
            logging.warning("Discarding corrupt rate cache entry %s: %s", key, exc)
            self.cache.delete(key)
            return None
        if year >= self._current_year() and self.now() * 1000 - fetched_at > CACHE_TTL_CURRENT_YEAR:
            logging.info("Rate cache for %d expired; refreshing.", year)
            self.cache.delete(key)
            return None
        return rates

    def save_cached(self, year: int, rates: RateTable) -> None:
        payload = {
            "rates": {day: float(rate) for day, rate in sorted(rates.items())},
            "fetchedAt": int(self.now() * 1000),
        }
        self.cache.set(cache_key(year, self.currency), json.dumps(payload))

    def _year_rates(self, year: int, errors: List[str]) -> RateTable:
        cached = self.load_cached(year)
        if cached is not None:
            logging.info("Using cached %s rates for %d (%d entries).", self.currency, year, len(cached))
            return cached
        try:
            rates = clean_rates(self.fetcher(year, self.currency, self.timeout))
        except (OSError, http.client.HTTPException, ValueError) as exc:
            # URLError, HTTPError, timeouts, truncated responses and malformed bodies all land here
            message = f"Failed to fetch {self.currency} rates for {year}: {exc}"
            logging.warning(message)
            errors.append(message)
            return {}
        if rates:
            self.save_cached(year, rates)
        else:
            logging.warning("Rate service returned no %s rates for %d.", self.currency, year)
        return rates

    def resolve(self, dates: Iterable[DateLike]) -> RateResolution:
        """Find the rate for each date (ISO strings or ``date`` objects).

        Uses the exact date when a rate exists, otherwise the nearest earlier
        rate at most MAX_RATE_LOOKBACK_DAYS back. Dates still without a rate
        are reported in ``missing_dates``; fetch failures in ``errors``.
        """
        result = RateResolution()
        requested = set()
        for value in dates:
            iso = _to_iso(value)
            if iso is None:
                result.missing_dates.append(str(value))
            else:
                requested.add(iso)
        if not requested:
            return result

        live: RateTable = {}
        for year in sorted({int(d[:4]) for d in requested}):
            live.update(self._year_rates(year, result.errors))

        combined = {**self.static_rates, **live}
        matches = lookup_rates(requested, combined)
        for day in sorted(requested):
            rate_day = matches.get(day)
            if rate_day is None:
                result.missing_dates.append(day)
                continue
            if rate_day != day:
                self._log_fallback(day, rate_day)
            result.rates[day] = combined[rate_day]

        check_rates_resolved(self.currency, result.missing_dates)
        return result

    def _log_fallback(self, day: str, rate_day: str) -> None:
        if _ecb_calendar.is_working_day(datetime.date.fromisoformat(day)):
            logging.warning(
                "No %s rate published for TARGET working day %s; using rate of %s.",
                self.currency, day, rate_day,
            )
        else:
            logging.debug("%s is a TARGET closing day; using %s rate of %s.", day, self.currency, rate_day)


def resolve_rates(dates: Iterable[DateLike], currency: str = "USD", **kwargs) -> RateResolution:
    """Convenience wrapper: ``RateResolver(currency, **kwargs).resolve(dates)``."""
    return RateResolver(currency, **kwargs).resolve(dates)


def update_static_rates(
    years: Iterable[int],
    currency: str = "USD",
    path: Optional[Union[str, Path]] = None,
    fetcher: Fetcher = fetch_ecb_rates,
    timeout: float = DEFAULT_TIMEOUT,
) -> int:
    """Merge freshly fetched rates for ``years`` into the static fallback table.

    Returns:
        Number of entries in the table after the update.
    """
    updates: RateTable = {}
    for year in years:
        updates.update(clean_rates(fetcher(year, currency.upper(), timeout)))
    return _merge_static_rates(updates, currency, path)


def load_ecb_history(source: Union[str, Path], currency: str = "USD") -> RateTable:
    """Read one currency from the ECB reference-rate history (eurofxref-hist.csv, or the .zip).

    The file has a ``Date`` column and one column per currency; days without a
    fixing hold ``N/A`` and are skipped.

    Raises:
        ValueError: if the file has no ``Date`` or ``currency`` column.
    """
    frame = pd.read_csv(source, dtype=str, keep_default_na=False)
    frame.columns = [str(c).strip() for c in frame.columns]
    symbol = currency.upper()
    if "Date" not in frame.columns or symbol not in frame.columns:
        raise ValueError(f"{source} is not an ECB rate history with a {symbol} column")
    return clean_rates(dict(zip(frame["Date"].str.strip(), frame[symbol].str.strip())))


def import_static_rates(
    source: Union[str, Path],
    currency: str = "USD",
    path: Optional[Union[str, Path]] = None,
) -> int:
    """Merge a downloaded ECB history file into the static fallback table, for offline use.

    Returns:
        Number of entries in the table after the import.
    """
    rates = load_ecb_history(source, currency)
    logging.info("Read %d %s rate(s) from %s.", len(rates), currency.upper(), source)
    return _merge_static_rates(rates, currency, path)


def _merge_static_rates(updates: RateTable, currency: str, path: Optional[Union[str, Path]]) -> int:
    path = Path(path) if path else static_rates_path(currency)
    table = load_static_rates(currency, path)
    table.update(updates)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({day: float(rate) for day, rate in sorted(table.items())}, indent=2) + "\n",
        encoding="utf-8",
    )
    logging.info("Static %s rate table %s now holds %d entries.", currency.upper(), path, len(table))
    return len(table)
